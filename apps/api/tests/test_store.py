from __future__ import annotations

import pytest
from cryptography.exceptions import InvalidTag

from crmlink.core.crypto import decrypt_text
from crmlink.models.preferences import AppConfigValue, UserPreference
from crmlink.services.store import (
    KEY_CLIENT_SECRET,
    KEY_CRM_USER_ID,
    KEY_INSTANCE_URL,
    KEY_LAST_OPEN_CHECK,
    KEY_TOKEN,
    DbTokenStore,
    iter_linked_user_ids,
    load_credentials,
)


def test_missing_values_read_back_empty(db_session) -> None:
    store = DbTokenStore(db_session)
    assert store.get_user_value("alice", KEY_TOKEN) == ""
    assert store.get_app_value(KEY_INSTANCE_URL) == ""
    assert load_credentials(store).is_complete is False


def test_tokens_and_client_secret_are_encrypted_at_rest(db_session) -> None:
    store = DbTokenStore(db_session)
    store.set_user_value("alice", KEY_TOKEN, "access-secret")
    store.set_user_value("alice", KEY_CRM_USER_ID, "crm-user-1")
    store.set_app_value(KEY_CLIENT_SECRET, "client-secret")
    db_session.commit()

    token_row = db_session.get(UserPreference, ("alice", KEY_TOKEN))
    assert token_row is not None
    assert "access-secret" not in token_row.value
    assert db_session.get(UserPreference, ("alice", KEY_CRM_USER_ID)).value == "crm-user-1"
    assert "client-secret" not in db_session.get(AppConfigValue, KEY_CLIENT_SECRET).value

    assert store.get_user_value("alice", KEY_TOKEN) == "access-secret"
    assert store.get_app_value(KEY_CLIENT_SECRET) == "client-secret"


def test_encrypted_token_is_bound_to_its_owner(db_session) -> None:
    store = DbTokenStore(db_session)
    store.set_user_value("alice", KEY_TOKEN, "access-secret")
    db_session.commit()

    blob = db_session.get(UserPreference, ("alice", KEY_TOKEN)).value
    with pytest.raises(InvalidTag):
        decrypt_text(value=blob, aad=b"user_preferences:bob:token")


def test_overwrite_and_delete_user_values(db_session) -> None:
    store = DbTokenStore(db_session)
    store.set_user_value("alice", KEY_LAST_OPEN_CHECK, "2026-05-01T00:00:00+00:00")
    store.set_user_value("alice", KEY_LAST_OPEN_CHECK, "2026-05-02T00:00:00+00:00")
    store.set_user_value("alice", "search_enabled", "1")
    assert store.get_user_value("alice", KEY_LAST_OPEN_CHECK) == "2026-05-02T00:00:00+00:00"

    store.delete_user_values("alice")
    db_session.commit()

    assert store.get_user_value("alice", KEY_LAST_OPEN_CHECK) == ""
    assert store.get_user_value("alice", "search_enabled") == "1"


def test_load_credentials_strips_trailing_slash(db_session) -> None:
    store = DbTokenStore(db_session)
    store.set_app_value("client_id", "id")
    store.set_app_value(KEY_CLIENT_SECRET, "secret")
    store.set_app_value(KEY_INSTANCE_URL, "https://crm.example.test/")

    credentials = load_credentials(store)

    assert credentials.base_url == "https://crm.example.test"
    assert credentials.is_complete is True


def test_iter_linked_user_ids_pages_through_token_holders(db_session) -> None:
    store = DbTokenStore(db_session)
    for user_id in ["u05", "u01", "u04", "u02", "u03"]:
        store.set_user_value(user_id, KEY_TOKEN, f"token-{user_id}")
    store.set_user_value("u06", KEY_TOKEN, "")
    store.set_user_value("u07", KEY_CRM_USER_ID, "crm-7")
    db_session.commit()

    assert list(iter_linked_user_ids(db_session, page_size=2)) == ["u01", "u02", "u03", "u04", "u05"]
