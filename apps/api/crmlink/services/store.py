from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from crmlink.core.crypto import decrypt_text, encrypt_text
from crmlink.models.preferences import AppConfigValue, UserPreference

# Per-user keys.
KEY_TOKEN = "token"
KEY_REFRESH_TOKEN = "refresh_token"
KEY_CRM_USER_ID = "user_id"
KEY_CRM_USER_NAME = "user_name"
KEY_LAST_OPEN_CHECK = "last_open_check"
KEY_SEARCH_ENABLED = "search_enabled"
KEY_NAVIGATION_ENABLED = "navigation_enabled"

# App-wide keys.
KEY_CLIENT_ID = "client_id"
KEY_CLIENT_SECRET = "client_secret"
KEY_INSTANCE_URL = "oauth_instance_url"

_ENCRYPTED_USER_KEYS = frozenset({KEY_TOKEN, KEY_REFRESH_TOKEN})
_ENCRYPTED_APP_KEYS = frozenset({KEY_CLIENT_SECRET})

USER_KEYS = (KEY_TOKEN, KEY_REFRESH_TOKEN, KEY_CRM_USER_ID, KEY_CRM_USER_NAME, KEY_LAST_OPEN_CHECK)


class TokenStore(Protocol):
    def get_user_value(self, user_id: str, key: str) -> str: ...

    def set_user_value(self, user_id: str, key: str, value: str) -> None: ...

    def save_tokens(self, user_id: str, *, access_token: str, refresh_token: str) -> None: ...

    def get_app_value(self, key: str) -> str: ...


@dataclass(frozen=True)
class Credentials:
    client_id: str
    client_secret: str
    base_url: str

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.base_url)


def load_credentials(store: TokenStore) -> Credentials:
    return Credentials(
        client_id=store.get_app_value(KEY_CLIENT_ID),
        client_secret=store.get_app_value(KEY_CLIENT_SECRET),
        base_url=store.get_app_value(KEY_INSTANCE_URL).rstrip("/"),
    )


class DbTokenStore:
    """Token store backed by the `user_preferences` and `app_config` tables.

    Missing values read back as an empty string. Tokens and the client secret
    are encrypted at rest, bound to their owner and key.
    Writes are flushed and left to the caller to commit, except `save_tokens`.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_user_value(self, user_id: str, key: str) -> str:
        row = self.session.get(UserPreference, (user_id, key))
        if row is None or row.value == "":
            return ""
        if key in _ENCRYPTED_USER_KEYS:
            return decrypt_text(value=row.value, aad=_user_aad(user_id=user_id, key=key))
        return row.value

    def set_user_value(self, user_id: str, key: str, value: str) -> None:
        stored = value
        if key in _ENCRYPTED_USER_KEYS and value:
            stored = encrypt_text(value=value, aad=_user_aad(user_id=user_id, key=key))

        row = self.session.get(UserPreference, (user_id, key))
        if row is None:
            row = UserPreference(user_id=user_id, key=key, value=stored)
        else:
            row.value = stored
        self.session.add(row)
        self.session.flush()

    def save_tokens(self, user_id: str, *, access_token: str, refresh_token: str) -> None:
        """Store a rotated token pair and commit it immediately.

        The pair outlives any later rollback by the caller; the previous refresh
        token is already revoked by SuiteCRM at this point.
        """
        self.set_user_value(user_id, KEY_TOKEN, access_token)
        self.set_user_value(user_id, KEY_REFRESH_TOKEN, refresh_token)
        self.session.commit()

    def delete_user_values(self, user_id: str, keys: tuple[str, ...] = USER_KEYS) -> None:
        self.session.execute(
            delete(UserPreference).where(
                UserPreference.user_id == user_id,
                UserPreference.key.in_(keys),
            )
        )
        self.session.flush()

    def get_app_value(self, key: str) -> str:
        row = self.session.get(AppConfigValue, key)
        if row is None or row.value == "":
            return ""
        if key in _ENCRYPTED_APP_KEYS:
            return decrypt_text(value=row.value, aad=_app_aad(key=key))
        return row.value

    def set_app_value(self, key: str, value: str) -> None:
        stored = value
        if key in _ENCRYPTED_APP_KEYS and value:
            stored = encrypt_text(value=value, aad=_app_aad(key=key))

        row = self.session.get(AppConfigValue, key)
        if row is None:
            row = AppConfigValue(key=key, value=stored)
        else:
            row.value = stored
        self.session.add(row)
        self.session.flush()


def iter_linked_user_ids(session: Session, *, page_size: int = 500) -> Iterator[str]:
    """Yield ids of users holding a stored access token, one keyset page at a time."""
    last_user_id: str | None = None
    while True:
        stmt = (
            select(UserPreference.user_id)
            .where(UserPreference.key == KEY_TOKEN, UserPreference.value != "")
            .order_by(UserPreference.user_id.asc())
            .limit(page_size)
        )
        if last_user_id is not None:
            stmt = stmt.where(UserPreference.user_id > last_user_id)

        page = list(session.execute(stmt).scalars())
        yield from page
        if len(page) < page_size:
            return
        last_user_id = page[-1]


def _user_aad(*, user_id: str, key: str) -> bytes:
    return f"user_preferences:{user_id}:{key}".encode()


def _app_aad(*, key: str) -> bytes:
    return f"app_config:{key}".encode()
