from __future__ import annotations

import logging

from fastapi import HTTPException, status

from crmlink.core.log import log_event
from crmlink.services.store import (
    KEY_CLIENT_ID,
    KEY_CLIENT_SECRET,
    KEY_CRM_USER_ID,
    KEY_CRM_USER_NAME,
    KEY_INSTANCE_URL,
    KEY_NAVIGATION_ENABLED,
    KEY_REFRESH_TOKEN,
    KEY_SEARCH_ENABLED,
    KEY_TOKEN,
    DbTokenStore,
    TokenStore,
)
from crmlink.services.suitecrm.client import SuiteCRMClient
from crmlink.services.suitecrm.oauth import password_grant
from crmlink.services.suitecrm.types import CrmUser, Err

# Plain preferences a user may set through the config endpoint.
USER_SETTABLE_KEYS = frozenset({KEY_SEARCH_ENABLED, KEY_NAVIGATION_ENABLED})

logger = logging.getLogger("crmlink.api")


def connect_account(*, client: SuiteCRMClient, user_id: str, login: str, password: str) -> CrmUser:
    """Link a host user to SuiteCRM with a password grant and remember their CRM identity."""
    creds = client.credentials
    tokens = password_grant(
        client.http_client,
        base_url=creds.base_url,
        client_id=creds.client_id,
        client_secret=creds.client_secret,
        username=login,
        password=password,
    )
    if isinstance(tokens, Err):
        log_event(logger, "account.connect.refused", level=logging.WARNING, user_id=user_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid SuiteCRM login or password",
        )

    store = client.store
    store.set_user_value(user_id, KEY_TOKEN, tokens.value.access_token)
    store.set_user_value(user_id, KEY_REFRESH_TOKEN, tokens.value.refresh_token)

    me = client.get_me(user_id, access_token=tokens.value.access_token)
    if isinstance(me, Err):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="SuiteCRM user lookup failed",
        )

    store.set_user_value(user_id, KEY_CRM_USER_ID, me.value.id)
    store.set_user_value(user_id, KEY_CRM_USER_NAME, me.value.display_name)
    log_event(logger, "account.connected", user_id=user_id, crm_user_id=me.value.id)
    return me.value


def disconnect_account(*, store: DbTokenStore, user_id: str) -> None:
    store.delete_user_values(user_id)
    log_event(logger, "account.disconnected", user_id=user_id)


def update_user_config(*, store: DbTokenStore, user_id: str, values: dict[str, str]) -> None:
    for key, value in values.items():
        if key == KEY_TOKEN:
            if value != "":
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Tokens can only be cleared through this endpoint",
                )
            disconnect_account(store=store, user_id=user_id)
            continue
        if key not in USER_SETTABLE_KEYS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown config key: {key}",
            )
        store.set_user_value(user_id, key, value)


def update_admin_config(
    *,
    store: DbTokenStore,
    client_id: str | None,
    client_secret: str | None,
    oauth_instance_url: str | None,
) -> None:
    if client_id is not None:
        store.set_app_value(KEY_CLIENT_ID, client_id.strip())
    if client_secret is not None:
        store.set_app_value(KEY_CLIENT_SECRET, client_secret.strip())
    if oauth_instance_url is not None:
        url = oauth_instance_url.strip().rstrip("/")
        if url and not url.startswith(("http://", "https://")):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="oauth_instance_url must be an http(s) URL",
            )
        store.set_app_value(KEY_INSTANCE_URL, url)


def is_enabled(store: TokenStore, user_id: str, key: str) -> bool:
    # Unset means enabled; the host UI stores "0" to switch a feature off.
    return store.get_user_value(user_id, key) != "0"


def user_config(*, store: DbTokenStore, user_id: str) -> dict[str, object]:
    return {
        "connected": bool(store.get_user_value(user_id, KEY_TOKEN)),
        "user_name": store.get_user_value(user_id, KEY_CRM_USER_NAME),
        "search_enabled": is_enabled(store, user_id, KEY_SEARCH_ENABLED),
        "navigation_enabled": is_enabled(store, user_id, KEY_NAVIGATION_ENABLED),
    }
