from __future__ import annotations

import logging

import httpx

from crmlink.core.http import USER_AGENT
from crmlink.core.log import log_event
from crmlink.core.metrics import observe_token_refresh
from crmlink.services.suitecrm.types import ApiResult, Ok, OAuthTokens, transport_error

ACCESS_TOKEN_PATH = "/Api/access_token"

logger = logging.getLogger("crmlink.suitecrm")


def request_oauth_access_token(
    client: httpx.Client,
    *,
    base_url: str,
    data: dict[str, str],
) -> ApiResult[OAuthTokens]:
    """POST a grant to the SuiteCRM token endpoint.

    Both tokens must come back; SuiteCRM rotates the refresh token on every
    exchange, so a response without one is treated as a failure.
    """
    try:
        res = client.post(
            f"{base_url}{ACCESS_TOKEN_PATH}",
            data=data,
            headers={
                "User-Agent": USER_AGENT,
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )
    except httpx.HTTPError as e:
        log_event(logger, "suitecrm.oauth.failed", level=logging.WARNING, error=str(e))
        return transport_error(str(e) or e.__class__.__name__)

    if res.status_code >= 400:
        # Avoid leaking the raw upstream payload into logs.
        log_event(
            logger,
            "suitecrm.oauth.refused",
            level=logging.WARNING,
            status_code=res.status_code,
            grant_type=data.get("grant_type"),
        )
        return transport_error("OAuth access token refused")

    try:
        payload = res.json()
    except ValueError:
        return transport_error("OAuth token response is not JSON")

    if not isinstance(payload, dict):
        return transport_error("OAuth token response is not an object")
    access_token = payload.get("access_token")
    refresh_token = payload.get("refresh_token")
    if not access_token or not refresh_token:
        return transport_error("OAuth token response is missing access_token or refresh_token")

    try:
        expires_in = int(payload.get("expires_in") or 0)
    except (TypeError, ValueError):
        expires_in = 0

    return Ok(
        OAuthTokens(
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_in=expires_in,
            token_type=payload.get("token_type"),
        )
    )


def refresh_access_token(
    client: httpx.Client,
    *,
    base_url: str,
    refresh_token: str,
    client_id: str,
    client_secret: str,
) -> ApiResult[OAuthTokens]:
    result = request_oauth_access_token(
        client,
        base_url=base_url,
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        },
    )
    observe_token_refresh(outcome="ok" if isinstance(result, Ok) else "failed")
    return result


def password_grant(
    client: httpx.Client,
    *,
    base_url: str,
    client_id: str,
    client_secret: str,
    username: str,
    password: str,
) -> ApiResult[OAuthTokens]:
    return request_oauth_access_token(
        client,
        base_url=base_url,
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "password",
            "username": username,
            "password": password,
            "scope": "",
        },
    )
