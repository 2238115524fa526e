from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote, quote_plus, urlencode

import httpx

from crmlink.core.http import USER_AGENT
from crmlink.core.log import log_event
from crmlink.core.metrics import observe_crm_request
from crmlink.services.store import KEY_REFRESH_TOKEN, Credentials, TokenStore
from crmlink.services.suitecrm.oauth import refresh_access_token
from crmlink.services.suitecrm.types import (
    ApiResult,
    CrmUser,
    Err,
    Ok,
    bad_credentials,
    malformed,
    transport_error,
)

API_PATH = "/Api/index.php/V8/"

logger = logging.getLogger("crmlink.suitecrm")


class SuiteCRMClient:
    """Authenticated access to the SuiteCRM V8 REST API for one install.

    Every call returns an `ApiResult`. A 401 triggers one refresh-token
    exchange; on success the new tokens are written to the token store and
    the original request is replayed once with the new access token. Later
    calls for the same user made through this client use the refreshed token
    in place of the one passed in.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        *,
        store: TokenStore,
        credentials: Credentials,
    ) -> None:
        self.http_client = http_client
        self.store = store
        self.credentials = credentials
        self._refreshed: dict[str, str] = {}

    def current_access_token(self, user_id: str, access_token: str) -> str:
        return self._refreshed.get(user_id, access_token)

    def request(
        self,
        user_id: str,
        endpoint: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
    ) -> ApiResult[Any]:
        url, body = build_request(self.credentials.base_url, endpoint, params=params, method=method)
        return self._send(
            user_id,
            method=method,
            url=url,
            body=body,
            access_token=self.current_access_token(user_id, access_token),
            label=endpoint,
            expect_json=True,
        )

    def get_avatar(self, user_id: str, *, access_token: str, crm_user_id: str) -> ApiResult[bytes]:
        url = (
            f"{self.credentials.base_url}/index.php?entryPoint=download"
            f"&id={quote(crm_user_id, safe='')}_photo&type=Users"
        )
        return self._send(
            user_id,
            method="GET",
            url=url,
            body=None,
            access_token=self.current_access_token(user_id, access_token),
            label="avatar",
            expect_json=False,
        )

    def get_me(self, user_id: str, *, access_token: str) -> ApiResult[CrmUser]:
        result = self.request(user_id, "users/me", access_token=access_token)
        if isinstance(result, Err):
            return result
        return parse_user(result.value)

    def get_user(self, user_id: str, *, access_token: str, crm_user_id: str) -> ApiResult[dict]:
        result = self.request(user_id, f"users/{quote(crm_user_id, safe='')}", access_token=access_token)
        if isinstance(result, Err):
            return result
        record = unwrap_record(result.value)
        if record is None:
            return malformed("User lookup returned no record")
        return Ok(record)

    def _send(
        self,
        user_id: str,
        *,
        method: str,
        url: str,
        body: dict[str, Any] | None,
        access_token: str,
        label: str,
        expect_json: bool,
        allow_refresh: bool = True,
    ) -> ApiResult[Any]:
        try:
            res = self.http_client.request(
                method,
                url,
                data=body,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "User-Agent": USER_AGENT,
                },
            )
        except httpx.HTTPError as e:
            observe_crm_request(endpoint=label, outcome="transport_error")
            log_event(
                logger,
                "suitecrm.request.failed",
                level=logging.WARNING,
                user_id=user_id,
                endpoint=label,
                error=str(e),
            )
            return transport_error(str(e) or e.__class__.__name__)

        if res.status_code == 401 and allow_refresh:
            observe_crm_request(endpoint=label, outcome="auth_expired")
            refreshed = self._refresh_tokens(user_id)
            if isinstance(refreshed, Err):
                return refreshed
            return self._send(
                user_id,
                method=method,
                url=url,
                body=body,
                access_token=refreshed.value,
                label=label,
                expect_json=expect_json,
                allow_refresh=False,
            )

        if res.status_code >= 400:
            observe_crm_request(endpoint=label, outcome="bad_credentials")
            log_event(
                logger,
                "suitecrm.request.rejected",
                level=logging.WARNING,
                user_id=user_id,
                endpoint=label,
                status_code=res.status_code,
            )
            return bad_credentials(res.status_code)

        observe_crm_request(endpoint=label, outcome="ok")
        if not expect_json:
            return Ok(res.content)
        if not res.content:
            return Ok(None)
        try:
            return Ok(res.json())
        except ValueError:
            return malformed(f"{label} returned a non-JSON body")

    def _refresh_tokens(self, user_id: str) -> ApiResult[str]:
        log_event(logger, "suitecrm.token.refresh", user_id=user_id)
        refresh_token = self.store.get_user_value(user_id, KEY_REFRESH_TOKEN)
        if not refresh_token:
            return transport_error("No refresh token stored for user")

        result = refresh_access_token(
            self.http_client,
            base_url=self.credentials.base_url,
            refresh_token=refresh_token,
            client_id=self.credentials.client_id,
            client_secret=self.credentials.client_secret,
        )
        if isinstance(result, Err):
            return result

        tokens = result.value
        self.store.save_tokens(
            user_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        )
        self._refreshed[user_id] = tokens.access_token
        return Ok(tokens.access_token)


def build_request(
    base_url: str,
    endpoint: str,
    *,
    params: dict[str, Any] | None,
    method: str,
) -> tuple[str, dict[str, Any] | None]:
    """Return the request URL and, for non-GET methods, the form-encoded body fields.

    GET list values are expanded to repeated `key[]=value` pairs ahead of the
    url-encoded scalar values.
    """
    url = f"{base_url}{API_PATH}{endpoint}"
    if not params:
        return url, None
    if method != "GET":
        return url, params

    fragments: list[str] = []
    scalars: dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            fragments.extend(f"{key}[]={quote_plus(str(v))}" for v in value)
        else:
            scalars[key] = value
    if scalars:
        fragments.append(urlencode(scalars))

    query = "&".join(fragments)
    separator = "&" if "?" in endpoint else "?"
    return f"{url}{separator}{query}", None


def unwrap_record(payload: Any) -> dict | None:
    """Flatten a JSON:API `{"data": {"id", "attributes"}}` record to one dict.

    Plain objects are returned as they are.
    """
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict):
        attributes = data.get("attributes")
        record = dict(attributes) if isinstance(attributes, dict) else {}
        if data.get("id") is not None:
            record["id"] = data["id"]
        return record
    if "data" in payload:
        return None
    return payload


def parse_user(payload: Any) -> ApiResult[CrmUser]:
    record = unwrap_record(payload)
    if record is None or not record.get("id"):
        return malformed("users/me response has no id")
    return Ok(
        CrmUser(
            id=str(record["id"]),
            user_name=_opt_str(record.get("user_name")),
            first_name=_opt_str(record.get("first_name") or record.get("firstname")),
            last_name=_opt_str(record.get("last_name") or record.get("lastname")),
        )
    )


def _opt_str(v: object) -> str | None:
    if v is None or v == "":
        return None
    return str(v)
