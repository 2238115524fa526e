from __future__ import annotations

import logging
import re
from datetime import UTC, datetime

from crmlink.core.log import log_event
from crmlink.services.store import KEY_CRM_USER_ID
from crmlink.services.suitecrm.client import SuiteCRMClient, unwrap_record
from crmlink.services.suitecrm.types import Alert, AlertKind, ApiResult, Err, Ok, malformed

_CALL_RE = re.compile(r"module=Calls")
_MEETING_RE = re.compile(r"module=Meetings")
_RECORD_RE = re.compile(r"record=([a-z0-9\-]+)")

_MODULE_BY_KIND = {AlertKind.call: "Calls", AlertKind.meeting: "Meetings"}

logger = logging.getLogger("crmlink.suitecrm")


def classify_alert(url_redirect: str) -> tuple[AlertKind, str] | None:
    """Return the kind and record id an alert points at, or None when it is neither a call nor a meeting."""
    if _CALL_RE.search(url_redirect):
        kind = AlertKind.call
    elif _MEETING_RE.search(url_redirect):
        kind = AlertKind.meeting
    else:
        return None

    match = _RECORD_RE.search(url_redirect)
    if match is None:
        return None
    return kind, match.group(1)


def get_alerts(
    client: SuiteCRMClient,
    user_id: str,
    *,
    access_token: str,
    since: datetime | None = None,
    limit: int | None = None,
    crm_user_id: str | None = None,
    now: datetime | None = None,
) -> ApiResult[list[Alert]]:
    """Unread call and meeting alerts of a user that start in the future.

    With `since`, only items starting strictly after it are kept. Results are
    sorted by start date and cut to `limit` when one is given.
    """
    crm_user_id = crm_user_id or client.store.get_user_value(user_id, KEY_CRM_USER_ID)
    if not crm_user_id:
        log_event(logger, "suitecrm.alerts.no_crm_user", user_id=user_id)
        return Ok([])

    result = client.request(
        user_id,
        "module/Alerts",
        access_token=access_token,
        params={
            "filter[assigned_user_id][eq]": crm_user_id,
            "filter[is_read][eq]": 0,
        },
    )
    if isinstance(result, Err):
        return result

    payload = result.value
    items = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        return malformed("module/Alerts response has no data list")

    now = now or datetime.now(UTC)
    upcoming: list[Alert] = []
    for item in items:
        alert = _resolve_alert(client, user_id, item=item, access_token=access_token, now=now)
        if alert is not None:
            upcoming.append(alert)

    if since is not None:
        if since.tzinfo is None:
            since = since.replace(tzinfo=UTC)
        upcoming = [a for a in upcoming if a.date_start > since]

    # sorted() is stable, so equal start dates keep their server order.
    upcoming = sorted(upcoming, key=lambda a: a.date_start)
    if limit:
        upcoming = upcoming[:limit]
    return Ok(upcoming)


def _resolve_alert(
    client: SuiteCRMClient,
    user_id: str,
    *,
    item: object,
    access_token: str,
    now: datetime,
) -> Alert | None:
    if not isinstance(item, dict) or not item.get("id"):
        return None
    attributes = item.get("attributes")
    if not isinstance(attributes, dict):
        return None
    url_redirect = attributes.get("url_redirect")
    if not isinstance(url_redirect, str):
        return None

    classified = classify_alert(url_redirect)
    if classified is None:
        return None
    kind, record_id = classified

    date_start = _fetch_date_start(
        client,
        user_id,
        kind=kind,
        record_id=record_id,
        access_token=access_token,
    )
    if date_start is None or date_start <= now:
        return None

    return Alert(
        id=str(item["id"]),
        assigned_user_id=_opt_str(attributes.get("assigned_user_id")),
        is_read=_parse_bool(attributes.get("is_read")),
        url_redirect=url_redirect,
        kind=kind,
        record_id=record_id,
        date_start=date_start,
        owner_id=_opt_str(attributes.get("owner_id")),
        state_id=_parse_int(attributes.get("state_id")),
        updated_at=parse_crm_datetime(attributes.get("updated_at") or attributes.get("date_modified")),
        attributes=attributes,
    )


def _fetch_date_start(
    client: SuiteCRMClient,
    user_id: str,
    *,
    kind: AlertKind,
    record_id: str,
    access_token: str,
) -> datetime | None:
    result = client.request(
        user_id,
        f"module/{_MODULE_BY_KIND[kind]}",
        access_token=access_token,
        params={"filter[id][eq]": record_id},
    )
    if isinstance(result, Err):
        return None
    record = unwrap_record(result.value)
    if record is None:
        return None
    return parse_crm_datetime(record.get("date_start"))


def parse_crm_datetime(v: object) -> datetime | None:
    """Parse a SuiteCRM timestamp; values without an offset are UTC."""
    if isinstance(v, datetime):
        parsed = v
    elif isinstance(v, str) and v.strip():
        try:
            parsed = datetime.fromisoformat(v.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_int(v: object) -> int | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _parse_bool(v: object) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true"}
    return bool(v)


def _opt_str(v: object) -> str | None:
    if v is None or v == "":
        return None
    return str(v)
