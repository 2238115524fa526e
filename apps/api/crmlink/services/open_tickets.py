from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from crmlink.core.log import log_event
from crmlink.core.metrics import observe_poll_outcome
from crmlink.services.notifications import SUBJECT_NEW_OPEN_TICKETS, NotificationSink
from crmlink.services.store import KEY_CRM_USER_ID, KEY_LAST_OPEN_CHECK, KEY_TOKEN
from crmlink.services.suitecrm.alerts import get_alerts, parse_crm_datetime
from crmlink.services.suitecrm.client import SuiteCRMClient
from crmlink.services.suitecrm.types import Alert, Err

# SuiteCRM ticket state id meaning "open".
OPEN_STATE_ID = 1

logger = logging.getLogger("crmlink.worker")


class PollOutcome(enum.StrEnum):
    no_token = "no_token"
    not_configured = "not_configured"
    no_identity = "no_identity"
    alerts_failed = "alerts_failed"
    no_alerts = "no_alerts"
    checked = "checked"
    notified = "notified"


@dataclass(frozen=True)
class PollResult:
    user_id: str
    outcome: PollOutcome
    nb_open: int = 0
    watermark: datetime | None = None


def count_open_owned(alerts: list[Alert], *, my_user_id: str) -> int:
    return sum(1 for a in alerts if a.owner_id == my_user_id and a.state_id == OPEN_STATE_ID)


def newest_update(alerts: list[Alert]) -> datetime | None:
    stamps = [a.updated_at for a in alerts if a.updated_at is not None]
    return max(stamps) if stamps else None


def check_open_tickets_for_user(
    *,
    client: SuiteCRMClient,
    sink: NotificationSink,
    user_id: str,
    app_id: str,
    now: datetime | None = None,
) -> PollResult:
    """Poll SuiteCRM for one user and notify them about open tickets they own.

    Every missing prerequisite or remote failure ends the poll without a
    notification and without touching the watermark. The watermark only
    moves forward.
    """
    result = _check(client=client, sink=sink, user_id=user_id, app_id=app_id, now=now)
    observe_poll_outcome(outcome=result.outcome.value)
    log_event(
        logger,
        "open_tickets.checked",
        user_id=user_id,
        outcome=result.outcome.value,
        nb_open=result.nb_open,
    )
    return result


def _check(
    *,
    client: SuiteCRMClient,
    sink: NotificationSink,
    user_id: str,
    app_id: str,
    now: datetime | None,
) -> PollResult:
    store = client.store
    access_token = store.get_user_value(user_id, KEY_TOKEN)
    if not access_token:
        return PollResult(user_id=user_id, outcome=PollOutcome.no_token)

    if not client.credentials.is_complete:
        return PollResult(user_id=user_id, outcome=PollOutcome.not_configured)

    raw_watermark = store.get_user_value(user_id, KEY_LAST_OPEN_CHECK)
    watermark = parse_crm_datetime(raw_watermark) if raw_watermark else None

    me = client.get_me(user_id, access_token=access_token)
    if isinstance(me, Err):
        return PollResult(user_id=user_id, outcome=PollOutcome.no_identity, watermark=watermark)
    my_user_id = me.value.id
    if not store.get_user_value(user_id, KEY_CRM_USER_ID):
        store.set_user_value(user_id, KEY_CRM_USER_ID, my_user_id)

    alerts = get_alerts(client, user_id, access_token=access_token, since=watermark, now=now)
    if isinstance(alerts, Err):
        log_event(
            logger,
            "open_tickets.alerts_failed",
            level=logging.WARNING,
            user_id=user_id,
            kind=alerts.error.kind.value,
            message=alerts.error.message,
        )
        return PollResult(user_id=user_id, outcome=PollOutcome.alerts_failed, watermark=watermark)
    if not alerts.value:
        return PollResult(user_id=user_id, outcome=PollOutcome.no_alerts, watermark=watermark)

    newest = newest_update(alerts.value)
    if newest is not None and (watermark is None or newest > watermark):
        watermark = newest
        store.set_user_value(user_id, KEY_LAST_OPEN_CHECK, watermark.isoformat())

    nb_open = count_open_owned(alerts.value, my_user_id=my_user_id)
    if nb_open == 0:
        return PollResult(user_id=user_id, outcome=PollOutcome.checked, watermark=watermark)

    sink.notify(
        user_id,
        app_id,
        SUBJECT_NEW_OPEN_TICKETS,
        {"nbOpen": nb_open, "link": client.credentials.base_url},
        now or datetime.now(UTC),
    )
    return PollResult(
        user_id=user_id,
        outcome=PollOutcome.notified,
        nb_open=nb_open,
        watermark=watermark,
    )
