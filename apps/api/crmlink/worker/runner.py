from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
from sqlalchemy.orm import Session

from crmlink.core.config import get_settings
from crmlink.core.http import new_http_client
from crmlink.core.log import log_event
from crmlink.db.session import session_scope
from crmlink.services.notifications import DbNotificationSink
from crmlink.services.open_tickets import check_open_tickets_for_user
from crmlink.services.store import (
    Credentials,
    DbTokenStore,
    iter_linked_user_ids,
    load_credentials,
)
from crmlink.services.suitecrm.client import SuiteCRMClient

logger = logging.getLogger("crmlink.worker")


@dataclass(frozen=True)
class WorkerConfig:
    interval_seconds: float = field(
        default_factory=lambda: get_settings().CHECK_OPEN_TICKETS_INTERVAL_SECONDS
    )
    app_id: str = field(default_factory=lambda: get_settings().APP_ID)


def run_worker_forever(config: WorkerConfig) -> None:
    # Fixed-rate ticks; a slow cycle shortens the following sleep instead of drifting.
    while True:
        started = time.monotonic()
        try:
            run_cycle(config=config)
        except Exception as e:  # noqa: BLE001
            log_event(
                logger,
                "open_tickets.cycle.failed",
                level=logging.ERROR,
                error=str(e),
                error_type=e.__class__.__name__,
            )
        elapsed = time.monotonic() - started
        time.sleep(max(0.0, config.interval_seconds - elapsed))


def run_cycle(
    *,
    config: WorkerConfig,
    http_client: httpx.Client | None = None,
    user_ids: Callable[[Session], Iterable[str]] = iter_linked_user_ids,
) -> Counter[str]:
    """Check every linked user once; return how many polls ended in each outcome."""
    outcomes: Counter[str] = Counter()
    owns_client = http_client is None
    client_http = http_client or new_http_client()
    try:
        with session_scope() as session:
            _run_users(
                session=session,
                http_client=client_http,
                config=config,
                user_ids=user_ids,
                outcomes=outcomes,
            )
    finally:
        if owns_client:
            client_http.close()

    log_event(logger, "open_tickets.cycle.completed", outcomes=dict(outcomes))
    return outcomes


def _run_users(
    *,
    session: Session,
    http_client: httpx.Client,
    config: WorkerConfig,
    user_ids: Callable[[Session], Iterable[str]],
    outcomes: Counter[str],
) -> None:
    store = DbTokenStore(session)
    credentials = load_credentials(store)
    # Credentials are read once per tick; an admin change applies from the next one.
    session.commit()
    for user_id in user_ids(session):
        outcome = _check_user(
            session=session,
            store=store,
            http_client=http_client,
            credentials=credentials,
            user_id=user_id,
            config=config,
        )
        outcomes[outcome] += 1


def _check_user(
    *,
    session: Session,
    store: DbTokenStore,
    http_client: httpx.Client,
    credentials: Credentials,
    user_id: str,
    config: WorkerConfig,
) -> str:
    client = SuiteCRMClient(http_client, store=store, credentials=credentials)
    try:
        result = check_open_tickets_for_user(
            client=client,
            sink=DbNotificationSink(session),
            user_id=user_id,
            app_id=config.app_id,
            now=datetime.now(UTC),
        )
    except Exception as e:  # noqa: BLE001
        # One user's failure must not stop the loop for the others.
        session.rollback()
        log_event(
            logger,
            "open_tickets.user.failed",
            level=logging.ERROR,
            user_id=user_id,
            error=str(e),
            error_type=e.__class__.__name__,
        )
        return "error"

    session.commit()
    return result.outcome.value
