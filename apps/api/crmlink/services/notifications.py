from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from crmlink.core.log import log_event
from crmlink.core.metrics import observe_notification
from crmlink.models.notifications import Notification

SUBJECT_NEW_OPEN_TICKETS = "new_open_tickets"

logger = logging.getLogger("crmlink.notifications")


class NotificationSink(Protocol):
    def notify(
        self,
        user_id: str,
        app_id: str,
        subject: str,
        params: dict,
        timestamp: datetime,
    ) -> None: ...


class DbNotificationSink:
    """Hands notifications to the host by writing rows to its `notifications` table."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def notify(
        self,
        user_id: str,
        app_id: str,
        subject: str,
        params: dict,
        timestamp: datetime,
    ) -> None:
        row = Notification(
            user_id=user_id,
            app_id=app_id,
            subject=subject,
            params=dict(params),
            notified_at=timestamp,
        )
        self.session.add(row)
        self.session.flush()
        observe_notification(subject=subject)
        log_event(logger, "notification.emitted", user_id=user_id, app_id=app_id, subject=subject)


def list_notifications(*, session: Session, user_id: str, app_id: str, limit: int = 50) -> list[Notification]:
    return list(
        session.execute(
            select(Notification)
            .where(Notification.user_id == user_id, Notification.app_id == app_id)
            .order_by(Notification.created_at.desc(), Notification.notified_at.desc())
            .limit(max(1, min(200, limit)))
        )
        .scalars()
        .all()
    )


@dataclass(frozen=True)
class PreparedNotification:
    subject: str
    message: str
    link: str


def prepare_notification(*, expected_app_id: str, app_id: str, subject: str, params: dict) -> PreparedNotification:
    """Render a stored notification for display.

    Raises ValueError for notifications of another app or an unknown subject.
    """
    if app_id != expected_app_id:
        raise ValueError(f"Notification belongs to another app: {app_id}")

    if subject == SUBJECT_NEW_OPEN_TICKETS:
        try:
            nb_open = int(params.get("nbOpen") or 0)
        except (TypeError, ValueError):
            nb_open = 0
        noun = "ticket" if nb_open == 1 else "tickets"
        return PreparedNotification(
            subject=subject,
            message=f"You have {nb_open} open {noun} in SuiteCRM.",
            link=str(params.get("link") or ""),
        )

    raise ValueError(f"Unknown notification subject: {subject}")
