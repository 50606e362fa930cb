from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, Optional, Protocol, Sequence

import httpx
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..orm_models import NotificationEventORM, ProjectORM, ProjectUserORM, SubcontractorUserORM, UserORM

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    user_id: str
    event_type: str
    title: str
    message: str
    project_id: Optional[str] = None
    link_url: Optional[str] = None
    entity_id: Optional[str] = None

    @property
    def dedupe_key(self) -> tuple:
        return (self.user_id, self.event_type, self.project_id, self.entity_id)


class NotificationEmitter(Protocol):
    def emit(self, session: Session, events: Sequence[NotificationEvent]) -> int:
        ...


def dedupe_events(events: Iterable[NotificationEvent]) -> list[NotificationEvent]:
    seen: set[tuple] = set()
    unique: list[NotificationEvent] = []
    for event in events:
        key = event.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    return unique


class OutboxNotificationEmitter:
    """Queues events in ``notification_events`` inside the caller's transaction.

    A failure to queue is logged and swallowed; it never fails the state change
    that produced the events.
    """

    def emit(self, session: Session, events: Sequence[NotificationEvent]) -> int:
        unique = dedupe_events(events)
        if not unique:
            return 0
        try:
            with session.begin_nested():
                for event in unique:
                    session.add(
                        NotificationEventORM(
                            user_id=event.user_id,
                            project_id=event.project_id,
                            event_type=event.event_type,
                            title=event.title,
                            message=event.message,
                            link_url=event.link_url,
                            payload={"entityId": event.entity_id} if event.entity_id else None,
                        )
                    )
        except SQLAlchemyError as exc:
            logger.warning("Failed to queue %d notification(s): %s", len(unique), exc)
            return 0
        for event in unique:
            logger.debug(
                "Queued notification",
                extra={"user_id": event.user_id, "event_type": event.event_type, "project_id": event.project_id},
            )
        return len(unique)


default_emitter = OutboxNotificationEmitter()


# === Recipients ===============================================================


def project_users_with_roles(session: Session, project_id: str, roles: Iterable[str]) -> list[str]:
    """Distinct active users holding any of ``roles`` on the project."""
    rows = session.execute(
        select(ProjectUserORM.user_id)
        .join(UserORM, UserORM.id == ProjectUserORM.user_id)
        .where(
            ProjectUserORM.project_id == project_id,
            ProjectUserORM.status == "active",
            ProjectUserORM.role.in_(tuple(roles)),
            UserORM.is_active.is_(True),
        )
        .distinct()
    ).scalars()
    return sorted(set(rows))


def subcontractor_user_ids(session: Session, subcontractor_company_id: str) -> list[str]:
    rows = session.execute(
        select(SubcontractorUserORM.user_id).where(
            SubcontractorUserORM.subcontractor_company_id == subcontractor_company_id,
            SubcontractorUserORM.is_active.is_(True),
        )
    ).scalars()
    return sorted(set(rows))


def list_user_notifications(session: Session, user_id: str, *, limit: int = 50) -> list[NotificationEventORM]:
    return (
        session.execute(
            select(NotificationEventORM)
            .where(NotificationEventORM.user_id == user_id)
            .order_by(NotificationEventORM.created_at.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


# === Delivery =================================================================


class DeliveryError(RuntimeError):
    pass


class NotificationDeliverer(Protocol):
    def deliver(self, event: NotificationEventORM) -> None:
        ...


class LoggingDeliverer:
    def deliver(self, event: NotificationEventORM) -> None:
        logger.info(
            "Notification for %s: %s",
            event.user_id,
            event.title,
            extra={"event_type": event.event_type, "project_id": event.project_id},
        )


class WebhookDeliverer:
    def __init__(self, url: str, *, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout, headers={"Accept": "application/json"})

    def deliver(self, event: NotificationEventORM) -> None:
        response = self._client.post(
            self.url,
            json={
                "id": event.id,
                "userId": event.user_id,
                "projectId": event.project_id,
                "type": event.event_type,
                "title": event.title,
                "message": event.message,
                "linkUrl": event.link_url,
                "payload": event.payload,
            },
        )
        if response.status_code >= 400:
            raise DeliveryError(f"Webhook responded with {response.status_code}")

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WebhookDeliverer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@contextmanager
def default_deliverer() -> Iterator[NotificationDeliverer]:
    if settings.notification_webhook_url:
        with WebhookDeliverer(settings.notification_webhook_url) as deliverer:
            yield deliverer
    else:
        yield LoggingDeliverer()


@dataclass
class DispatchSummary:
    delivered: int = 0
    retrying: int = 0
    failed: int = 0


def dispatch_pending_notifications(
    session: Session,
    deliverer: NotificationDeliverer,
    *,
    company_id: Optional[str] = None,
    limit: int = 100,
    max_attempts: Optional[int] = None,
) -> DispatchSummary:
    """Deliver pending events, oldest first.

    With ``company_id`` only events of that company's projects (or, for events
    without a project, of its users) are picked up.
    """
    attempts_allowed = max_attempts or settings.notification_max_attempts
    summary = DispatchSummary()
    statement = select(NotificationEventORM).where(NotificationEventORM.status == "pending")
    if company_id is not None:
        statement = statement.where(
            or_(
                NotificationEventORM.project_id.in_(select(ProjectORM.id).where(ProjectORM.company_id == company_id)),
                and_(
                    NotificationEventORM.project_id.is_(None),
                    NotificationEventORM.user_id.in_(select(UserORM.id).where(UserORM.company_id == company_id)),
                ),
            )
        )
    pending = (
        session.execute(
            statement
            .order_by(NotificationEventORM.created_at)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    for event in pending:
        event.attempts += 1
        try:
            deliverer.deliver(event)
        except (DeliveryError, httpx.HTTPError) as exc:
            event.last_error = str(exc)
            if event.attempts >= attempts_allowed:
                event.status = "failed"
                summary.failed += 1
            else:
                summary.retrying += 1
            logger.warning(
                "Notification delivery failed (attempt %d): %s",
                event.attempts,
                exc,
                extra={"event_type": event.event_type, "entity_id": event.id},
            )
            continue
        event.status = "delivered"
        event.delivered_at = datetime.utcnow()
        event.last_error = None
        summary.delivered += 1
    session.flush()
    return summary
