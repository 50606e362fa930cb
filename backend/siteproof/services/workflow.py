"""Runs a state transition and its side effects as one unit.

Usage::

    with transition(session, actor_id=..., project_id=..., entity="ncr", action="close") as tx:
        ncr.status = "closed"
        tx.record(status="closed")
        tx.notify(NotificationEvent(...))

The body runs inside a SAVEPOINT. If it raises, everything it did is rolled back
and the error propagates unchanged. On success the audit row is written in the same
savepoint, then queued notifications are handed to the emitter, whose own failures
never undo the transition.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from ..orm_models import AuditLogORM
from .notifications import NotificationEmitter, NotificationEvent, default_emitter

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    actor_id: Optional[str]
    project_id: Optional[str]
    entity: str
    action: str
    entity_id: Optional[str] = None
    payload: dict = field(default_factory=dict)
    events: list[NotificationEvent] = field(default_factory=list)

    def record(self, **values) -> None:
        self.payload.update({key: value for key, value in values.items() if value is not None})

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def notify_many(self, events) -> None:
        self.events.extend(events)


@contextmanager
def transition(
    session: Session,
    *,
    actor_id: Optional[str],
    project_id: Optional[str],
    entity: str,
    action: str,
    entity_id: Optional[str] = None,
    emitter: Optional[NotificationEmitter] = None,
) -> Iterator[Transition]:
    tx = Transition(
        actor_id=actor_id,
        project_id=project_id,
        entity=entity,
        action=action,
        entity_id=entity_id,
    )
    with session.begin_nested():
        yield tx
        session.flush()
        session.add(
            AuditLogORM(
                project_id=tx.project_id,
                actor_id=tx.actor_id,
                action=f"{entity}.{action}",
                entity=entity,
                entity_id=tx.entity_id,
                payload=tx.payload or None,
            )
        )
        session.flush()

    logger.info(
        "%s %s applied",
        entity,
        action,
        extra={
            "user_id": actor_id,
            "project_id": tx.project_id,
            "entity": entity,
            "entity_id": tx.entity_id,
            "action": action,
        },
    )
    (emitter or default_emitter).emit(session, tx.events)
