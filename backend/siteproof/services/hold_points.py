from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import orm_models
from ..config import settings
from ..errors import NotFoundError, ValidationFailed
from ..permissions import HOLD_POINT_RELEASERS
from ..schemas import HoldPoint, HoldPointMetrics, HoldPointRelease, HoldPointRequest
from ..state_machines import ensure_transition
from .access import AccessDecision, apply_scope, hold_point_filter, load_lot, load_project, require
from .identity import Identity
from .itp import item_satisfied, mark_verified, recompute_lot_progress
from .notifications import NotificationEvent, project_users_with_roles
from .workflow import transition

logger = logging.getLogger(__name__)

HoldPointStatus = orm_models.HoldPointStatus
AWAITING_RELEASE = (HoldPointStatus.REQUESTED.value, HoldPointStatus.SCHEDULED.value)


def is_stale(hold_point: orm_models.HoldPointORM, now: Optional[datetime] = None) -> bool:
    """Derived on every read; never stored."""
    if hold_point.status == HoldPointStatus.RELEASED.value:
        return False
    now = now or datetime.utcnow()
    return hold_point.created_at < now - timedelta(days=settings.hold_point_stale_days)


def map_hold_point(hold_point: orm_models.HoldPointORM, now: Optional[datetime] = None) -> HoldPoint:
    return HoldPoint(
        id=hold_point.id,
        lotId=hold_point.lot_id,
        checklistItemId=hold_point.checklist_item_id,
        description=hold_point.description,
        status=hold_point.status,
        isStale=is_stale(hold_point, now),
        scheduledDate=hold_point.scheduled_date,
        createdAt=hold_point.created_at,
        releasedAt=hold_point.released_at,
        releasedByName=hold_point.released_by_name,
        releasedByOrg=hold_point.released_by_org,
        releaseMethod=hold_point.release_method,
        chaseCount=hold_point.chase_count,
        lastChasedAt=hold_point.last_chased_at,
    )


def _event(hold_point: orm_models.HoldPointORM, user_id: str, event_type: str, title: str) -> NotificationEvent:
    lot = hold_point.lot
    return NotificationEvent(
        user_id=user_id,
        project_id=hold_point.project_id,
        event_type=event_type,
        title=title,
        message=f"Lot {lot.lot_number}: {hold_point.description or 'hold point'}",
        link_url=f"/projects/{hold_point.project_id}/lots/{lot.id}",
        entity_id=hold_point.id,
    )


def _load_hold_point(
    session: Session,
    identity: Identity,
    hold_point_id: str,
    action: str,
) -> tuple[orm_models.HoldPointORM, orm_models.LotORM, AccessDecision]:
    hold_point = session.get(orm_models.HoldPointORM, hold_point_id)
    if hold_point is None:
        raise NotFoundError("Hold point", hold_point_id)
    try:
        lot, decision = load_lot(session, identity, hold_point.lot_id, "hold_point", action)
    except NotFoundError as exc:
        raise NotFoundError("Hold point", hold_point_id) from exc
    return hold_point, lot, decision


def _scoped_hold_points(session: Session, identity: Identity, project_id: str):
    project = load_project(session, identity, project_id)
    decision = require(identity, project, "hold_point", "read")
    statement = select(orm_models.HoldPointORM).where(orm_models.HoldPointORM.project_id == project.id)
    return apply_scope(statement, hold_point_filter(decision.scope))


def list_hold_points(
    session: Session,
    identity: Identity,
    project_id: str,
    *,
    lot_id: Optional[str] = None,
    status: Optional[str] = None,
    stale_only: bool = False,
) -> List[orm_models.HoldPointORM]:
    statement = _scoped_hold_points(session, identity, project_id)
    if lot_id:
        statement = statement.where(orm_models.HoldPointORM.lot_id == lot_id)
    if status:
        statement = statement.where(orm_models.HoldPointORM.status == status)
    hold_points = session.execute(statement.order_by(orm_models.HoldPointORM.created_at)).scalars().all()
    if stale_only:
        now = datetime.utcnow()
        return [hold_point for hold_point in hold_points if is_stale(hold_point, now)]
    return list(hold_points)


def release_metrics(session: Session, identity: Identity, project_id: str) -> HoldPointMetrics:
    hold_points = session.execute(_scoped_hold_points(session, identity, project_id)).scalars().all()
    now = datetime.utcnow()
    released = [hp for hp in hold_points if hp.status == HoldPointStatus.RELEASED.value and hp.released_at]
    average = None
    if released:
        hours = [
            ((hp.released_at - (hp.notification_sent_at or hp.created_at)).total_seconds()) / 3600
            for hp in released
        ]
        average = round(sum(hours) / len(hours), 2)
    return HoldPointMetrics(
        total=len(hold_points),
        released=len(released),
        outstanding=len([hp for hp in hold_points if hp.status != HoldPointStatus.RELEASED.value]),
        stale=len([hp for hp in hold_points if is_stale(hp, now)]),
        averageHoursToRelease=average,
    )


def request_release(session: Session, identity: Identity, payload: HoldPointRequest) -> orm_models.HoldPointORM:
    lot, _decision = load_lot(session, identity, payload.lotId, "hold_point", "request")
    instance = lot.itp_instance
    if instance is None:
        raise NotFoundError("ITP", lot.id)
    items = list(instance.template.checklist_items)
    item = next((entry for entry in items if entry.id == payload.checklistItemId), None)
    if item is None:
        raise ValidationFailed("Checklist item does not belong to this lot's ITP", field="checklistItemId")
    if item.point_type != "hold_point":
        raise ValidationFailed("Checklist item is not a hold point", "NOT_A_HOLD_POINT", field="checklistItemId")

    completions = {completion.checklist_item_id: completion for completion in instance.completions}
    outstanding = [
        entry
        for entry in items
        if entry.sequence < item.sequence and not item_satisfied(entry, completions.get(entry.id))
    ]
    if outstanding:
        raise ValidationFailed(
            "Earlier checklist items must be completed before requesting release",
            "PREREQUISITES_NOT_MET",
            field="checklistItemId",
            details={
                "incompleteItems": [
                    {"id": entry.id, "sequence": entry.sequence, "description": entry.description}
                    for entry in outstanding
                ]
            },
        )

    hold_point = next((hp for hp in lot.hold_points if hp.checklist_item_id == item.id), None)
    target = HoldPointStatus.SCHEDULED.value if payload.scheduledDate else HoldPointStatus.REQUESTED.value
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="hold_point",
        action="request_release",
    ) as tx:
        if hold_point is None:
            hold_point = orm_models.HoldPointORM(
                project_id=lot.project_id,
                checklist_item_id=item.id,
                point_type=item.point_type,
                description=item.description,
                status=HoldPointStatus.PENDING.value,
            )
            lot.hold_points.append(hold_point)
        ensure_transition("hold_point", hold_point.status, target)
        hold_point.status = target
        hold_point.requested_by_id = identity.user_id
        hold_point.notification_sent_at = datetime.utcnow()
        hold_point.scheduled_date = payload.scheduledDate
        session.flush()
        tx.entity_id = hold_point.id
        tx.record(status=target, scheduledDate=payload.scheduledDate.isoformat() if payload.scheduledDate else None)
        tx.notify_many(
            _event(hold_point, user_id, "hold_point_release_requested", "Hold point release requested")
            for user_id in project_users_with_roles(session, lot.project_id, HOLD_POINT_RELEASERS)
            if user_id != identity.user_id
        )
    return hold_point


def release(
    session: Session,
    identity: Identity,
    hold_point_id: str,
    payload: HoldPointRelease,
) -> orm_models.HoldPointORM:
    hold_point, lot, _decision = _load_hold_point(session, identity, hold_point_id, "release")
    instance = lot.itp_instance
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="hold_point",
        action="release",
        entity_id=hold_point.id,
    ) as tx:
        ensure_transition("hold_point", hold_point.status, HoldPointStatus.RELEASED.value)
        now = datetime.utcnow()
        hold_point.status = HoldPointStatus.RELEASED.value
        hold_point.released_at = now
        hold_point.released_by_id = identity.user_id
        hold_point.released_by_name = payload.releasedByName
        hold_point.released_by_org = payload.releasedByOrg
        hold_point.release_method = payload.releaseMethod
        hold_point.release_notes = payload.releaseNotes
        tx.record(releasedByName=payload.releasedByName, releaseMethod=payload.releaseMethod)

        if instance is not None:
            completion = next(
                (row for row in instance.completions if row.checklist_item_id == hold_point.checklist_item_id),
                None,
            )
            if completion is None:
                completion = orm_models.ITPCompletionORM(
                    instance=instance,
                    checklist_item_id=hold_point.checklist_item_id,
                    status="pending",
                    verification_status="none",
                )
                session.add(completion)
            if not completion.is_completed:
                completion.status = "completed"
                completion.completed_at = now
                completion.completed_by_id = identity.user_id
            if not completion.is_verified:
                mark_verified(completion, identity.user_id, payload.releaseNotes)
            tx.record(lotStatus=recompute_lot_progress(lot, instance))

        if hold_point.requested_by_id and hold_point.requested_by_id != identity.user_id:
            tx.notify(_event(hold_point, hold_point.requested_by_id, "hold_point_released", "Hold point released"))
    logger.info("Hold point released", extra={"project_id": lot.project_id, "entity": "hold_point", "entity_id": hold_point.id})
    return hold_point


def chase(session: Session, identity: Identity, hold_point_id: str) -> orm_models.HoldPointORM:
    hold_point, lot, _decision = _load_hold_point(session, identity, hold_point_id, "chase")
    if hold_point.status not in AWAITING_RELEASE:
        raise ValidationFailed(
            "Only hold points awaiting release can be chased",
            "HOLD_POINT_NOT_REQUESTED",
            field="status",
            details={"status": hold_point.status},
        )
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="hold_point",
        action="chase",
        entity_id=hold_point.id,
    ) as tx:
        hold_point.chase_count = (hold_point.chase_count or 0) + 1
        hold_point.last_chased_at = datetime.utcnow()
        tx.record(chaseCount=hold_point.chase_count)
        tx.notify_many(
            _event(hold_point, user_id, "hold_point_chase", "Hold point release overdue")
            for user_id in project_users_with_roles(session, lot.project_id, HOLD_POINT_RELEASERS)
            if user_id != identity.user_id
        )
    return hold_point
