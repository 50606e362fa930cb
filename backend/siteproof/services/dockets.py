from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import ForbiddenError, NotFoundError, ValidationFailed
from ..pagination import PageParams, apply_sort, paginate
from ..permissions import DOCKET_APPROVERS, is_subcontractor_role
from ..schemas import Docket, DocketApprove, DocketCreate, DocketReject, Pagination
from ..state_machines import ensure_transition
from .access import AccessDecision, apply_scope, can_see_docket, can_see_lot, docket_filter, load_project, require
from .identity import Identity
from .notifications import NotificationEvent, project_users_with_roles, subcontractor_user_ids
from .workflow import Transition, transition

logger = logging.getLogger(__name__)

DocketStatus = orm_models.DocketStatus

DOCKET_SORT_COLUMNS = {
    "date": orm_models.DocketORM.date,
    "createdAt": orm_models.DocketORM.created_at,
    "status": orm_models.DocketORM.status,
    "docketNumber": orm_models.DocketORM.docket_number,
}


def docket_number_for(docket_id: str) -> str:
    return f"DKT-{docket_id.split('-', 1)[-1][:6].upper()}"


def map_docket(docket: orm_models.DocketORM) -> Docket:
    return Docket(
        id=docket.id,
        projectId=docket.project_id,
        subcontractorCompanyId=docket.subcontractor_company_id,
        docketNumber=docket.docket_number,
        date=docket.date,
        status=docket.status,
        notes=docket.notes,
        submittedAt=docket.submitted_at,
        approvedAt=docket.approved_at,
        totalLabourSubmitted=docket.total_labour_submitted,
        totalLabourApproved=docket.total_labour_approved,
        totalPlantSubmitted=docket.total_plant_submitted,
        totalPlantApproved=docket.total_plant_approved,
        adjustmentReason=docket.adjustment_reason,
        rejectionReason=docket.rejection_reason,
        foremanNotes=docket.foreman_notes,
    )


def _event(docket: orm_models.DocketORM, user_id: str, event_type: str, title: str, message: str) -> NotificationEvent:
    return NotificationEvent(
        user_id=user_id,
        project_id=docket.project_id,
        event_type=event_type,
        title=title,
        message=message,
        link_url=f"/projects/{docket.project_id}/dockets/{docket.id}",
        entity_id=docket.id,
    )


def _load_docket(
    session: Session,
    identity: Identity,
    docket_id: str,
    action: str,
) -> tuple[orm_models.DocketORM, AccessDecision]:
    docket = session.get(orm_models.DocketORM, docket_id)
    if docket is None:
        raise NotFoundError("Docket", docket_id)
    project = load_project(session, identity, docket.project_id, resource="Docket", resource_id=docket_id)
    decision = require(identity, project, "docket", action)
    if not can_see_docket(decision.scope, docket):
        raise NotFoundError("Docket", docket_id)
    return docket, decision


def _notify_company(session: Session, tx: Transition, docket: orm_models.DocketORM, event_type: str, title: str, message: str) -> None:
    recipients = set()
    if docket.subcontractor_company_id:
        recipients.update(subcontractor_user_ids(session, docket.subcontractor_company_id))
    if docket.created_by_id:
        recipients.add(docket.created_by_id)
    recipients.discard(tx.actor_id)
    tx.notify_many(_event(docket, user_id, event_type, title, message) for user_id in sorted(recipients))


def list_dockets(
    session: Session,
    identity: Identity,
    project_id: str,
    params: PageParams,
    *,
    status: Optional[str] = None,
    subcontractor_company_id: Optional[str] = None,
) -> tuple[List[orm_models.DocketORM], Pagination]:
    project = load_project(session, identity, project_id)
    decision = require(identity, project, "docket", "read")
    statement = select(orm_models.DocketORM).where(orm_models.DocketORM.project_id == project.id)
    statement = apply_scope(statement, docket_filter(decision.scope))
    if status:
        statement = statement.where(orm_models.DocketORM.status == status)
    if subcontractor_company_id:
        statement = statement.where(orm_models.DocketORM.subcontractor_company_id == subcontractor_company_id)
    statement = apply_sort(statement, params, DOCKET_SORT_COLUMNS, default="date")
    return paginate(session, statement, params)


def get_docket(session: Session, identity: Identity, docket_id: str) -> orm_models.DocketORM:
    docket, _decision = _load_docket(session, identity, docket_id, "read")
    return docket


def create_docket(session: Session, identity: Identity, payload: DocketCreate) -> orm_models.DocketORM:
    project = load_project(session, identity, payload.projectId)
    decision = require(identity, project, "docket", "create")

    if is_subcontractor_role(decision.role):
        company_id = decision.scope.subcontractor_company_id if decision.scope else None
        if company_id is None:
            raise ForbiddenError("You are not linked to a subcontractor company on this project")
    else:
        company_id = payload.subcontractorCompanyId
        if company_id:
            company = session.get(orm_models.SubcontractorCompanyORM, company_id)
            if company is None or company.project_id != project.id:
                raise NotFoundError("Subcontractor", company_id)

    lot_ids = {entry.lotId for entry in [*payload.labour, *payload.plant] if entry.lotId}
    for lot_id in sorted(lot_ids):
        lot = session.get(orm_models.LotORM, lot_id)
        if lot is None or lot.project_id != project.id or not can_see_lot(decision.scope, lot):
            raise NotFoundError("Lot", lot_id)

    docket_id = orm_models.generate_id("dkt")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=project.id,
        entity="docket",
        action="create",
        entity_id=docket_id,
    ) as tx:
        docket = orm_models.DocketORM(
            id=docket_id,
            project_id=project.id,
            subcontractor_company_id=company_id,
            docket_number=docket_number_for(docket_id),
            date=payload.date,
            status=DocketStatus.DRAFT.value,
            notes=payload.notes,
            created_by_id=identity.user_id,
            total_labour_submitted=sum(entry.hours for entry in payload.labour),
            total_plant_submitted=sum(entry.hours for entry in payload.plant),
        )
        docket.labour_entries = [
            orm_models.DocketLabourORM(
                worker_name=entry.workerName,
                role=entry.role,
                submitted_hours=entry.hours,
                hourly_rate=entry.hourlyRate,
                lot_id=entry.lotId,
            )
            for entry in payload.labour
        ]
        docket.plant_entries = [
            orm_models.DocketPlantORM(
                description=entry.description,
                submitted_hours=entry.hours,
                hourly_rate=entry.hourlyRate,
                lot_id=entry.lotId,
            )
            for entry in payload.plant
        ]
        session.add(docket)
        tx.record(docketNumber=docket.docket_number, subcontractorCompanyId=company_id)
    return docket


def submit_docket(session: Session, identity: Identity, docket_id: str) -> orm_models.DocketORM:
    docket, _decision = _load_docket(session, identity, docket_id, "submit")
    ensure_transition("docket", docket.status, DocketStatus.PENDING_APPROVAL.value)
    if not docket.labour_entries and not docket.plant_entries:
        raise ValidationFailed("Add at least one labour or plant entry before submitting", "ENTRY_REQUIRED", field="labour")

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=docket.project_id,
        entity="docket",
        action="submit",
        entity_id=docket.id,
    ) as tx:
        docket.status = DocketStatus.PENDING_APPROVAL.value
        docket.submitted_by_id = identity.user_id
        docket.submitted_at = datetime.utcnow()
        # one event per approver even when a user holds several approver roles
        approvers = project_users_with_roles(session, docket.project_id, DOCKET_APPROVERS)
        tx.notify_many(
            _event(
                docket,
                user_id,
                "docket_pending",
                f"Docket {docket.docket_number} awaiting approval",
                f"{docket.total_labour_submitted:g} labour hours, {docket.total_plant_submitted:g} plant hours",
            )
            for user_id in approvers
            if user_id != identity.user_id
        )
        tx.record(approvers=len(approvers))
    return docket


def approve_docket(session: Session, identity: Identity, docket_id: str, payload: DocketApprove) -> orm_models.DocketORM:
    docket, _decision = _load_docket(session, identity, docket_id, "approve")
    ensure_transition("docket", docket.status, DocketStatus.APPROVED.value)
    labour_adjusted = payload.adjustedLabourHours is not None
    plant_adjusted = payload.adjustedPlantHours is not None
    if (labour_adjusted or plant_adjusted) and not payload.adjustmentReason:
        raise ValidationFailed(
            "A reason is required when approved hours differ from submitted hours",
            "ADJUSTMENT_REASON_REQUIRED",
            field="adjustmentReason",
        )

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=docket.project_id,
        entity="docket",
        action="approve",
        entity_id=docket.id,
    ) as tx:
        docket.status = DocketStatus.APPROVED.value
        docket.approved_by_id = identity.user_id
        docket.approved_at = datetime.utcnow()
        docket.foreman_notes = payload.foremanNotes
        docket.adjustment_reason = payload.adjustmentReason
        if labour_adjusted:
            docket.total_labour_approved = payload.adjustedLabourHours
        else:
            docket.total_labour_approved = docket.total_labour_submitted
            for entry in docket.labour_entries:
                entry.approved_hours = entry.submitted_hours
        if plant_adjusted:
            docket.total_plant_approved = payload.adjustedPlantHours
        else:
            docket.total_plant_approved = docket.total_plant_submitted
            for entry in docket.plant_entries:
                entry.approved_hours = entry.submitted_hours
        tx.record(
            labourApproved=docket.total_labour_approved,
            plantApproved=docket.total_plant_approved,
            adjustmentReason=payload.adjustmentReason,
        )
        _notify_company(
            session,
            tx,
            docket,
            "docket_approved",
            f"Docket {docket.docket_number} approved",
            payload.adjustmentReason or "Approved as submitted",
        )
    logger.info("Docket %s approved", docket.docket_number, extra={"project_id": docket.project_id, "entity": "docket", "entity_id": docket.id})
    return docket


def reject_docket(session: Session, identity: Identity, docket_id: str, payload: DocketReject) -> orm_models.DocketORM:
    docket, _decision = _load_docket(session, identity, docket_id, "reject")
    ensure_transition("docket", docket.status, DocketStatus.REJECTED.value)
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=docket.project_id,
        entity="docket",
        action="reject",
        entity_id=docket.id,
    ) as tx:
        docket.status = DocketStatus.REJECTED.value
        docket.rejection_reason = payload.reason
        tx.record(reason=payload.reason)
        _notify_company(
            session,
            tx,
            docket,
            "docket_rejected",
            f"Docket {docket.docket_number} rejected",
            payload.reason,
        )
    return docket


def delete_docket(session: Session, identity: Identity, docket_id: str) -> None:
    docket, _decision = _load_docket(session, identity, docket_id, "delete")
    if docket.status != DocketStatus.DRAFT.value:
        raise ValidationFailed(
            "Only draft dockets can be deleted",
            "DOCKET_NOT_DRAFT",
            field="status",
            details={"status": docket.status},
        )
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=docket.project_id,
        entity="docket",
        action="delete",
        entity_id=docket.id,
    ) as tx:
        tx.record(docketNumber=docket.docket_number)
        session.delete(docket)
