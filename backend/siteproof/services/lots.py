from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import ConflictError, NotFoundError, ValidationFailed
from ..pagination import PageParams, apply_sort, paginate
from ..schemas import Lot, LotAssignment, LotAssignmentCreate, LotAssignmentUpdate, LotCreate, LotUpdate, Pagination
from ..state_machines import LOT_DELETABLE_STATES, ensure_transition
from .access import (
    apply_scope,
    effective_assignments,
    load_lot,
    load_project,
    lot_filter,
    require,
)
from .identity import Identity
from .itp import create_instance_rows, unsatisfied_items
from .workflow import transition

logger = logging.getLogger(__name__)

LotStatus = orm_models.LotStatus

LOT_SORT_COLUMNS = {
    "lotNumber": orm_models.LotORM.lot_number,
    "status": orm_models.LotORM.status,
    "createdAt": orm_models.LotORM.created_at,
    "updatedAt": orm_models.LotORM.updated_at,
    "chainageStart": orm_models.LotORM.chainage_start,
}

# LotUpdate field -> LotORM column
UPDATABLE_FIELDS = {
    "lotNumber": "lot_number",
    "description": "description",
    "lotType": "lot_type",
    "activityType": "activity_type",
    "chainageStart": "chainage_start",
    "chainageEnd": "chainage_end",
    "areaZone": "area_zone",
    "structureId": "structure_id",
    "structureElement": "structure_element",
}


def map_lot(lot: orm_models.LotORM) -> Lot:
    return Lot(
        id=lot.id,
        projectId=lot.project_id,
        lotNumber=lot.lot_number,
        description=lot.description,
        lotType=lot.lot_type,
        activityType=lot.activity_type,
        chainageStart=lot.chainage_start,
        chainageEnd=lot.chainage_end,
        areaZone=lot.area_zone,
        structureId=lot.structure_id,
        status=lot.effective_status,
        progressStatus=lot.status,
        hasOpenNcr=lot.has_open_ncr,
        assignedSubcontractorId=lot.assigned_subcontractor_id,
        subcontractorIds=sorted(effective_assignments(lot)),
        createdAt=lot.created_at,
        updatedAt=lot.updated_at,
    )


def map_assignment(assignment: orm_models.LotSubcontractorAssignmentORM) -> LotAssignment:
    company = assignment.subcontractor_company
    return LotAssignment(
        id=assignment.id,
        lotId=assignment.lot_id,
        subcontractorCompanyId=assignment.subcontractor_company_id,
        companyName=company.company_name if company is not None else None,
        canCompleteITP=assignment.can_complete_itp,
        itpRequiresVerification=assignment.itp_requires_verification,
        status=assignment.status,
        assignedAt=assignment.assigned_at,
    )


# === Validation helpers =======================================================


def validate_location(lot_type: str, area_zone: Optional[str], structure_id: Optional[str]) -> None:
    if lot_type == "area" and not area_zone:
        raise ValidationFailed("Area lots require a zone", "AREA_ZONE_REQUIRED", field="areaZone")
    if lot_type == "structure" and not structure_id:
        raise ValidationFailed("Structure lots require a structure identifier", "STRUCTURE_ID_REQUIRED", field="structureId")


def _duplicate_lot_number(lot_number: str) -> ConflictError:
    return ConflictError(
        f"Lot number {lot_number} already exists in this project",
        "DUPLICATE_LOT_NUMBER",
        field="lotNumber",
    )


def lot_number_taken(session: Session, project_id: str, lot_number: str, exclude_id: Optional[str] = None) -> bool:
    statement = select(orm_models.LotORM.id).where(
        orm_models.LotORM.project_id == project_id,
        orm_models.LotORM.lot_number == lot_number,
    )
    if exclude_id:
        statement = statement.where(orm_models.LotORM.id != exclude_id)
    return session.execute(statement).first() is not None


def load_approved_subcontractor(
    session: Session, project_id: str, subcontractor_company_id: str, field: str = "subcontractorCompanyId"
) -> orm_models.SubcontractorCompanyORM:
    company = session.get(orm_models.SubcontractorCompanyORM, subcontractor_company_id)
    if company is None or company.project_id != project_id:
        raise NotFoundError("Subcontractor", subcontractor_company_id)
    if company.status != "approved":
        raise ValidationFailed(
            "Subcontractor must be approved before it can be assigned to lots",
            "SUBCONTRACTOR_NOT_APPROVED",
            field=field,
        )
    return company


def _as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _ensure_not_conformed(lot: orm_models.LotORM) -> None:
    if lot.status == LotStatus.CONFORMED.value:
        raise ValidationFailed("Conformed lots cannot be changed", "LOT_CONFORMED", field="status")


# === Queries ==================================================================


def list_lots(
    session: Session,
    identity: Identity,
    project_id: str,
    params: PageParams,
    *,
    status: Optional[str] = None,
    search: Optional[str] = None,
) -> tuple[List[orm_models.LotORM], Pagination]:
    project = load_project(session, identity, project_id)
    decision = require(identity, project, "lot", "read")

    statement = select(orm_models.LotORM).where(orm_models.LotORM.project_id == project.id)
    statement = apply_scope(statement, lot_filter(decision.scope))
    if status == orm_models.NCR_RAISED:
        statement = statement.where(orm_models.LotORM.has_open_ncr.is_(True))
    elif status:
        statement = statement.where(
            orm_models.LotORM.status == status,
            orm_models.LotORM.has_open_ncr.is_(False),
        )
    if search:
        pattern = f"%{search.strip()}%"
        statement = statement.where(
            or_(
                orm_models.LotORM.lot_number.ilike(pattern),
                orm_models.LotORM.description.ilike(pattern),
            )
        )
    statement = apply_sort(statement, params, LOT_SORT_COLUMNS, default="lotNumber")
    return paginate(session, statement, params)


def get_lot(session: Session, identity: Identity, lot_id: str) -> orm_models.LotORM:
    lot, _decision = load_lot(session, identity, lot_id)
    return lot


# === Mutations ================================================================


def create_lot(session: Session, identity: Identity, payload: LotCreate) -> orm_models.LotORM:
    project = load_project(session, identity, payload.projectId)
    require(identity, project, "lot", "create")
    validate_location(payload.lotType, payload.areaZone, payload.structureId)

    company = None
    if payload.assignedSubcontractorId:
        company = load_approved_subcontractor(
            session, project.id, payload.assignedSubcontractorId, field="assignedSubcontractorId"
        )
    if lot_number_taken(session, project.id, payload.lotNumber):
        raise _duplicate_lot_number(payload.lotNumber)

    try:
        with transition(
            session,
            actor_id=identity.user_id,
            project_id=project.id,
            entity="lot",
            action="create",
        ) as tx:
            lot = orm_models.LotORM(
                project_id=project.id,
                lot_number=payload.lotNumber,
                description=payload.description,
                lot_type=payload.lotType,
                activity_type=payload.activityType,
                chainage_start=payload.chainageStart,
                chainage_end=payload.chainageEnd,
                area_zone=payload.areaZone,
                structure_id=payload.structureId,
                structure_element=payload.structureElement,
                status=LotStatus.NOT_STARTED.value,
                has_open_ncr=False,
                assigned_subcontractor_id=company.id if company else None,
                created_by_id=identity.user_id,
            )
            session.add(lot)
            session.flush()
            if company is not None:
                lot.assignments.append(
                    orm_models.LotSubcontractorAssignmentORM(
                        project_id=project.id,
                        subcontractor_company_id=company.id,
                        can_complete_itp=payload.canCompleteITP,
                        itp_requires_verification=payload.itpRequiresVerification,
                        assigned_by_id=identity.user_id,
                    )
                )
            if payload.itpTemplateId:
                create_instance_rows(session, lot, payload.itpTemplateId)
            tx.entity_id = lot.id
            tx.record(lotNumber=lot.lot_number, lotType=lot.lot_type, subcontractorId=lot.assigned_subcontractor_id)
    except IntegrityError as exc:
        # lost a race with a concurrent create of the same number
        raise _duplicate_lot_number(payload.lotNumber) from exc
    logger.info("Lot %s created", lot.lot_number, extra={"project_id": lot.project_id, "entity": "lot", "entity_id": lot.id})
    return lot


def update_lot(session: Session, identity: Identity, lot_id: str, payload: LotUpdate) -> orm_models.LotORM:
    lot, _decision = load_lot(session, identity, lot_id, "lot", "update")
    _ensure_not_conformed(lot)

    if payload.expectedUpdatedAt is not None and _as_utc_naive(payload.expectedUpdatedAt) != lot.updated_at:
        raise ConflictError(
            "Lot was modified by someone else; reload and try again",
            "LOT_MODIFIED",
            field="expectedUpdatedAt",
            details={"currentUpdatedAt": lot.updated_at.isoformat()},
        )

    fields = payload.model_fields_set - {"expectedUpdatedAt"}
    values = {name: getattr(payload, name) for name in fields}

    lot_type = values.get("lotType") or lot.lot_type
    area_zone = values["areaZone"] if "areaZone" in values else lot.area_zone
    structure_id = values["structureId"] if "structureId" in values else lot.structure_id
    validate_location(lot_type, area_zone, structure_id)

    new_number = values.get("lotNumber")
    if new_number and new_number != lot.lot_number and lot_number_taken(session, lot.project_id, new_number, lot.id):
        raise _duplicate_lot_number(new_number)

    company = None
    if "assignedSubcontractorId" in values:
        project = session.get(orm_models.ProjectORM, lot.project_id)
        require(identity, project, "lot_assignment", "assign")
        if values["assignedSubcontractorId"]:
            company = load_approved_subcontractor(
                session, lot.project_id, values["assignedSubcontractorId"], field="assignedSubcontractorId"
            )

    try:
        with transition(
            session,
            actor_id=identity.user_id,
            project_id=lot.project_id,
            entity="lot",
            action="update",
            entity_id=lot.id,
        ) as tx:
            for name, column in UPDATABLE_FIELDS.items():
                if name in values and (name != "lotNumber" or values[name]):
                    setattr(lot, column, values[name])
            if "assignedSubcontractorId" in values:
                lot.assigned_subcontractor_id = company.id if company else None
                if company is not None:
                    _activate_assignment(lot, company, identity.user_id)
            tx.record(fields=sorted(fields))
    except IntegrityError as exc:
        raise _duplicate_lot_number(new_number or lot.lot_number) from exc
    return lot


def unreleased_hold_points(lot: orm_models.LotORM) -> List[str]:
    """Hold point records not yet released plus hold_point checklist items never verified."""
    released = orm_models.HoldPointStatus.RELEASED.value
    pending = [hp.id for hp in lot.hold_points if hp.status != released]
    instance = lot.itp_instance
    if instance is not None:
        verified = {completion.checklist_item_id for completion in instance.completions if completion.is_verified}
        covered = {hp.checklist_item_id for hp in lot.hold_points}
        pending.extend(
            item.id
            for item in instance.template.checklist_items
            if item.point_type == "hold_point" and item.id not in verified and item.id not in covered
        )
    return pending


def delete_lot(session: Session, identity: Identity, lot_id: str) -> None:
    lot, _decision = load_lot(session, identity, lot_id, "lot", "delete")
    if lot.has_open_ncr or lot.status not in LOT_DELETABLE_STATES:
        raise ValidationFailed(
            "Only lots that are not yet completed and have no open NCR can be deleted",
            "LOT_NOT_DELETABLE",
            field="status",
            details={"status": lot.effective_status},
        )

    linked_ncrs = session.execute(
        select(func.count()).select_from(orm_models.NCRLotORM).where(orm_models.NCRLotORM.lot_id == lot.id)
    ).scalar_one()
    if linked_ncrs:
        raise ValidationFailed("Lot is referenced by NCRs", "LOT_HAS_NCRS", field="lotId", details={"count": linked_ncrs})

    unreleased = unreleased_hold_points(lot)
    if unreleased:
        raise ValidationFailed(
            "Lot has hold points awaiting release",
            "UNRELEASED_HOLD_POINTS",
            field="lotId",
            details={"unreleasedHoldPoints": len(unreleased)},
        )

    allocations = session.execute(
        select(func.count()).select_from(orm_models.DocketLabourORM).where(orm_models.DocketLabourORM.lot_id == lot.id)
    ).scalar_one() + session.execute(
        select(func.count()).select_from(orm_models.DocketPlantORM).where(orm_models.DocketPlantORM.lot_id == lot.id)
    ).scalar_one()
    if allocations:
        raise ValidationFailed(
            "Lot has docket hours allocated to it",
            "LOT_HAS_DOCKET_ALLOCATIONS",
            field="lotId",
            details={"count": allocations},
        )

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="lot",
        action="delete",
        entity_id=lot.id,
    ) as tx:
        tx.record(lotNumber=lot.lot_number, status=lot.status)
        session.delete(lot)


def conform_lot(session: Session, identity: Identity, lot_id: str) -> orm_models.LotORM:
    lot, _decision = load_lot(session, identity, lot_id, "lot", "conform")
    if lot.has_open_ncr:
        raise ValidationFailed("Lot has open NCRs", "LOT_HAS_OPEN_NCR", field="hasOpenNcr")
    if lot.status != LotStatus.COMPLETED.value:
        raise ValidationFailed(
            "Only completed lots can be conformed",
            "LOT_NOT_COMPLETED",
            field="status",
            details={"status": lot.status},
        )
    instance = lot.itp_instance
    if instance is not None:
        outstanding = unsatisfied_items(instance)
        if outstanding:
            raise ValidationFailed(
                "ITP items are not yet satisfied",
                "ITP_INCOMPLETE",
                field="itp",
                details={"checklistItemIds": [item.id for item in outstanding]},
            )
    unreleased = [hp.id for hp in lot.hold_points if hp.status != orm_models.HoldPointStatus.RELEASED.value]
    if unreleased:
        raise ValidationFailed(
            "All hold points must be released before conformance",
            "UNRELEASED_HOLD_POINTS",
            field="holdPoints",
            details={"holdPointIds": unreleased},
        )

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="lot",
        action="conform",
        entity_id=lot.id,
    ):
        ensure_transition("lot", lot.status, LotStatus.CONFORMED.value)
        lot.status = LotStatus.CONFORMED.value
        lot.conformed_at = datetime.utcnow()
        lot.conformed_by_id = identity.user_id
    return lot


# === NCR overlay ==============================================================


def mark_ncr_raised(lot: orm_models.LotORM) -> None:
    lot.has_open_ncr = True


def refresh_open_ncr_flag(session: Session, lot: orm_models.LotORM) -> bool:
    """Recompute ``has_open_ncr`` from the lot's linked NCRs. Call after flushing."""
    open_count = session.execute(
        select(func.count())
        .select_from(orm_models.NCRLotORM)
        .join(orm_models.NCRORM, orm_models.NCRORM.id == orm_models.NCRLotORM.ncr_id)
        .where(
            orm_models.NCRLotORM.lot_id == lot.id,
            orm_models.NCRORM.status.notin_(orm_models.CLOSED_NCR_STATUSES),
        )
    ).scalar_one()
    lot.has_open_ncr = open_count > 0
    return lot.has_open_ncr


# === Assignments ==============================================================


def _activate_assignment(
    lot: orm_models.LotORM,
    company: orm_models.SubcontractorCompanyORM,
    actor_id: str,
    *,
    can_complete_itp: Optional[bool] = None,
    itp_requires_verification: Optional[bool] = None,
) -> orm_models.LotSubcontractorAssignmentORM:
    existing = next(
        (row for row in lot.assignments if row.subcontractor_company_id == company.id),
        None,
    )
    if existing is None:
        existing = orm_models.LotSubcontractorAssignmentORM(
            project_id=lot.project_id,
            subcontractor_company_id=company.id,
            can_complete_itp=bool(can_complete_itp),
            itp_requires_verification=True if itp_requires_verification is None else itp_requires_verification,
            assigned_by_id=actor_id,
        )
        lot.assignments.append(existing)
        return existing
    existing.status = "active"
    existing.assigned_by_id = actor_id
    existing.assigned_at = datetime.utcnow()
    if can_complete_itp is not None:
        existing.can_complete_itp = can_complete_itp
    if itp_requires_verification is not None:
        existing.itp_requires_verification = itp_requires_verification
    return existing


def list_assignments(session: Session, identity: Identity, lot_id: str) -> List[orm_models.LotSubcontractorAssignmentORM]:
    lot, _decision = load_lot(session, identity, lot_id, "lot_assignment", "read")
    return [assignment for assignment in lot.assignments if assignment.status == "active"]


def assign_subcontractor(
    session: Session,
    identity: Identity,
    lot_id: str,
    payload: LotAssignmentCreate,
) -> orm_models.LotSubcontractorAssignmentORM:
    lot, _decision = load_lot(session, identity, lot_id, "lot_assignment", "assign")
    company = load_approved_subcontractor(session, lot.project_id, payload.subcontractorCompanyId)
    existing = next(
        (row for row in lot.assignments if row.subcontractor_company_id == company.id),
        None,
    )
    if existing is not None and existing.status == "active":
        raise ConflictError(
            "Subcontractor is already assigned to this lot",
            "ASSIGNMENT_EXISTS",
            field="subcontractorCompanyId",
        )

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="lot_assignment",
        action="reactivate" if existing is not None else "create",
    ) as tx:
        assignment = _activate_assignment(
            lot,
            company,
            identity.user_id,
            can_complete_itp=payload.canCompleteITP,
            itp_requires_verification=payload.itpRequiresVerification,
        )
        session.flush()
        tx.entity_id = assignment.id
        tx.record(lotId=lot.id, subcontractorCompanyId=company.id, canCompleteITP=assignment.can_complete_itp)
    return assignment


def _load_assignment(lot: orm_models.LotORM, assignment_id: str) -> orm_models.LotSubcontractorAssignmentORM:
    for assignment in lot.assignments:
        if assignment.id == assignment_id and assignment.status == "active":
            return assignment
    raise NotFoundError("Assignment", assignment_id)


def update_assignment(
    session: Session,
    identity: Identity,
    lot_id: str,
    assignment_id: str,
    payload: LotAssignmentUpdate,
) -> orm_models.LotSubcontractorAssignmentORM:
    lot, _decision = load_lot(session, identity, lot_id, "lot_assignment", "assign")
    assignment = _load_assignment(lot, assignment_id)
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="lot_assignment",
        action="update",
        entity_id=assignment.id,
    ) as tx:
        if payload.canCompleteITP is not None:
            assignment.can_complete_itp = payload.canCompleteITP
        if payload.itpRequiresVerification is not None:
            assignment.itp_requires_verification = payload.itpRequiresVerification
        tx.record(
            canCompleteITP=assignment.can_complete_itp,
            itpRequiresVerification=assignment.itp_requires_verification,
        )
    return assignment


def remove_assignment(session: Session, identity: Identity, lot_id: str, assignment_id: str) -> None:
    lot, _decision = load_lot(session, identity, lot_id, "lot_assignment", "assign")
    assignment = _load_assignment(lot, assignment_id)
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="lot_assignment",
        action="remove",
        entity_id=assignment.id,
    ) as tx:
        assignment.status = "removed"
        if lot.assigned_subcontractor_id == assignment.subcontractor_company_id:
            lot.assigned_subcontractor_id = None
        tx.record(subcontractorCompanyId=assignment.subcontractor_company_id)
