"""NCR lifecycle.

Numbers are ``NCR-0001`` style and allocated as ``max(sequence) + 1`` per project.
Two concurrent creators can read the same maximum; the unique constraints on
(project_id, sequence) and (project_id, ncr_number) reject the loser, whose
savepoint is rolled back and retried with a fresh maximum.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import orm_models
from ..config import settings
from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from ..pagination import PageParams, apply_sort, paginate
from ..permissions import (
    ADMIN,
    NCR_QM_ROLES,
    OWNER,
    PROJECT_MANAGER,
    QUALITY_MANAGER,
    SITE_MANAGER,
    is_subcontractor_role,
)
from ..schemas import (
    NCR,
    NCRClose,
    NCRCreate,
    NCRQMReview,
    NCRRectify,
    NCRRejectRectification,
    NCRReopen,
    NCRRespond,
    NCRUpdate,
    Pagination,
)
from ..state_machines import ensure_transition
from .access import AccessDecision, apply_scope, can_see_lot, can_see_ncr, evaluate, load_project, ncr_filter, require
from .identity import Identity
from .lots import mark_ncr_raised, refresh_open_ncr_flag
from .notifications import NotificationEvent, project_users_with_roles
from .workflow import Transition, transition

logger = logging.getLogger(__name__)

NCRStatus = orm_models.NCRStatus

# notified when a subcontractor raises an NCR
NCR_RAISED_RECIPIENT_ROLES = (OWNER, ADMIN, PROJECT_MANAGER, QUALITY_MANAGER, SITE_MANAGER)

NCR_SORT_COLUMNS = {
    "ncrNumber": orm_models.NCRORM.sequence,
    "raisedAt": orm_models.NCRORM.raised_at,
    "dueDate": orm_models.NCRORM.due_date,
    "status": orm_models.NCRORM.status,
    "severity": orm_models.NCRORM.severity,
}


def format_ncr_number(sequence: int) -> str:
    return f"NCR-{sequence:04d}"


def map_ncr(ncr: orm_models.NCRORM) -> NCR:
    return NCR(
        id=ncr.id,
        projectId=ncr.project_id,
        ncrNumber=ncr.ncr_number,
        description=ncr.description,
        category=ncr.category,
        severity=ncr.severity,
        status=ncr.status,
        raisedById=ncr.raised_by_id,
        responsibleUserId=ncr.responsible_user_id,
        dueDate=ncr.due_date,
        qmApprovalRequired=ncr.qm_approval_required,
        qmApprovedById=ncr.qm_approved_by_id,
        qmApprovedAt=ncr.qm_approved_at,
        qmComments=ncr.qm_comments,
        clientNotificationRequired=ncr.client_notification_required,
        clientNotifiedAt=ncr.client_notified_at,
        revisionCount=ncr.revision_count,
        lotIds=ncr.lot_ids,
        raisedAt=ncr.raised_at,
        closedAt=ncr.closed_at,
    )


def _link(ncr: orm_models.NCRORM) -> str:
    return f"/projects/{ncr.project_id}/ncrs/{ncr.id}"


def _event(ncr: orm_models.NCRORM, user_id: str, event_type: str, title: str, message: str) -> NotificationEvent:
    return NotificationEvent(
        user_id=user_id,
        project_id=ncr.project_id,
        event_type=event_type,
        title=title,
        message=message,
        link_url=_link(ncr),
        entity_id=ncr.id,
    )


def _next_sequence(session: Session, project_id: str) -> int:
    current = session.execute(
        select(func.max(orm_models.NCRORM.sequence)).where(orm_models.NCRORM.project_id == project_id)
    ).scalar()
    return (current or 0) + 1


def _ensure_project_member(session: Session, project: orm_models.ProjectORM, user_id: str) -> None:
    is_member = session.execute(
        select(
            exists().where(
                orm_models.ProjectUserORM.project_id == project.id,
                orm_models.ProjectUserORM.user_id == user_id,
                orm_models.ProjectUserORM.status == "active",
            )
        )
    ).scalar()
    if not is_member:
        raise ValidationFailed("Responsible user must be a member of the project", field="responsibleUserId")


def _load_ncr(
    session: Session,
    identity: Identity,
    ncr_id: str,
    action: str,
    *,
    allow_responsible: bool = False,
) -> tuple[orm_models.NCRORM, AccessDecision]:
    ncr = session.get(orm_models.NCRORM, ncr_id)
    if ncr is None:
        raise NotFoundError("NCR", ncr_id)
    project = load_project(session, identity, ncr.project_id, resource="NCR", resource_id=ncr_id)
    decision = evaluate(identity, project, "ncr", action)
    if not decision.allow and allow_responsible and decision.role and ncr.responsible_user_id == identity.user_id:
        decision = evaluate(identity, project, "ncr", "read")
    if not decision.allow:
        decision = require(identity, project, "ncr", action)
    lots = [link.lot for link in ncr.lot_links]
    if not can_see_ncr(decision.scope, ncr, lots):
        raise NotFoundError("NCR", ncr_id)
    return ncr, decision


def _ensure_responsible_or_head_contractor(ncr: orm_models.NCRORM, identity: Identity, decision: AccessDecision) -> None:
    if is_subcontractor_role(decision.role) and ncr.responsible_user_id != identity.user_id:
        raise ForbiddenError("Only the responsible user or head contractor staff can do this")


def _refresh_lots(session: Session, ncr: orm_models.NCRORM) -> None:
    session.flush()
    for link in ncr.lot_links:
        refresh_open_ncr_flag(session, link.lot)


# === Queries ==================================================================


def list_ncrs(
    session: Session,
    identity: Identity,
    project_id: str,
    params: PageParams,
    *,
    status: Optional[str] = None,
    severity: Optional[str] = None,
    lot_id: Optional[str] = None,
) -> tuple[List[orm_models.NCRORM], Pagination]:
    project = load_project(session, identity, project_id)
    decision = require(identity, project, "ncr", "read")
    statement = select(orm_models.NCRORM).where(orm_models.NCRORM.project_id == project.id)
    statement = apply_scope(statement, ncr_filter(decision.scope))
    if status:
        statement = statement.where(orm_models.NCRORM.status == status)
    if severity:
        statement = statement.where(orm_models.NCRORM.severity == severity)
    if lot_id:
        statement = statement.where(
            exists().where(
                orm_models.NCRLotORM.ncr_id == orm_models.NCRORM.id,
                orm_models.NCRLotORM.lot_id == lot_id,
            )
        )
    statement = apply_sort(statement, params, NCR_SORT_COLUMNS, default="raisedAt")
    return paginate(session, statement, params)


def get_ncr(session: Session, identity: Identity, ncr_id: str) -> orm_models.NCRORM:
    ncr, _decision = _load_ncr(session, identity, ncr_id, "read")
    return ncr


# === Creation =================================================================


def create_ncr(session: Session, identity: Identity, payload: NCRCreate) -> orm_models.NCRORM:
    project = load_project(session, identity, payload.projectId)
    decision = require(identity, project, "ncr", "create")

    lots: List[orm_models.LotORM] = []
    for lot_id in dict.fromkeys(payload.lotIds):
        lot = session.get(orm_models.LotORM, lot_id)
        if lot is None or lot.project_id != project.id or not can_see_lot(decision.scope, lot):
            raise NotFoundError("Lot", lot_id)
        lots.append(lot)

    if payload.responsibleUserId:
        _ensure_project_member(session, project, payload.responsibleUserId)

    major = payload.severity == "major"
    last_error: Optional[IntegrityError] = None
    for attempt in range(1, max(1, settings.ncr_number_max_retries) + 1):
        sequence = _next_sequence(session, project.id)
        try:
            with transition(
                session,
                actor_id=identity.user_id,
                project_id=project.id,
                entity="ncr",
                action="create",
            ) as tx:
                ncr = orm_models.NCRORM(
                    project_id=project.id,
                    ncr_number=format_ncr_number(sequence),
                    sequence=sequence,
                    description=payload.description,
                    specification_reference=payload.specificationReference,
                    category=payload.category,
                    severity=payload.severity,
                    status=NCRStatus.OPEN.value,
                    raised_by_id=identity.user_id,
                    responsible_user_id=payload.responsibleUserId,
                    due_date=payload.dueDate,
                    qm_approval_required=major,
                    client_notification_required=major,
                )
                ncr.lot_links = [orm_models.NCRLotORM(lot=lot) for lot in lots]
                session.add(ncr)
                session.flush()
                for lot in lots:
                    mark_ncr_raised(lot)
                tx.entity_id = ncr.id
                tx.record(ncrNumber=ncr.ncr_number, severity=ncr.severity, lotIds=[lot.id for lot in lots])
                _queue_creation_events(session, tx, ncr, identity, decision)
            return ncr
        except IntegrityError as exc:
            last_error = exc
            logger.warning(
                "NCR number %s already taken (attempt %d)",
                format_ncr_number(sequence),
                attempt,
                extra={"project_id": project.id, "entity": "ncr"},
            )
    raise ConflictError(
        "Could not allocate a unique NCR number; try again",
        "DUPLICATE_NCR_NUMBER",
        field="ncrNumber",
    ) from last_error


def _queue_creation_events(
    session: Session,
    tx: Transition,
    ncr: orm_models.NCRORM,
    identity: Identity,
    decision: AccessDecision,
) -> None:
    responsible = ncr.responsible_user_id
    if responsible and responsible != identity.user_id:
        tx.notify(
            _event(
                ncr,
                responsible,
                "ncr_assigned",
                f"{ncr.ncr_number} assigned to you",
                ncr.description,
            )
        )
    if is_subcontractor_role(decision.role):
        recipients = project_users_with_roles(session, ncr.project_id, NCR_RAISED_RECIPIENT_ROLES)
        tx.notify_many(
            _event(ncr, user_id, "ncr_raised", f"{ncr.ncr_number} raised by subcontractor", ncr.description)
            for user_id in recipients
            if user_id not in {identity.user_id, responsible}
        )


# === Edits ====================================================================


def update_ncr(session: Session, identity: Identity, ncr_id: str, payload: NCRUpdate) -> orm_models.NCRORM:
    ncr, _decision = _load_ncr(session, identity, ncr_id, "update", allow_responsible=True)
    fields = payload.model_fields_set
    redirect_to = payload.responsibleUserId if "responsibleUserId" in fields else None

    if redirect_to is not None and redirect_to != ncr.responsible_user_id:
        if ncr.is_closed:
            raise ValidationFailed("Closed NCRs cannot be redirected", "NCR_CLOSED", field="responsibleUserId")
        project = session.get(orm_models.ProjectORM, ncr.project_id)
        _ensure_project_member(session, project, redirect_to)
    else:
        redirect_to = None

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="redirect" if redirect_to else "update",
        entity_id=ncr.id,
    ) as tx:
        if redirect_to:
            tx.record(previousResponsibleUserId=ncr.responsible_user_id, responsibleUserId=redirect_to)
            ncr.responsible_user_id = redirect_to
            tx.notify(
                _event(
                    ncr,
                    redirect_to,
                    "ncr_redirect",
                    f"{ncr.ncr_number} redirected to you",
                    ncr.description,
                )
            )
        if "comments" in fields:
            ncr.qm_comments = payload.comments
            tx.record(comments=payload.comments)
        if "dueDate" in fields:
            ncr.due_date = payload.dueDate
            tx.record(dueDate=payload.dueDate.isoformat() if payload.dueDate else None)
    return ncr


# === Workflow actions =========================================================


def respond(session: Session, identity: Identity, ncr_id: str, payload: NCRRespond) -> orm_models.NCRORM:
    ncr, decision = _load_ncr(session, identity, ncr_id, "respond")
    _ensure_responsible_or_head_contractor(ncr, identity, decision)
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="respond",
        entity_id=ncr.id,
    ) as tx:
        ensure_transition("ncr", ncr.status, NCRStatus.INVESTIGATING.value)
        ncr.status = NCRStatus.INVESTIGATING.value
        ncr.root_cause_category = payload.rootCauseCategory
        ncr.root_cause_description = payload.rootCauseDescription
        ncr.proposed_corrective_action = payload.proposedCorrectiveAction
        ncr.responded_at = datetime.utcnow()
        tx.record(rootCauseCategory=payload.rootCauseCategory)
        for user_id in project_users_with_roles(session, ncr.project_id, NCR_QM_ROLES):
            if user_id != identity.user_id:
                tx.notify(
                    _event(
                        ncr,
                        user_id,
                        "ncr_response_submitted",
                        f"{ncr.ncr_number} response ready for review",
                        payload.proposedCorrectiveAction,
                    )
                )
    return ncr


def qm_review(session: Session, identity: Identity, ncr_id: str, payload: NCRQMReview) -> orm_models.NCRORM:
    ncr, _decision = _load_ncr(session, identity, ncr_id, "qm_review")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="qm_review",
        entity_id=ncr.id,
    ) as tx:
        if ncr.status != NCRStatus.INVESTIGATING.value:
            raise ValidationFailed("Only NCRs under investigation can be reviewed", "INVALID_TRANSITION", field="status")
        if payload.comments is not None:
            ncr.qm_comments = payload.comments
        if payload.action == "accept":
            ensure_transition("ncr", ncr.status, NCRStatus.RECTIFICATION.value)
            ncr.status = NCRStatus.RECTIFICATION.value
        else:
            ensure_transition("ncr", ncr.status, NCRStatus.OPEN.value)
            ncr.status = NCRStatus.OPEN.value
            ncr.root_cause_category = None
            ncr.root_cause_description = None
            ncr.proposed_corrective_action = None
            ncr.responded_at = None
            ncr.revision_count = (ncr.revision_count or 0) + 1
            if ncr.responsible_user_id:
                tx.notify(
                    _event(
                        ncr,
                        ncr.responsible_user_id,
                        "ncr_revision_requested",
                        f"{ncr.ncr_number} response needs revision",
                        payload.comments or "Please revise your response.",
                    )
                )
        tx.record(decision=payload.action, revisionCount=ncr.revision_count)
    return ncr


def rectify(session: Session, identity: Identity, ncr_id: str, payload: NCRRectify) -> orm_models.NCRORM:
    ncr, decision = _load_ncr(session, identity, ncr_id, "rectify")
    _ensure_responsible_or_head_contractor(ncr, identity, decision)
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="rectify",
        entity_id=ncr.id,
    ) as tx:
        if ncr.status not in (NCRStatus.INVESTIGATING.value, NCRStatus.RECTIFICATION.value):
            raise ValidationFailed(
                f"Cannot submit rectification for an NCR in {ncr.status}",
                "INVALID_TRANSITION",
                field="status",
            )
        ensure_transition("ncr", ncr.status, NCRStatus.VERIFICATION.value)
        ncr.status = NCRStatus.VERIFICATION.value
        ncr.rectification_notes = payload.rectificationNotes
        ncr.rectified_at = datetime.utcnow()
        tx.record(status=ncr.status)
        for user_id in project_users_with_roles(session, ncr.project_id, NCR_QM_ROLES):
            if user_id != identity.user_id:
                tx.notify(
                    _event(
                        ncr,
                        user_id,
                        "ncr_rectified",
                        f"{ncr.ncr_number} ready for verification",
                        payload.rectificationNotes or ncr.description,
                    )
                )
    return ncr


def reject_rectification(
    session: Session, identity: Identity, ncr_id: str, payload: NCRRejectRectification
) -> orm_models.NCRORM:
    ncr, _decision = _load_ncr(session, identity, ncr_id, "reject_rectification")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="reject_rectification",
        entity_id=ncr.id,
    ) as tx:
        if ncr.status != NCRStatus.VERIFICATION.value:
            raise ValidationFailed("Only NCRs awaiting verification can be rejected", "INVALID_TRANSITION", field="status")
        ensure_transition("ncr", ncr.status, NCRStatus.RECTIFICATION.value)
        ncr.status = NCRStatus.RECTIFICATION.value
        ncr.qm_comments = payload.feedback
        ncr.rectified_at = None
        tx.record(feedback=payload.feedback)
        if ncr.responsible_user_id:
            tx.notify(
                _event(
                    ncr,
                    ncr.responsible_user_id,
                    "ncr_rectification_rejected",
                    f"{ncr.ncr_number} rectification rejected",
                    payload.feedback,
                )
            )
    return ncr


def qm_approve(session: Session, identity: Identity, ncr_id: str) -> orm_models.NCRORM:
    ncr, _decision = _load_ncr(session, identity, ncr_id, "qm_approve")
    if not ncr.qm_approval_required:
        raise ValidationFailed("This NCR does not require QM approval", "QM_APPROVAL_NOT_REQUIRED", field="qmApprovalRequired")
    if ncr.qm_approved_at is not None:
        raise ConflictError("NCR already has QM approval", "ALREADY_APPROVED", field="qmApprovedAt")
    if ncr.is_closed:
        raise ValidationFailed("Closed NCRs cannot be approved", "NCR_CLOSED", field="status")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="qm_approve",
        entity_id=ncr.id,
    ):
        ncr.qm_approved_by_id = identity.user_id
        ncr.qm_approved_at = datetime.utcnow()
    return ncr


def close_ncr(session: Session, identity: Identity, ncr_id: str, payload: NCRClose) -> orm_models.NCRORM:
    ncr, _decision = _load_ncr(session, identity, ncr_id, "close")
    if payload.withConcession and not (payload.concessionJustification or "").strip():
        raise ValidationFailed(
            "A concession requires a justification",
            "CONCESSION_JUSTIFICATION_REQUIRED",
            field="concessionJustification",
        )
    if ncr.qm_approval_required and ncr.qm_approved_at is None:
        raise ValidationFailed(
            "Major NCRs require QM approval before closure",
            "QM_APPROVAL_REQUIRED",
            field="qmApprovedAt",
        )

    target = NCRStatus.CLOSED_CONCESSION.value if payload.withConcession else NCRStatus.CLOSED.value
    now = datetime.utcnow()
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="close",
        entity_id=ncr.id,
    ) as tx:
        ensure_transition("ncr", ncr.status, target)
        ncr.status = target
        ncr.verified_by_id = identity.user_id
        ncr.verified_at = now
        ncr.verification_notes = payload.verificationNotes
        ncr.lessons_learned = payload.lessonsLearned
        ncr.closed_by_id = identity.user_id
        ncr.closed_at = now
        if payload.withConcession:
            ncr.concession_justification = payload.concessionJustification
            ncr.concession_risk_assessment = payload.concessionRiskAssessment
        _refresh_lots(session, ncr)
        tx.record(status=target, lotsStillFlagged=[link.lot_id for link in ncr.lot_links if link.lot.has_open_ncr])
        if ncr.responsible_user_id and ncr.responsible_user_id != identity.user_id:
            tx.notify(
                _event(
                    ncr,
                    ncr.responsible_user_id,
                    "ncr_closed",
                    f"{ncr.ncr_number} closed",
                    ncr.description,
                )
            )
    return ncr


def notify_client(session: Session, identity: Identity, ncr_id: str) -> orm_models.NCRORM:
    ncr, _decision = _load_ncr(session, identity, ncr_id, "notify_client")
    if not ncr.client_notification_required:
        raise ValidationFailed(
            "This NCR does not require client notification",
            "CLIENT_NOTIFICATION_NOT_REQUIRED",
            field="clientNotificationRequired",
        )
    if ncr.client_notified_at is not None:
        raise ConflictError("Client has already been notified", "CLIENT_ALREADY_NOTIFIED", field="clientNotifiedAt")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="notify_client",
        entity_id=ncr.id,
    ) as tx:
        ncr.client_notified_at = datetime.utcnow()
        tx.record(ncrNumber=ncr.ncr_number)
    return ncr


def reopen_ncr(session: Session, identity: Identity, ncr_id: str, payload: NCRReopen) -> orm_models.NCRORM:
    ncr, _decision = _load_ncr(session, identity, ncr_id, "reopen")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=ncr.project_id,
        entity="ncr",
        action="reopen",
        entity_id=ncr.id,
    ) as tx:
        if not ncr.is_closed:
            raise ValidationFailed("Only closed NCRs can be reopened", "INVALID_TRANSITION", field="status")
        ensure_transition("ncr", ncr.status, NCRStatus.RECTIFICATION.value)
        tx.record(previousStatus=ncr.status, reason=payload.reason)
        ncr.status = NCRStatus.RECTIFICATION.value
        ncr.closed_at = None
        ncr.closed_by_id = None
        ncr.verified_at = None
        ncr.verified_by_id = None
        ncr.qm_approved_at = None
        ncr.qm_approved_by_id = None
        for link in ncr.lot_links:
            mark_ncr_raised(link.lot)
        if ncr.responsible_user_id:
            tx.notify(
                _event(
                    ncr,
                    ncr.responsible_user_id,
                    "ncr_reopened",
                    f"{ncr.ncr_number} reopened",
                    payload.reason or ncr.description,
                )
            )
    return ncr

