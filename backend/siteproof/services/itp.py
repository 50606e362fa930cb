from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from ..permissions import QUALITY, is_subcontractor_role
from ..schemas import (
    ChecklistItem,
    ITPCompletion,
    ITPCompletionUpsert,
    ITPInstance,
    ITPInstanceCreate,
    ITPItemState,
    ITPTemplate,
    ITPTemplateCreate,
)
from ..state_machines import ensure_transition, lot_progress_index
from .access import AccessDecision, active_assignment, load_lot, load_project, require
from .identity import Identity
from .notifications import NotificationEvent, project_users_with_roles
from .workflow import transition

logger = logging.getLogger(__name__)

LotStatus = orm_models.LotStatus


def map_template(template: orm_models.ITPTemplateORM) -> ITPTemplate:
    return ITPTemplate(
        id=template.id,
        projectId=template.project_id,
        name=template.name,
        activityType=template.activity_type,
        checklistItems=[
            ChecklistItem(
                id=item.id,
                sequence=item.sequence,
                description=item.description,
                pointType=item.point_type,
                responsibleParty=item.responsible_party,
                evidenceRequired=item.evidence_required,
                testType=item.test_type,
            )
            for item in template.checklist_items
        ],
    )


def map_completion(completion: orm_models.ITPCompletionORM) -> ITPCompletion:
    return ITPCompletion(
        id=completion.id,
        itpInstanceId=completion.itp_instance_id,
        checklistItemId=completion.checklist_item_id,
        status=completion.status,
        isCompleted=completion.is_completed,
        notes=completion.notes,
        completedAt=completion.completed_at,
        completedById=completion.completed_by_id,
        verificationStatus=completion.verification_status,
        verifiedAt=completion.verified_at,
        verifiedById=completion.verified_by_id,
    )


def map_instance(instance: orm_models.ITPInstanceORM) -> ITPInstance:
    completions = _completions_by_item(instance)
    items = []
    for item in instance.template.checklist_items:
        completion = completions.get(item.id)
        items.append(
            ITPItemState(
                checklistItemId=item.id,
                sequence=item.sequence,
                description=item.description,
                pointType=item.point_type,
                satisfied=item_satisfied(item, completion),
                completion=map_completion(completion) if completion else None,
            )
        )
    return ITPInstance(id=instance.id, lotId=instance.lot_id, templateId=instance.template_id, items=items)


# === Satisfaction & lot progression ==========================================


def item_satisfied(
    item: orm_models.ITPChecklistItemORM,
    completion: Optional[orm_models.ITPCompletionORM],
) -> bool:
    """A completed item counts only once verified when it is a hold point or
    was completed by a subcontractor whose assignment requires verification."""
    if completion is None or not completion.is_completed:
        return False
    if item.point_type == "hold_point" or completion.requires_verification:
        return completion.is_verified
    return True


def _completions_by_item(instance: orm_models.ITPInstanceORM) -> Dict[str, orm_models.ITPCompletionORM]:
    return {completion.checklist_item_id: completion for completion in instance.completions}


def instance_satisfied(instance: orm_models.ITPInstanceORM) -> bool:
    completions = _completions_by_item(instance)
    return all(item_satisfied(item, completions.get(item.id)) for item in instance.template.checklist_items)


def unsatisfied_items(instance: orm_models.ITPInstanceORM) -> List[orm_models.ITPChecklistItemORM]:
    completions = _completions_by_item(instance)
    return [
        item for item in instance.template.checklist_items if not item_satisfied(item, completions.get(item.id))
    ]


def progress_target(instance: orm_models.ITPInstanceORM) -> str:
    completions = _completions_by_item(instance)
    items = list(instance.template.checklist_items)
    satisfied = {item.id: item_satisfied(item, completions.get(item.id)) for item in items}
    if items and all(satisfied.values()):
        return LotStatus.COMPLETED.value
    test_items = [item for item in items if item.is_test_item]
    if test_items and all(satisfied[item.id] for item in items if not item.is_test_item):
        return LotStatus.AWAITING_TEST.value
    if any(completion.is_completed for completion in completions.values()):
        return LotStatus.IN_PROGRESS.value
    return LotStatus.NOT_STARTED.value


def recompute_lot_progress(lot: orm_models.LotORM, instance: orm_models.ITPInstanceORM) -> Optional[str]:
    """Move the lot forward to match its ITP. Never moves a lot backwards."""
    if lot.status == LotStatus.CONFORMED.value:
        return None
    target = progress_target(instance)
    if lot_progress_index(target) <= lot_progress_index(lot.status):
        return None
    ensure_transition("lot", lot.status, target)
    previous = lot.status
    lot.status = target
    logger.info(
        "Lot progressed %s -> %s",
        previous,
        target,
        extra={"project_id": lot.project_id, "entity": "lot", "entity_id": lot.id},
    )
    return target


# === Templates ===============================================================


def create_template(session: Session, identity: Identity, payload: ITPTemplateCreate) -> orm_models.ITPTemplateORM:
    project = load_project(session, identity, payload.projectId)
    require(identity, project, "itp", "manage_templates")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=project.id,
        entity="itp_template",
        action="create",
    ) as tx:
        template = orm_models.ITPTemplateORM(
            project_id=project.id,
            name=payload.name,
            activity_type=payload.activityType,
        )
        for index, item in enumerate(payload.checklistItems, start=1):
            template.checklist_items.append(
                orm_models.ITPChecklistItemORM(
                    sequence=item.sequence if item.sequence is not None else index,
                    description=item.description,
                    acceptance_criteria=item.acceptanceCriteria,
                    point_type=item.pointType,
                    responsible_party=item.responsibleParty,
                    evidence_required=item.evidenceRequired,
                    test_type=item.testType,
                )
            )
        session.add(template)
        session.flush()
        tx.entity_id = template.id
        tx.record(name=template.name, items=len(template.checklist_items))
    return template


def list_templates(session: Session, identity: Identity, project_id: str) -> List[orm_models.ITPTemplateORM]:
    project = load_project(session, identity, project_id)
    require(identity, project, "itp", "read")
    return (
        session.execute(
            select(orm_models.ITPTemplateORM)
            .where(
                orm_models.ITPTemplateORM.project_id == project.id,
                orm_models.ITPTemplateORM.is_active.is_(True),
            )
            .order_by(orm_models.ITPTemplateORM.name)
        )
        .scalars()
        .all()
    )


# === Instances ===============================================================


def create_instance_rows(
    session: Session,
    lot: orm_models.LotORM,
    template_id: str,
) -> orm_models.ITPInstanceORM:
    """Bind a template to a lot and seed hold points for its hold-point items."""
    template = session.get(orm_models.ITPTemplateORM, template_id)
    if template is None or template.project_id != lot.project_id:
        raise NotFoundError("ITP template", template_id)
    existing = session.execute(
        select(orm_models.ITPInstanceORM.id).where(orm_models.ITPInstanceORM.lot_id == lot.id)
    ).first()
    if existing is not None:
        raise ConflictError("Lot already has an ITP", "ITP_ALREADY_EXISTS", field="lotId")

    instance = orm_models.ITPInstanceORM(lot=lot, project_id=lot.project_id, template=template)
    session.add(instance)
    for item in template.checklist_items:
        if item.point_type != "hold_point":
            continue
        session.add(
            orm_models.HoldPointORM(
                project_id=lot.project_id,
                lot=lot,
                checklist_item_id=item.id,
                point_type=item.point_type,
                description=item.description,
            )
        )
    session.flush()
    return instance


def instantiate_itp(session: Session, identity: Identity, payload: ITPInstanceCreate) -> orm_models.ITPInstanceORM:
    lot, _decision = load_lot(session, identity, payload.lotId, "itp", "instantiate")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="itp_instance",
        action="create",
    ) as tx:
        instance = create_instance_rows(session, lot, payload.templateId)
        tx.entity_id = instance.id
        tx.record(lotId=lot.id, templateId=payload.templateId)
    return instance


def get_lot_instance(session: Session, identity: Identity, lot_id: str) -> orm_models.ITPInstanceORM:
    lot, _decision = load_lot(session, identity, lot_id, "itp", "read")
    if lot.itp_instance is None:
        raise NotFoundError("ITP", lot_id)
    return lot.itp_instance


def _load_instance(
    session: Session,
    identity: Identity,
    instance_id: str,
    action: str,
) -> tuple[orm_models.ITPInstanceORM, orm_models.LotORM, AccessDecision]:
    instance = session.get(orm_models.ITPInstanceORM, instance_id)
    if instance is None:
        raise NotFoundError("ITP", instance_id)
    try:
        lot, decision = load_lot(session, identity, instance.lot_id, "itp", action)
    except NotFoundError as exc:
        raise NotFoundError("ITP", instance_id) from exc
    return instance, lot, decision


def _load_completion(
    session: Session,
    identity: Identity,
    completion_id: str,
    action: str,
) -> tuple[orm_models.ITPCompletionORM, orm_models.ITPInstanceORM, orm_models.LotORM, AccessDecision]:
    completion = session.get(orm_models.ITPCompletionORM, completion_id)
    if completion is None:
        raise NotFoundError("ITP completion", completion_id)
    try:
        instance, lot, decision = _load_instance(session, identity, completion.itp_instance_id, action)
    except NotFoundError as exc:
        raise NotFoundError("ITP completion", completion_id) from exc
    return completion, instance, lot, decision


def _ensure_not_conformed(lot: orm_models.LotORM) -> None:
    if lot.status == LotStatus.CONFORMED.value:
        raise ValidationFailed("Lot has been conformed and its ITP is locked", "LOT_CONFORMED", field="lotId")


# === Completions =============================================================


def upsert_completion(session: Session, identity: Identity, payload: ITPCompletionUpsert) -> orm_models.ITPCompletionORM:
    instance, lot, decision = _load_instance(session, identity, payload.itpInstanceId, "complete")
    _ensure_not_conformed(lot)

    item = next((entry for entry in instance.template.checklist_items if entry.id == payload.checklistItemId), None)
    if item is None:
        raise ValidationFailed("Checklist item does not belong to this ITP", field="checklistItemId")

    requires_verification = False
    if is_subcontractor_role(decision.role):
        assignment = active_assignment(lot, decision.scope.subcontractor_company_id)
        if assignment is None or not assignment.can_complete_itp:
            raise ForbiddenError(
                "Your company is not permitted to complete ITP items on this lot",
                "ITP_COMPLETION_NOT_PERMITTED",
            )
        requires_verification = assignment.itp_requires_verification

    completion = _completions_by_item(instance).get(item.id)
    action = "complete" if payload.isCompleted else "uncomplete"

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="itp_completion",
        action=action,
    ) as tx:
        if completion is None:
            completion = orm_models.ITPCompletionORM(
                instance=instance,
                checklist_item_id=item.id,
                status="pending",
                verification_status="none",
            )
            session.add(completion)
        if payload.notes is not None:
            completion.notes = payload.notes

        if payload.isCompleted and not completion.is_completed:
            ensure_transition("itp_completion", completion.status, "completed", field="isCompleted")
            completion.status = "completed"
            completion.completed_at = datetime.utcnow()
            completion.completed_by_id = identity.user_id
            completion.requires_verification = requires_verification
        elif not payload.isCompleted and completion.is_completed:
            ensure_transition("itp_completion", completion.status, "pending", field="isCompleted")
            # verification is only reversed through unverify_completion
            completion.status = "pending"
            completion.completed_at = None
            completion.completed_by_id = None

        session.flush()
        tx.entity_id = completion.id
        tx.record(checklistItemId=item.id, lotId=lot.id, status=completion.status)
        progressed = recompute_lot_progress(lot, instance)
        tx.record(lotStatus=progressed)

        if payload.isCompleted and requires_verification and item.point_type != "hold_point":
            for user_id in project_users_with_roles(session, lot.project_id, QUALITY):
                tx.notify(
                    NotificationEvent(
                        user_id=user_id,
                        project_id=lot.project_id,
                        event_type="itp_verification_required",
                        title="ITP item awaiting verification",
                        message=f"Lot {lot.lot_number}: {item.description}",
                        link_url=f"/projects/{lot.project_id}/lots/{lot.id}",
                        entity_id=completion.id,
                    )
                )
    return completion


def verify_completion(
    session: Session,
    identity: Identity,
    completion_id: str,
    notes: Optional[str] = None,
) -> orm_models.ITPCompletionORM:
    completion, instance, lot, _decision = _load_completion(session, identity, completion_id, "verify")
    _ensure_not_conformed(lot)
    if completion.checklist_item.point_type == "hold_point":
        raise ValidationFailed(
            "Hold point items are verified by releasing the hold point",
            "HOLD_POINT_RELEASE_REQUIRED",
            field="checklistItemId",
        )
    if not completion.is_completed:
        raise ValidationFailed("Only completed items can be verified", "NOT_COMPLETED", field="status")
    if completion.requires_verification and completion.completed_by_id == identity.user_id:
        raise ForbiddenError("Items cannot be verified by the person who completed them")

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="itp_completion",
        action="verify",
        entity_id=completion.id,
    ) as tx:
        mark_verified(completion, identity.user_id, notes)
        progressed = recompute_lot_progress(lot, instance)
        tx.record(lotId=lot.id, lotStatus=progressed)
    return completion


def mark_verified(completion: orm_models.ITPCompletionORM, user_id: str, notes: Optional[str] = None) -> None:
    ensure_transition("itp_verification", completion.verification_status, "verified", field="verificationStatus")
    completion.verification_status = "verified"
    completion.verified_at = datetime.utcnow()
    completion.verified_by_id = user_id
    if notes is not None:
        completion.verification_notes = notes


def unverify_completion(
    session: Session,
    identity: Identity,
    completion_id: str,
    notes: Optional[str] = None,
) -> orm_models.ITPCompletionORM:
    completion, _instance, lot, _decision = _load_completion(session, identity, completion_id, "unverify")
    _ensure_not_conformed(lot)
    if completion.checklist_item.point_type == "hold_point":
        raise ValidationFailed("A released hold point cannot be reversed", "HOLD_POINT_RELEASED", field="status")

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=lot.project_id,
        entity="itp_completion",
        action="unverify",
        entity_id=completion.id,
    ) as tx:
        ensure_transition("itp_verification", completion.verification_status, "none", field="verificationStatus")
        tx.record(previousVerifier=completion.verified_by_id, reason=notes)
        completion.verification_status = "none"
        completion.verified_at = None
        completion.verified_by_id = None
        completion.verification_notes = notes
    return completion
