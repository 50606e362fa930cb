from __future__ import annotations

import pytest
from sqlalchemy import select

from siteproof.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from siteproof.orm_models import HoldPointORM, NotificationEventORM
from siteproof.schemas import ChecklistItemCreate, ITPCompletionUpsert, ITPInstanceCreate, ITPTemplateCreate
from siteproof.services.itp import (
    create_template,
    get_lot_instance,
    instantiate_itp,
    list_templates,
    map_instance,
    unverify_completion,
    upsert_completion,
    verify_completion,
)


@pytest.fixture()
def itp_lot(session, ctx, identity, make_lot, make_template):
    """Lot assigned to sub A (may complete, needs verification) with a two-item ITP."""
    template = make_template(("Survey set-out", "standard"), ("Compaction test", "standard", "test"))
    lot = make_lot("LOT-ITP", subcontractor=ctx.sub_a, can_complete_itp=True)
    instance = instantiate_itp(session, identity(ctx.engineer), ITPInstanceCreate(lotId=lot.id, templateId=template.id))
    return lot, instance, template.checklist_items


def _complete(session, who, instance, item, completed=True):
    return upsert_completion(
        session,
        who,
        ITPCompletionUpsert(itpInstanceId=instance.id, checklistItemId=item.id, isCompleted=completed),
    )


def test_create_template_assigns_sequences(session, ctx, identity):
    template = create_template(
        session,
        identity(ctx.qm),
        ITPTemplateCreate(
            projectId=ctx.project.id,
            name="Pavement",
            checklistItems=[
                ChecklistItemCreate(description="Subbase trim"),
                ChecklistItemCreate(description="Seal inspection", pointType="hold_point"),
            ],
        ),
    )
    assert [(item.sequence, item.point_type) for item in template.checklist_items] == [
        (1, "standard"),
        (2, "hold_point"),
    ]
    assert [row.id for row in list_templates(session, identity(ctx.viewer), ctx.project.id)] == [template.id]

    with pytest.raises(ForbiddenError):
        create_template(
            session,
            identity(ctx.foreman),
            ITPTemplateCreate(projectId=ctx.project.id, name="Nope", checklistItems=[ChecklistItemCreate(description="x")]),
        )


def test_instantiate_seeds_hold_points(session, ctx, identity, make_lot, make_template):
    template = make_template(("Formwork check", "standard"), ("Pre-pour inspection", "hold_point"))
    lot = make_lot("LOT-HP")
    instance = instantiate_itp(session, identity(ctx.foreman), ITPInstanceCreate(lotId=lot.id, templateId=template.id))

    hold_points = session.execute(select(HoldPointORM).where(HoldPointORM.lot_id == lot.id)).scalars().all()
    assert [(hp.checklist_item_id, hp.status) for hp in hold_points] == [(template.checklist_items[1].id, "pending")]
    assert get_lot_instance(session, identity(ctx.viewer), lot.id).id == instance.id

    with pytest.raises(ConflictError) as excinfo:
        instantiate_itp(session, identity(ctx.foreman), ITPInstanceCreate(lotId=lot.id, templateId=template.id))
    assert excinfo.value.code == "ITP_ALREADY_EXISTS"


def test_instantiate_rejects_foreign_template(session, ctx, identity, make_lot, make_template):
    foreign = make_template(("Ballast", "standard"), project=ctx.other_project)
    lot = make_lot("LOT-X")
    with pytest.raises(NotFoundError) as excinfo:
        instantiate_itp(session, identity(ctx.foreman), ITPInstanceCreate(lotId=lot.id, templateId=foreign.id))
    assert excinfo.value.message == "ITP template not found"


def test_lot_progresses_with_completions(session, ctx, identity, itp_lot):
    lot, instance, (survey, compaction) = itp_lot
    foreman = identity(ctx.foreman)

    _complete(session, foreman, instance, survey)
    assert lot.status == "awaiting_test"

    _complete(session, foreman, instance, compaction)
    assert lot.status == "completed"

    # undoing a completion never moves the lot backwards
    _complete(session, foreman, instance, compaction, completed=False)
    assert lot.status == "completed"
    assert [item.satisfied for item in map_instance(instance).items] == [True, False]


def test_any_completion_marks_lot_in_progress(session, ctx, identity, make_lot, make_template):
    template = make_template(("Excavate", "standard"), ("Trim", "standard"))
    lot = make_lot("LOT-IP")
    instance = instantiate_itp(session, identity(ctx.foreman), ITPInstanceCreate(lotId=lot.id, templateId=template.id))

    _complete(session, identity(ctx.foreman), instance, template.checklist_items[1])
    assert lot.status == "in_progress"


def test_subcontractor_completion_needs_verification(session, ctx, identity, itp_lot):
    lot, instance, (survey, _compaction) = itp_lot

    completion = _complete(session, identity(ctx.sub_a_user), instance, survey)
    assert completion.requires_verification is True
    assert lot.status == "in_progress"
    assert map_instance(instance).items[0].satisfied is False

    recipients = session.execute(
        select(NotificationEventORM.user_id).where(NotificationEventORM.event_type == "itp_verification_required")
    ).scalars().all()
    assert sorted(recipients) == sorted([ctx.pm.id, ctx.qm.id])

    verified = verify_completion(session, identity(ctx.engineer), completion.id, "Checked on site")
    assert verified.verification_status == "verified"
    assert verified.verified_by_id == ctx.engineer.id
    assert lot.status == "awaiting_test"


def test_subcontractor_without_completion_rights(session, ctx, identity, itp_lot):
    lot, instance, (survey, _compaction) = itp_lot
    lot.assignments[0].can_complete_itp = False
    session.flush()

    with pytest.raises(ForbiddenError) as excinfo:
        _complete(session, identity(ctx.sub_a_user), instance, survey)
    assert excinfo.value.code == "ITP_COMPLETION_NOT_PERMITTED"


def test_other_subcontractor_cannot_see_itp(session, ctx, identity, itp_lot):
    _lot, instance, (survey, _compaction) = itp_lot
    with pytest.raises(NotFoundError) as excinfo:
        _complete(session, identity(ctx.sub_b_user), instance, survey)
    assert excinfo.value.message == "ITP not found"


def test_verification_rules(session, ctx, identity, make_lot, make_template):
    template = make_template(("Reo placed", "standard"), ("Pre-pour inspection", "hold_point"))
    lot = make_lot("LOT-V")
    instance = instantiate_itp(session, identity(ctx.foreman), ITPInstanceCreate(lotId=lot.id, templateId=template.id))
    reo, pre_pour = template.checklist_items

    pending = _complete(session, identity(ctx.foreman), instance, reo)
    _complete(session, identity(ctx.foreman), instance, reo, completed=False)
    with pytest.raises(ValidationFailed) as excinfo:
        verify_completion(session, identity(ctx.engineer), pending.id)
    assert excinfo.value.code == "NOT_COMPLETED"

    hold_point_completion = _complete(session, identity(ctx.foreman), instance, pre_pour)
    assert map_instance(instance).items[1].satisfied is False
    with pytest.raises(ValidationFailed) as excinfo:
        verify_completion(session, identity(ctx.engineer), hold_point_completion.id)
    assert excinfo.value.code == "HOLD_POINT_RELEASE_REQUIRED"
    with pytest.raises(ValidationFailed) as excinfo:
        unverify_completion(session, identity(ctx.engineer), hold_point_completion.id)
    assert excinfo.value.code == "HOLD_POINT_RELEASED"


def test_unverify_resets_verification(session, ctx, identity, itp_lot):
    _lot, instance, (survey, _compaction) = itp_lot
    completion = _complete(session, identity(ctx.sub_a_user), instance, survey)
    verify_completion(session, identity(ctx.engineer), completion.id)

    reverted = unverify_completion(session, identity(ctx.qm), completion.id, "Photos missing")
    assert reverted.verification_status == "none"
    assert reverted.verified_by_id is None
    assert reverted.verification_notes == "Photos missing"

    with pytest.raises(ValidationFailed) as excinfo:
        unverify_completion(session, identity(ctx.qm), completion.id)
    assert excinfo.value.code == "INVALID_TRANSITION"


def test_conformed_lot_locks_itp(session, ctx, identity, itp_lot):
    lot, instance, (survey, _compaction) = itp_lot
    lot.status = "conformed"
    session.flush()
    with pytest.raises(ValidationFailed) as excinfo:
        _complete(session, identity(ctx.foreman), instance, survey)
    assert excinfo.value.code == "LOT_CONFORMED"
