from __future__ import annotations

from datetime import date, timedelta

import pytest
from sqlalchemy import select

from siteproof.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from siteproof.orm_models import (
    AuditLogORM,
    DocketLabourORM,
    DocketORM,
    HoldPointORM,
    ITPInstanceORM,
    NCRLotORM,
    NCRORM,
)
from siteproof.pagination import page_params
from siteproof.schemas import LotAssignmentCreate, LotAssignmentUpdate, LotCreate, LotUpdate
from siteproof.services import lots
from siteproof.services.lots import (
    assign_subcontractor,
    conform_lot,
    create_lot,
    delete_lot,
    list_assignments,
    list_lots,
    map_lot,
    remove_assignment,
    update_assignment,
    update_lot,
)


def _lot_payload(ctx, number="LOT-001", **overrides):
    data = {"projectId": ctx.project.id, "lotNumber": number}
    data.update(overrides)
    return LotCreate(**data)


def _link_ncr(session, ctx, lot, *, status="open", sequence=1):
    ncr = NCRORM(
        project_id=ctx.project.id,
        ncr_number=f"NCR-{sequence:04d}",
        sequence=sequence,
        description="Test NCR",
        status=status,
    )
    ncr.lot_links = [NCRLotORM(lot=lot)]
    session.add(ncr)
    session.flush()
    return ncr


def test_create_lot_records_audit_entry(session, ctx, identity):
    lot = create_lot(session, identity(ctx.foreman), _lot_payload(ctx, description="Embankment"))

    assert lot.status == "not_started"
    assert lot.created_by_id == ctx.foreman.id
    audit = session.execute(select(AuditLogORM).where(AuditLogORM.entity_id == lot.id)).scalar_one()
    assert audit.action == "lot.create"
    assert audit.project_id == ctx.project.id
    assert audit.payload["lotNumber"] == "LOT-001"


@pytest.mark.parametrize(
    ("lot_type", "code"),
    [("area", "AREA_ZONE_REQUIRED"), ("structure", "STRUCTURE_ID_REQUIRED")],
)
def test_location_is_required_for_lot_type(session, ctx, identity, lot_type, code):
    with pytest.raises(ValidationFailed) as excinfo:
        create_lot(session, identity(ctx.foreman), _lot_payload(ctx, lotType=lot_type, areaZone="  "))
    assert excinfo.value.code == code


def test_duplicate_lot_number_is_rejected(session, ctx, identity):
    create_lot(session, identity(ctx.foreman), _lot_payload(ctx))
    with pytest.raises(ConflictError) as excinfo:
        create_lot(session, identity(ctx.pm), _lot_payload(ctx))
    assert excinfo.value.code == "DUPLICATE_LOT_NUMBER"
    assert excinfo.value.details["field"] == "lotNumber"


def test_duplicate_lot_number_race_is_reported_as_conflict(session, ctx, identity, monkeypatch):
    first = create_lot(session, identity(ctx.foreman), _lot_payload(ctx))
    # both creators passed the pre-check; the unique constraint decides
    monkeypatch.setattr(lots, "lot_number_taken", lambda *args, **kwargs: False)

    with pytest.raises(ConflictError) as excinfo:
        create_lot(session, identity(ctx.pm), _lot_payload(ctx))
    assert excinfo.value.code == "DUPLICATE_LOT_NUMBER"

    page, meta = list_lots(session, identity(ctx.pm), ctx.project.id, page_params())
    assert [lot.id for lot in page] == [first.id]
    assert meta.total == 1


def test_subcontractor_cannot_create_lots(session, ctx, identity):
    with pytest.raises(ForbiddenError):
        create_lot(session, identity(ctx.sub_a_admin), _lot_payload(ctx))


def test_create_with_subcontractor_requires_approval(session, ctx, identity):
    with pytest.raises(ValidationFailed) as excinfo:
        create_lot(session, identity(ctx.pm), _lot_payload(ctx, assignedSubcontractorId=ctx.sub_pending.id))
    assert excinfo.value.code == "SUBCONTRACTOR_NOT_APPROVED"


def test_create_with_subcontractor_adds_assignment(session, ctx, identity):
    lot = create_lot(
        session,
        identity(ctx.pm),
        _lot_payload(ctx, assignedSubcontractorId=ctx.sub_a.id, canCompleteITP=True),
    )
    assert lot.assigned_subcontractor_id == ctx.sub_a.id
    assert [(row.subcontractor_company_id, row.can_complete_itp) for row in lot.assignments] == [(ctx.sub_a.id, True)]
    assert map_lot(lot).subcontractorIds == [ctx.sub_a.id]


def test_create_with_template_instantiates_itp(session, ctx, identity, make_template):
    template = make_template(("Subgrade proof roll", "standard"), ("Pre-pour inspection", "hold_point"))
    lot = create_lot(session, identity(ctx.pm), _lot_payload(ctx, itpTemplateId=template.id))

    instance = session.execute(select(ITPInstanceORM).where(ITPInstanceORM.lot_id == lot.id)).scalar_one()
    assert instance.template_id == template.id
    hold_points = session.execute(select(HoldPointORM).where(HoldPointORM.lot_id == lot.id)).scalars().all()
    assert [hp.status for hp in hold_points] == ["pending"]


def test_update_with_stale_timestamp_conflicts(session, ctx, identity, make_lot):
    lot = make_lot("LOT-010")
    stale = lot.updated_at - timedelta(seconds=30)

    with pytest.raises(ConflictError) as excinfo:
        update_lot(session, identity(ctx.engineer), lot.id, LotUpdate(description="late edit", expectedUpdatedAt=stale))
    assert excinfo.value.code == "LOT_MODIFIED"
    assert excinfo.value.details["currentUpdatedAt"] == lot.updated_at.isoformat()

    updated = update_lot(
        session,
        identity(ctx.engineer),
        lot.id,
        LotUpdate(description="fresh edit", expectedUpdatedAt=lot.updated_at),
    )
    assert updated.description == "fresh edit"


def test_update_renumber_to_existing_number(session, ctx, identity, make_lot):
    make_lot("LOT-001")
    lot = make_lot("LOT-002")
    with pytest.raises(ConflictError) as excinfo:
        update_lot(session, identity(ctx.engineer), lot.id, LotUpdate(lotNumber="LOT-001"))
    assert excinfo.value.code == "DUPLICATE_LOT_NUMBER"


def test_update_validates_effective_location(session, ctx, identity, make_lot):
    lot = make_lot("LOT-003")
    with pytest.raises(ValidationFailed) as excinfo:
        update_lot(session, identity(ctx.engineer), lot.id, LotUpdate(lotType="area"))
    assert excinfo.value.code == "AREA_ZONE_REQUIRED"

    updated = update_lot(session, identity(ctx.engineer), lot.id, LotUpdate(lotType="area", areaZone="Zone 4"))
    assert (updated.lot_type, updated.area_zone) == ("area", "Zone 4")


def test_conformed_lot_cannot_be_edited(session, ctx, identity, make_lot):
    lot = make_lot("LOT-004", status="conformed")
    with pytest.raises(ValidationFailed) as excinfo:
        update_lot(session, identity(ctx.pm), lot.id, LotUpdate(description="changed"))
    assert excinfo.value.code == "LOT_CONFORMED"


def test_changing_subcontractor_needs_assignment_permission(session, ctx, identity, make_lot):
    lot = make_lot("LOT-005")
    with pytest.raises(ForbiddenError):
        update_lot(session, identity(ctx.engineer), lot.id, LotUpdate(assignedSubcontractorId=ctx.sub_a.id))

    updated = update_lot(session, identity(ctx.pm), lot.id, LotUpdate(assignedSubcontractorId=ctx.sub_a.id))
    assert updated.assigned_subcontractor_id == ctx.sub_a.id
    assert [row.status for row in updated.assignments] == ["active"]


# === Delete ===================================================================


def test_delete_lot(session, ctx, identity, make_lot):
    lot = make_lot("LOT-100")
    delete_lot(session, identity(ctx.pm), lot.id)
    with pytest.raises(NotFoundError):
        lots.get_lot(session, identity(ctx.pm), lot.id)


@pytest.mark.parametrize("status", ["completed", "conformed"])
def test_delete_rejects_finished_lots(session, ctx, identity, make_lot, status):
    lot = make_lot("LOT-101", status=status)
    with pytest.raises(ValidationFailed) as excinfo:
        delete_lot(session, identity(ctx.pm), lot.id)
    assert excinfo.value.code == "LOT_NOT_DELETABLE"


def test_delete_rejects_lot_with_open_ncr(session, ctx, identity, make_lot):
    lot = make_lot("LOT-102")
    lot.has_open_ncr = True
    session.flush()
    with pytest.raises(ValidationFailed) as excinfo:
        delete_lot(session, identity(ctx.pm), lot.id)
    assert excinfo.value.code == "LOT_NOT_DELETABLE"
    assert excinfo.value.details["status"] == "ncr_raised"


def test_delete_rejects_lot_referenced_by_closed_ncr(session, ctx, identity, make_lot):
    lot = make_lot("LOT-103")
    _link_ncr(session, ctx, lot, status="closed")
    with pytest.raises(ValidationFailed) as excinfo:
        delete_lot(session, identity(ctx.pm), lot.id)
    assert excinfo.value.code == "LOT_HAS_NCRS"


def test_delete_rejects_requested_hold_points(session, ctx, identity, make_lot, make_template):
    template = make_template(("Pre-pour inspection", "hold_point"))
    lot = make_lot("LOT-104")
    session.add(
        HoldPointORM(
            project_id=ctx.project.id,
            lot=lot,
            checklist_item_id=template.checklist_items[0].id,
            status="requested",
        )
    )
    session.flush()
    with pytest.raises(ValidationFailed) as excinfo:
        delete_lot(session, identity(ctx.pm), lot.id)
    assert excinfo.value.code == "UNRELEASED_HOLD_POINTS"


def test_delete_rejects_pending_hold_points_from_itp(session, ctx, identity, make_template):
    template = make_template(("Pre-pour inspection", "hold_point"))
    lot = create_lot(session, identity(ctx.pm), _lot_payload(ctx, itpTemplateId=template.id))
    assert [hp.status for hp in lot.hold_points] == ["pending"]

    with pytest.raises(ValidationFailed) as excinfo:
        delete_lot(session, identity(ctx.pm), lot.id)
    assert excinfo.value.code == "UNRELEASED_HOLD_POINTS"
    assert excinfo.value.details["unreleasedHoldPoints"] == 1

    lot.hold_points[0].status = "released"
    session.flush()
    delete_lot(session, identity(ctx.pm), lot.id)
    with pytest.raises(NotFoundError):
        lots.get_lot(session, identity(ctx.pm), lot.id)


def test_delete_rejects_docket_allocations(session, ctx, identity, make_lot):
    lot = make_lot("LOT-105")
    docket = DocketORM(project_id=ctx.project.id, docket_number="DKT-000001", date=date(2024, 5, 1))
    docket.labour_entries = [DocketLabourORM(worker_name="J. Smith", submitted_hours=8, lot_id=lot.id)]
    session.add(docket)
    session.flush()
    with pytest.raises(ValidationFailed) as excinfo:
        delete_lot(session, identity(ctx.pm), lot.id)
    assert excinfo.value.code == "LOT_HAS_DOCKET_ALLOCATIONS"


def test_foreman_cannot_delete(session, ctx, identity, make_lot):
    lot = make_lot("LOT-106")
    with pytest.raises(ForbiddenError):
        delete_lot(session, identity(ctx.foreman), lot.id)


# === Conformance ==============================================================


def test_conform_requires_completed_lot(session, ctx, identity, make_lot):
    lot = make_lot("LOT-200", status="in_progress")
    with pytest.raises(ValidationFailed) as excinfo:
        conform_lot(session, identity(ctx.qm), lot.id)
    assert excinfo.value.code == "LOT_NOT_COMPLETED"


def test_conform_blocked_by_open_ncr(session, ctx, identity, make_lot):
    lot = make_lot("LOT-201", status="completed")
    lot.has_open_ncr = True
    session.flush()
    with pytest.raises(ValidationFailed) as excinfo:
        conform_lot(session, identity(ctx.qm), lot.id)
    assert excinfo.value.code == "LOT_HAS_OPEN_NCR"


def test_conform_blocked_by_incomplete_itp(session, ctx, identity, make_lot, make_template):
    template = make_template(("Compaction test", "standard", "test"))
    lot = make_lot("LOT-202", status="completed")
    session.add(ITPInstanceORM(lot=lot, project_id=ctx.project.id, template=template))
    session.flush()
    with pytest.raises(ValidationFailed) as excinfo:
        conform_lot(session, identity(ctx.qm), lot.id)
    assert excinfo.value.code == "ITP_INCOMPLETE"
    assert excinfo.value.details["checklistItemIds"] == [template.checklist_items[0].id]


def test_conform_blocked_by_unreleased_hold_point(session, ctx, identity, make_lot, make_template):
    template = make_template(("Pre-pour inspection", "hold_point"))
    lot = make_lot("LOT-203", status="completed")
    session.add(
        HoldPointORM(project_id=ctx.project.id, lot=lot, checklist_item_id=template.checklist_items[0].id, status="pending")
    )
    session.flush()
    with pytest.raises(ValidationFailed) as excinfo:
        conform_lot(session, identity(ctx.qm), lot.id)
    assert excinfo.value.code == "UNRELEASED_HOLD_POINTS"


def test_conform_lot(session, ctx, identity, make_lot):
    lot = make_lot("LOT-204", status="completed")
    conformed = conform_lot(session, identity(ctx.qm), lot.id)
    assert conformed.status == "conformed"
    assert conformed.conformed_by_id == ctx.qm.id
    assert conformed.conformed_at is not None

    with pytest.raises(ForbiddenError):
        conform_lot(session, identity(ctx.sm), lot.id)


# === Listing & overlay ========================================================


def test_ncr_flag_overlays_status(session, ctx, identity, make_lot):
    flagged = make_lot("LOT-300", status="in_progress")
    make_lot("LOT-301", status="in_progress")
    flagged.has_open_ncr = True
    session.flush()

    mapped = map_lot(flagged)
    assert (mapped.status, mapped.progressStatus, mapped.hasOpenNcr) == ("ncr_raised", "in_progress", True)

    raised, _ = list_lots(session, identity(ctx.pm), ctx.project.id, page_params(), status="ncr_raised")
    assert [lot.lot_number for lot in raised] == ["LOT-300"]
    in_progress, _ = list_lots(session, identity(ctx.pm), ctx.project.id, page_params(), status="in_progress")
    assert [lot.lot_number for lot in in_progress] == ["LOT-301"]


def test_list_lots_paginates_and_sorts(session, ctx, identity, make_lot):
    for index in range(5):
        make_lot(f"LOT-{index:03d}")
    page, meta = list_lots(
        session,
        identity(ctx.viewer),
        ctx.project.id,
        page_params(page=2, limit=2, sort_by="lotNumber", sort_order="asc"),
    )
    assert [lot.lot_number for lot in page] == ["LOT-002", "LOT-003"]
    assert (meta.total, meta.totalPages, meta.hasNextPage, meta.hasPrevPage) == (5, 3, True, True)

    with pytest.raises(ValidationFailed):
        list_lots(session, identity(ctx.viewer), ctx.project.id, page_params(sort_by="colour"))


# === Assignments ==============================================================


def test_assignment_lifecycle(session, ctx, identity, make_lot):
    lot = make_lot("LOT-400")
    sm = identity(ctx.sm)

    assignment = assign_subcontractor(
        session, sm, lot.id, LotAssignmentCreate(subcontractorCompanyId=ctx.sub_a.id, canCompleteITP=True)
    )
    assert assignment.status == "active"
    assert [row.id for row in list_assignments(session, sm, lot.id)] == [assignment.id]

    with pytest.raises(ConflictError) as excinfo:
        assign_subcontractor(session, sm, lot.id, LotAssignmentCreate(subcontractorCompanyId=ctx.sub_a.id))
    assert excinfo.value.code == "ASSIGNMENT_EXISTS"

    updated = update_assignment(session, sm, lot.id, assignment.id, LotAssignmentUpdate(itpRequiresVerification=False))
    assert updated.itp_requires_verification is False
    assert updated.can_complete_itp is True

    remove_assignment(session, sm, lot.id, assignment.id)
    assert assignment.status == "removed"
    assert list_assignments(session, sm, lot.id) == []

    again = assign_subcontractor(session, sm, lot.id, LotAssignmentCreate(subcontractorCompanyId=ctx.sub_a.id))
    assert again.id == assignment.id
    assert again.status == "active"


def test_removing_assignment_clears_legacy_field(session, ctx, identity, make_lot):
    lot = create_lot(
        session,
        identity(ctx.pm),
        _lot_payload(ctx, "LOT-401", assignedSubcontractorId=ctx.sub_b.id),
    )
    remove_assignment(session, identity(ctx.pm), lot.id, lot.assignments[0].id)
    assert lot.assigned_subcontractor_id is None
    assert map_lot(lot).subcontractorIds == []


def test_subcontractor_cannot_read_assignments(session, ctx, identity, make_lot):
    lot = make_lot("LOT-402", subcontractor=ctx.sub_a)
    with pytest.raises(ForbiddenError):
        list_assignments(session, identity(ctx.sub_a_admin), lot.id)
