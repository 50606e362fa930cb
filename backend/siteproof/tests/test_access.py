from __future__ import annotations

import random

import pytest

from siteproof.errors import ForbiddenError, NotFoundError
from siteproof.orm_models import NCRLotORM, NCRORM, ProjectUserORM, SubcontractorUserORM
from siteproof.pagination import page_params
from siteproof.permissions import is_allowed
from siteproof.services.access import accessible_project_ids, evaluate, load_project, require
from siteproof.services.lots import get_lot, list_lots
from siteproof.services.ncrs import get_ncr, list_ncrs


@pytest.mark.parametrize(
    ("role", "entity", "action", "expected"),
    [
        ("foreman", "docket", "approve", True),
        ("site_engineer", "docket", "approve", False),
        ("quality_manager", "ncr", "qm_approve", True),
        ("site_manager", "ncr", "qm_approve", False),
        ("site_manager", "ncr", "close", True),
        ("subcontractor", "lot", "create", False),
        ("subcontractor", "ncr", "create", True),
        ("viewer", "lot", "read", True),
        ("viewer", "lot", "update", False),
        ("site_engineer", "hold_point", "release", True),
        ("foreman", "hold_point", "release", False),
        ("owner", "spreadsheet", "read", False),
        (None, "lot", "read", False),
    ],
)
def test_permission_matrix(role, entity, action, expected):
    assert is_allowed(role, entity, action) is expected


def test_company_owner_is_treated_as_project_owner(ctx, identity):
    decision = evaluate(identity(ctx.owner), ctx.project, "lot", "delete")
    assert decision.allow
    assert decision.role == "owner"
    assert decision.scope is None


def test_non_member_is_denied(ctx, identity):
    decision = evaluate(identity(ctx.outsider), ctx.project, "lot", "read")
    assert not decision.allow
    assert decision.role is None


def test_project_role_overrides_company_role(session, ctx, identity):
    ctx.viewer.role_in_company = "admin"
    session.flush()
    decision = evaluate(identity(ctx.viewer), ctx.project, "lot", "create")
    assert decision.role == "viewer"
    assert not decision.allow


def test_require_raises_forbidden(ctx, identity):
    with pytest.raises(ForbiddenError):
        require(identity(ctx.viewer), ctx.project, "lot", "create")


def test_foreign_project_looks_missing(session, ctx, identity):
    with pytest.raises(NotFoundError) as excinfo:
        load_project(session, identity(ctx.outsider), ctx.project.id)
    assert excinfo.value.message == "Project not found"


def test_subcontractor_gets_company_scope(ctx, identity):
    decision = evaluate(identity(ctx.sub_a_user), ctx.project, "lot", "read")
    assert decision.allow
    assert decision.scope.subcontractor_company_id == ctx.sub_a.id
    assert not decision.scope.personal_only

    drawing_decision = evaluate(identity(ctx.sub_a_user), ctx.project, "drawing", "read")
    assert drawing_decision.scope is None


def test_accessible_projects(session, ctx, identity):
    assert accessible_project_ids(session, identity(ctx.owner)) == [ctx.project.id]
    assert accessible_project_ids(session, identity(ctx.outsider)) == [ctx.other_project.id]
    assert accessible_project_ids(session, identity(ctx.sub_b_user)) == [ctx.project.id]


def test_subcontractor_lot_visibility(session, ctx, identity, make_lot):
    own = make_lot("LOT-A", subcontractor=ctx.sub_a)
    legacy = make_lot("LOT-L", subcontractor=ctx.sub_a, legacy=True)
    make_lot("LOT-B", subcontractor=ctx.sub_b)
    unassigned = make_lot("LOT-U")

    lots, meta = list_lots(session, identity(ctx.sub_a_user), ctx.project.id, page_params(limit=50))
    assert {lot.id for lot in lots} == {own.id, legacy.id}
    assert meta.total == 2

    with pytest.raises(NotFoundError) as excinfo:
        get_lot(session, identity(ctx.sub_a_user), unassigned.id)
    assert excinfo.value.message == "Lot not found"

    everything, _ = list_lots(session, identity(ctx.foreman), ctx.project.id, page_params(limit=50))
    assert len(everything) == 4


def test_removed_assignment_hides_lot(session, ctx, identity, make_lot):
    lot = make_lot("LOT-R", subcontractor=ctx.sub_a)
    lot.assignments[0].status = "removed"
    session.flush()

    lots, _ = list_lots(session, identity(ctx.sub_a_user), ctx.project.id, page_params())
    assert lots == []


def test_ambiguous_subcontractor_falls_back_to_personal_scope(session, ctx, identity, make_lot):
    # a second company link makes the user's company ambiguous
    session.add(SubcontractorUserORM(subcontractor_company_id=ctx.sub_b.id, user_id=ctx.sub_a_user.id))
    lot = make_lot("LOT-P", subcontractor=ctx.sub_a)
    ncr = NCRORM(
        project_id=ctx.project.id,
        ncr_number="NCR-0001",
        sequence=1,
        description="Compaction below spec",
        responsible_user_id=ctx.sub_a_user.id,
    )
    ncr.lot_links = [NCRLotORM(lot=lot)]
    session.add(ncr)
    session.flush()

    sub = identity(ctx.sub_a_user)
    assert sub.subcontractor_company_id is None

    lots, _ = list_lots(session, sub, ctx.project.id, page_params())
    assert lots == []
    ncrs, _ = list_ncrs(session, sub, ctx.project.id, page_params())
    assert [item.id for item in ncrs] == [ncr.id]
    assert get_ncr(session, sub, ncr.id).id == ncr.id


def test_inactive_membership_denies_access(session, ctx, identity):
    membership = session.query(ProjectUserORM).filter_by(user_id=ctx.foreman.id).one()
    membership.status = "inactive"
    session.flush()
    with pytest.raises(NotFoundError):
        load_project(session, identity(ctx.foreman), ctx.project.id)


def test_subcontractor_isolation_holds_for_random_assignments(session, ctx, identity, make_lot):
    rng = random.Random(20240611)
    expected_a, expected_b = set(), set()
    for index in range(30):
        choice = rng.choice(["a", "b", "both", "none", "legacy_a"])
        if choice == "a":
            lot = make_lot(f"LOT-{index:03d}", subcontractor=ctx.sub_a)
            expected_a.add(lot.id)
        elif choice == "legacy_a":
            lot = make_lot(f"LOT-{index:03d}", subcontractor=ctx.sub_a, legacy=True)
            expected_a.add(lot.id)
        elif choice == "b":
            lot = make_lot(f"LOT-{index:03d}", subcontractor=ctx.sub_b)
            expected_b.add(lot.id)
        elif choice == "both":
            lot = make_lot(f"LOT-{index:03d}", subcontractor=ctx.sub_a)
            lot.assigned_subcontractor_id = ctx.sub_b.id
            session.flush()
            expected_a.add(lot.id)
            expected_b.add(lot.id)
        else:
            make_lot(f"LOT-{index:03d}")

    for user, expected in ((ctx.sub_a_user, expected_a), (ctx.sub_b_user, expected_b)):
        lots, meta = list_lots(session, identity(user), ctx.project.id, page_params(limit=100))
        assert {lot.id for lot in lots} == expected
        assert meta.total == len(expected)
