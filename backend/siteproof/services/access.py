"""Access evaluation for project-scoped quality records.

``evaluate`` answers "may this identity perform this action on this kind of
record in this project" and, for subcontractor roles, returns a :class:`Scope`
that narrows which rows are visible. Rules are applied in order:

1. no active project membership and not an owner/admin of the project's
   company: deny;
2. the project role, when present, wins over the company role;
3. the role must appear in ``PERMISSION_MATRIX`` for (entity, action);
4. subcontractor roles get a scope for assignment-bound entities.

Anything not explicitly allowed is denied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

from sqlalchemy import and_, exists, false, or_, select
from sqlalchemy.orm import Session

from ..errors import ForbiddenError, NotFoundError, UnauthorizedError
from ..orm_models import (
    DocketORM,
    HoldPointORM,
    ITPInstanceORM,
    LotORM,
    LotSubcontractorAssignmentORM,
    NCRLotORM,
    NCRORM,
    ProjectORM,
)
from ..permissions import (
    COMPANY_ADMIN_ROLES,
    SUBCONTRACTOR_SCOPED_ENTITIES,
    EntityType,
    is_allowed,
    is_subcontractor_role,
)
from .identity import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Scope:
    """Row filter for a subcontractor user within one project."""

    user_id: str
    subcontractor_company_id: Optional[str]

    @property
    def personal_only(self) -> bool:
        return self.subcontractor_company_id is None


@dataclass(frozen=True)
class AccessDecision:
    allow: bool
    role: Optional[str] = None
    scope: Optional[Scope] = None
    reason: Optional[str] = None


def resolve_project_role(identity: Identity, project: ProjectORM) -> Optional[str]:
    role = identity.project_role(project.id)
    if role:
        return role
    if identity.company_id and identity.company_id == project.company_id and identity.company_role in COMPANY_ADMIN_ROLES:
        return identity.company_role
    return None


def evaluate(
    identity: Optional[Identity],
    project: ProjectORM,
    entity: EntityType,
    action: str,
) -> AccessDecision:
    if identity is None:
        raise UnauthorizedError()

    role = resolve_project_role(identity, project)
    if role is None:
        return AccessDecision(allow=False, reason="not a member of this project")

    if not is_allowed(role, entity, action):
        return AccessDecision(allow=False, role=role, reason=f"role {role} may not {action} {entity}")

    scope = None
    if is_subcontractor_role(role) and entity in SUBCONTRACTOR_SCOPED_ENTITIES:
        scope = Scope(
            user_id=identity.user_id,
            subcontractor_company_id=identity.subcontractor_company_for(project.id),
        )
    return AccessDecision(allow=True, role=role, scope=scope)


def require(
    identity: Optional[Identity],
    project: ProjectORM,
    entity: EntityType,
    action: str,
) -> AccessDecision:
    decision = evaluate(identity, project, entity, action)
    if not decision.allow:
        logger.info(
            "Access denied: %s",
            decision.reason,
            extra={"user_id": identity.user_id, "project_id": project.id, "entity": entity, "action": action},
        )
        raise ForbiddenError(f"You do not have permission to {action.replace('_', ' ')} this {entity.replace('_', ' ')}")
    return decision


def load_project(
    session: Session,
    identity: Optional[Identity],
    project_id: str,
    *,
    resource: str = "Project",
    resource_id: Optional[str] = None,
) -> ProjectORM:
    """Load a project, reporting foreign projects the same way as missing ones.

    When the project is reached through a child record, pass that record as
    ``resource`` so the caller sees the child as missing rather than the project.
    """
    if identity is None:
        raise UnauthorizedError()
    project = session.get(ProjectORM, project_id)
    if project is None or resolve_project_role(identity, project) is None:
        raise NotFoundError(resource, resource_id or project_id)
    return project


def accessible_project_ids(session: Session, identity: Identity) -> list[str]:
    ids = set(identity.project_roles)
    if identity.company_id and identity.company_role in COMPANY_ADMIN_ROLES:
        ids.update(
            session.execute(select(ProjectORM.id).where(ProjectORM.company_id == identity.company_id)).scalars()
        )
    return sorted(ids)


# === Effective assignment =====================================================


def effective_assignments(lot: LotORM) -> FrozenSet[str]:
    """Subcontractor companies assigned to a lot: legacy field plus active rows."""
    companies = {
        assignment.subcontractor_company_id
        for assignment in lot.assignments
        if assignment.status == "active"
    }
    if lot.assigned_subcontractor_id:
        companies.add(lot.assigned_subcontractor_id)
    return frozenset(companies)


def active_assignment(lot: LotORM, subcontractor_company_id: str) -> Optional[LotSubcontractorAssignmentORM]:
    for assignment in lot.assignments:
        if assignment.subcontractor_company_id == subcontractor_company_id and assignment.status == "active":
            return assignment
    return None


def _assigned_lot_clause(subcontractor_company_id: str):
    return or_(
        LotORM.assigned_subcontractor_id == subcontractor_company_id,
        exists().where(
            and_(
                LotSubcontractorAssignmentORM.lot_id == LotORM.id,
                LotSubcontractorAssignmentORM.subcontractor_company_id == subcontractor_company_id,
                LotSubcontractorAssignmentORM.status == "active",
            )
        ),
    )


def _visible_lot_ids(scope: Scope):
    return select(LotORM.id).where(_assigned_lot_clause(scope.subcontractor_company_id))


def lot_filter(scope: Optional[Scope]):
    if scope is None:
        return None
    if scope.personal_only:
        return false()
    return _assigned_lot_clause(scope.subcontractor_company_id)


def ncr_filter(scope: Optional[Scope]):
    if scope is None:
        return None
    responsible = NCRORM.responsible_user_id == scope.user_id
    if scope.personal_only:
        return responsible
    linked = exists().where(
        and_(
            NCRLotORM.ncr_id == NCRORM.id,
            NCRLotORM.lot_id.in_(_visible_lot_ids(scope)),
        )
    )
    return or_(responsible, linked)


def docket_filter(scope: Optional[Scope]):
    if scope is None:
        return None
    if scope.personal_only:
        return DocketORM.created_by_id == scope.user_id
    return DocketORM.subcontractor_company_id == scope.subcontractor_company_id


def itp_instance_filter(scope: Optional[Scope]):
    if scope is None:
        return None
    if scope.personal_only:
        return false()
    return ITPInstanceORM.lot_id.in_(_visible_lot_ids(scope))


def hold_point_filter(scope: Optional[Scope]):
    if scope is None:
        return None
    if scope.personal_only:
        return false()
    return HoldPointORM.lot_id.in_(_visible_lot_ids(scope))


def apply_scope(statement, clause):
    if clause is None:
        return statement
    return statement.where(clause)


def can_see_lot(scope: Optional[Scope], lot: LotORM) -> bool:
    if scope is None:
        return True
    if scope.personal_only:
        return False
    return scope.subcontractor_company_id in effective_assignments(lot)


def can_see_ncr(scope: Optional[Scope], ncr: NCRORM, lots: Iterable[LotORM] = ()) -> bool:
    if scope is None:
        return True
    if ncr.responsible_user_id == scope.user_id:
        return True
    if scope.personal_only:
        return False
    return any(can_see_lot(scope, lot) for lot in lots)


def can_see_docket(scope: Optional[Scope], docket: DocketORM) -> bool:
    if scope is None:
        return True
    if scope.personal_only:
        return docket.created_by_id == scope.user_id
    return docket.subcontractor_company_id == scope.subcontractor_company_id


def load_lot(
    session: Session,
    identity: Optional[Identity],
    lot_id: str,
    entity: EntityType = "lot",
    action: str = "read",
) -> tuple[LotORM, AccessDecision]:
    """Load a lot the caller may act on; invisible lots look missing."""
    lot = session.get(LotORM, lot_id)
    if lot is None:
        raise NotFoundError("Lot", lot_id)
    project = load_project(session, identity, lot.project_id, resource="Lot", resource_id=lot_id)
    decision = require(identity, project, entity, action)
    if not can_see_lot(decision.scope, lot):
        raise NotFoundError("Lot", lot_id)
    return lot, decision
