from __future__ import annotations

from typing import Dict, FrozenSet, Literal

EntityType = Literal[
    "project",
    "lot",
    "lot_assignment",
    "ncr",
    "itp",
    "hold_point",
    "docket",
    "drawing",
    "notification",
]

OWNER = "owner"
ADMIN = "admin"
PROJECT_MANAGER = "project_manager"
QUALITY_MANAGER = "quality_manager"
SITE_MANAGER = "site_manager"
FOREMAN = "foreman"
SITE_ENGINEER = "site_engineer"
SUBCONTRACTOR_ADMIN = "subcontractor_admin"
SUBCONTRACTOR = "subcontractor"
VIEWER = "viewer"

ROLE_HIERARCHY: Dict[str, int] = {
    OWNER: 100,
    ADMIN: 90,
    PROJECT_MANAGER: 80,
    QUALITY_MANAGER: 75,
    SITE_MANAGER: 70,
    FOREMAN: 60,
    SITE_ENGINEER: 50,
    SUBCONTRACTOR_ADMIN: 40,
    SUBCONTRACTOR: 30,
    VIEWER: 20,
}

COMPANY_ADMIN_ROLES: FrozenSet[str] = frozenset({OWNER, ADMIN})
COMMERCIAL: FrozenSet[str] = frozenset({OWNER, ADMIN, PROJECT_MANAGER})
MANAGEMENT: FrozenSet[str] = COMMERCIAL | {SITE_MANAGER}
QUALITY: FrozenSet[str] = COMMERCIAL | {QUALITY_MANAGER}
FIELD: FrozenSet[str] = MANAGEMENT | {SITE_ENGINEER, FOREMAN}
HEAD_CONTRACTOR: FrozenSet[str] = FIELD | {QUALITY_MANAGER}
SUBCONTRACTOR_ROLES: FrozenSet[str] = frozenset({SUBCONTRACTOR_ADMIN, SUBCONTRACTOR})
ALL_MEMBERS: FrozenSet[str] = HEAD_CONTRACTOR | SUBCONTRACTOR_ROLES | {VIEWER}

LOT_CREATORS: FrozenSet[str] = frozenset({OWNER, ADMIN, PROJECT_MANAGER, SITE_MANAGER, FOREMAN})
LOT_EDITORS: FrozenSet[str] = frozenset({OWNER, ADMIN, PROJECT_MANAGER, SITE_ENGINEER, QUALITY_MANAGER, FOREMAN})
LOT_DELETERS: FrozenSet[str] = QUALITY
DOCKET_APPROVERS: FrozenSet[str] = frozenset({OWNER, ADMIN, PROJECT_MANAGER, SITE_MANAGER, FOREMAN})
DRAWING_EDITORS: FrozenSet[str] = frozenset(
    {OWNER, ADMIN, PROJECT_MANAGER, SITE_MANAGER, QUALITY_MANAGER, SITE_ENGINEER}
)
HOLD_POINT_RELEASERS: FrozenSet[str] = frozenset(
    {OWNER, ADMIN, PROJECT_MANAGER, QUALITY_MANAGER, SITE_MANAGER, SITE_ENGINEER}
)
NCR_QM_ROLES: FrozenSet[str] = QUALITY

# Reads of these entities by a subcontractor role are narrowed to assigned records.
SUBCONTRACTOR_SCOPED_ENTITIES: FrozenSet[str] = frozenset({"lot", "ncr", "docket", "itp", "hold_point"})

# entity -> action -> roles allowed. Anything missing here is denied.
PERMISSION_MATRIX: Dict[str, Dict[str, FrozenSet[str]]] = {
    "project": {
        "read": ALL_MEMBERS,
        "update": COMMERCIAL,
        "manage_members": COMMERCIAL,
        "manage_subcontractors": MANAGEMENT,
    },
    "lot": {
        "read": ALL_MEMBERS,
        "create": LOT_CREATORS,
        "update": LOT_EDITORS,
        "delete": LOT_DELETERS,
        "conform": QUALITY,
    },
    "lot_assignment": {
        "read": HEAD_CONTRACTOR,
        "assign": MANAGEMENT,
    },
    "ncr": {
        "read": ALL_MEMBERS,
        "create": ALL_MEMBERS,
        "update": HEAD_CONTRACTOR,
        "respond": HEAD_CONTRACTOR | SUBCONTRACTOR_ROLES,
        "qm_review": NCR_QM_ROLES,
        "rectify": HEAD_CONTRACTOR | SUBCONTRACTOR_ROLES,
        "reject_rectification": NCR_QM_ROLES | {SITE_MANAGER},
        "qm_approve": NCR_QM_ROLES,
        "close": NCR_QM_ROLES | {SITE_MANAGER},
        "notify_client": NCR_QM_ROLES,
        "reopen": NCR_QM_ROLES,
    },
    "itp": {
        "read": ALL_MEMBERS,
        "manage_templates": QUALITY | {SITE_ENGINEER},
        "instantiate": HEAD_CONTRACTOR,
        "complete": HEAD_CONTRACTOR | SUBCONTRACTOR_ROLES,
        "verify": HEAD_CONTRACTOR,
        "unverify": HEAD_CONTRACTOR,
    },
    "hold_point": {
        "read": ALL_MEMBERS,
        "request": HEAD_CONTRACTOR | SUBCONTRACTOR_ROLES,
        "release": HOLD_POINT_RELEASERS,
        "chase": HEAD_CONTRACTOR,
    },
    "docket": {
        "read": ALL_MEMBERS,
        "create": FIELD | SUBCONTRACTOR_ROLES,
        "submit": FIELD | SUBCONTRACTOR_ROLES,
        "approve": DOCKET_APPROVERS,
        "reject": DOCKET_APPROVERS,
        "delete": FIELD | SUBCONTRACTOR_ROLES,
    },
    "drawing": {
        "read": ALL_MEMBERS,
        "create": DRAWING_EDITORS,
        "supersede": DRAWING_EDITORS,
        "delete": DRAWING_EDITORS,
    },
    "notification": {
        "dispatch": COMPANY_ADMIN_ROLES,
    },
}


def allowed_roles(entity: str, action: str) -> FrozenSet[str]:
    return PERMISSION_MATRIX.get(entity, {}).get(action, frozenset())


def is_allowed(role: str | None, entity: str, action: str) -> bool:
    if not role:
        return False
    return role in allowed_roles(entity, action)


def is_subcontractor_role(role: str | None) -> bool:
    return role in SUBCONTRACTOR_ROLES


def has_minimum_role(role: str | None, minimum: str) -> bool:
    return ROLE_HIERARCHY.get(role or "", 0) >= ROLE_HIERARCHY[minimum]


__all__ = [
    "PERMISSION_MATRIX",
    "ROLE_HIERARCHY",
    "COMPANY_ADMIN_ROLES",
    "HEAD_CONTRACTOR",
    "SUBCONTRACTOR_ROLES",
    "SUBCONTRACTOR_SCOPED_ENTITIES",
    "DOCKET_APPROVERS",
    "allowed_roles",
    "is_allowed",
    "is_subcontractor_role",
    "has_minimum_role",
]
