from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..orm_models import (
    ProjectUserORM,
    SubcontractorCompanyORM,
    SubcontractorUserORM,
    UserORM,
)

logger = logging.getLogger(__name__)

INACTIVE_SUBCONTRACTOR_STATUSES = frozenset({"removed"})


@dataclass(frozen=True)
class Identity:
    """Membership context of one user, resolved once per request."""

    user_id: str
    email: str
    full_name: str
    company_id: Optional[str]
    company_role: str
    project_roles: Mapping[str, str] = field(default_factory=dict)
    subcontractor_company_id: Optional[str] = None
    subcontractor_role: Optional[str] = None
    subcontractor_project_id: Optional[str] = None

    def project_role(self, project_id: str) -> Optional[str]:
        return self.project_roles.get(project_id)

    def subcontractor_company_for(self, project_id: str) -> Optional[str]:
        # subcontractor companies are contracted per project
        if self.subcontractor_project_id == project_id:
            return self.subcontractor_company_id
        return None


def resolve_identity(session: Session, user_id: str) -> Identity:
    user = session.get(UserORM, user_id)
    if user is None:
        raise NotFoundError("User", user_id)

    memberships = session.execute(
        select(ProjectUserORM.project_id, ProjectUserORM.role).where(
            ProjectUserORM.user_id == user_id,
            ProjectUserORM.status == "active",
        )
    ).all()
    project_roles = {project_id: role for project_id, role in memberships}

    links = session.execute(
        select(SubcontractorUserORM, SubcontractorCompanyORM)
        .join(
            SubcontractorCompanyORM,
            SubcontractorCompanyORM.id == SubcontractorUserORM.subcontractor_company_id,
        )
        .where(
            SubcontractorUserORM.user_id == user_id,
            SubcontractorUserORM.is_active.is_(True),
            SubcontractorCompanyORM.status.notin_(INACTIVE_SUBCONTRACTOR_STATUSES),
        )
    ).all()

    subcontractor_company_id = None
    subcontractor_role = None
    subcontractor_project_id = None
    if len(links) == 1:
        link, company = links[0]
        subcontractor_company_id = company.id
        subcontractor_role = link.role
        subcontractor_project_id = company.project_id
    elif len(links) > 1:
        logger.warning(
            "User resolves to %d subcontractor companies; falling back to personal visibility",
            len(links),
            extra={"user_id": user_id},
        )

    return Identity(
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        company_id=user.company_id,
        company_role=user.role_in_company,
        project_roles=project_roles,
        subcontractor_company_id=subcontractor_company_id,
        subcontractor_role=subcontractor_role,
        subcontractor_project_id=subcontractor_project_id,
    )
