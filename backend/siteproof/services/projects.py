from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from ..permissions import COMPANY_ADMIN_ROLES, SUBCONTRACTOR_ROLES, has_minimum_role
from ..schemas import (
    Project,
    ProjectCreate,
    ProjectMember,
    ProjectUserCreate,
    SubcontractorCompany,
    SubcontractorCompanyCreate,
    SubcontractorUserCreate,
)
from .access import accessible_project_ids, load_project, require, resolve_project_role
from .identity import Identity
from .workflow import transition

logger = logging.getLogger(__name__)


def map_project(project: orm_models.ProjectORM, identity: Optional[Identity] = None) -> Project:
    return Project(
        id=project.id,
        companyId=project.company_id,
        name=project.name,
        projectNumber=project.project_number,
        status=project.status,
        role=resolve_project_role(identity, project) if identity else None,
    )


def map_member(member: orm_models.ProjectUserORM) -> ProjectMember:
    return ProjectMember(
        id=member.id,
        projectId=member.project_id,
        userId=member.user_id,
        role=member.role,
        status=member.status,
    )


def map_subcontractor(company: orm_models.SubcontractorCompanyORM) -> SubcontractorCompany:
    return SubcontractorCompany(
        id=company.id,
        projectId=company.project_id,
        companyName=company.company_name,
        abn=company.abn,
        status=company.status,
    )


def create_project(session: Session, identity: Identity, payload: ProjectCreate) -> orm_models.ProjectORM:
    if not identity.company_id or identity.company_role not in COMPANY_ADMIN_ROLES:
        raise ForbiddenError("Only company owners and admins can create projects")

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=None,
        entity="project",
        action="create",
    ) as tx:
        project = orm_models.ProjectORM(
            company_id=identity.company_id,
            name=payload.name,
            project_number=payload.projectNumber,
        )
        session.add(project)
        session.flush()
        tx.project_id = project.id
        tx.entity_id = project.id
        tx.record(name=project.name)
    logger.info("Project %s created", project.name, extra={"project_id": project.id, "user_id": identity.user_id})
    return project


def list_projects(session: Session, identity: Identity) -> List[orm_models.ProjectORM]:
    project_ids = accessible_project_ids(session, identity)
    if not project_ids:
        return []
    return (
        session.execute(
            select(orm_models.ProjectORM)
            .where(orm_models.ProjectORM.id.in_(project_ids))
            .order_by(orm_models.ProjectORM.name)
        )
        .scalars()
        .all()
    )


def can_assign_role(actor_role: str, target_role: str) -> bool:
    if target_role == "owner" and actor_role != "owner":
        return False
    return has_minimum_role(actor_role, target_role)


def add_project_user(
    session: Session,
    identity: Identity,
    project_id: str,
    payload: ProjectUserCreate,
) -> orm_models.ProjectUserORM:
    project = load_project(session, identity, project_id)
    decision = require(identity, project, "project", "manage_members")
    target_role = payload.role.value
    if not can_assign_role(decision.role, target_role):
        raise ForbiddenError("You cannot grant a role above your own")

    user = session.get(orm_models.UserORM, payload.userId)
    if user is None:
        raise NotFoundError("User", payload.userId)

    existing = session.execute(
        select(orm_models.ProjectUserORM).where(
            orm_models.ProjectUserORM.project_id == project.id,
            orm_models.ProjectUserORM.user_id == user.id,
        )
    ).scalar_one_or_none()

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=project.id,
        entity="project_user",
        action="upsert",
    ) as tx:
        if existing is None:
            existing = orm_models.ProjectUserORM(project_id=project.id, user_id=user.id, role=target_role)
            session.add(existing)
        else:
            existing.role = target_role
            existing.status = "active"
        session.flush()
        tx.entity_id = existing.id
        tx.record(userId=user.id, role=target_role)
    return existing


def _load_subcontractor(
    session: Session, project: orm_models.ProjectORM, subcontractor_company_id: str
) -> orm_models.SubcontractorCompanyORM:
    company = session.get(orm_models.SubcontractorCompanyORM, subcontractor_company_id)
    if company is None or company.project_id != project.id:
        raise NotFoundError("Subcontractor", subcontractor_company_id)
    return company


def list_subcontractors(session: Session, identity: Identity, project_id: str) -> List[orm_models.SubcontractorCompanyORM]:
    project = load_project(session, identity, project_id)
    require(identity, project, "project", "read")
    return (
        session.execute(
            select(orm_models.SubcontractorCompanyORM)
            .where(orm_models.SubcontractorCompanyORM.project_id == project.id)
            .order_by(orm_models.SubcontractorCompanyORM.company_name)
        )
        .scalars()
        .all()
    )


def add_subcontractor(
    session: Session,
    identity: Identity,
    project_id: str,
    payload: SubcontractorCompanyCreate,
) -> orm_models.SubcontractorCompanyORM:
    project = load_project(session, identity, project_id)
    require(identity, project, "project", "manage_subcontractors")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=project.id,
        entity="subcontractor",
        action="create",
    ) as tx:
        company = orm_models.SubcontractorCompanyORM(
            project_id=project.id,
            company_name=payload.companyName,
            abn=payload.abn,
        )
        session.add(company)
        session.flush()
        tx.entity_id = company.id
        tx.record(companyName=company.company_name)
    return company


def set_subcontractor_status(
    session: Session,
    identity: Identity,
    project_id: str,
    subcontractor_company_id: str,
    status: str,
) -> orm_models.SubcontractorCompanyORM:
    project = load_project(session, identity, project_id)
    require(identity, project, "project", "manage_subcontractors")
    company = _load_subcontractor(session, project, subcontractor_company_id)
    if company.status == "removed":
        raise ValidationFailed("Subcontractor has been removed from the project", field="status")
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=project.id,
        entity="subcontractor",
        action="status",
        entity_id=company.id,
    ) as tx:
        tx.record(previous=company.status, status=status)
        company.status = status
    return company


def add_subcontractor_user(
    session: Session,
    identity: Identity,
    project_id: str,
    subcontractor_company_id: str,
    payload: SubcontractorUserCreate,
) -> orm_models.SubcontractorUserORM:
    project = load_project(session, identity, project_id)
    require(identity, project, "project", "manage_subcontractors")
    company = _load_subcontractor(session, project, subcontractor_company_id)
    user = session.get(orm_models.UserORM, payload.userId)
    if user is None:
        raise NotFoundError("User", payload.userId)

    other_links = session.execute(
        select(orm_models.SubcontractorUserORM).where(
            orm_models.SubcontractorUserORM.user_id == user.id,
            orm_models.SubcontractorUserORM.is_active.is_(True),
        )
    ).scalars().all()
    if any(link.subcontractor_company_id != company.id for link in other_links):
        raise ConflictError(
            "User already belongs to another subcontractor company",
            "SUBCONTRACTOR_USER_EXISTS",
            field="userId",
        )
    if other_links:
        return other_links[0]

    project_role = "subcontractor_admin" if payload.role == "admin" else "subcontractor"
    membership = session.execute(
        select(orm_models.ProjectUserORM).where(
            orm_models.ProjectUserORM.project_id == project.id,
            orm_models.ProjectUserORM.user_id == user.id,
        )
    ).scalar_one_or_none()
    if membership is not None and membership.role not in SUBCONTRACTOR_ROLES:
        raise ConflictError(
            "User already holds a head-contractor role on this project",
            "ROLE_CONFLICT",
            field="userId",
        )

    with transition(
        session,
        actor_id=identity.user_id,
        project_id=project.id,
        entity="subcontractor_user",
        action="create",
    ) as tx:
        link = orm_models.SubcontractorUserORM(
            subcontractor_company_id=company.id,
            user_id=user.id,
            role=payload.role,
        )
        session.add(link)
        if membership is None:
            session.add(orm_models.ProjectUserORM(project_id=project.id, user_id=user.id, role=project_role))
        else:
            membership.role = project_role
            membership.status = "active"
        session.flush()
        tx.entity_id = link.id
        tx.record(userId=user.id, subcontractorCompanyId=company.id)
    return link
