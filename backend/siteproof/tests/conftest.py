from __future__ import annotations

from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from siteproof.database import Base, ProjectSession, create_db_engine
from siteproof.orm_models import (
    CompanyORM,
    ITPChecklistItemORM,
    ITPTemplateORM,
    LotORM,
    LotSubcontractorAssignmentORM,
    ProjectORM,
    ProjectUserORM,
    SubcontractorCompanyORM,
    SubcontractorUserORM,
    UserORM,
)
from siteproof.project_scoping import setup_project_events
from siteproof.services.identity import resolve_identity


def make_session_factory(url: str = "sqlite:///:memory:", **kwargs):
    engine = create_db_engine(url)
    TestingSession = type("TestingSession", (ProjectSession,), {})
    setup_project_events(TestingSession)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        future=True,
        class_=TestingSession,
        **kwargs,
    )


@pytest.fixture()
def session():
    factory = make_session_factory()
    with factory() as session:
        yield session


def _make_user(session, key: str, company: CompanyORM | None, *, role_in_company: str = "member") -> UserORM:
    user = UserORM(
        id=f"user-{key}",
        email=f"{key.replace('_', '.')}@example.com",
        full_name=key.replace("_", " ").title(),
        password_hash="stub",
        company_id=company.id if company is not None else None,
        role_in_company=role_in_company,
    )
    session.add(user)
    return user


@pytest.fixture()
def ctx(session):
    """One head-contractor project with a member for every role and two approved subcontractors."""
    company = CompanyORM(id="co-head", name="Head Contractor Pty Ltd")
    other_company = CompanyORM(id="co-other", name="Other Builders")
    session.add_all([company, other_company])

    project = ProjectORM(id="proj-1", company_id=company.id, name="Highway Upgrade", project_number="HU-01")
    other_project = ProjectORM(id="proj-2", company_id=other_company.id, name="Rail Siding")
    session.add_all([project, other_project])

    owner = _make_user(session, "owner", company, role_in_company="owner")
    staff = {}
    for role in ("project_manager", "quality_manager", "site_manager", "foreman", "site_engineer", "viewer"):
        staff[role] = _make_user(session, role, company)
        session.add(ProjectUserORM(project_id=project.id, user_id=staff[role].id, role=role))

    outsider = _make_user(session, "outsider", other_company)
    session.add(ProjectUserORM(project_id=other_project.id, user_id=outsider.id, role="project_manager"))

    sub_a = SubcontractorCompanyORM(id="sub-a", project_id=project.id, company_name="Alpha Earthworks", status="approved")
    sub_b = SubcontractorCompanyORM(id="sub-b", project_id=project.id, company_name="Bravo Concrete", status="approved")
    sub_pending = SubcontractorCompanyORM(
        id="sub-pending", project_id=project.id, company_name="Pending Paving", status="pending_approval"
    )
    session.add_all([sub_a, sub_b, sub_pending])

    subcontractor_users = {}
    for key, company_row, link_role, project_role in (
        ("sub_a_admin", sub_a, "admin", "subcontractor_admin"),
        ("sub_a_user", sub_a, "member", "subcontractor"),
        ("sub_b_user", sub_b, "member", "subcontractor"),
    ):
        user = _make_user(session, key, None)
        session.add(SubcontractorUserORM(subcontractor_company_id=company_row.id, user_id=user.id, role=link_role))
        session.add(ProjectUserORM(project_id=project.id, user_id=user.id, role=project_role))
        subcontractor_users[key] = user
    session.flush()

    return SimpleNamespace(
        company=company,
        project=project,
        other_project=other_project,
        owner=owner,
        pm=staff["project_manager"],
        qm=staff["quality_manager"],
        sm=staff["site_manager"],
        foreman=staff["foreman"],
        engineer=staff["site_engineer"],
        viewer=staff["viewer"],
        outsider=outsider,
        sub_a=sub_a,
        sub_b=sub_b,
        sub_pending=sub_pending,
        sub_a_admin=subcontractor_users["sub_a_admin"],
        sub_a_user=subcontractor_users["sub_a_user"],
        sub_b_user=subcontractor_users["sub_b_user"],
    )


@pytest.fixture()
def identity(session):
    def _resolve(user: UserORM):
        return resolve_identity(session, user.id)

    return _resolve


@pytest.fixture()
def make_lot(session, ctx):
    def _make(
        lot_number: str,
        *,
        project: ProjectORM | None = None,
        subcontractor: SubcontractorCompanyORM | None = None,
        legacy: bool = False,
        status: str = "not_started",
        can_complete_itp: bool = False,
        itp_requires_verification: bool = True,
    ) -> LotORM:
        project = project or ctx.project
        lot = LotORM(
            project_id=project.id,
            lot_number=lot_number,
            lot_type="chainage",
            status=status,
            has_open_ncr=False,
        )
        if subcontractor is not None and legacy:
            lot.assigned_subcontractor_id = subcontractor.id
        elif subcontractor is not None:
            lot.assignments.append(
                LotSubcontractorAssignmentORM(
                    project_id=project.id,
                    subcontractor_company_id=subcontractor.id,
                    can_complete_itp=can_complete_itp,
                    itp_requires_verification=itp_requires_verification,
                    status="active",
                )
            )
        session.add(lot)
        session.flush()
        return lot

    return _make


@pytest.fixture()
def make_template(session, ctx):
    def _make(*items, name: str = "Concrete pour", project: ProjectORM | None = None) -> ITPTemplateORM:
        """``items`` are (description, point_type) or (description, point_type, evidence_required)."""
        template = ITPTemplateORM(project_id=(project or ctx.project).id, name=name)
        for sequence, item in enumerate(items, start=1):
            description, point_type, *rest = item
            template.checklist_items.append(
                ITPChecklistItemORM(
                    sequence=sequence,
                    description=description,
                    point_type=point_type,
                    evidence_required=rest[0] if rest else None,
                )
            )
        session.add(template)
        session.flush()
        return template

    return _make
