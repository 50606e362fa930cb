from __future__ import annotations

import uuid
from datetime import datetime

from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class CompanyRole(str, PyEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class ProjectRole(str, PyEnum):
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


class LotStatus(str, PyEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    AWAITING_TEST = "awaiting_test"
    COMPLETED = "completed"
    CONFORMED = "conformed"


NCR_RAISED = "ncr_raised"


class NCRStatus(str, PyEnum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RECTIFICATION = "rectification"
    VERIFICATION = "verification"
    CLOSED = "closed"
    CLOSED_CONCESSION = "closed_concession"


CLOSED_NCR_STATUSES = (NCRStatus.CLOSED.value, NCRStatus.CLOSED_CONCESSION.value)


class HoldPointStatus(str, PyEnum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    REQUESTED = "requested"
    RELEASED = "released"


class DocketStatus(str, PyEnum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class CompanyORM(Base):
    __tablename__ = "companies"

    id = Column(String, primary_key=True, default=lambda: generate_id("co"))
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    users = relationship("UserORM", back_populates="company")
    projects = relationship("ProjectORM", back_populates="company")


class UserORM(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: generate_id("user"))
    email = Column(String, nullable=False, unique=True, index=True)
    full_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    company_id = Column(String, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True)
    role_in_company = Column(String, nullable=False, default=CompanyRole.MEMBER.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    company = relationship("CompanyORM", back_populates="users")
    project_memberships = relationship(
        "ProjectUserORM",
        back_populates="user",
        cascade="all, delete-orphan",
    )


class ProjectORM(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=lambda: generate_id("proj"))
    company_id = Column(String, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    project_number = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")  # active | completed | on_hold
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    company = relationship("CompanyORM", back_populates="projects")
    members = relationship(
        "ProjectUserORM",
        back_populates="project",
        cascade="all, delete-orphan",
    )


class ProjectUserORM(Base):
    __tablename__ = "project_users"
    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_project_user"),)

    id = Column(String, primary_key=True, default=lambda: generate_id("pu"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False, default=ProjectRole.VIEWER.value)
    status = Column(String, nullable=False, default="active")  # active | inactive
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    project = relationship("ProjectORM", back_populates="members")
    user = relationship("UserORM", back_populates="project_memberships")


class SubcontractorCompanyORM(Base):
    __tablename__ = "subcontractor_companies"

    id = Column(String, primary_key=True, default=lambda: generate_id("sub"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    company_name = Column(String, nullable=False)
    abn = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending_approval")  # pending_approval | approved | suspended | removed
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    users = relationship(
        "SubcontractorUserORM",
        back_populates="subcontractor_company",
        cascade="all, delete-orphan",
    )


class SubcontractorUserORM(Base):
    __tablename__ = "subcontractor_users"

    id = Column(String, primary_key=True, default=lambda: generate_id("subu"))
    subcontractor_company_id = Column(
        String, ForeignKey("subcontractor_companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False, default="member")  # admin | member
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    subcontractor_company = relationship("SubcontractorCompanyORM", back_populates="users")
    user = relationship("UserORM")


class LotORM(Base):
    __tablename__ = "lots"
    __table_args__ = (UniqueConstraint("project_id", "lot_number", name="uq_lot_number_per_project"),)

    id = Column(String, primary_key=True, default=lambda: generate_id("lot"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    lot_number = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    lot_type = Column(String, nullable=False, default="chainage")  # chainage | area | structure
    activity_type = Column(String, nullable=True)
    chainage_start = Column(Float, nullable=True)
    chainage_end = Column(Float, nullable=True)
    area_zone = Column(String, nullable=True)
    structure_id = Column(String, nullable=True)
    structure_element = Column(String, nullable=True)
    status = Column(String, nullable=False, default=LotStatus.NOT_STARTED.value)
    has_open_ncr = Column(Boolean, nullable=False, default=False)
    assigned_subcontractor_id = Column(
        String, ForeignKey("subcontractor_companies.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    conformed_at = Column(DateTime, nullable=True)
    conformed_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    assignments = relationship(
        "LotSubcontractorAssignmentORM",
        back_populates="lot",
        cascade="all, delete-orphan",
    )
    itp_instance = relationship("ITPInstanceORM", back_populates="lot", uselist=False, cascade="all, delete-orphan")
    hold_points = relationship("HoldPointORM", back_populates="lot", cascade="all, delete-orphan")

    @property
    def effective_status(self) -> str:
        if self.has_open_ncr:
            return NCR_RAISED
        return self.status


class LotSubcontractorAssignmentORM(Base):
    __tablename__ = "lot_subcontractor_assignments"
    __table_args__ = (
        UniqueConstraint("lot_id", "subcontractor_company_id", name="uq_lot_subcontractor"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("lsa"))
    lot_id = Column(String, ForeignKey("lots.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    subcontractor_company_id = Column(
        String, ForeignKey("subcontractor_companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    can_complete_itp = Column(Boolean, nullable=False, default=False)
    itp_requires_verification = Column(Boolean, nullable=False, default=True)
    status = Column(String, nullable=False, default="active")  # active | removed
    assigned_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lot = relationship("LotORM", back_populates="assignments")
    subcontractor_company = relationship("SubcontractorCompanyORM")


class NCRORM(Base):
    __tablename__ = "ncrs"
    __table_args__ = (
        UniqueConstraint("project_id", "ncr_number", name="uq_ncr_number_per_project"),
        UniqueConstraint("project_id", "sequence", name="uq_ncr_sequence_per_project"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("ncr"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    ncr_number = Column(String, nullable=False)
    sequence = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    specification_reference = Column(String, nullable=True)
    category = Column(String, nullable=False, default="workmanship")
    severity = Column(String, nullable=False, default="minor")  # minor | major
    status = Column(String, nullable=False, default=NCRStatus.OPEN.value)
    raised_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    raised_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    responsible_user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    due_date = Column(Date, nullable=True)
    qm_approval_required = Column(Boolean, nullable=False, default=False)
    qm_approved_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    qm_approved_at = Column(DateTime, nullable=True)
    qm_comments = Column(Text, nullable=True)
    client_notification_required = Column(Boolean, nullable=False, default=False)
    client_notified_at = Column(DateTime, nullable=True)
    root_cause_category = Column(String, nullable=True)
    root_cause_description = Column(Text, nullable=True)
    proposed_corrective_action = Column(Text, nullable=True)
    responded_at = Column(DateTime, nullable=True)
    revision_count = Column(Integer, nullable=False, default=0)
    rectification_notes = Column(Text, nullable=True)
    rectified_at = Column(DateTime, nullable=True)
    verified_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    verification_notes = Column(Text, nullable=True)
    closed_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    closed_at = Column(DateTime, nullable=True)
    concession_justification = Column(Text, nullable=True)
    concession_risk_assessment = Column(Text, nullable=True)
    lessons_learned = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    lot_links = relationship("NCRLotORM", back_populates="ncr", cascade="all, delete-orphan")

    @property
    def lot_ids(self) -> list[str]:
        return [link.lot_id for link in self.lot_links]

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_NCR_STATUSES


class NCRLotORM(Base):
    __tablename__ = "ncr_lots"

    ncr_id = Column(String, ForeignKey("ncrs.id", ondelete="CASCADE"), primary_key=True)
    lot_id = Column(String, ForeignKey("lots.id", ondelete="CASCADE"), primary_key=True, index=True)

    ncr = relationship("NCRORM", back_populates="lot_links")
    lot = relationship("LotORM")


class ITPTemplateORM(Base):
    __tablename__ = "itp_templates"

    id = Column(String, primary_key=True, default=lambda: generate_id("itpt"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    activity_type = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    checklist_items = relationship(
        "ITPChecklistItemORM",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="ITPChecklistItemORM.sequence",
    )


class ITPChecklistItemORM(Base):
    __tablename__ = "itp_checklist_items"

    id = Column(String, primary_key=True, default=lambda: generate_id("itpi"))
    template_id = Column(String, ForeignKey("itp_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)
    acceptance_criteria = Column(Text, nullable=True)
    point_type = Column(String, nullable=False, default="standard")  # standard | witness | hold_point
    responsible_party = Column(String, nullable=False, default="contractor")  # contractor | subcontractor | superintendent
    evidence_required = Column(String, nullable=True)  # none | photo | test | document
    test_type = Column(String, nullable=True)

    template = relationship("ITPTemplateORM", back_populates="checklist_items")

    @property
    def is_test_item(self) -> bool:
        return self.evidence_required == "test" or bool(self.test_type)


class ITPInstanceORM(Base):
    __tablename__ = "itp_instances"

    id = Column(String, primary_key=True, default=lambda: generate_id("itp"))
    lot_id = Column(String, ForeignKey("lots.id", ondelete="CASCADE"), nullable=False, unique=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id = Column(String, ForeignKey("itp_templates.id", ondelete="RESTRICT"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lot = relationship("LotORM", back_populates="itp_instance")
    template = relationship("ITPTemplateORM")
    completions = relationship("ITPCompletionORM", back_populates="instance", cascade="all, delete-orphan")


class ITPCompletionORM(Base):
    __tablename__ = "itp_completions"
    __table_args__ = (
        UniqueConstraint("itp_instance_id", "checklist_item_id", name="uq_itp_completion_item"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("itpc"))
    itp_instance_id = Column(String, ForeignKey("itp_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    checklist_item_id = Column(String, ForeignKey("itp_checklist_items.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | completed
    notes = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    requires_verification = Column(Boolean, nullable=False, default=False)
    verification_status = Column(String, nullable=False, default="none")  # none | verified
    verified_at = Column(DateTime, nullable=True)
    verified_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verification_notes = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    instance = relationship("ITPInstanceORM", back_populates="completions")
    checklist_item = relationship("ITPChecklistItemORM")

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def is_verified(self) -> bool:
        return self.verification_status == "verified"


class HoldPointORM(Base):
    __tablename__ = "hold_points"
    __table_args__ = (UniqueConstraint("lot_id", "checklist_item_id", name="uq_hold_point_item"),)

    id = Column(String, primary_key=True, default=lambda: generate_id("hp"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    lot_id = Column(String, ForeignKey("lots.id", ondelete="CASCADE"), nullable=False, index=True)
    checklist_item_id = Column(String, ForeignKey("itp_checklist_items.id", ondelete="CASCADE"), nullable=False)
    point_type = Column(String, nullable=False, default="hold_point")
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=HoldPointStatus.PENDING.value)
    requested_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notification_sent_at = Column(DateTime, nullable=True)
    scheduled_date = Column(Date, nullable=True)
    released_at = Column(DateTime, nullable=True)
    released_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    released_by_name = Column(String, nullable=True)
    released_by_org = Column(String, nullable=True)
    release_method = Column(String, nullable=True)  # digital | email | paper | verbal
    release_notes = Column(Text, nullable=True)
    chase_count = Column(Integer, nullable=False, default=0)
    last_chased_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lot = relationship("LotORM", back_populates="hold_points")
    checklist_item = relationship("ITPChecklistItemORM")


class DocketORM(Base):
    __tablename__ = "dockets"

    id = Column(String, primary_key=True, default=lambda: generate_id("dkt"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    subcontractor_company_id = Column(
        String, ForeignKey("subcontractor_companies.id", ondelete="CASCADE"), nullable=True, index=True
    )
    docket_number = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    status = Column(String, nullable=False, default=DocketStatus.DRAFT.value)
    notes = Column(Text, nullable=True)
    created_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    approved_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    foreman_notes = Column(Text, nullable=True)
    adjustment_reason = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    total_labour_submitted = Column(Float, nullable=False, default=0.0)
    total_labour_approved = Column(Float, nullable=True)
    total_plant_submitted = Column(Float, nullable=False, default=0.0)
    total_plant_approved = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    labour_entries = relationship("DocketLabourORM", back_populates="docket", cascade="all, delete-orphan")
    plant_entries = relationship("DocketPlantORM", back_populates="docket", cascade="all, delete-orphan")


class DocketLabourORM(Base):
    __tablename__ = "docket_labour"

    id = Column(String, primary_key=True, default=lambda: generate_id("dkl"))
    docket_id = Column(String, ForeignKey("dockets.id", ondelete="CASCADE"), nullable=False, index=True)
    worker_name = Column(String, nullable=False)
    role = Column(String, nullable=True)
    submitted_hours = Column(Float, nullable=False, default=0.0)
    approved_hours = Column(Float, nullable=True)
    hourly_rate = Column(Float, nullable=True)
    lot_id = Column(String, ForeignKey("lots.id", ondelete="SET NULL"), nullable=True, index=True)

    docket = relationship("DocketORM", back_populates="labour_entries")


class DocketPlantORM(Base):
    __tablename__ = "docket_plant"

    id = Column(String, primary_key=True, default=lambda: generate_id("dkp"))
    docket_id = Column(String, ForeignKey("dockets.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(String, nullable=False)
    submitted_hours = Column(Float, nullable=False, default=0.0)
    approved_hours = Column(Float, nullable=True)
    hourly_rate = Column(Float, nullable=True)
    lot_id = Column(String, ForeignKey("lots.id", ondelete="SET NULL"), nullable=True, index=True)

    docket = relationship("DocketORM", back_populates="plant_entries")


class DrawingORM(Base):
    __tablename__ = "drawings"
    # one current revision per drawing number
    __table_args__ = (
        Index(
            "uq_current_drawing_number",
            "project_id",
            "drawing_number",
            unique=True,
            sqlite_where=text("superseded_by_id IS NULL"),
            postgresql_where=text("superseded_by_id IS NULL"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("dwg"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    drawing_number = Column(String, nullable=False, index=True)
    title = Column(String, nullable=True)
    revision = Column(String, nullable=True)
    status = Column(String, nullable=False, default="preliminary")  # preliminary | for_construction | as_built
    issue_date = Column(Date, nullable=True)
    superseded_by_id = Column(String, ForeignKey("drawings.id", ondelete="SET NULL"), nullable=True)
    uploaded_by_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_current(self) -> bool:
        return self.superseded_by_id is None


class AuditLogORM(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String, nullable=True, index=True)
    actor_id = Column(String, nullable=True)
    action = Column(String, nullable=False)
    entity = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class NotificationEventORM(Base):
    __tablename__ = "notification_events"

    id = Column(String, primary_key=True, default=lambda: generate_id("ntf"))
    project_id = Column(String, nullable=True, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    link_url = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending | delivered | failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    delivered_at = Column(DateTime, nullable=True)
