from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .orm_models import ProjectRole

LotType = Literal["chainage", "area", "structure"]
Severity = Literal["minor", "major"]
PointType = Literal["standard", "witness", "hold_point"]
ResponsibleParty = Literal["contractor", "subcontractor", "superintendent"]
DrawingStatus = Literal["preliminary", "for_construction", "as_built"]
ReleaseMethod = Literal["digital", "email", "paper", "verbal"]
SubcontractorStatus = Literal["pending_approval", "approved", "suspended", "removed"]


def _strip_or_none(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# === Envelope ================================================================


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    totalPages: int
    hasNextPage: bool
    hasPrevPage: bool


class ErrorBody(BaseModel):
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


# === Auth ====================================================================


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class UserPublic(CamelModel):
    id: str
    email: str
    fullName: str
    companyId: Optional[str] = None
    roleInCompany: str
    projectRoles: Dict[str, str] = Field(default_factory=dict)
    subcontractorCompanyId: Optional[str] = None


class TokenResponse(CamelModel):
    accessToken: str
    tokenType: str = "bearer"
    user: UserPublic


# === Projects ================================================================


class ProjectCreate(CamelModel):
    name: str = Field(min_length=1)
    projectNumber: Optional[str] = None


class Project(CamelModel):
    id: str
    companyId: str
    name: str
    projectNumber: Optional[str] = None
    status: str
    role: Optional[str] = None


class ProjectUserCreate(CamelModel):
    userId: str
    role: ProjectRole


class ProjectMember(CamelModel):
    id: str
    projectId: str
    userId: str
    role: str
    status: str


class SubcontractorCompanyCreate(CamelModel):
    companyName: str = Field(min_length=1)
    abn: Optional[str] = None


class SubcontractorStatusUpdate(CamelModel):
    status: SubcontractorStatus


class SubcontractorCompany(CamelModel):
    id: str
    projectId: str
    companyName: str
    abn: Optional[str] = None
    status: str


class SubcontractorUserCreate(CamelModel):
    userId: str
    role: Literal["admin", "member"] = "member"


# === Lots ====================================================================


class LotCreate(CamelModel):
    projectId: str
    lotNumber: str = Field(min_length=1)
    description: Optional[str] = None
    lotType: LotType = "chainage"
    activityType: Optional[str] = None
    chainageStart: Optional[float] = None
    chainageEnd: Optional[float] = None
    areaZone: Optional[str] = None
    structureId: Optional[str] = None
    structureElement: Optional[str] = None
    itpTemplateId: Optional[str] = None
    assignedSubcontractorId: Optional[str] = None
    canCompleteITP: bool = False
    itpRequiresVerification: bool = True

    @field_validator("areaZone", "structureId", "assignedSubcontractorId", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        return _strip_or_none(value)


class LotUpdate(CamelModel):
    lotNumber: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    lotType: Optional[LotType] = None
    activityType: Optional[str] = None
    chainageStart: Optional[float] = None
    chainageEnd: Optional[float] = None
    areaZone: Optional[str] = None
    structureId: Optional[str] = None
    structureElement: Optional[str] = None
    assignedSubcontractorId: Optional[str] = None
    expectedUpdatedAt: Optional[datetime] = None

    @field_validator("areaZone", "structureId", "assignedSubcontractorId", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        return _strip_or_none(value)


class Lot(CamelModel):
    id: str
    projectId: str
    lotNumber: str
    description: Optional[str] = None
    lotType: str
    activityType: Optional[str] = None
    chainageStart: Optional[float] = None
    chainageEnd: Optional[float] = None
    areaZone: Optional[str] = None
    structureId: Optional[str] = None
    status: str
    progressStatus: str
    hasOpenNcr: bool
    assignedSubcontractorId: Optional[str] = None
    subcontractorIds: List[str] = Field(default_factory=list)
    createdAt: datetime
    updatedAt: datetime


class LotAssignmentCreate(CamelModel):
    subcontractorCompanyId: str
    canCompleteITP: bool = False
    itpRequiresVerification: bool = True


class LotAssignmentUpdate(CamelModel):
    canCompleteITP: Optional[bool] = None
    itpRequiresVerification: Optional[bool] = None


class LotAssignment(CamelModel):
    id: str
    lotId: str
    subcontractorCompanyId: str
    companyName: Optional[str] = None
    canCompleteITP: bool
    itpRequiresVerification: bool
    status: str
    assignedAt: datetime


# === NCRs ====================================================================


class NCRCreate(CamelModel):
    projectId: str
    description: str = Field(min_length=1)
    category: str = "workmanship"
    severity: Severity = "minor"
    specificationReference: Optional[str] = None
    responsibleUserId: Optional[str] = None
    dueDate: Optional[date] = None
    lotIds: List[str] = Field(default_factory=list)


class NCRUpdate(CamelModel):
    responsibleUserId: Optional[str] = None
    comments: Optional[str] = None
    dueDate: Optional[date] = None

    @model_validator(mode="after")
    def require_a_field(self) -> "NCRUpdate":
        if not self.model_fields_set:
            raise ValueError("Provide responsibleUserId, comments or dueDate")
        return self


class NCRRespond(CamelModel):
    rootCauseCategory: str = Field(min_length=1)
    rootCauseDescription: str = Field(min_length=1)
    proposedCorrectiveAction: str = Field(min_length=1)


class NCRQMReview(CamelModel):
    action: Literal["accept", "request_revision"]
    comments: Optional[str] = None


class NCRRectify(CamelModel):
    rectificationNotes: Optional[str] = None


class NCRRejectRectification(CamelModel):
    feedback: str = Field(min_length=1)


class NCRClose(CamelModel):
    verificationNotes: Optional[str] = None
    lessonsLearned: Optional[str] = None
    withConcession: bool = False
    concessionJustification: Optional[str] = None
    concessionRiskAssessment: Optional[str] = None


class NCRReopen(CamelModel):
    reason: Optional[str] = None


class NCR(CamelModel):
    id: str
    projectId: str
    ncrNumber: str
    description: str
    category: str
    severity: str
    status: str
    raisedById: Optional[str] = None
    responsibleUserId: Optional[str] = None
    dueDate: Optional[date] = None
    qmApprovalRequired: bool
    qmApprovedById: Optional[str] = None
    qmApprovedAt: Optional[datetime] = None
    qmComments: Optional[str] = None
    clientNotificationRequired: bool
    clientNotifiedAt: Optional[datetime] = None
    revisionCount: int
    lotIds: List[str] = Field(default_factory=list)
    raisedAt: datetime
    closedAt: Optional[datetime] = None


# === ITP =====================================================================


class ChecklistItemCreate(CamelModel):
    description: str = Field(min_length=1)
    sequence: Optional[int] = None
    pointType: PointType = "standard"
    responsibleParty: ResponsibleParty = "contractor"
    evidenceRequired: Optional[str] = None
    testType: Optional[str] = None
    acceptanceCriteria: Optional[str] = None


class ITPTemplateCreate(CamelModel):
    projectId: str
    name: str = Field(min_length=1)
    activityType: Optional[str] = None
    checklistItems: List[ChecklistItemCreate] = Field(min_length=1)


class ChecklistItem(CamelModel):
    id: str
    sequence: int
    description: str
    pointType: str
    responsibleParty: str
    evidenceRequired: Optional[str] = None
    testType: Optional[str] = None


class ITPTemplate(CamelModel):
    id: str
    projectId: str
    name: str
    activityType: Optional[str] = None
    checklistItems: List[ChecklistItem] = Field(default_factory=list)


class ITPInstanceCreate(CamelModel):
    lotId: str
    templateId: str


class ITPCompletionUpsert(CamelModel):
    itpInstanceId: str
    checklistItemId: str
    isCompleted: bool = True
    notes: Optional[str] = None


class ITPVerify(CamelModel):
    notes: Optional[str] = None


class ITPCompletion(CamelModel):
    id: str
    itpInstanceId: str
    checklistItemId: str
    status: str
    isCompleted: bool
    notes: Optional[str] = None
    completedAt: Optional[datetime] = None
    completedById: Optional[str] = None
    verificationStatus: str
    verifiedAt: Optional[datetime] = None
    verifiedById: Optional[str] = None


class ITPItemState(CamelModel):
    checklistItemId: str
    sequence: int
    description: str
    pointType: str
    satisfied: bool
    completion: Optional[ITPCompletion] = None


class ITPInstance(CamelModel):
    id: str
    lotId: str
    templateId: str
    items: List[ITPItemState] = Field(default_factory=list)


# === Hold points =============================================================


class HoldPointRequest(CamelModel):
    lotId: str
    checklistItemId: str
    scheduledDate: Optional[date] = None
    notes: Optional[str] = None


class HoldPointRelease(CamelModel):
    releasedByName: str = Field(min_length=1)
    releasedByOrg: Optional[str] = None
    releaseMethod: ReleaseMethod = "digital"
    releaseNotes: Optional[str] = None


class HoldPoint(CamelModel):
    id: str
    lotId: str
    checklistItemId: str
    description: Optional[str] = None
    status: str
    isStale: bool
    scheduledDate: Optional[date] = None
    createdAt: datetime
    releasedAt: Optional[datetime] = None
    releasedByName: Optional[str] = None
    releasedByOrg: Optional[str] = None
    releaseMethod: Optional[str] = None
    chaseCount: int
    lastChasedAt: Optional[datetime] = None


class HoldPointMetrics(CamelModel):
    total: int
    released: int
    outstanding: int
    stale: int
    averageHoursToRelease: Optional[float] = None


# === Dockets =================================================================


class LabourEntryCreate(CamelModel):
    workerName: str = Field(min_length=1)
    role: Optional[str] = None
    hours: float = Field(ge=0)
    hourlyRate: Optional[float] = Field(default=None, ge=0)
    lotId: Optional[str] = None


class PlantEntryCreate(CamelModel):
    description: str = Field(min_length=1)
    hours: float = Field(ge=0)
    hourlyRate: Optional[float] = Field(default=None, ge=0)
    lotId: Optional[str] = None


class DocketCreate(CamelModel):
    projectId: str
    subcontractorCompanyId: Optional[str] = None
    date: date
    notes: Optional[str] = None
    labour: List[LabourEntryCreate] = Field(default_factory=list)
    plant: List[PlantEntryCreate] = Field(default_factory=list)


class DocketApprove(CamelModel):
    adjustedLabourHours: Optional[float] = Field(default=None, ge=0)
    adjustedPlantHours: Optional[float] = Field(default=None, ge=0)
    adjustmentReason: Optional[str] = None
    foremanNotes: Optional[str] = None

    @field_validator("adjustmentReason", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        return _strip_or_none(value)


class DocketReject(CamelModel):
    reason: str = Field(min_length=1)


class Docket(CamelModel):
    id: str
    projectId: str
    subcontractorCompanyId: Optional[str] = None
    docketNumber: str
    date: date
    status: str
    notes: Optional[str] = None
    submittedAt: Optional[datetime] = None
    approvedAt: Optional[datetime] = None
    totalLabourSubmitted: float
    totalLabourApproved: Optional[float] = None
    totalPlantSubmitted: float
    totalPlantApproved: Optional[float] = None
    adjustmentReason: Optional[str] = None
    rejectionReason: Optional[str] = None
    foremanNotes: Optional[str] = None


# === Drawings ================================================================


class DrawingCreate(CamelModel):
    projectId: str
    drawingNumber: str = Field(min_length=1)
    title: Optional[str] = None
    revision: Optional[str] = None
    status: DrawingStatus = "preliminary"
    issueDate: Optional[date] = None


class DrawingSupersede(CamelModel):
    revision: str = Field(min_length=1)
    title: Optional[str] = None
    status: DrawingStatus = "for_construction"
    issueDate: Optional[date] = None


class Drawing(CamelModel):
    id: str
    projectId: str
    drawingNumber: str
    title: Optional[str] = None
    revision: Optional[str] = None
    status: str
    issueDate: Optional[date] = None
    supersededById: Optional[str] = None
    isCurrent: bool
    createdAt: datetime


# === Notifications ===========================================================


class Notification(CamelModel):
    id: str
    eventType: str
    title: str
    message: str
    linkUrl: Optional[str] = None
    status: str
    createdAt: datetime


class DispatchResult(CamelModel):
    delivered: int
    retrying: int
    failed: int
