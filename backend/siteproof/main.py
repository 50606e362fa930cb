from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__, orm_models
from .config import settings
from .database import get_session, init_db
from .errors import ForbiddenError, InternalError, ServiceError, UnauthorizedError
from .logging_config import configure_logging
from .pagination import DEFAULT_LIMIT, page_params
from .permissions import is_allowed
from .project_scoping import set_project_scope
from .schemas import (
    DispatchResult,
    DocketApprove,
    DocketCreate,
    DocketReject,
    DrawingCreate,
    DrawingSupersede,
    HoldPointRelease,
    HoldPointRequest,
    ITPCompletionUpsert,
    ITPInstanceCreate,
    ITPTemplateCreate,
    ITPVerify,
    LoginRequest,
    LotAssignmentCreate,
    LotAssignmentUpdate,
    LotCreate,
    LotUpdate,
    NCRClose,
    NCRCreate,
    NCRQMReview,
    NCRRectify,
    NCRRejectRectification,
    NCRReopen,
    NCRRespond,
    NCRUpdate,
    Notification,
    Pagination,
    ProjectCreate,
    ProjectUserCreate,
    SubcontractorCompanyCreate,
    SubcontractorStatusUpdate,
    SubcontractorUserCreate,
    TokenResponse,
    UserPublic,
)
from .services import dockets, drawings, hold_points, itp, lots, ncrs, projects
from .services.access import accessible_project_ids
from .services.auth import authenticate_user, create_access_token, decode_access_token
from .services.identity import Identity, resolve_identity
from .services.notifications import default_deliverer, dispatch_pending_notifications, list_user_notifications

logger = logging.getLogger(__name__)

app = FastAPI(title="SiteProof QMS Backend", version=__version__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@app.on_event("startup")
def startup_event() -> None:  # pragma: no cover - side effect
    configure_logging()
    init_db()


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# === Envelope & errors ========================================================


def ok(data: Any = None, pagination: Optional[Pagination] = None) -> dict:
    body: dict[str, Any] = {"success": True, "data": jsonable_encoder(data)}
    if pagination is not None:
        body["pagination"] = pagination.model_dump()
    return body


def _error_response(status_code: int, message: str, code: str, details: Optional[dict] = None) -> JSONResponse:
    error: dict[str, Any] = {"message": message, "code": code}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": jsonable_encoder(error)})


@app.exception_handler(ServiceError)
def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, extra={"error_code": exc.code})
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        if location:
            fields.append(".".join(location))
    message = exc.errors()[0].get("msg", "Invalid request") if exc.errors() else "Invalid request"
    details: dict[str, Any] = {"fields": fields}
    if fields:
        details["field"] = fields[0]
    return _error_response(status.HTTP_400_BAD_REQUEST, message, "VALIDATION_ERROR", details)


@app.exception_handler(StarletteHTTPException)
def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    codes = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return _error_response(exc.status_code, str(exc.detail), codes.get(exc.status_code, "HTTP_ERROR"))


@app.exception_handler(IntegrityError)
def handle_integrity_error(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return _error_response(status.HTTP_409_CONFLICT, "The record conflicts with existing data", "CONFLICT")


@app.exception_handler(OperationalError)
def handle_operational_error(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return handle_service_error(request, InternalError("Database unavailable, please retry"))


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return handle_service_error(request, InternalError())


# === Identity =================================================================


def get_identity(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> Identity:
    payload = decode_access_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token", "INVALID_TOKEN")
    user = session.get(orm_models.UserORM, user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError("User is not available", "USER_INACTIVE")
    identity = resolve_identity(session, user.id)
    set_project_scope(session, accessible_project_ids(session, identity))
    return identity


def serialize_identity(identity: Identity) -> UserPublic:
    return UserPublic(
        id=identity.user_id,
        email=identity.email,
        fullName=identity.full_name,
        companyId=identity.company_id,
        roleInCompany=identity.company_role,
        projectRoles=dict(identity.project_roles),
        subcontractorCompanyId=identity.subcontractor_company_id,
    )


def pagination_query(
    page: int = Query(default=1),
    limit: int = Query(default=DEFAULT_LIMIT),
    sort_by: Optional[str] = Query(default=None, alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder"),
):
    return page_params(page, limit, sort_by, sort_order)


# === System & auth ============================================================


@app.get("/health", tags=["system"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/auth/login", tags=["auth"])
def api_login(payload: LoginRequest, session: Session = Depends(get_session)) -> dict:
    user = authenticate_user(session, payload.email, payload.password)
    if not user:
        raise UnauthorizedError("Invalid email or password", "INVALID_CREDENTIALS")
    identity = resolve_identity(session, user.id)
    return ok(TokenResponse(accessToken=create_access_token(user.id), user=serialize_identity(identity)))


@app.get("/auth/me", tags=["auth"])
def api_me(identity: Identity = Depends(get_identity)) -> dict:
    return ok(serialize_identity(identity))


# === Projects =================================================================


@app.get("/projects", tags=["projects"])
def api_list_projects(
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok([projects.map_project(project, identity) for project in projects.list_projects(session, identity)])


@app.post("/projects", status_code=201, tags=["projects"])
def api_create_project(
    payload: ProjectCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    project = projects.create_project(session, identity, payload)
    return ok(projects.map_project(project))


@app.post("/projects/{project_id}/users", status_code=201, tags=["projects"])
def api_add_project_user(
    project_id: str,
    payload: ProjectUserCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(projects.map_member(projects.add_project_user(session, identity, project_id, payload)))


@app.get("/projects/{project_id}/subcontractors", tags=["projects"])
def api_list_subcontractors(
    project_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok([projects.map_subcontractor(item) for item in projects.list_subcontractors(session, identity, project_id)])


@app.post("/projects/{project_id}/subcontractors", status_code=201, tags=["projects"])
def api_add_subcontractor(
    project_id: str,
    payload: SubcontractorCompanyCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(projects.map_subcontractor(projects.add_subcontractor(session, identity, project_id, payload)))


@app.patch("/projects/{project_id}/subcontractors/{subcontractor_id}", tags=["projects"])
def api_set_subcontractor_status(
    project_id: str,
    subcontractor_id: str,
    payload: SubcontractorStatusUpdate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    company = projects.set_subcontractor_status(session, identity, project_id, subcontractor_id, payload.status)
    return ok(projects.map_subcontractor(company))


@app.post("/projects/{project_id}/subcontractors/{subcontractor_id}/users", status_code=201, tags=["projects"])
def api_add_subcontractor_user(
    project_id: str,
    subcontractor_id: str,
    payload: SubcontractorUserCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    link = projects.add_subcontractor_user(session, identity, project_id, subcontractor_id, payload)
    return ok({"id": link.id, "subcontractorCompanyId": link.subcontractor_company_id, "userId": link.user_id, "role": link.role})


# === Lots =====================================================================


@app.get("/lots", tags=["lots"])
def api_list_lots(
    project_id: str = Query(alias="projectId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    search: Optional[str] = Query(default=None),
    params=Depends(pagination_query),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    items, meta = lots.list_lots(session, identity, project_id, params, status=status_filter, search=search)
    return ok([lots.map_lot(lot) for lot in items], meta)


@app.post("/lots", status_code=201, tags=["lots"])
def api_create_lot(
    payload: LotCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(lots.map_lot(lots.create_lot(session, identity, payload)))


@app.get("/lots/{lot_id}", tags=["lots"])
def api_get_lot(
    lot_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(lots.map_lot(lots.get_lot(session, identity, lot_id)))


@app.patch("/lots/{lot_id}", tags=["lots"])
def api_update_lot(
    lot_id: str,
    payload: LotUpdate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(lots.map_lot(lots.update_lot(session, identity, lot_id, payload)))


@app.delete("/lots/{lot_id}", tags=["lots"])
def api_delete_lot(
    lot_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    lots.delete_lot(session, identity, lot_id)
    return ok({"id": lot_id})


@app.post("/lots/{lot_id}/conform", tags=["lots"])
def api_conform_lot(
    lot_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(lots.map_lot(lots.conform_lot(session, identity, lot_id)))


@app.get("/lots/{lot_id}/subcontractors", tags=["lots"])
def api_list_lot_assignments(
    lot_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok([lots.map_assignment(item) for item in lots.list_assignments(session, identity, lot_id)])


@app.post("/lots/{lot_id}/subcontractors", status_code=201, tags=["lots"])
def api_assign_subcontractor(
    lot_id: str,
    payload: LotAssignmentCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(lots.map_assignment(lots.assign_subcontractor(session, identity, lot_id, payload)))


@app.patch("/lots/{lot_id}/subcontractors/{assignment_id}", tags=["lots"])
def api_update_assignment(
    lot_id: str,
    assignment_id: str,
    payload: LotAssignmentUpdate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(lots.map_assignment(lots.update_assignment(session, identity, lot_id, assignment_id, payload)))


@app.delete("/lots/{lot_id}/subcontractors/{assignment_id}", tags=["lots"])
def api_remove_assignment(
    lot_id: str,
    assignment_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    lots.remove_assignment(session, identity, lot_id, assignment_id)
    return ok({"id": assignment_id})


# === NCRs =====================================================================


@app.get("/ncrs", tags=["ncrs"])
def api_list_ncrs(
    project_id: str = Query(alias="projectId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    severity: Optional[str] = Query(default=None),
    lot_id: Optional[str] = Query(default=None, alias="lotId"),
    params=Depends(pagination_query),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    items, meta = ncrs.list_ncrs(
        session, identity, project_id, params, status=status_filter, severity=severity, lot_id=lot_id
    )
    return ok([ncrs.map_ncr(ncr) for ncr in items], meta)


@app.post("/ncrs", status_code=201, tags=["ncrs"])
def api_create_ncr(
    payload: NCRCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.create_ncr(session, identity, payload)))


@app.get("/ncrs/{ncr_id}", tags=["ncrs"])
def api_get_ncr(
    ncr_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.get_ncr(session, identity, ncr_id)))


@app.patch("/ncrs/{ncr_id}", tags=["ncrs"])
def api_update_ncr(
    ncr_id: str,
    payload: NCRUpdate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.update_ncr(session, identity, ncr_id, payload)))


@app.post("/ncrs/{ncr_id}/respond", tags=["ncrs"])
def api_respond_ncr(
    ncr_id: str,
    payload: NCRRespond,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.respond(session, identity, ncr_id, payload)))


@app.post("/ncrs/{ncr_id}/qm-review", tags=["ncrs"])
def api_qm_review_ncr(
    ncr_id: str,
    payload: NCRQMReview,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.qm_review(session, identity, ncr_id, payload)))


@app.post("/ncrs/{ncr_id}/rectify", tags=["ncrs"])
def api_rectify_ncr(
    ncr_id: str,
    payload: NCRRectify,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.rectify(session, identity, ncr_id, payload)))


@app.post("/ncrs/{ncr_id}/reject-rectification", tags=["ncrs"])
def api_reject_rectification(
    ncr_id: str,
    payload: NCRRejectRectification,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.reject_rectification(session, identity, ncr_id, payload)))


@app.post("/ncrs/{ncr_id}/qm-approve", tags=["ncrs"])
def api_qm_approve_ncr(
    ncr_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.qm_approve(session, identity, ncr_id)))


@app.post("/ncrs/{ncr_id}/close", tags=["ncrs"])
def api_close_ncr(
    ncr_id: str,
    payload: NCRClose,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.close_ncr(session, identity, ncr_id, payload)))


@app.post("/ncrs/{ncr_id}/notify-client", tags=["ncrs"])
def api_notify_client(
    ncr_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.notify_client(session, identity, ncr_id)))


@app.post("/ncrs/{ncr_id}/reopen", tags=["ncrs"])
def api_reopen_ncr(
    ncr_id: str,
    payload: NCRReopen,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(ncrs.map_ncr(ncrs.reopen_ncr(session, identity, ncr_id, payload)))


# === ITP ======================================================================


@app.get("/itp/templates", tags=["itp"])
def api_list_itp_templates(
    project_id: str = Query(alias="projectId"),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok([itp.map_template(template) for template in itp.list_templates(session, identity, project_id)])


@app.post("/itp/templates", status_code=201, tags=["itp"])
def api_create_itp_template(
    payload: ITPTemplateCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(itp.map_template(itp.create_template(session, identity, payload)))


@app.post("/itp/instances", status_code=201, tags=["itp"])
def api_instantiate_itp(
    payload: ITPInstanceCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(itp.map_instance(itp.instantiate_itp(session, identity, payload)))


@app.get("/itp/instances/lot/{lot_id}", tags=["itp"])
def api_get_lot_itp(
    lot_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(itp.map_instance(itp.get_lot_instance(session, identity, lot_id)))


@app.post("/itp/completions", tags=["itp"])
def api_upsert_completion(
    payload: ITPCompletionUpsert,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(itp.map_completion(itp.upsert_completion(session, identity, payload)))


@app.post("/itp/completions/{completion_id}/verify", tags=["itp"])
def api_verify_completion(
    completion_id: str,
    payload: ITPVerify,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(itp.map_completion(itp.verify_completion(session, identity, completion_id, payload.notes)))


@app.post("/itp/completions/{completion_id}/unverify", tags=["itp"])
def api_unverify_completion(
    completion_id: str,
    payload: ITPVerify,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(itp.map_completion(itp.unverify_completion(session, identity, completion_id, payload.notes)))


# === Hold points ==============================================================


@app.get("/holdpoints", tags=["holdpoints"])
def api_list_hold_points(
    project_id: str = Query(alias="projectId"),
    lot_id: Optional[str] = Query(default=None, alias="lotId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    stale: bool = Query(default=False),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    items = hold_points.list_hold_points(
        session, identity, project_id, lot_id=lot_id, status=status_filter, stale_only=stale
    )
    return ok([hold_points.map_hold_point(item) for item in items])


@app.get("/holdpoints/metrics", tags=["holdpoints"])
def api_hold_point_metrics(
    project_id: str = Query(alias="projectId"),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(hold_points.release_metrics(session, identity, project_id))


@app.post("/holdpoints/request-release", tags=["holdpoints"])
def api_request_release(
    payload: HoldPointRequest,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(hold_points.map_hold_point(hold_points.request_release(session, identity, payload)))


@app.post("/holdpoints/{hold_point_id}/release", tags=["holdpoints"])
def api_release_hold_point(
    hold_point_id: str,
    payload: HoldPointRelease,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(hold_points.map_hold_point(hold_points.release(session, identity, hold_point_id, payload)))


@app.post("/holdpoints/{hold_point_id}/chase", tags=["holdpoints"])
def api_chase_hold_point(
    hold_point_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(hold_points.map_hold_point(hold_points.chase(session, identity, hold_point_id)))


# === Dockets ==================================================================


@app.get("/dockets", tags=["dockets"])
def api_list_dockets(
    project_id: str = Query(alias="projectId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    subcontractor_company_id: Optional[str] = Query(default=None, alias="subcontractorCompanyId"),
    params=Depends(pagination_query),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    items, meta = dockets.list_dockets(
        session,
        identity,
        project_id,
        params,
        status=status_filter,
        subcontractor_company_id=subcontractor_company_id,
    )
    return ok([dockets.map_docket(docket) for docket in items], meta)


@app.post("/dockets", status_code=201, tags=["dockets"])
def api_create_docket(
    payload: DocketCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(dockets.map_docket(dockets.create_docket(session, identity, payload)))


@app.get("/dockets/{docket_id}", tags=["dockets"])
def api_get_docket(
    docket_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(dockets.map_docket(dockets.get_docket(session, identity, docket_id)))


@app.post("/dockets/{docket_id}/submit", tags=["dockets"])
def api_submit_docket(
    docket_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(dockets.map_docket(dockets.submit_docket(session, identity, docket_id)))


@app.post("/dockets/{docket_id}/approve", tags=["dockets"])
def api_approve_docket(
    docket_id: str,
    payload: DocketApprove,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(dockets.map_docket(dockets.approve_docket(session, identity, docket_id, payload)))


@app.post("/dockets/{docket_id}/reject", tags=["dockets"])
def api_reject_docket(
    docket_id: str,
    payload: DocketReject,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(dockets.map_docket(dockets.reject_docket(session, identity, docket_id, payload)))


@app.delete("/dockets/{docket_id}", tags=["dockets"])
def api_delete_docket(
    docket_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    dockets.delete_docket(session, identity, docket_id)
    return ok({"id": docket_id})


# === Drawings =================================================================


@app.get("/drawings", tags=["drawings"])
def api_list_drawings(
    project_id: str = Query(alias="projectId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    search: Optional[str] = Query(default=None),
    params=Depends(pagination_query),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    items, meta = drawings.list_drawings(session, identity, project_id, params, status=status_filter, search=search)
    return ok([drawings.map_drawing(drawing) for drawing in items], meta)


@app.get("/drawings/current-set", tags=["drawings"])
def api_current_drawing_set(
    project_id: str = Query(alias="projectId"),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok([drawings.map_drawing(drawing) for drawing in drawings.current_set(session, identity, project_id)])


@app.post("/drawings", status_code=201, tags=["drawings"])
def api_create_drawing(
    payload: DrawingCreate,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(drawings.map_drawing(drawings.create_drawing(session, identity, payload)))


@app.post("/drawings/{drawing_id}/supersede", status_code=201, tags=["drawings"])
def api_supersede_drawing(
    drawing_id: str,
    payload: DrawingSupersede,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    return ok(drawings.map_drawing(drawings.supersede_drawing(session, identity, drawing_id, payload)))


@app.delete("/drawings/{drawing_id}", tags=["drawings"])
def api_delete_drawing(
    drawing_id: str,
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    drawings.delete_drawing(session, identity, drawing_id)
    return ok({"id": drawing_id})


# === Notifications ============================================================


@app.get("/notifications", tags=["notifications"])
def api_list_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    events = list_user_notifications(session, identity.user_id, limit=limit)
    return ok(
        [
            Notification(
                id=event.id,
                eventType=event.event_type,
                title=event.title,
                message=event.message,
                linkUrl=event.link_url,
                status=event.status,
                createdAt=event.created_at,
            )
            for event in events
        ]
    )


@app.post("/notifications/dispatch", tags=["notifications"])
def api_dispatch_notifications(
    limit: int = Query(default=100, ge=1, le=1000),
    session: Session = Depends(get_session),
    identity: Identity = Depends(get_identity),
) -> dict:
    if not is_allowed(identity.company_role, "notification", "dispatch"):
        raise ForbiddenError("Only company owners and admins can dispatch notifications")
    with default_deliverer() as deliverer:
        summary = dispatch_pending_notifications(session, deliverer, company_id=identity.company_id, limit=limit)
    return ok(DispatchResult(delivered=summary.delivered, retrying=summary.retrying, failed=summary.failed))
