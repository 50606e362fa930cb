"""Drawing register and revision chain.

Each drawing points forward to the revision that replaced it through
``superseded_by_id``; the current set is every drawing where it is NULL.
A partial unique index keeps one current row per drawing number. Supersede
locks the source, claims it while its pointer is still NULL (so of two
concurrent supersedes exactly one wins) and only then inserts the new
revision.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import orm_models
from ..errors import ConflictError, NotFoundError, ValidationFailed
from ..pagination import PageParams, apply_sort, paginate
from ..permissions import is_subcontractor_role
from ..schemas import Drawing, DrawingCreate, DrawingSupersede, Pagination
from .access import load_project, require
from .identity import Identity
from .workflow import transition

logger = logging.getLogger(__name__)

DrawingORM = orm_models.DrawingORM

DRAWING_SORT_COLUMNS = {
    "drawingNumber": DrawingORM.drawing_number,
    "revision": DrawingORM.revision,
    "issueDate": DrawingORM.issue_date,
    "createdAt": DrawingORM.created_at,
}


def map_drawing(drawing: DrawingORM) -> Drawing:
    return Drawing(
        id=drawing.id,
        projectId=drawing.project_id,
        drawingNumber=drawing.drawing_number,
        title=drawing.title,
        revision=drawing.revision,
        status=drawing.status,
        issueDate=drawing.issue_date,
        supersededById=drawing.superseded_by_id,
        isCurrent=drawing.is_current,
        createdAt=drawing.created_at,
    )


def _already_superseded(drawing_id: str) -> ConflictError:
    return ConflictError(
        "Drawing has already been superseded",
        "DRAWING_ALREADY_SUPERSEDED",
        field="drawingId",
        details={"drawingId": drawing_id},
    )


def _load_drawing(session: Session, identity: Identity, drawing_id: str, action: str) -> DrawingORM:
    drawing = session.get(DrawingORM, drawing_id)
    if drawing is None:
        raise NotFoundError("Drawing", drawing_id)
    project = load_project(session, identity, drawing.project_id, resource="Drawing", resource_id=drawing_id)
    decision = require(identity, project, "drawing", action)
    if is_subcontractor_role(decision.role) and not drawing.is_current:
        raise NotFoundError("Drawing", drawing_id)
    return drawing


def list_drawings(
    session: Session,
    identity: Identity,
    project_id: str,
    params: PageParams,
    *,
    status: Optional[str] = None,
    search: Optional[str] = None,
    current_only: bool = False,
) -> tuple[List[DrawingORM], Pagination]:
    project = load_project(session, identity, project_id)
    decision = require(identity, project, "drawing", "read")
    statement = select(DrawingORM).where(DrawingORM.project_id == project.id)
    if current_only or is_subcontractor_role(decision.role):
        statement = statement.where(DrawingORM.superseded_by_id.is_(None))
    if status:
        statement = statement.where(DrawingORM.status == status)
    if search:
        pattern = f"%{search.strip()}%"
        statement = statement.where(or_(DrawingORM.drawing_number.ilike(pattern), DrawingORM.title.ilike(pattern)))
    statement = apply_sort(statement, params, DRAWING_SORT_COLUMNS, default="drawingNumber")
    return paginate(session, statement, params)


def current_set(session: Session, identity: Identity, project_id: str) -> List[DrawingORM]:
    project = load_project(session, identity, project_id)
    require(identity, project, "drawing", "read")
    return (
        session.execute(
            select(DrawingORM)
            .where(DrawingORM.project_id == project.id, DrawingORM.superseded_by_id.is_(None))
            .order_by(DrawingORM.drawing_number, DrawingORM.revision.desc())
        )
        .scalars()
        .all()
    )


def _number_exists(drawing_number: str) -> ConflictError:
    return ConflictError(
        f"Drawing {drawing_number} already exists; supersede it to add a revision",
        "DRAWING_NUMBER_EXISTS",
        field="drawingNumber",
    )


def current_number_taken(session: Session, project_id: str, drawing_number: str) -> bool:
    statement = select(DrawingORM.id).where(
        DrawingORM.project_id == project_id,
        DrawingORM.drawing_number == drawing_number,
        DrawingORM.superseded_by_id.is_(None),
    )
    return session.execute(statement).first() is not None


def create_drawing(session: Session, identity: Identity, payload: DrawingCreate) -> DrawingORM:
    project = load_project(session, identity, payload.projectId)
    require(identity, project, "drawing", "create")
    if current_number_taken(session, project.id, payload.drawingNumber):
        raise _number_exists(payload.drawingNumber)
    try:
        with transition(
            session,
            actor_id=identity.user_id,
            project_id=project.id,
            entity="drawing",
            action="create",
        ) as tx:
            drawing = DrawingORM(
                project_id=project.id,
                drawing_number=payload.drawingNumber,
                title=payload.title,
                revision=payload.revision,
                status=payload.status,
                issue_date=payload.issueDate,
                uploaded_by_id=identity.user_id,
            )
            session.add(drawing)
            session.flush()
            tx.entity_id = drawing.id
            tx.record(drawingNumber=drawing.drawing_number, revision=drawing.revision)
    except IntegrityError as exc:
        # a concurrent create took the current slot for this number
        raise _number_exists(payload.drawingNumber) from exc
    return drawing


def supersede_drawing(session: Session, identity: Identity, drawing_id: str, payload: DrawingSupersede) -> DrawingORM:
    drawing_number = _load_drawing(session, identity, drawing_id, "supersede").drawing_number
    try:
        with transition(
            session,
            actor_id=identity.user_id,
            project_id=None,
            entity="drawing",
            action="supersede",
        ) as tx:
            source = session.execute(
                select(DrawingORM)
                .where(DrawingORM.id == drawing_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
            if source.superseded_by_id is not None:
                raise _already_superseded(drawing_id)

            # claim the source (self pointer) before the new revision takes the current slot
            claimed = session.execute(
                update(DrawingORM)
                .where(DrawingORM.id == source.id, DrawingORM.superseded_by_id.is_(None))
                .values(superseded_by_id=source.id)
            )
            if claimed.rowcount != 1:
                raise _already_superseded(drawing_id)

            replacement = DrawingORM(
                project_id=source.project_id,
                drawing_number=source.drawing_number,
                title=payload.title or source.title,
                revision=payload.revision,
                status=payload.status,
                issue_date=payload.issueDate,
                uploaded_by_id=identity.user_id,
            )
            session.add(replacement)
            session.flush()
            session.execute(
                update(DrawingORM).where(DrawingORM.id == source.id).values(superseded_by_id=replacement.id)
            )

            tx.project_id = source.project_id
            tx.entity_id = replacement.id
            tx.record(supersededId=source.id, revision=replacement.revision)
    except IntegrityError as exc:
        raise _number_exists(drawing_number) from exc
    logger.info(
        "Drawing %s superseded by revision %s",
        replacement.drawing_number,
        replacement.revision,
        extra={"project_id": replacement.project_id, "entity": "drawing", "entity_id": replacement.id},
    )
    return replacement


def delete_drawing(session: Session, identity: Identity, drawing_id: str) -> None:
    drawing = _load_drawing(session, identity, drawing_id, "delete")
    supersedes_another = session.execute(
        select(exists().where(DrawingORM.superseded_by_id == drawing.id))
    ).scalar()
    if drawing.superseded_by_id is not None or supersedes_another:
        raise ValidationFailed(
            "Drawings that are part of a revision chain cannot be deleted",
            "DRAWING_IN_REVISION_CHAIN",
            field="drawingId",
        )
    with transition(
        session,
        actor_id=identity.user_id,
        project_id=drawing.project_id,
        entity="drawing",
        action="delete",
        entity_id=drawing.id,
    ) as tx:
        tx.record(drawingNumber=drawing.drawing_number, revision=drawing.revision)
        session.delete(drawing)
