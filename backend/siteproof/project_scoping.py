from __future__ import annotations

from typing import Tuple, Type

from sqlalchemy import event
from sqlalchemy.orm import Session, with_loader_criteria

from . import orm_models

TARGET_MODELS: Tuple[Type[object], ...] = (
    orm_models.LotORM,
    orm_models.LotSubcontractorAssignmentORM,
    orm_models.NCRORM,
    orm_models.ITPTemplateORM,
    orm_models.ITPInstanceORM,
    orm_models.HoldPointORM,
    orm_models.DocketORM,
    orm_models.DrawingORM,
)


def set_project_scope(session: Session, project_ids) -> None:
    session.info["project_scope"] = tuple(project_ids)


def setup_project_events(session_cls: Type[Session]) -> None:
    @event.listens_for(session_cls, "do_orm_execute")
    def _add_project_filter(execute_state):  # type: ignore[unused-variable]
        if not execute_state.is_select:
            return
        project_scope = execute_state.session.info.get("project_scope")
        if project_scope is None:
            return

        scope_tuple = tuple(project_scope)
        statement = execute_state.statement
        for model in TARGET_MODELS:
            statement = statement.options(
                with_loader_criteria(
                    model,
                    lambda cls, scope=scope_tuple: cls.project_id.in_(scope),
                    include_aliases=True,
                )
            )
        execute_state.statement = statement

    @event.listens_for(session_cls, "loaded_as_persistent")
    def _validate_project(session, obj):  # type: ignore[unused-variable]
        project_scope = session.info.get("project_scope")
        if project_scope is None or not isinstance(obj, TARGET_MODELS):
            return
        current = getattr(obj, "project_id", None)
        if current and current not in set(project_scope):
            session.expunge(obj)
