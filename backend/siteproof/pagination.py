from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import ValidationFailed
from .schemas import Pagination

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


@dataclass(frozen=True)
class PageParams:
    page: int = 1
    limit: int = DEFAULT_LIMIT
    sort_by: Optional[str] = None
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def page_params(
    page: int = 1,
    limit: int = DEFAULT_LIMIT,
    sort_by: Optional[str] = None,
    sort_order: str = "desc",
) -> PageParams:
    if page < 1:
        raise ValidationFailed("page must be 1 or greater", field="page")
    if limit < 1:
        raise ValidationFailed("limit must be 1 or greater", field="limit")
    order = (sort_order or "desc").lower()
    if order not in {"asc", "desc"}:
        raise ValidationFailed("sortOrder must be asc or desc", field="sortOrder")
    return PageParams(page=page, limit=min(limit, MAX_LIMIT), sort_by=sort_by, sort_order=order)


def apply_sort(statement, params: PageParams, columns: Mapping[str, Any], default: str):
    column = columns.get(params.sort_by or default)
    if column is None:
        raise ValidationFailed(
            f"Cannot sort by {params.sort_by}",
            field="sortBy",
            details={"allowed": sorted(columns)},
        )
    return statement.order_by(column.asc() if params.sort_order == "asc" else column.desc())


def paginate(session: Session, statement, params: PageParams) -> tuple[list, Pagination]:
    """Run ``statement`` for one page and count the full result set."""
    total = session.execute(select(func.count()).select_from(statement.order_by(None).subquery())).scalar_one()
    items = session.execute(statement.limit(params.limit).offset(params.offset)).scalars().all()
    total_pages = math.ceil(total / params.limit) if total else 0
    return list(items), Pagination(
        total=total,
        page=params.page,
        limit=params.limit,
        totalPages=total_pages,
        hasNextPage=params.page < total_pages,
        hasPrevPage=params.page > 1,
    )
