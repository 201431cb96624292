from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from app.core.errors import InvalidInputError
from app.platform.pagination import PageRequest


class BaseRepository:
    """Company-scoped query helpers shared by the resource repositories."""

    resource = ""
    model: Any = None
    sortable_fields: dict[str, Any] = {}
    default_order: tuple[Any, ...] = ()

    def apply_company_scope(self, query: Select[Any], company_id: uuid.UUID) -> Select[Any]:
        return query.where(self.model.company_id == company_id)

    def get_in_company(self, session: Session, company_id: uuid.UUID, entity_id: uuid.UUID) -> Any | None:
        # Rows owned by another company are indistinguishable from absent ones.
        query = select(self.model).where(self.model.id == entity_id)
        return session.scalar(self.apply_company_scope(query, company_id))

    def fetch_page(self, session: Session, query: Select[Any], page_request: PageRequest) -> tuple[Sequence[Any], int]:
        total = session.scalar(select(func.count()).select_from(query.order_by(None).subquery())) or 0
        ordered = query.order_by(*self.order_by(page_request))
        rows = session.scalars(ordered.offset(page_request.offset).limit(page_request.size)).all()
        return rows, int(total)

    def order_by(self, page_request: PageRequest) -> list[Any]:
        clauses: list[Any] = []
        for order in page_request.sort_orders():
            column = self.sortable_fields.get(order.field)
            if column is None:
                raise InvalidInputError(
                    f"cannot sort {self.resource} by '{order.field}'",
                    details={"sortable": sorted(self.sortable_fields)},
                )
            clauses.append(column.desc() if order.descending else column.asc())
        # Default order last keeps pagination stable when sort keys tie.
        clauses.extend(self.default_order)
        return clauses

    @staticmethod
    def like_pattern(term: str) -> str:
        escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return f"%{escaped}%"
