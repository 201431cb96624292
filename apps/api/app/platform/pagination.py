from __future__ import annotations

import math
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

from app.core.errors import InvalidInputError

T = TypeVar("T")


class SortOrder(BaseModel):
    field: str
    descending: bool = False


class PageRequest(BaseModel):
    """Zero-based page index, page size and optional `field[,asc|desc]` sort entries."""

    page: int = Field(default=0, ge=0)
    size: int = Field(default=20, ge=1)
    sort: list[str] = Field(default_factory=list)

    @property
    def offset(self) -> int:
        return self.page * self.size

    def sort_orders(self) -> list[SortOrder]:
        orders: list[SortOrder] = []
        for raw in self.sort:
            parts = [part.strip() for part in raw.split(",") if part.strip()]
            if not parts:
                continue
            if len(parts) > 2:
                raise InvalidInputError(f"invalid sort '{raw}'", details={"sort": raw})
            direction = parts[1].lower() if len(parts) == 2 else "asc"
            if direction not in {"asc", "desc"}:
                raise InvalidInputError(f"invalid sort direction '{parts[1]}'", details={"sort": raw})
            orders.append(SortOrder(field=parts[0], descending=direction == "desc"))
        return orders


class Page(BaseModel, Generic[T]):
    items: list[T]
    total_elements: int
    total_pages: int
    page: int
    size: int

    @classmethod
    def build(cls, items: list[T], *, total_elements: int, request: PageRequest) -> Page[T]:
        return cls(
            items=items,
            total_elements=total_elements,
            total_pages=math.ceil(total_elements / request.size) if total_elements else 0,
            page=request.page,
            size=request.size,
        )
