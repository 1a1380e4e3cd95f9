"""Page-number pagination metadata for ledger listings."""

from __future__ import annotations

from pydantic import BaseModel


class PaginationMeta(BaseModel):
    """Pagination metadata for list responses."""

    page: int
    page_size: int
    total: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, page_size: int, total: int) -> PaginationMeta:
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            has_next=page * page_size < total,
            has_prev=page > 1,
        )
