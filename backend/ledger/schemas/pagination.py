# backend/ledger/schemas/pagination.py
"""
Pagination metadata for list endpoints.

Usage:
    from ledger.schemas.pagination import PaginationMeta

    items, total = service.list_transactions(db, limit=limit, offset=skip)
    return {"items": items, "pagination": PaginationMeta.create(total, skip, limit)}
"""

from pydantic import BaseModel, Field, computed_field


class PaginationMeta(BaseModel):
    """
    Attributes:
        total: Items matching the query
        skip: Items skipped (offset)
        limit: Maximum items per page
    """

    total: int = Field(..., ge=0, description="Total number of items matching query")
    skip: int = Field(..., ge=0, description="Number of items skipped (offset)")
    limit: int = Field(..., ge=1, description="Maximum items per page")

    @computed_field
    @property
    def page(self) -> int:
        """Current page number (1-indexed)."""
        return (self.skip // self.limit) + 1

    @computed_field
    @property
    def pages(self) -> int:
        if self.total <= 0:
            return 1
        return (self.total + self.limit - 1) // self.limit  # Ceiling division

    @computed_field
    @property
    def has_next(self) -> bool:
        return self.skip + self.limit < self.total

    @classmethod
    def create(cls, total: int, skip: int, limit: int) -> "PaginationMeta":
        return cls(total=total, skip=skip, limit=limit)
