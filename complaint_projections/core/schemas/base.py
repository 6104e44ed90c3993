"""Base schema classes for API responses."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class CustomBase(BaseModel):
    """Base model for response schemas.

    Reads from ORM rows and dataclasses, serialises enums by value.
    """

    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


class PaginatedResponse(BaseModel, Generic[T]):
    """Offset-paginated list with its total count.

    Example:
        @router.get("/dead-letters", response_model=PaginatedResponse[DeadLetterSummary])
        async def list_dead_letters(limit: int = 50, offset: int = 0):
            entries, total = await store.list(limit=limit, offset=offset)
            return PaginatedResponse.create(items, total=total, limit=limit, offset=offset)
    """

    items: list[T] = Field(default_factory=list, description="Items of this page")
    total: int = Field(ge=0, description="Total number of matching items")
    limit: int = Field(ge=1, le=1000, description="Maximum items per page")
    offset: int = Field(ge=0, description="Items skipped before this page")

    @classmethod
    def create(cls, items: list[T], *, total: int, limit: int, offset: int) -> PaginatedResponse[T]:
        return cls(items=items, total=total, limit=limit, offset=offset)
