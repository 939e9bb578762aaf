"""Common Pydantic schemas used across the application."""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class FieldError(BaseModel):
    """One field-qualified validation failure."""

    field: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response format."""

    success: bool = False
    error: str
    code: str
    details: dict[str, Any] | list[Any] | None = None


class ApiResponse(BaseModel, Generic[T]):
    """Standard success response format."""

    success: bool = True
    data: T | None = None
    message: str | None = None


class PaginatedResponse(BaseModel, Generic[T]):
    """Paginated response wrapper."""

    items: list[T]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def create(
        cls,
        items: list[Any],
        total: int,
        page: int,
        page_size: int,
    ) -> "PaginatedResponse":
        """Create a paginated response."""
        total_pages = (total + page_size - 1) // page_size if total > 0 else 0
        return cls(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
        )
