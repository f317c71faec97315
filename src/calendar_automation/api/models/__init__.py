"""Shared Pydantic response envelopes for the management API.

Successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "..."}}``.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class PaginationMeta(BaseModel):
    """Pagination metadata for list endpoints."""

    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


class PaginatedResponse(BaseModel, Generic[T]):
    """``{"data": [T, ...], "meta": PaginationMeta}``"""

    data: list[T]
    meta: PaginationMeta
