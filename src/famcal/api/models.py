"""Response envelopes and request bodies for the famcal HTTP API.

Successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "..."}}``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class CalendarCreateRequest(BaseModel):
    """Optional body for calendar creation endpoints."""

    summary: str | None = None


class CalendarVerifyRequest(BaseModel):
    calendar_id: str = Field(min_length=1)


class CalendarAccess(BaseModel):
    calendar_id: str
    has_access: bool


class AuthUrl(BaseModel):
    url: str


class CalendarConnected(BaseModel):
    member_id: str
    connected: bool = True
