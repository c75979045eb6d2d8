"""Calendar connection and management endpoints.

- ``GET /api/calendar/google/auth-url``: consent URL for the calling member
- ``GET /api/calendar/google/callback``: OAuth redirect target
- ``GET /api/households/{household_id}/calendars``: writable calendars
- ``POST /api/households/{household_id}/calendars/verify``: calendar access check
- ``POST /api/households/{household_id}/members/{member_id}/calendar``
- ``POST /api/households/{household_id}/family-calendar``
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, Query

from famcal.api.deps import caller_id
from famcal.api.models import (
    ApiResponse,
    AuthUrl,
    CalendarAccess,
    CalendarConnected,
    CalendarCreateRequest,
    CalendarVerifyRequest,
)
from famcal.calendar.models import RemoteCalendar
from famcal.calendar.service import CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["calendars"])


def _get_service() -> CalendarSyncService:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("CalendarSyncService not initialized")


@router.get("/api/calendar/google/auth-url", response_model=ApiResponse[AuthUrl])
async def google_auth_url(
    redirect_uri: str | None = Query(None),
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[AuthUrl]:
    url = service.authorization_url(member_id, redirect_uri=redirect_uri)
    return ApiResponse(data=AuthUrl(url=url))


@router.get("/api/calendar/google/callback", response_model=ApiResponse[CalendarConnected])
async def google_callback(
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    redirect_uri: str | None = Query(None),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[CalendarConnected]:
    if error:
        raise ValueError(f"Google authorization failed: {error}")
    if not code or not state:
        raise ValueError("Missing code or state")
    await service.connect_calendar(state, code, redirect_uri=redirect_uri)
    return ApiResponse(data=CalendarConnected(member_id=state))


@router.get(
    "/api/households/{household_id}/calendars",
    response_model=ApiResponse[list[RemoteCalendar]],
)
async def list_calendars(
    household_id: str,
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[list[RemoteCalendar]]:
    calendars = await service.list_writable_calendars(member_id, household_id)
    return ApiResponse(data=calendars)


@router.post(
    "/api/households/{household_id}/calendars/verify",
    response_model=ApiResponse[CalendarAccess],
)
async def verify_calendar(
    household_id: str,
    body: CalendarVerifyRequest,
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[CalendarAccess]:
    has_access = await service.verify_calendar_access(member_id, household_id, body.calendar_id)
    return ApiResponse(data=CalendarAccess(calendar_id=body.calendar_id, has_access=has_access))


@router.post(
    "/api/households/{household_id}/members/{target_member_id}/calendar",
    response_model=ApiResponse[RemoteCalendar],
    status_code=201,
)
async def create_member_calendar(
    household_id: str,
    target_member_id: str,
    body: CalendarCreateRequest | None = Body(None),
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[RemoteCalendar]:
    calendar = await service.create_member_calendar(
        member_id,
        household_id,
        target_member_id,
        summary=body.summary if body is not None else None,
    )
    return ApiResponse(data=calendar)


@router.post(
    "/api/households/{household_id}/family-calendar",
    response_model=ApiResponse[RemoteCalendar],
    status_code=201,
)
async def create_family_calendar(
    household_id: str,
    body: CalendarCreateRequest | None = Body(None),
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[RemoteCalendar]:
    calendar = await service.create_family_calendar(
        member_id,
        household_id,
        summary=body.summary if body is not None else None,
    )
    return ApiResponse(data=calendar)
