"""Household event endpoints: merged listing and local-first mutations."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from famcal.api.deps import caller_id
from famcal.api.models import ApiMeta, ApiResponse
from famcal.calendar.models import (
    DeleteResult,
    DisplayEvent,
    EventCreate,
    EventPatch,
    MutationResult,
    TimeWindow,
)
from famcal.calendar.service import CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/households/{household_id}/events", tags=["events"])


def _get_service() -> CalendarSyncService:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("CalendarSyncService not initialized")


def _mutation_meta(sync_error: str | None) -> ApiMeta:
    return ApiMeta(synced=sync_error is None, sync_error=sync_error)


@router.get("", response_model=ApiResponse[list[DisplayEvent]])
async def list_events(
    household_id: str,
    time_min: datetime | None = Query(None, description="Window start (default: first day of last month)"),
    time_max: datetime | None = Query(None, description="Window end (open when omitted)"),
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[list[DisplayEvent]]:
    window = None
    if time_min is not None:
        window = TimeWindow(time_min=time_min, time_max=time_max)
    elif time_max is not None:
        raise ValueError("time_max requires time_min")
    events = await service.list_events(member_id, household_id, window)
    return ApiResponse(data=events, meta=ApiMeta(count=len(events)))


@router.post("", response_model=ApiResponse[MutationResult], status_code=201)
async def create_event(
    household_id: str,
    body: EventCreate,
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[MutationResult]:
    result = await service.create_event(member_id, household_id, body)
    return ApiResponse(data=result, meta=_mutation_meta(result.sync_error))


@router.patch("/{event_id}", response_model=ApiResponse[MutationResult])
async def update_event(
    household_id: str,
    event_id: str,
    body: EventPatch,
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[MutationResult]:
    result = await service.update_event(member_id, household_id, event_id, body)
    return ApiResponse(data=result, meta=_mutation_meta(result.sync_error))


@router.delete("/{event_id}", response_model=ApiResponse[DeleteResult])
async def delete_event(
    household_id: str,
    event_id: str,
    member_id: str = Depends(caller_id),
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[DeleteResult]:
    result = await service.delete_event(member_id, household_id, event_id)
    return ApiResponse(data=result, meta=_mutation_meta(result.sync_error))
