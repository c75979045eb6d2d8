"""Concurrent, failure-isolated reads of remote calendars."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from famcal.calendar.errors import CalendarAuthError, CalendarSyncError, describe_sync_error
from famcal.calendar.models import Household, MemberProfile, RemoteEvent
from famcal.calendar.provider import CalendarProvider
from famcal.core.metrics import SyncMetrics
from famcal.core.telemetry import sync_span

logger = logging.getLogger(__name__)

PRIMARY_CALENDAR_ID = "primary"


@dataclass
class FetchResult:
    """Outcome of one fetch pass.

    ``events`` holds one entry per remote event id (last calendar listed
    wins). ``fetched_calendar_ids`` lists the calendars that were listed
    successfully; only those may be used to infer remote deletions.
    """

    events: list[RemoteEvent] = field(default_factory=list)
    fetched_calendar_ids: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def collect_calendar_ids(
    owner: MemberProfile,
    household: Household,
    profiles: Iterable[MemberProfile],
) -> list[str]:
    """Calendars to read for a household view, in order and without duplicates.

    The owner's calendar comes first (their bound calendar, else their
    account's primary calendar), then the family calendar, then every
    member's bound calendar.
    """
    ordered: list[str] = [owner.selected_calendar_id or owner.email or PRIMARY_CALENDAR_ID]
    if household.family_calendar_id:
        ordered.append(household.family_calendar_id)
    for profile in profiles:
        if profile.selected_calendar_id:
            ordered.append(profile.selected_calendar_id)

    unique: list[str] = []
    for calendar_id in ordered:
        if calendar_id not in unique:
            unique.append(calendar_id)
    return unique


class RemoteFetcher:
    """Lists several calendars concurrently; one shared calendar failing never fails the pass."""

    def __init__(
        self,
        provider: CalendarProvider,
        *,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._provider = provider
        self._metrics = metrics or SyncMetrics()

    async def _fetch_one(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime | None,
    ) -> list[RemoteEvent]:
        with sync_span("fetch.calendar", calendar_id=calendar_id):
            return await self._provider.list_events(
                calendar_id=calendar_id, time_min=time_min, time_max=time_max
            )

    async def fetch_window(
        self,
        calendar_ids: Sequence[str],
        time_min: datetime,
        time_max: datetime | None = None,
    ) -> FetchResult:
        """List *calendar_ids* concurrently; the first id is the caller's own calendar.

        Raises ``CalendarAuthError`` when the caller's own calendar rejects the
        credentials, or when every calendar failed and any of them did so with
        an auth error. Other failures are recorded in ``FetchResult.failed``.
        """
        result = FetchResult()
        if not calendar_ids:
            return result

        outcomes = await asyncio.gather(
            *(self._fetch_one(calendar_id, time_min, time_max) for calendar_id in calendar_ids),
            return_exceptions=True,
        )

        merged: dict[str, RemoteEvent] = {}
        auth_failures: dict[str, CalendarAuthError] = {}
        for calendar_id, outcome in zip(calendar_ids, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, CalendarSyncError):
                    raise outcome
                if isinstance(outcome, CalendarAuthError):
                    auth_failures[calendar_id] = outcome
                reason = describe_sync_error(outcome)
                logger.warning("Fetching calendar %s failed: %s", calendar_id, reason)
                result.failed[calendar_id] = reason
                continue
            result.fetched_calendar_ids.append(calendar_id)
            for event in outcome:
                merged[event.id] = event

        self._metrics.fetch_failed(len(result.failed))
        owner_calendar_id = calendar_ids[0]
        if owner_calendar_id in auth_failures:
            raise auth_failures[owner_calendar_id]
        if auth_failures and not result.fetched_calendar_ids:
            raise next(iter(auth_failures.values()))

        result.events = list(merged.values())
        logger.debug(
            "Fetched %d events from %d/%d calendars",
            len(result.events),
            len(result.fetched_calendar_ids),
            len(calendar_ids),
        )
        return result
