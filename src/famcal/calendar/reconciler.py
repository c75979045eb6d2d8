"""Folding a fetched remote snapshot into the local store.

A reconcile pass has three steps:

1. **Upsert** every remote event by ``(household_id, remote_event_id)``,
   except events changed locally within the race-guard window, whose remote
   copy may predate the local write.
2. **Prune** local events bound to a successfully fetched calendar, starting
   inside the queried window, whose remote copy was not returned.
3. **Merge** the remote events with local-only events into a display list.

Reconciler writes never touch ``updated_at`` of existing rows, so running
the same pass twice changes nothing but ``last_synced_at``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from famcal.calendar.colors import DEFAULT_EVENT_COLOR, to_hex
from famcal.calendar.models import (
    CalendarType,
    DisplayEvent,
    Event,
    EventBoundary,
    EventSource,
    RemoteEvent,
    utcnow,
)
from famcal.calendar.store import EventStore, RemoteUpsert
from famcal.core.metrics import SyncMetrics
from famcal.core.telemetry import sync_span

logger = logging.getLogger(__name__)

DEFAULT_RACE_GUARD_SECONDS = 5.0
UNTITLED_EVENT = "(No Title)"


@dataclass
class ReconcileResult:
    events: list[DisplayEvent] = field(default_factory=list)
    upserted: int = 0
    skipped: list[str] = field(default_factory=list)
    pruned: int = 0
    failed: dict[str, str] = field(default_factory=dict)


def _boundary(value: datetime, *, all_day: bool) -> EventBoundary:
    if all_day:
        return EventBoundary(on_date=value.date())
    return EventBoundary(at=value.astimezone(UTC))


def format_local_event(event: Event, *, default_color: str = DEFAULT_EVENT_COLOR) -> DisplayEvent:
    return DisplayEvent(
        id=event.id,
        event_id=event.id,
        origin="local",
        title=event.title,
        description=event.description,
        location=event.location,
        color=event.color or default_color,
        start=_boundary(event.start_at, all_day=event.all_day),
        end=_boundary(event.end_at, all_day=event.all_day),
        all_day=event.all_day,
        attendees=list(event.attendees),
        calendar_id=event.remote_calendar_id,
    )


class Reconciler:
    """Reconciles fetched remote events with the local event store."""

    def __init__(
        self,
        store: EventStore,
        *,
        race_guard_seconds: float = DEFAULT_RACE_GUARD_SECONDS,
        default_color: str = DEFAULT_EVENT_COLOR,
        clock: Callable[[], datetime] = utcnow,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._race_guard = timedelta(seconds=race_guard_seconds)
        self._default_color = default_color
        self._clock = clock
        self._metrics = metrics or SyncMetrics()

    def _remote_color(
        self,
        remote: RemoteEvent,
        local: Event | None,
        color_map: Mapping[str, str],
    ) -> str:
        if local is not None and local.source is EventSource.local and local.color:
            return local.color
        return (
            to_hex(remote.color_id)
            or color_map.get(remote.calendar_id)
            or self._default_color
        )

    def _format_remote(
        self,
        remote: RemoteEvent,
        local: Event | None,
        color_map: Mapping[str, str],
        member_emails: Mapping[str, str],
    ) -> DisplayEvent:
        attendees = [
            member_emails[email.lower()]
            for email in remote.attendee_emails
            if email.lower() in member_emails
        ]
        if not attendees and local is not None:
            attendees = list(local.attendees)
        return DisplayEvent(
            id=remote.id,
            event_id=local.id if local is not None else None,
            origin="remote",
            title=remote.summary or UNTITLED_EVENT,
            description=remote.description,
            location=remote.location,
            color=self._remote_color(remote, local, color_map),
            start=_boundary(remote.start_at, all_day=remote.all_day),
            end=_boundary(remote.end_at, all_day=remote.all_day),
            all_day=remote.all_day,
            attendees=attendees,
            calendar_id=remote.calendar_id,
        )

    async def reconcile(
        self,
        household_id: str,
        remote_events: Sequence[RemoteEvent],
        time_min: datetime,
        time_max: datetime | None,
        color_map: Mapping[str, str],
        *,
        fetched_calendar_ids: Iterable[str] | None = None,
        family_calendar_id: str | None = None,
        member_emails: Mapping[str, str] | None = None,
    ) -> ReconcileResult:
        """Upsert, prune and merge one fetched snapshot.

        ``fetched_calendar_ids`` must name the calendars that were listed
        successfully; when omitted it is derived from the events' source
        calendars. With no fetched calendar nothing is pruned.
        """
        with sync_span("reconcile", household_id=household_id, remote_events=len(remote_events)):
            return await self._reconcile(
                household_id,
                remote_events,
                time_min,
                time_max,
                color_map,
                fetched_calendar_ids=fetched_calendar_ids,
                family_calendar_id=family_calendar_id,
                member_emails={k.lower(): v for k, v in (member_emails or {}).items()},
            )

    async def _reconcile(
        self,
        household_id: str,
        remote_events: Sequence[RemoteEvent],
        time_min: datetime,
        time_max: datetime | None,
        color_map: Mapping[str, str],
        *,
        fetched_calendar_ids: Iterable[str] | None,
        family_calendar_id: str | None,
        member_emails: Mapping[str, str],
    ) -> ReconcileResult:
        result = ReconcileResult()
        now = self._clock()
        guard_cutoff = now - self._race_guard
        remote_ids = [event.id for event in remote_events]

        existing = await self._store.find_by_remote_ids(household_id, remote_ids)
        guarded: set[str] = {
            remote_id
            for remote_id, local in existing.items()
            if local.updated_at > guard_cutoff
        }
        for remote_id in guarded:
            logger.info(
                "Keeping recently changed local event %s over remote copy %s",
                existing[remote_id].id,
                remote_id,
            )

        rows = [
            RemoteUpsert(
                household_id=household_id,
                remote_event_id=remote.id,
                remote_calendar_id=remote.calendar_id,
                title=remote.summary or UNTITLED_EVENT,
                description=remote.description,
                location=remote.location,
                start_at=remote.start_at,
                end_at=remote.end_at,
                all_day=remote.all_day,
                recurrence=remote.recurrence[0] if remote.recurrence else None,
                color=color_map.get(remote.calendar_id, self._default_color),
                calendar_type=CalendarType.family
                if family_calendar_id is not None and remote.calendar_id == family_calendar_id
                else CalendarType.personal,
                synced_at=now,
            )
            for remote in remote_events
            if remote.id not in guarded
        ]
        outcome = await self._store.bulk_upsert_remote(rows, guard_cutoff=guard_cutoff)
        result.upserted = outcome.upserted
        result.failed = dict(outcome.failed)
        result.skipped = sorted(guarded | set(outcome.skipped))
        self._metrics.upserted(outcome.upserted)
        self._metrics.skipped(len(result.skipped), reason="race_guard")
        self._metrics.skipped(len(outcome.failed), reason="error")

        if fetched_calendar_ids is None:
            scope = sorted({remote.calendar_id for remote in remote_events})
        else:
            scope = list(dict.fromkeys(fetched_calendar_ids))
        result.pruned = await self._prune(household_id, scope, set(remote_ids), time_min, time_max, guard_cutoff)

        # Re-read so freshly inserted rows are linked to their local ids.
        linked = await self._store.find_by_remote_ids(household_id, remote_ids)
        display: list[DisplayEvent] = []
        for remote in remote_events:
            local = linked.get(remote.id)
            if remote.id in guarded and local is not None:
                display.append(format_local_event(local, default_color=self._default_color))
            else:
                display.append(self._format_remote(remote, local, color_map, member_emails))

        seen_remote_ids = set(remote_ids)
        for local in await self._store.list_window(household_id, time_min, time_max):
            if local.remote_event_id is None or local.remote_event_id not in seen_remote_ids:
                display.append(format_local_event(local, default_color=self._default_color))

        display.sort(key=_display_sort_key)
        result.events = display
        logger.info(
            "Reconciled household %s: %d upserted, %d skipped, %d failed, %d pruned",
            household_id,
            result.upserted,
            len(result.skipped),
            len(result.failed),
            result.pruned,
        )
        return result

    async def _prune(
        self,
        household_id: str,
        calendar_ids: Sequence[str],
        seen_remote_ids: set[str],
        time_min: datetime,
        time_max: datetime | None,
        guard_cutoff: datetime,
    ) -> int:
        if not calendar_ids:
            logger.info("No calendars fetched for household %s; skipping prune", household_id)
            return 0

        candidates = await self._store.find_bound_in_window(
            household_id, calendar_ids, time_min, time_max
        )
        ghosts = [
            event
            for event in candidates
            if event.remote_event_id not in seen_remote_ids and event.updated_at <= guard_cutoff
        ]
        if not ghosts:
            return 0

        for event in ghosts:
            logger.info(
                "Pruning event %s (%r): remote copy %s gone from calendar %s",
                event.id,
                event.title,
                event.remote_event_id,
                event.remote_calendar_id,
            )
        deleted = await self._store.delete_many([event.id for event in ghosts])
        self._metrics.pruned(deleted)
        return deleted


def _display_sort_key(event: DisplayEvent) -> tuple[datetime, str]:
    start = event.start.at
    day = event.start.on_date
    if start is None and day is not None:
        start = datetime(day.year, day.month, day.day, tzinfo=UTC)
    return (start or datetime.min.replace(tzinfo=UTC), event.id)
