"""Local-first event mutations mirrored to the provider.

Every mutation persists locally before any provider call; provider failures
are reported as a ``sync_error`` string and never undo the local write.

Moving a mirrored event between calendars runs a fallback chain:

1. ``_move_native``: the provider's own move.
2. ``_recover_location``: when the provider says the event is not where we
   think it is, scan the owner's writable calendars for it, rebind, and
   retry the move from there.
3. ``_clone_and_delete``: when a move is refused, copy the event into the
   target calendar, rebind to the copy, then delete the original.

Each step persists the best-known ``(remote_event_id, remote_calendar_id)``
before returning, so a failure part-way through never leaves the local
record pointing at a location the event has already left.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from famcal.calendar.errors import (
    CalendarAuthError,
    CalendarNotFoundError,
    CalendarSyncError,
    EventValidationError,
    describe_sync_error,
)
from famcal.calendar.models import (
    DeleteResult,
    Event,
    EventCreate,
    EventPatch,
    EventSource,
    Household,
    MemberProfile,
    MutationResult,
    RemoteEvent,
    Route,
    utcnow,
)
from famcal.calendar.provider import CalendarProvider, build_clone_body, build_event_body
from famcal.calendar.router import CalendarRouter
from famcal.calendar.store import EventStore
from famcal.core.metrics import SyncMetrics
from famcal.core.telemetry import sync_span

logger = logging.getLogger(__name__)


def _event_body(event: Event, route: Route) -> dict[str, Any]:
    return build_event_body(
        title=route.title,
        start_at=event.start_at,
        end_at=event.end_at,
        all_day=event.all_day,
        color=route.color,
        description=event.description,
        location=event.location,
        recurrence=event.recurrence,
    )


def merge_patch(event: Event, patch: EventPatch) -> Event:
    """Apply *patch* to *event* and validate the merged record.

    Raises ``EventValidationError`` without touching the store or the provider.
    """
    merged = {**event.model_dump(), **patch.changed_fields()}
    try:
        updated = Event.model_validate(merged)
    except ValidationError as exc:
        raise EventValidationError(str(exc)) from exc
    if updated.end_at < updated.start_at:
        raise EventValidationError("end_at must not be before start_at")
    return updated


class EventMutator:
    """Creates, updates and deletes events, mirroring each change remotely."""

    def __init__(
        self,
        store: EventStore,
        router: CalendarRouter,
        *,
        clock: Callable[[], datetime] = utcnow,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._router = router
        self._clock = clock
        self._metrics = metrics or SyncMetrics()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create(
        self,
        data: EventCreate,
        *,
        owner: MemberProfile,
        household: Household,
        profiles: Iterable[MemberProfile],
        provider: CalendarProvider | None,
    ) -> MutationResult:
        route = await self._router.resolve_target(
            title=data.title,
            attendees=data.attendees,
            owner=owner,
            household=household,
            profiles=profiles,
            provider=provider,
        )
        event = await self._store.insert(
            Event(
                household_id=household.household_id,
                title=data.title,
                description=data.description,
                location=data.location,
                start_at=data.start_at,
                end_at=data.end_at,
                all_day=data.all_day,
                attendees=data.attendees,
                calendar_type=route.calendar_type,
                color=route.color,
                recurrence=data.recurrence,
                source=EventSource.local,
                created_by=owner.member_id,
            )
        )
        logger.info("Created event %s routed to calendar %s", event.id, route.calendar_id)

        if provider is None:
            return MutationResult(event=event)

        try:
            with sync_span("mutation.create", event_id=event.id, calendar_id=route.calendar_id):
                event, remote = await self._insert(event, route.calendar_id, _event_body(event, route), provider)
        except CalendarSyncError as exc:
            return self._mirror_failed("create", event, exc)
        return MutationResult(event=event, remote=remote)

    async def update(
        self,
        event: Event,
        patch: EventPatch,
        *,
        owner: MemberProfile,
        household: Household,
        profiles: Iterable[MemberProfile],
        provider: CalendarProvider | None,
    ) -> MutationResult:
        merged = merge_patch(event, patch)
        route = await self._router.resolve_target(
            title=merged.title,
            attendees=merged.attendees,
            owner=owner,
            household=household,
            profiles=profiles,
            provider=provider,
        )
        updated = merged.model_copy(update={"calendar_type": route.calendar_type, "color": route.color})

        previous_calendar_id = event.remote_calendar_id
        event = await self._store.save(updated)

        if provider is None:
            return MutationResult(event=event)

        body = _event_body(event, route)
        try:
            with sync_span("mutation.update", event_id=event.id, calendar_id=route.calendar_id):
                if not event.mirrored:
                    event, remote = await self._insert(event, route.calendar_id, body, provider)
                elif previous_calendar_id != route.calendar_id:
                    event, remote = await self._relocate(event, route.calendar_id, body, provider)
                else:
                    event, remote = await self._patch_in_place(
                        event, route.calendar_id, body, provider
                    )
        except CalendarSyncError as exc:
            return self._mirror_failed("update", event, exc)
        return MutationResult(event=event, remote=remote)

    async def delete(self, event: Event, *, provider: CalendarProvider | None) -> DeleteResult:
        sync_error: str | None = None
        if (
            provider is not None
            and event.remote_event_id is not None
            and event.remote_calendar_id is not None
        ):
            try:
                with sync_span("mutation.delete", event_id=event.id):
                    await provider.delete_event(
                        calendar_id=event.remote_calendar_id, event_id=event.remote_event_id
                    )
            except CalendarNotFoundError:
                logger.debug("Remote copy of event %s already gone", event.id)
            except CalendarSyncError as exc:
                sync_error = describe_sync_error(exc)
                self._metrics.sync_error("delete")
                logger.warning("Remote delete of event %s failed: %s", event.id, sync_error)

        await self._store.delete(event.id)
        logger.info("Deleted event %s", event.id)
        return DeleteResult(ok=True, sync_error=sync_error)

    # ------------------------------------------------------------------
    # Mirroring steps
    # ------------------------------------------------------------------

    def _mirror_failed(self, action: str, event: Event, exc: CalendarSyncError) -> MutationResult:
        sync_error = describe_sync_error(exc)
        self._metrics.sync_error(action)
        logger.warning("Mirroring %s of event %s failed: %s", action, event.id, sync_error)
        return MutationResult(event=event, sync_error=sync_error)

    async def _bind(self, event: Event, remote_event_id: str, calendar_id: str) -> Event:
        bound = await self._store.bind_remote(
            event.id,
            remote_event_id=remote_event_id,
            remote_calendar_id=calendar_id,
            synced_at=self._clock(),
        )
        if bound is None:
            # Deleted concurrently; keep working with the in-memory copy.
            return event.model_copy(
                update={"remote_event_id": remote_event_id, "remote_calendar_id": calendar_id}
            )
        return bound

    async def _insert(
        self,
        event: Event,
        calendar_id: str,
        body: dict[str, Any],
        provider: CalendarProvider,
    ) -> tuple[Event, RemoteEvent]:
        remote = await provider.insert_event(calendar_id=calendar_id, body=body)
        event = await self._bind(event, remote.id, calendar_id)
        return event, remote

    async def _patch_in_place(
        self,
        event: Event,
        calendar_id: str,
        body: dict[str, Any],
        provider: CalendarProvider,
    ) -> tuple[Event, RemoteEvent]:
        if event.remote_event_id is None:
            raise RuntimeError(f"Event {event.id} has no remote copy")
        try:
            remote = await provider.patch_event(
                calendar_id=calendar_id, event_id=event.remote_event_id, body=body
            )
        except CalendarNotFoundError:
            location = await self._recover_location(event, provider, exclude=calendar_id)
            if location is None:
                logger.info("Event %s missing remotely; inserting a new copy", event.id)
                return await self._insert(event, calendar_id, body, provider)
            event = await self._bind(event, event.remote_event_id, location)
            remote = await provider.patch_event(
                calendar_id=location, event_id=event.remote_event_id, body=body
            )
            return event, remote

        event = await self._bind(event, remote.id, calendar_id)
        return event, remote

    async def _relocate(
        self,
        event: Event,
        target: str,
        body: dict[str, Any],
        provider: CalendarProvider,
    ) -> tuple[Event, RemoteEvent]:
        if event.remote_calendar_id is None:
            raise RuntimeError(f"Event {event.id} has no remote calendar")
        source = event.remote_calendar_id
        try:
            event = await self._move_native(event, source, target, provider)
        except CalendarNotFoundError:
            return await self._relocate_from_recovered(event, source, target, body, provider)
        except CalendarAuthError:
            raise
        except CalendarSyncError as exc:
            logger.info("Native move of event %s refused (%s); cloning instead", event.id, exc)
            try:
                return await self._clone_and_delete(event, source, target, body, provider)
            except CalendarAuthError:
                raise
            except CalendarSyncError as clone_exc:
                logger.warning(
                    "Clone of event %s into %s failed (%s); updating it in %s",
                    event.id,
                    target,
                    clone_exc,
                    source,
                )
                return await self._patch_in_place(event, source, body, provider)

        return await self._patch_in_place(event, target, body, provider)

    async def _relocate_from_recovered(
        self,
        event: Event,
        source: str,
        target: str,
        body: dict[str, Any],
        provider: CalendarProvider,
    ) -> tuple[Event, RemoteEvent]:
        if event.remote_event_id is None:
            raise RuntimeError(f"Event {event.id} has no remote copy")
        location = await self._recover_location(event, provider, exclude=source)
        if location is None:
            logger.info("Event %s not found in any calendar; inserting into %s", event.id, target)
            return await self._insert(event, target, body, provider)

        event = await self._bind(event, event.remote_event_id, location)
        if location == target:
            return await self._patch_in_place(event, target, body, provider)

        try:
            event = await self._move_native(event, location, target, provider)
        except CalendarAuthError:
            raise
        except CalendarSyncError as exc:
            logger.info("Retry move of event %s from %s failed (%s)", event.id, location, exc)
            try:
                return await self._clone_and_delete(event, location, target, body, provider)
            except CalendarAuthError:
                raise
            except CalendarSyncError as clone_exc:
                logger.warning(
                    "Clone of event %s from %s failed (%s); keeping it there",
                    event.id,
                    location,
                    clone_exc,
                )
                return await self._patch_in_place(event, location, body, provider)

        return await self._patch_in_place(event, target, body, provider)

    async def _move_native(
        self,
        event: Event,
        source: str,
        target: str,
        provider: CalendarProvider,
    ) -> Event:
        if event.remote_event_id is None:
            raise RuntimeError(f"Event {event.id} has no remote copy")
        try:
            moved = await provider.move_event(
                calendar_id=source, event_id=event.remote_event_id, destination=target
            )
        except CalendarSyncError:
            self._metrics.move_step("native", outcome="failed")
            raise
        self._metrics.move_step("native", outcome="ok")
        logger.info("Moved event %s from %s to %s", event.id, source, target)
        return await self._bind(event, moved.id or event.remote_event_id, target)

    async def _recover_location(
        self,
        event: Event,
        provider: CalendarProvider,
        *,
        exclude: str | None = None,
    ) -> str | None:
        """Return the writable calendar that currently holds the event, if any."""
        if event.remote_event_id is None:
            raise RuntimeError(f"Event {event.id} has no remote copy")
        calendars = await provider.list_calendars()
        for calendar in calendars:
            if calendar.id == exclude:
                continue
            try:
                await provider.get_event(calendar_id=calendar.id, event_id=event.remote_event_id)
            except CalendarNotFoundError:
                continue
            except CalendarAuthError:
                raise
            except CalendarSyncError as exc:
                logger.debug("Could not check calendar %s for event %s: %s", calendar.id, event.id, exc)
                continue
            self._metrics.move_step("recover", outcome="found")
            logger.info("Found event %s in calendar %s", event.id, calendar.id)
            return calendar.id

        self._metrics.move_step("recover", outcome="missing")
        return None

    async def _clone_and_delete(
        self,
        event: Event,
        source: str,
        target: str,
        body: dict[str, Any],
        provider: CalendarProvider,
    ) -> tuple[Event, RemoteEvent]:
        if event.remote_event_id is None:
            raise RuntimeError(f"Event {event.id} has no remote copy")
        try:
            original = await provider.get_event(calendar_id=source, event_id=event.remote_event_id)
            clone = await provider.insert_event(
                calendar_id=target, body=build_clone_body(original.raw, body)
            )
        except CalendarSyncError:
            self._metrics.move_step("clone", outcome="failed")
            raise
        self._metrics.move_step("clone", outcome="ok")
        event = await self._bind(event, clone.id, target)

        try:
            await provider.delete_event(calendar_id=source, event_id=original.id)
        except CalendarSyncError as exc:
            logger.warning(
                "Cloned event %s into %s but could not delete the original in %s "
                "(duplicate may exist): %s",
                event.id,
                target,
                source,
                exc,
            )
        return event, clone
