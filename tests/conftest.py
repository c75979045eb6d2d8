"""Shared test doubles for the famcal test suite.

The in-memory stores mirror the semantics of the PostgreSQL implementations
(race-guarded upserts, local title/color preservation, monotonic token
writes) so engine components can be exercised without a database.
"""

from __future__ import annotations

import itertools
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from famcal.calendar.errors import CalendarNotFoundError, CalendarSyncError
from famcal.calendar.models import (
    CalendarBinding,
    Event,
    EventNotification,
    EventSource,
    Household,
    MemberProfile,
    RemoteCalendar,
    RemoteEvent,
)
from famcal.calendar.notify import Notifier
from famcal.calendar.provider import CalendarProvider, google_event_to_remote_event
from famcal.calendar.service import CalendarSyncService
from famcal.calendar.store import EventStore, HouseholdStore, RemoteUpsert, UpsertOutcome
from famcal.calendar.tokens import GoogleOAuthClient, TokenManager
from famcal.config import GoogleConfig
from famcal.core.metrics import SyncMetrics

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class InMemoryEventStore(EventStore):
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.events: dict[str, Event] = {}
        self.fail_upserts: set[str] = set()

    def _copy(self, event: Event) -> Event:
        return event.model_copy(deep=True)

    async def insert(self, event: Event) -> Event:
        now = self.clock()
        stored = event.model_copy(update={"created_at": now, "updated_at": now})
        self.events[stored.id] = stored
        return self._copy(stored)

    async def get(self, event_id: str) -> Event | None:
        event = self.events.get(event_id)
        return self._copy(event) if event is not None else None

    async def save(self, event: Event) -> Event:
        if event.id not in self.events:
            raise LookupError(f"event not found: {event.id}")
        stored = event.model_copy(update={"updated_at": self.clock()})
        self.events[event.id] = stored
        return self._copy(stored)

    async def bind_remote(
        self,
        event_id: str,
        *,
        remote_event_id: str,
        remote_calendar_id: str,
        synced_at: datetime,
    ) -> Event | None:
        event = self.events.get(event_id)
        if event is None:
            return None
        stored = event.model_copy(
            update={
                "remote_event_id": remote_event_id,
                "remote_calendar_id": remote_calendar_id,
                "last_synced_at": synced_at,
                "updated_at": self.clock(),
            }
        )
        self.events[event_id] = stored
        return self._copy(stored)

    async def delete(self, event_id: str) -> bool:
        return self.events.pop(event_id, None) is not None

    async def find_by_remote_ids(
        self, household_id: str, remote_event_ids: Sequence[str]
    ) -> dict[str, Event]:
        wanted = set(remote_event_ids)
        return {
            event.remote_event_id: self._copy(event)
            for event in self.events.values()
            if event.household_id == household_id and event.remote_event_id in wanted
        }

    def _by_remote_id(self, household_id: str, remote_event_id: str) -> Event | None:
        for event in self.events.values():
            if event.household_id == household_id and event.remote_event_id == remote_event_id:
                return event
        return None

    async def bulk_upsert_remote(
        self,
        rows: Sequence[RemoteUpsert],
        *,
        guard_cutoff: datetime,
    ) -> UpsertOutcome:
        outcome = UpsertOutcome()
        for row in rows:
            if row.remote_event_id in self.fail_upserts:
                outcome.failed[row.remote_event_id] = "duplicate key value"
                continue
            existing = self._by_remote_id(row.household_id, row.remote_event_id)
            if existing is None:
                now = self.clock()
                created = Event(
                    household_id=row.household_id,
                    title=row.title,
                    description=row.description,
                    location=row.location,
                    start_at=row.start_at,
                    end_at=row.end_at,
                    all_day=row.all_day,
                    calendar_type=row.calendar_type,
                    color=row.color,
                    recurrence=row.recurrence,
                    remote_event_id=row.remote_event_id,
                    remote_calendar_id=row.remote_calendar_id,
                    source=EventSource.google,
                    created_by=None,
                    last_synced_at=row.synced_at,
                    created_at=now,
                    updated_at=now,
                )
                self.events[created.id] = created
                outcome.upserted += 1
                continue
            if existing.updated_at > guard_cutoff:
                outcome.skipped.append(row.remote_event_id)
                continue

            local = existing.source is EventSource.local
            keep_title = local and row.title.startswith(f"{existing.title} (")
            self.events[existing.id] = existing.model_copy(
                update={
                    "title": existing.title if keep_title else row.title,
                    "description": row.description,
                    "location": row.location,
                    "start_at": row.start_at,
                    "end_at": row.end_at,
                    "all_day": row.all_day,
                    "recurrence": row.recurrence,
                    "color": existing.color if local else row.color,
                    "remote_calendar_id": row.remote_calendar_id,
                    "status": "active",
                    "last_synced_at": row.synced_at,
                }
            )
            outcome.upserted += 1
        return outcome

    async def find_bound_in_window(
        self,
        household_id: str,
        calendar_ids: Sequence[str],
        time_min: datetime,
        time_max: datetime | None,
    ) -> list[Event]:
        scope = set(calendar_ids)
        return [
            self._copy(event)
            for event in self.events.values()
            if event.household_id == household_id
            and event.remote_event_id is not None
            and event.remote_calendar_id in scope
            and event.start_at >= time_min
            and (time_max is None or event.start_at < time_max)
        ]

    async def delete_many(self, event_ids: Sequence[str]) -> int:
        return sum(1 for event_id in event_ids if self.events.pop(event_id, None) is not None)

    async def list_window(
        self,
        household_id: str,
        time_min: datetime,
        time_max: datetime | None,
    ) -> list[Event]:
        matches = [
            self._copy(event)
            for event in self.events.values()
            if event.household_id == household_id
            and event.start_at >= time_min
            and (time_max is None or event.start_at < time_max)
        ]
        return sorted(matches, key=lambda e: (e.start_at, e.id))


class InMemoryHouseholdStore(HouseholdStore):
    def __init__(self) -> None:
        self.households: dict[str, Household] = {}
        self.profiles: dict[str, MemberProfile] = {}
        self.binding_writes: list[tuple[str, str]] = []

    def add_household(self, household: Household) -> Household:
        self.households[household.household_id] = household
        return household

    def add_profile(self, profile: MemberProfile) -> MemberProfile:
        self.profiles[profile.member_id] = profile
        return profile

    async def get_household(self, household_id: str) -> Household | None:
        household = self.households.get(household_id)
        return household.model_copy(deep=True) if household is not None else None

    async def get_profile(self, household_id: str, member_id: str) -> MemberProfile | None:
        profile = self.profiles.get(member_id)
        if profile is None or profile.household_id != household_id:
            return None
        return profile.model_copy(deep=True)

    async def list_profiles(self, household_id: str) -> list[MemberProfile]:
        return [
            profile.model_copy(deep=True)
            for profile in self.profiles.values()
            if profile.household_id == household_id
        ]

    def _binding(self, member_id: str) -> CalendarBinding:
        profile = self.profiles[member_id]
        if profile.binding is None:
            profile.binding = CalendarBinding()
        return profile.binding

    async def save_calendar_binding(self, member_id: str, calendar_id: str) -> None:
        self.binding_writes.append((member_id, calendar_id))
        self._binding(member_id).selected_calendar_id = calendar_id

    async def save_token(
        self,
        member_id: str,
        *,
        access_token: str,
        expiry: datetime,
        refresh_token: str | None = None,
    ) -> bool:
        binding = self._binding(member_id)
        if binding.expiry is not None and binding.expiry > expiry:
            return False
        binding.access_token = access_token
        binding.expiry = expiry
        if refresh_token is not None:
            binding.refresh_token = refresh_token
        return True

    async def set_family_calendar(
        self, household_id: str, calendar_id: str, color: str | None = None
    ) -> None:
        household = self.households[household_id]
        household.family_calendar_id = calendar_id
        if color is not None:
            household.family_color = color


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


def _not_found(what: str) -> CalendarNotFoundError:
    return CalendarNotFoundError(status_code=404, message=f"Not Found: {what}")


class FakeCalendarProvider(CalendarProvider):
    """In-memory Google Calendar: calendars hold raw event resources.

    ``failures`` maps ``(operation, calendar_id)`` to an exception raised on
    the next matching call (use ``"*"`` as calendar id to match any).
    ``outages`` uses the same keys but keeps raising on every call.
    """

    def __init__(self, calendars: Sequence[RemoteCalendar] = ()) -> None:
        self.calendars: list[RemoteCalendar] = list(calendars)
        self.events: dict[str, dict[str, dict[str, Any]]] = {c.id: {} for c in self.calendars}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.outages: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.colors: dict[str, str] = {}
        self.shutdowns = 0
        self._ids = itertools.count(1)

    @property
    def name(self) -> str:
        return "fake"

    # -- helpers ----------------------------------------------------------

    def add_calendar(self, calendar_id: str, summary: str | None = None) -> RemoteCalendar:
        calendar = RemoteCalendar(id=calendar_id, summary=summary, access_role="owner")
        self.calendars.append(calendar)
        self.events.setdefault(calendar_id, {})
        return calendar

    def put_event(self, calendar_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        payload = {"status": "confirmed", **payload}
        self.events.setdefault(calendar_id, {})[payload["id"]] = payload
        return payload

    def locate(self, event_id: str) -> list[str]:
        return [cal for cal, events in self.events.items() if event_id in events]

    def _record(self, operation: str, calendar_id: str) -> None:
        self.calls.append((operation, calendar_id))
        for key in ((operation, calendar_id), (operation, "*")):
            exc = self.failures.pop(key, None) or self.outages.get(key)
            if exc is not None:
                raise exc

    def _remote(self, payload: dict[str, Any], calendar_id: str) -> RemoteEvent:
        remote = google_event_to_remote_event(payload, calendar_id=calendar_id)
        assert remote is not None
        return remote

    # -- CalendarProvider -------------------------------------------------

    async def list_events(
        self,
        *,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime | None = None,
    ) -> list[RemoteEvent]:
        self._record("list_events", calendar_id)
        if calendar_id not in self.events:
            raise _not_found(calendar_id)
        remotes = [
            google_event_to_remote_event(payload, calendar_id=calendar_id)
            for payload in self.events[calendar_id].values()
        ]
        return [
            remote
            for remote in remotes
            if remote is not None
            and (remote.start_at >= time_min or bool(remote.recurrence))
            and (time_max is None or remote.start_at < time_max)
        ]

    async def get_event(self, *, calendar_id: str, event_id: str) -> RemoteEvent:
        self._record("get_event", calendar_id)
        payload = self.events.get(calendar_id, {}).get(event_id)
        if payload is None:
            raise _not_found(event_id)
        return self._remote(payload, calendar_id)

    async def insert_event(self, *, calendar_id: str, body: dict[str, Any]) -> RemoteEvent:
        self._record("insert_event", calendar_id)
        if calendar_id not in self.events:
            raise _not_found(calendar_id)
        payload = self.put_event(calendar_id, {**body, "id": f"g{next(self._ids)}"})
        return self._remote(payload, calendar_id)

    async def patch_event(
        self, *, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> RemoteEvent:
        self._record("patch_event", calendar_id)
        payload = self.events.get(calendar_id, {}).get(event_id)
        if payload is None:
            raise _not_found(event_id)
        payload.update(body)
        return self._remote(payload, calendar_id)

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        self._record("delete_event", calendar_id)
        self.events.get(calendar_id, {}).pop(event_id, None)

    async def move_event(
        self, *, calendar_id: str, event_id: str, destination: str
    ) -> RemoteEvent:
        self._record("move_event", calendar_id)
        payload = self.events.get(calendar_id, {}).pop(event_id, None)
        if payload is None:
            raise _not_found(event_id)
        self.events.setdefault(destination, {})[event_id] = payload
        return self._remote(payload, destination)

    async def list_calendars(self, *, min_access_role: str = "writer") -> list[RemoteCalendar]:
        self._record("list_calendars", "*")
        return list(self.calendars)

    async def get_calendar(self, *, calendar_id: str) -> RemoteCalendar:
        self._record("get_calendar", calendar_id)
        for calendar in self.calendars:
            if calendar.id == calendar_id:
                return calendar
        raise _not_found(calendar_id)

    async def insert_calendar(self, *, summary: str, time_zone: str | None = None) -> RemoteCalendar:
        self._record("insert_calendar", "*")
        return self.add_calendar(f"cal-{next(self._ids)}@group.calendar.google.com", summary)

    async def set_calendar_color(self, *, calendar_id: str, color_id: str) -> None:
        self._record("set_calendar_color", calendar_id)
        self.colors[calendar_id] = color_id

    async def shutdown(self) -> None:
        self.shutdowns += 1


def google_payload(
    event_id: str,
    summary: str,
    start: datetime,
    *,
    hours: int = 1,
    color_id: str | None = None,
    attendees: Sequence[str] = (),
    recurrence: Sequence[str] = (),
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": (start + timedelta(hours=hours)).isoformat()},
    }
    if color_id is not None:
        payload["colorId"] = color_id
    if attendees:
        payload["attendees"] = [{"email": email} for email in attendees]
    if recurrence:
        payload["recurrence"] = list(recurrence)
    return payload


class RecordingMetrics(SyncMetrics):
    """SyncMetrics that records calls instead of emitting instruments."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any, dict[str, Any]]] = []

    def fetch_failed(self, count: int = 1) -> None:
        self.calls.append(("fetch_failed", count, {}))

    def upserted(self, count: int) -> None:
        self.calls.append(("upserted", count, {}))

    def skipped(self, count: int, *, reason: str) -> None:
        self.calls.append(("skipped", count, {"reason": reason}))

    def pruned(self, count: int) -> None:
        self.calls.append(("pruned", count, {}))

    def move_step(self, step: str, *, outcome: str) -> None:
        self.calls.append(("move_step", step, {"outcome": outcome}))

    def sync_error(self, action: str) -> None:
        self.calls.append(("sync_error", action, {}))

    def steps(self) -> list[tuple[str, str]]:
        return [(step, kw["outcome"]) for name, step, kw in self.calls if name == "move_step"]


# ---------------------------------------------------------------------------
# Household fixture: parent (C1), child bound to C2, family calendar C3
# ---------------------------------------------------------------------------

HOUSEHOLD_ID = "hh-1"
PARENT_CAL = "parent@example.com"
CHILD_CAL = "child-cal@group.calendar.google.com"
FAMILY_CAL = "family-cal@group.calendar.google.com"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def event_store(clock: FakeClock) -> InMemoryEventStore:
    return InMemoryEventStore(clock)


@pytest.fixture
def household_store() -> InMemoryHouseholdStore:
    store = InMemoryHouseholdStore()
    store.add_household(
        Household(
            household_id=HOUSEHOLD_ID,
            name="Rivera",
            family_calendar_id=FAMILY_CAL,
            family_color="#8B5CF6",
        )
    )
    store.add_profile(
        MemberProfile(
            member_id="parent",
            household_id=HOUSEHOLD_ID,
            display_name="Alex",
            first_name="Alex",
            email=PARENT_CAL,
            color="#10B981",
            binding=CalendarBinding(
                access_token="access-1",
                refresh_token="refresh-1",
                expiry=T0 + timedelta(hours=1),
                selected_calendar_id=PARENT_CAL,
            ),
        )
    )
    store.add_profile(
        MemberProfile(
            member_id="child",
            household_id=HOUSEHOLD_ID,
            display_name="Sam",
            first_name="Sam",
            email="sam@example.com",
            color="#EF4444",
            binding=CalendarBinding(selected_calendar_id=CHILD_CAL),
        )
    )
    return store


@pytest.fixture
def provider() -> FakeCalendarProvider:
    fake = FakeCalendarProvider()
    fake.add_calendar(PARENT_CAL, "Alex")
    fake.add_calendar(CHILD_CAL, "Sam")
    fake.add_calendar(FAMILY_CAL, "Rivera Family")
    return fake


def fail_once(provider: FakeCalendarProvider, operation: str, calendar_id: str, exc: CalendarSyncError) -> None:
    provider.failures[(operation, calendar_id)] = exc


def fail_always(provider: FakeCalendarProvider, operations: Sequence[str], exc: CalendarSyncError) -> None:
    for operation in operations:
        provider.outages[(operation, "*")] = exc


@pytest.fixture
async def household_scope(
    household_store: InMemoryHouseholdStore,
) -> tuple[Household, MemberProfile, list[MemberProfile]]:
    """``(household, owner, profiles)`` as the service hands them to the engine."""
    household = await household_store.get_household(HOUSEHOLD_ID)
    assert household is not None
    profiles = await household_store.list_profiles(HOUSEHOLD_ID)
    owner = next(p for p in profiles if p.member_id == "parent")
    return household, owner, profiles


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.published: list[EventNotification] = []

    async def publish(self, notification: EventNotification) -> None:
        self.published.append(notification)

    def actions(self) -> list[str]:
        return [n.action for n in self.published]


def _oauth_token_endpoint(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200, json={"access_token": "fresh-token", "refresh_token": "refresh-2", "expires_in": 3600}
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provider_tokens() -> list[str]:
    """Access tokens the service opened providers with."""
    return []


@pytest.fixture
def service(
    event_store: InMemoryEventStore,
    household_store: InMemoryHouseholdStore,
    provider: FakeCalendarProvider,
    provider_tokens: list[str],
    notifier: RecordingNotifier,
    clock: FakeClock,
    metrics: RecordingMetrics,
) -> CalendarSyncService:
    oauth = GoogleOAuthClient(
        GoogleConfig(
            client_id="client-id",
            client_secret="client-secret",
            redirect_uri="http://localhost:8400/api/calendar/google/callback",
        ),
        httpx.AsyncClient(transport=httpx.MockTransport(_oauth_token_endpoint)),
        clock=clock,
    )

    def _provider_for(token: str) -> CalendarProvider:
        provider_tokens.append(token)
        return provider

    return CalendarSyncService(
        event_store,
        household_store,
        TokenManager(oauth, household_store, clock=clock),
        provider_factory=_provider_for,
        notifier=notifier,
        clock=clock,
        metrics=metrics,
    )
