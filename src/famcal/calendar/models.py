"""Pydantic models shared by the calendar synchronization components."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def _ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class CalendarType(StrEnum):
    """Which kind of external calendar an event is routed to."""

    personal = "personal"
    family = "family"


class EventSource(StrEnum):
    """Where an event record was first created."""

    local = "local"
    google = "google"


EVENT_STATUS_ACTIVE = "active"


# ---------------------------------------------------------------------------
# Household and member records
# ---------------------------------------------------------------------------


class CalendarBinding(BaseModel):
    """External-calendar binding of a member.

    Every field is optional: a child without an account of their own only
    carries ``selected_calendar_id`` (a calendar owned by a parent).
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expiry: datetime | None = None
    selected_calendar_id: str | None = None

    @property
    def connected(self) -> bool:
        return bool(self.access_token)


class MemberProfile(BaseModel):
    """Household-scoped view of a member as far as calendar routing cares."""

    member_id: str
    household_id: str
    display_name: str
    first_name: str | None = None
    email: str | None = None
    color: str | None = None
    binding: CalendarBinding | None = None

    @property
    def selected_calendar_id(self) -> str | None:
        if self.binding is None:
            return None
        return self.binding.selected_calendar_id

    @property
    def identity(self) -> str:
        """Provider identity used as the calendar of last resort."""
        return self.email or self.member_id

    def name_candidates(self) -> list[str]:
        names = [self.first_name, self.display_name]
        return [name.strip().lower() for name in names if name and name.strip()]


class Household(BaseModel):
    household_id: str
    name: str | None = None
    family_calendar_id: str | None = None
    family_color: str | None = None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Event(BaseModel):
    """Locally-owned scheduling record; the single source of truth for routing."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    household_id: str
    title: str
    description: str | None = None
    location: str | None = None
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    attendees: list[str] = Field(default_factory=list)
    calendar_type: CalendarType = CalendarType.personal
    color: str | None = None
    recurrence: str | None = None
    remote_event_id: str | None = None
    remote_calendar_id: str | None = None
    source: EventSource = EventSource.local
    status: str = EVENT_STATUS_ACTIVE
    created_by: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_at", "end_at", "created_at", "updated_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _remote_pair_complete(self) -> Event:
        if (self.remote_event_id is None) != (self.remote_calendar_id is None):
            raise ValueError("remote_event_id and remote_calendar_id must be set together")
        return self

    @property
    def mirrored(self) -> bool:
        return self.remote_event_id is not None


class EventCreate(BaseModel):
    """Validated input for creating an event."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    recurrence: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("start_at", "end_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    @field_validator("attendees")
    @classmethod
    def _dedupe_attendees(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    @model_validator(mode="after")
    def _validate_window(self) -> EventCreate:
        if self.end_at < self.start_at:
            raise ValueError("end_at must not be before start_at")
        return self


class EventPatch(BaseModel):
    """Partial update; ``None`` means "leave unchanged"."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] | None = None
    recurrence: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string when provided")
        return normalized

    @field_validator("start_at", "end_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return None if value is None else _ensure_aware(value)

    @field_validator("attendees")
    @classmethod
    def _dedupe_attendees(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _dedupe(value)

    @model_validator(mode="after")
    def _validate_window(self) -> EventPatch:
        if self.start_at is not None and self.end_at is not None and self.end_at < self.start_at:
            raise ValueError("end_at must not be before start_at")
        return self

    def changed_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def _dedupe(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        normalized = str(value).strip()
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


class Route(BaseModel):
    """Resolved placement of an event: target calendar, display color and title."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str
    color: str
    title: str
    calendar_type: CalendarType = CalendarType.personal


# ---------------------------------------------------------------------------
# Remote (provider) objects
# ---------------------------------------------------------------------------


class RemoteEvent(BaseModel):
    """A provider event tagged with the calendar it was read from."""

    id: str
    calendar_id: str
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    color_id: str | None = None
    attendee_emails: list[str] = Field(default_factory=list)
    recurrence: list[str] = Field(default_factory=list)
    status: str | None = None
    updated_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class RemoteCalendar(BaseModel):
    """Entry of the owner's calendar list."""

    id: str
    summary: str | None = None
    access_role: str | None = None
    primary: bool = False
    color_id: str | None = None


class TokenGrant(BaseModel):
    access_token: str
    expiry: datetime
    refresh_token: str | None = None


# ---------------------------------------------------------------------------
# Service results and display entries
# ---------------------------------------------------------------------------


class TimeWindow(BaseModel):
    time_min: datetime
    time_max: datetime | None = None

    @field_validator("time_min", "time_max")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return None if value is None else _ensure_aware(value)

    @model_validator(mode="after")
    def _validate_order(self) -> TimeWindow:
        if self.time_max is not None and self.time_max < self.time_min:
            raise ValueError("time_max must not be before time_min")
        return self


class EventBoundary(BaseModel):
    """Provider-shaped start/end: ``date`` for all-day, ``dateTime`` otherwise."""

    on_date: date | None = Field(default=None, serialization_alias="date")
    at: datetime | None = Field(default=None, serialization_alias="dateTime")


class DisplayEvent(BaseModel):
    """One entry of the merged list returned to clients."""

    id: str
    event_id: str | None = None
    origin: Literal["remote", "local"]
    title: str
    description: str | None = None
    location: str | None = None
    color: str
    start: EventBoundary
    end: EventBoundary
    all_day: bool
    attendees: list[str] = Field(default_factory=list)
    calendar_id: str | None = None


class MutationResult(BaseModel):
    event: Event
    remote: RemoteEvent | None = None
    sync_error: str | None = None


class DeleteResult(BaseModel):
    ok: bool = True
    sync_error: str | None = None


class EventNotification(BaseModel):
    household_id: str
    event_id: str
    action: Literal["created", "updated", "deleted"]
