"""Local persistence for events and household calendar bindings.

The abstract stores describe what the synchronization components need; the
asyncpg implementations run against the schema created by the ``famcal``
alembic chain.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from famcal.calendar.models import (
    CalendarBinding,
    CalendarType,
    Event,
    EventSource,
    Household,
    MemberProfile,
)
from famcal.db import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteUpsert:
    """One row of a reconciler batch, keyed by ``(household_id, remote_event_id)``."""

    household_id: str
    remote_event_id: str
    remote_calendar_id: str
    title: str
    start_at: datetime
    end_at: datetime
    all_day: bool
    color: str
    calendar_type: CalendarType
    synced_at: datetime
    description: str | None = None
    location: str | None = None
    recurrence: str | None = None


@dataclass
class UpsertOutcome:
    upserted: int = 0
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class EventStore(abc.ABC):
    """Event persistence used by the mutator and the reconciler."""

    @abc.abstractmethod
    async def insert(self, event: Event) -> Event: ...

    @abc.abstractmethod
    async def get(self, event_id: str) -> Event | None: ...

    @abc.abstractmethod
    async def save(self, event: Event) -> Event:
        """Persist every local field of *event* and bump ``updated_at``."""

    @abc.abstractmethod
    async def bind_remote(
        self,
        event_id: str,
        *,
        remote_event_id: str,
        remote_calendar_id: str,
        synced_at: datetime,
    ) -> Event | None:
        """Attach or rebind the remote pair in one write."""

    @abc.abstractmethod
    async def delete(self, event_id: str) -> bool: ...

    @abc.abstractmethod
    async def find_by_remote_ids(
        self, household_id: str, remote_event_ids: Sequence[str]
    ) -> dict[str, Event]: ...

    @abc.abstractmethod
    async def bulk_upsert_remote(
        self,
        rows: Sequence[RemoteUpsert],
        *,
        guard_cutoff: datetime,
    ) -> UpsertOutcome:
        """Upsert provider rows without touching ``updated_at`` of existing events.

        Existing rows whose ``updated_at`` is later than *guard_cutoff* are
        left alone and reported in ``skipped``. Rows are independent: one
        failing does not abort the others.
        """

    @abc.abstractmethod
    async def find_bound_in_window(
        self,
        household_id: str,
        calendar_ids: Sequence[str],
        time_min: datetime,
        time_max: datetime | None,
    ) -> list[Event]: ...

    @abc.abstractmethod
    async def delete_many(self, event_ids: Sequence[str]) -> int: ...

    @abc.abstractmethod
    async def list_window(
        self,
        household_id: str,
        time_min: datetime,
        time_max: datetime | None,
    ) -> list[Event]: ...


class HouseholdStore(abc.ABC):
    """Household, member profile and calendar binding persistence."""

    @abc.abstractmethod
    async def get_household(self, household_id: str) -> Household | None: ...

    @abc.abstractmethod
    async def get_profile(self, household_id: str, member_id: str) -> MemberProfile | None: ...

    @abc.abstractmethod
    async def list_profiles(self, household_id: str) -> list[MemberProfile]: ...

    @abc.abstractmethod
    async def save_calendar_binding(self, member_id: str, calendar_id: str) -> None:
        """Bind *member_id* to *calendar_id*, creating the binding row if needed."""

    @abc.abstractmethod
    async def save_token(
        self,
        member_id: str,
        *,
        access_token: str,
        expiry: datetime,
        refresh_token: str | None = None,
    ) -> bool:
        """Store a token unless a token with a later expiry is already stored.

        A ``None`` refresh token keeps the stored one. Returns whether the
        token was written.
        """

    @abc.abstractmethod
    async def set_family_calendar(
        self, household_id: str, calendar_id: str, color: str | None = None
    ) -> None: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementations
# ---------------------------------------------------------------------------

_EVENT_COLUMNS = (
    "id, household_id, title, description, location, start_at, end_at, all_day, "
    "attendees, calendar_type, color, recurrence, remote_event_id, remote_calendar_id, "
    "source, status, created_by, last_synced_at, created_at, updated_at"
)

_UPSERT_REMOTE_SQL = """
INSERT INTO events (
    household_id, title, description, location, start_at, end_at, all_day,
    attendees, calendar_type, color, remote_event_id, remote_calendar_id,
    source, status, created_by, last_synced_at, recurrence
)
VALUES ($1, $2, $3, $4, $5, $6, $7, '{}', $8, $9, $10, $11, 'google', 'active', NULL, $12, $14)
ON CONFLICT (household_id, remote_event_id) DO UPDATE SET
    title = CASE
        WHEN events.source = 'local' AND starts_with(EXCLUDED.title, events.title || ' (')
        THEN events.title
        ELSE EXCLUDED.title
    END,
    description = EXCLUDED.description,
    location = EXCLUDED.location,
    start_at = EXCLUDED.start_at,
    end_at = EXCLUDED.end_at,
    all_day = EXCLUDED.all_day,
    recurrence = EXCLUDED.recurrence,
    color = CASE WHEN events.source = 'local' THEN events.color ELSE EXCLUDED.color END,
    remote_calendar_id = EXCLUDED.remote_calendar_id,
    status = 'active',
    last_synced_at = EXCLUDED.last_synced_at
WHERE events.updated_at <= $13
RETURNING id
"""


def _row_to_event(row: Any) -> Event:
    return Event(
        id=str(row["id"]),
        household_id=row["household_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start_at=row["start_at"],
        end_at=row["end_at"],
        all_day=row["all_day"],
        attendees=list(row["attendees"] or []),
        calendar_type=CalendarType(row["calendar_type"]),
        color=row["color"],
        recurrence=row["recurrence"],
        remote_event_id=row["remote_event_id"],
        remote_calendar_id=row["remote_calendar_id"],
        source=EventSource(row["source"]),
        status=row["status"],
        created_by=row["created_by"],
        last_synced_at=row["last_synced_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresEventStore(EventStore):
    def __init__(self, db: Database) -> None:
        self._db = db

    async def insert(self, event: Event) -> Event:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO events (
                id, household_id, title, description, location, start_at, end_at,
                all_day, attendees, calendar_type, color, recurrence, remote_event_id,
                remote_calendar_id, source, status, created_by, last_synced_at
            )
            VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                    $16, $17, $18)
            RETURNING {_EVENT_COLUMNS}
            """,
            event.id,
            event.household_id,
            event.title,
            event.description,
            event.location,
            event.start_at,
            event.end_at,
            event.all_day,
            event.attendees,
            event.calendar_type.value,
            event.color,
            event.recurrence,
            event.remote_event_id,
            event.remote_calendar_id,
            event.source.value,
            event.status,
            event.created_by,
            event.last_synced_at,
        )
        return _row_to_event(row)

    async def get(self, event_id: str) -> Event | None:
        row = await self._db.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1::uuid", event_id
        )
        return _row_to_event(row) if row is not None else None

    async def save(self, event: Event) -> Event:
        row = await self._db.fetchrow(
            f"""
            UPDATE events SET
                title = $2, description = $3, location = $4, start_at = $5, end_at = $6,
                all_day = $7, attendees = $8, calendar_type = $9, color = $10,
                recurrence = $11, remote_event_id = $12, remote_calendar_id = $13,
                status = $14, last_synced_at = $15, updated_at = now()
            WHERE id = $1::uuid
            RETURNING {_EVENT_COLUMNS}
            """,
            event.id,
            event.title,
            event.description,
            event.location,
            event.start_at,
            event.end_at,
            event.all_day,
            event.attendees,
            event.calendar_type.value,
            event.color,
            event.recurrence,
            event.remote_event_id,
            event.remote_calendar_id,
            event.status,
            event.last_synced_at,
        )
        if row is None:
            raise LookupError(f"event not found: {event.id}")
        return _row_to_event(row)

    async def bind_remote(
        self,
        event_id: str,
        *,
        remote_event_id: str,
        remote_calendar_id: str,
        synced_at: datetime,
    ) -> Event | None:
        row = await self._db.fetchrow(
            f"""
            UPDATE events SET
                remote_event_id = $2, remote_calendar_id = $3, last_synced_at = $4,
                updated_at = now()
            WHERE id = $1::uuid
            RETURNING {_EVENT_COLUMNS}
            """,
            event_id,
            remote_event_id,
            remote_calendar_id,
            synced_at,
        )
        return _row_to_event(row) if row is not None else None

    async def delete(self, event_id: str) -> bool:
        result = await self._db.execute("DELETE FROM events WHERE id = $1::uuid", event_id)
        return result.endswith(" 1")

    async def find_by_remote_ids(
        self, household_id: str, remote_event_ids: Sequence[str]
    ) -> dict[str, Event]:
        if not remote_event_ids:
            return {}
        rows = await self._db.fetch(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE household_id = $1 AND remote_event_id = ANY($2::text[])
            """,
            household_id,
            list(remote_event_ids),
        )
        events = [_row_to_event(row) for row in rows]
        return {event.remote_event_id: event for event in events if event.remote_event_id}

    async def _upsert_one(self, row: RemoteUpsert, guard_cutoff: datetime) -> bool:
        inserted_id = await self._db.fetchval(
            _UPSERT_REMOTE_SQL,
            row.household_id,
            row.title,
            row.description,
            row.location,
            row.start_at,
            row.end_at,
            row.all_day,
            row.calendar_type.value,
            row.color,
            row.remote_event_id,
            row.remote_calendar_id,
            row.synced_at,
            guard_cutoff,
            row.recurrence,
        )
        return inserted_id is not None

    async def bulk_upsert_remote(
        self,
        rows: Sequence[RemoteUpsert],
        *,
        guard_cutoff: datetime,
    ) -> UpsertOutcome:
        outcome = UpsertOutcome()
        if not rows:
            return outcome
        results = await asyncio.gather(
            *(self._upsert_one(row, guard_cutoff) for row in rows),
            return_exceptions=True,
        )
        for row, result in zip(rows, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "Upsert of remote event %s failed: %s", row.remote_event_id, result
                )
                outcome.failed[row.remote_event_id] = str(result)
            elif result:
                outcome.upserted += 1
            else:
                outcome.skipped.append(row.remote_event_id)
        return outcome

    async def find_bound_in_window(
        self,
        household_id: str,
        calendar_ids: Sequence[str],
        time_min: datetime,
        time_max: datetime | None,
    ) -> list[Event]:
        if not calendar_ids:
            return []
        rows = await self._db.fetch(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE household_id = $1
              AND remote_event_id IS NOT NULL
              AND remote_calendar_id = ANY($2::text[])
              AND start_at >= $3
              AND ($4::timestamptz IS NULL OR start_at < $4)
            """,
            household_id,
            list(calendar_ids),
            time_min,
            time_max,
        )
        return [_row_to_event(row) for row in rows]

    async def delete_many(self, event_ids: Sequence[str]) -> int:
        if not event_ids:
            return 0
        result = await self._db.execute(
            "DELETE FROM events WHERE id = ANY($1::uuid[])", list(event_ids)
        )
        return int(result.rsplit(" ", 1)[-1])

    async def list_window(
        self,
        household_id: str,
        time_min: datetime,
        time_max: datetime | None,
    ) -> list[Event]:
        rows = await self._db.fetch(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE household_id = $1
              AND start_at >= $2
              AND ($3::timestamptz IS NULL OR start_at < $3)
            ORDER BY start_at, id
            """,
            household_id,
            time_min,
            time_max,
        )
        return [_row_to_event(row) for row in rows]


def _row_to_profile(row: Any) -> MemberProfile:
    binding = None
    if row["has_binding"]:
        binding = CalendarBinding(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expiry=row["token_expiry"],
            selected_calendar_id=row["selected_calendar_id"],
        )
    return MemberProfile(
        member_id=row["member_id"],
        household_id=row["household_id"],
        display_name=row["display_name"],
        first_name=row["first_name"],
        email=row["email"],
        color=row["color"],
        binding=binding,
    )


_PROFILE_SELECT = """
SELECT m.member_id, m.household_id, m.display_name, m.first_name, m.email, m.color,
       b.member_id IS NOT NULL AS has_binding, b.access_token, b.refresh_token,
       b.token_expiry, b.selected_calendar_id
FROM household_members m
LEFT JOIN calendar_bindings b ON b.member_id = m.member_id
"""


class PostgresHouseholdStore(HouseholdStore):
    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_household(self, household_id: str) -> Household | None:
        row = await self._db.fetchrow(
            "SELECT id, name, family_calendar_id, family_color FROM households WHERE id = $1",
            household_id,
        )
        if row is None:
            return None
        return Household(
            household_id=row["id"],
            name=row["name"],
            family_calendar_id=row["family_calendar_id"],
            family_color=row["family_color"],
        )

    async def get_profile(self, household_id: str, member_id: str) -> MemberProfile | None:
        row = await self._db.fetchrow(
            f"{_PROFILE_SELECT} WHERE m.household_id = $1 AND m.member_id = $2",
            household_id,
            member_id,
        )
        return _row_to_profile(row) if row is not None else None

    async def list_profiles(self, household_id: str) -> list[MemberProfile]:
        rows = await self._db.fetch(
            f"{_PROFILE_SELECT} WHERE m.household_id = $1 ORDER BY m.position, m.member_id",
            household_id,
        )
        return [_row_to_profile(row) for row in rows]

    async def save_calendar_binding(self, member_id: str, calendar_id: str) -> None:
        await self._db.execute(
            """
            INSERT INTO calendar_bindings (member_id, selected_calendar_id)
            VALUES ($1, $2)
            ON CONFLICT (member_id) DO UPDATE SET
                selected_calendar_id = EXCLUDED.selected_calendar_id,
                updated_at = now()
            """,
            member_id,
            calendar_id,
        )

    async def save_token(
        self,
        member_id: str,
        *,
        access_token: str,
        expiry: datetime,
        refresh_token: str | None = None,
    ) -> bool:
        written = await self._db.fetchval(
            """
            INSERT INTO calendar_bindings (member_id, access_token, refresh_token, token_expiry)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (member_id) DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, calendar_bindings.refresh_token),
                token_expiry = EXCLUDED.token_expiry,
                updated_at = now()
            WHERE calendar_bindings.token_expiry IS NULL
               OR calendar_bindings.token_expiry <= EXCLUDED.token_expiry
            RETURNING member_id
            """,
            member_id,
            access_token,
            refresh_token,
            expiry,
        )
        return written is not None

    async def set_family_calendar(
        self, household_id: str, calendar_id: str, color: str | None = None
    ) -> None:
        await self._db.execute(
            """
            UPDATE households SET
                family_calendar_id = $2,
                family_color = COALESCE($3, family_color),
                updated_at = now()
            WHERE id = $1
            """,
            household_id,
            calendar_id,
            color,
        )
