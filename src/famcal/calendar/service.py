"""Inbound surface of the calendar synchronization engine.

``CalendarSyncService`` scopes every call to a household and its calling
member, obtains a provider for that member, and hands off to the router,
fetcher, reconciler and mutator. Mutations always return the locally
persisted result; mirroring problems come back as ``sync_error``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from famcal.calendar.colors import to_color_id
from famcal.calendar.errors import (
    CalendarAuthError,
    CalendarNotFoundError,
    CalendarTransientError,
    EventValidationError,
    HouseholdAccessError,
    RecordNotFoundError,
    describe_sync_error,
)
from famcal.calendar.fetcher import RemoteFetcher, collect_calendar_ids
from famcal.calendar.models import (
    DeleteResult,
    DisplayEvent,
    Event,
    EventCreate,
    EventNotification,
    EventPatch,
    Household,
    MemberProfile,
    MutationResult,
    RemoteCalendar,
    TimeWindow,
    TokenGrant,
    utcnow,
)
from famcal.calendar.mutator import EventMutator, merge_patch
from famcal.calendar.notify import LoggingNotifier, Notifier
from famcal.calendar.provider import CalendarProvider
from famcal.calendar.reconciler import Reconciler, format_local_event
from famcal.calendar.router import CalendarRouter
from famcal.calendar.store import EventStore, HouseholdStore
from famcal.calendar.tokens import TokenManager
from famcal.config import SyncConfig
from famcal.core.logging import set_household_context
from famcal.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str], CalendarProvider]


def default_window_start(now: datetime) -> datetime:
    """First day of the previous month, midnight UTC."""
    now = now.astimezone(UTC)
    if now.month == 1:
        return datetime(now.year - 1, 12, 1, tzinfo=UTC)
    return datetime(now.year, now.month - 1, 1, tzinfo=UTC)


def _coerce[M: BaseModel](model: type[M], data: M | Mapping[str, Any]) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise EventValidationError(str(exc)) from exc


class CalendarSyncService:
    """Household-scoped facade over the synchronization engine."""

    def __init__(
        self,
        events: EventStore,
        households: HouseholdStore,
        tokens: TokenManager,
        *,
        provider_factory: ProviderFactory,
        notifier: Notifier | None = None,
        sync: SyncConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._events = events
        self._households = households
        self._tokens = tokens
        self._provider_factory = provider_factory
        self._notifier = notifier or LoggingNotifier()
        self._sync = sync or SyncConfig()
        self._clock = clock
        self._metrics = metrics or SyncMetrics()
        self._router = CalendarRouter(
            households,
            default_color=self._sync.default_color,
            family_color=self._sync.family_color,
        )
        self._mutator = EventMutator(events, self._router, clock=clock, metrics=self._metrics)
        self._reconciler = Reconciler(
            events,
            race_guard_seconds=self._sync.race_guard_seconds,
            default_color=self._sync.default_color,
            clock=clock,
            metrics=self._metrics,
        )

    # ------------------------------------------------------------------
    # Scoping helpers
    # ------------------------------------------------------------------

    async def _scope(
        self, user_id: str, household_id: str
    ) -> tuple[Household, MemberProfile, list[MemberProfile]]:
        set_household_context(household_id)
        household = await self._households.get_household(household_id)
        if household is None:
            raise RecordNotFoundError("household", household_id)
        profiles = await self._households.list_profiles(household_id)
        owner = next((p for p in profiles if p.member_id == user_id), None)
        if owner is None:
            raise HouseholdAccessError(f"member {user_id} does not belong to household {household_id}")
        return household, owner, profiles

    async def _scoped_event(self, household_id: str, event_id: str) -> Event:
        event = await self._events.get(event_id)
        if event is None or event.household_id != household_id:
            raise RecordNotFoundError("event", event_id)
        return event

    async def _open_provider(self, owner: MemberProfile) -> tuple[CalendarProvider | None, str | None]:
        """Provider for a mutation, or ``(None, reason)`` when the owner cannot sync."""
        try:
            token = await self._tokens.ensure_valid_token(owner)
        except (CalendarAuthError, CalendarTransientError) as exc:
            logger.info("Skipping remote mirror for member %s: %s", owner.member_id, exc)
            return None, describe_sync_error(exc)
        return self._provider_factory(token), None

    async def _require_provider(self, owner: MemberProfile) -> CalendarProvider:
        token = await self._tokens.ensure_valid_token(owner)
        return self._provider_factory(token)

    async def _notify(self, household_id: str, event_id: str, action: str) -> None:
        try:
            await self._notifier.publish(
                EventNotification(household_id=household_id, event_id=event_id, action=action)
            )
        except Exception:
            logger.warning(
                "Failed to publish %s notification for event %s", action, event_id, exc_info=True
            )

    async def _local_window(self, household_id: str, window: TimeWindow) -> list[DisplayEvent]:
        local = await self._events.list_window(household_id, window.time_min, window.time_max)
        return [format_local_event(e, default_color=self._sync.default_color) for e in local]

    def _color_map(self, household: Household, profiles: list[MemberProfile]) -> dict[str, str]:
        color_map: dict[str, str] = {}
        for profile in profiles:
            if profile.selected_calendar_id and profile.color:
                color_map[profile.selected_calendar_id] = profile.color
        if household.family_calendar_id:
            color_map[household.family_calendar_id] = (
                household.family_color or self._sync.family_color
            )
        return color_map

    # ------------------------------------------------------------------
    # Event operations
    # ------------------------------------------------------------------

    async def create_event(
        self,
        user_id: str,
        household_id: str,
        data: EventCreate | Mapping[str, Any],
    ) -> MutationResult:
        payload = _coerce(EventCreate, data)
        household, owner, profiles = await self._scope(user_id, household_id)

        provider, unavailable = await self._open_provider(owner)
        try:
            result = await self._mutator.create(
                payload, owner=owner, household=household, profiles=profiles, provider=provider
            )
        finally:
            if provider is not None:
                await provider.shutdown()

        if unavailable is not None:
            result = result.model_copy(update={"sync_error": unavailable})
        await self._notify(household_id, result.event.id, "created")
        return result

    async def update_event(
        self,
        user_id: str,
        household_id: str,
        event_id: str,
        patch: EventPatch | Mapping[str, Any],
    ) -> MutationResult:
        changes = _coerce(EventPatch, patch)
        household, owner, profiles = await self._scope(user_id, household_id)
        event = await self._scoped_event(household_id, event_id)
        merge_patch(event, changes)

        provider, unavailable = await self._open_provider(owner)
        try:
            result = await self._mutator.update(
                event,
                changes,
                owner=owner,
                household=household,
                profiles=profiles,
                provider=provider,
            )
        finally:
            if provider is not None:
                await provider.shutdown()

        if unavailable is not None:
            result = result.model_copy(update={"sync_error": unavailable})
        await self._notify(household_id, result.event.id, "updated")
        return result

    async def delete_event(self, user_id: str, household_id: str, event_id: str) -> DeleteResult:
        _, owner, _ = await self._scope(user_id, household_id)
        event = await self._scoped_event(household_id, event_id)

        provider: CalendarProvider | None = None
        unavailable: str | None = None
        if event.mirrored:
            provider, unavailable = await self._open_provider(owner)
        try:
            result = await self._mutator.delete(event, provider=provider)
        finally:
            if provider is not None:
                await provider.shutdown()

        if unavailable is not None:
            result = result.model_copy(update={"sync_error": unavailable})
        await self._notify(household_id, event.id, "deleted")
        return result

    async def list_events(
        self,
        user_id: str,
        household_id: str,
        window: TimeWindow | Mapping[str, Any] | None = None,
    ) -> list[DisplayEvent]:
        """Fetch, reconcile and return the merged event list for a window.

        Members without a connected calendar get their household's local
        events only, as do members whose token refresh cannot reach Google;
        the next call retries the sync.

        Raises
        ------
        CalendarAuthError
            If the member's token is rejected, either on refresh or by their
            own calendar.
        """
        if window is None:
            window = TimeWindow(time_min=default_window_start(self._clock()))
        else:
            window = _coerce(TimeWindow, window)
        household, owner, profiles = await self._scope(user_id, household_id)

        if owner.binding is None or not owner.binding.connected:
            return await self._local_window(household_id, window)

        try:
            provider = await self._require_provider(owner)
        except CalendarTransientError as exc:
            logger.warning("Skipping sync for household %s: %s", household_id, exc)
            return await self._local_window(household_id, window)
        try:
            fetcher = RemoteFetcher(provider, metrics=self._metrics)
            fetched = await fetcher.fetch_window(
                collect_calendar_ids(owner, household, profiles),
                window.time_min,
                window.time_max,
            )
        finally:
            await provider.shutdown()

        result = await self._reconciler.reconcile(
            household_id,
            fetched.events,
            window.time_min,
            window.time_max,
            self._color_map(household, profiles),
            fetched_calendar_ids=fetched.fetched_calendar_ids,
            family_calendar_id=household.family_calendar_id,
            member_emails={p.email: p.member_id for p in profiles if p.email},
        )
        return result.events

    # ------------------------------------------------------------------
    # Calendar management
    # ------------------------------------------------------------------

    async def list_writable_calendars(self, user_id: str, household_id: str) -> list[RemoteCalendar]:
        _, owner, _ = await self._scope(user_id, household_id)
        provider = await self._require_provider(owner)
        try:
            return await provider.list_calendars()
        finally:
            await provider.shutdown()

    async def verify_calendar_access(self, user_id: str, household_id: str, calendar_id: str) -> bool:
        """Whether the caller's account can see *calendar_id* in its calendar list."""
        _, owner, _ = await self._scope(user_id, household_id)
        provider = await self._require_provider(owner)
        try:
            await provider.get_calendar(calendar_id=calendar_id)
        except CalendarNotFoundError:
            logger.info("Calendar %s is not accessible to member %s", calendar_id, owner.member_id)
            return False
        finally:
            await provider.shutdown()
        return True

    async def create_member_calendar(
        self,
        user_id: str,
        household_id: str,
        member_id: str,
        *,
        summary: str | None = None,
    ) -> RemoteCalendar:
        """Create a calendar for *member_id* in the caller's account and bind it."""
        _, owner, profiles = await self._scope(user_id, household_id)
        member = next((p for p in profiles if p.member_id == member_id), None)
        if member is None:
            raise RecordNotFoundError("member", member_id)

        provider = await self._require_provider(owner)
        try:
            calendar = await provider.insert_calendar(
                summary=summary or member.first_name or member.display_name
            )
            await provider.set_calendar_color(
                calendar_id=calendar.id,
                color_id=to_color_id(member.color or self._sync.default_color),
            )
        finally:
            await provider.shutdown()

        await self._households.save_calendar_binding(member_id, calendar.id)
        logger.info("Created calendar %s for member %s", calendar.id, member_id)
        return calendar

    async def create_family_calendar(
        self,
        user_id: str,
        household_id: str,
        *,
        summary: str | None = None,
    ) -> RemoteCalendar:
        """Create the shared family calendar in the caller's account."""
        household, owner, _ = await self._scope(user_id, household_id)
        color = household.family_color or self._sync.family_color

        provider = await self._require_provider(owner)
        try:
            calendar = await provider.insert_calendar(
                summary=summary or (f"{household.name} Family" if household.name else "Family")
            )
            await provider.set_calendar_color(calendar_id=calendar.id, color_id=to_color_id(color))
        finally:
            await provider.shutdown()

        await self._households.set_family_calendar(household_id, calendar.id, color)
        logger.info("Created family calendar %s for household %s", calendar.id, household_id)
        return calendar

    async def connect_calendar(
        self,
        member_id: str,
        code: str,
        *,
        redirect_uri: str | None = None,
    ) -> TokenGrant:
        return await self._tokens.connect(member_id, code, redirect_uri=redirect_uri)

    def authorization_url(self, member_id: str, *, redirect_uri: str | None = None) -> str:
        return self._tokens.authorization_url(state=member_id, redirect_uri=redirect_uri)
