"""Attendee-driven routing of events onto member and family calendars."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from famcal.calendar.colors import DEFAULT_EVENT_COLOR, DEFAULT_FAMILY_COLOR
from famcal.calendar.errors import CalendarSyncError, RecordNotFoundError
from famcal.calendar.models import CalendarBinding, CalendarType, Household, MemberProfile, Route
from famcal.calendar.provider import CalendarProvider
from famcal.calendar.store import HouseholdStore

logger = logging.getLogger(__name__)


def owner_calendar_id(owner: MemberProfile) -> str:
    """The owner's bound calendar, falling back to their provider identity."""
    return owner.selected_calendar_id or owner.identity


def annotate_title(title: str, names: Sequence[str]) -> str:
    """Append ``(name1, name2)`` to *title* unless it already carries it."""
    if not names:
        return title
    suffix = f" ({', '.join(names)})"
    if title.endswith(suffix):
        return title
    return f"{title}{suffix}"


class CalendarRouter:
    """Resolves the target calendar, color and remote title for an attendee set.

    Given stable bindings the result is a pure function of the attendees,
    household and profiles. The only side effect is self-healing a missing
    binding for a single attendee, which is persisted so later calls resolve
    without a provider round-trip.
    """

    def __init__(
        self,
        households: HouseholdStore,
        *,
        default_color: str = DEFAULT_EVENT_COLOR,
        family_color: str = DEFAULT_FAMILY_COLOR,
    ) -> None:
        self._households = households
        self._default_color = default_color
        self._family_color = family_color

    async def resolve_target(
        self,
        *,
        title: str,
        attendees: Sequence[str],
        owner: MemberProfile,
        household: Household,
        profiles: Iterable[MemberProfile],
        provider: CalendarProvider | None = None,
    ) -> Route:
        by_id = {profile.member_id: profile for profile in profiles}
        by_id.setdefault(owner.member_id, owner)

        if not attendees:
            return Route(
                calendar_id=owner_calendar_id(owner),
                color=owner.color or self._default_color,
                title=title,
                calendar_type=CalendarType.personal,
            )

        attendee_profiles = []
        for attendee_id in attendees:
            profile = by_id.get(attendee_id)
            if profile is None:
                raise RecordNotFoundError("attendee", attendee_id)
            attendee_profiles.append(profile)

        if len(attendee_profiles) == 1:
            attendee = attendee_profiles[0]
            calendar_id = attendee.selected_calendar_id
            if calendar_id is None:
                calendar_id = await self._heal_binding(attendee, provider)
            return Route(
                calendar_id=calendar_id or owner_calendar_id(owner),
                color=attendee.color or self._default_color,
                title=title,
                calendar_type=CalendarType.personal,
            )

        names = [profile.display_name or profile.first_name or "" for profile in attendee_profiles]
        return Route(
            calendar_id=household.family_calendar_id or owner_calendar_id(owner),
            color=household.family_color or self._family_color,
            title=annotate_title(title, [name for name in names if name]),
            calendar_type=CalendarType.family,
        )

    async def _heal_binding(
        self,
        member: MemberProfile,
        provider: CalendarProvider | None,
    ) -> str | None:
        """Find a writable calendar named after *member* and bind it.

        Returns ``None`` when no provider is available, the scan fails, or no
        calendar summary matches the member's first or display name.
        """
        if provider is None:
            return None
        candidates = member.name_candidates()
        if not candidates:
            return None

        try:
            calendars = await provider.list_calendars()
        except CalendarSyncError as exc:
            logger.warning("Calendar scan for member %s failed: %s", member.member_id, exc)
            return None

        for calendar in calendars:
            summary = (calendar.summary or "").strip().lower()
            if summary and summary in candidates:
                await self._households.save_calendar_binding(member.member_id, calendar.id)
                if member.binding is None:
                    member.binding = CalendarBinding(selected_calendar_id=calendar.id)
                else:
                    member.binding.selected_calendar_id = calendar.id
                logger.info(
                    "Bound member %s to calendar %s (%r)",
                    member.member_id,
                    calendar.id,
                    calendar.summary,
                )
                return calendar.id

        logger.info("No calendar matches member %s (%s)", member.member_id, ", ".join(candidates))
        return None
