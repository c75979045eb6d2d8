"""Tests for concurrent remote calendar fetching."""

from __future__ import annotations

from datetime import timedelta

import pytest

from famcal.calendar.errors import CalendarAuthError, CalendarTransientError
from famcal.calendar.fetcher import PRIMARY_CALENDAR_ID, RemoteFetcher, collect_calendar_ids
from tests.conftest import (
    CHILD_CAL,
    FAMILY_CAL,
    HOUSEHOLD_ID,
    PARENT_CAL,
    T0,
    fail_once,
    google_payload,
)

pytestmark = pytest.mark.unit

WINDOW_START = T0 - timedelta(days=30)


class TestCollectCalendarIds:
    async def test_owner_family_then_members_without_duplicates(self, household_store):
        household = await household_store.get_household(HOUSEHOLD_ID)
        profiles = await household_store.list_profiles(HOUSEHOLD_ID)
        owner = next(p for p in profiles if p.member_id == "parent")

        assert collect_calendar_ids(owner, household, profiles) == [PARENT_CAL, FAMILY_CAL, CHILD_CAL]

    async def test_unbound_owner_falls_back_to_email_then_primary(self, household_store):
        household = await household_store.get_household(HOUSEHOLD_ID)
        household.family_calendar_id = None
        profiles = await household_store.list_profiles(HOUSEHOLD_ID)
        owner = next(p for p in profiles if p.member_id == "parent")
        owner.binding.selected_calendar_id = None

        assert collect_calendar_ids(owner, household, [owner]) == [PARENT_CAL]
        owner.email = None
        assert collect_calendar_ids(owner, household, [owner]) == [PRIMARY_CALENDAR_ID]


class TestFetchWindow:
    async def test_merges_all_calendars(self, provider, metrics):
        provider.put_event(PARENT_CAL, google_payload("p1", "Work", T0))
        provider.put_event(CHILD_CAL, google_payload("c1", "Swim", T0))

        result = await RemoteFetcher(provider, metrics=metrics).fetch_window(
            [PARENT_CAL, CHILD_CAL], WINDOW_START
        )

        assert sorted(e.id for e in result.events) == ["c1", "p1"]
        assert result.fetched_calendar_ids == [PARENT_CAL, CHILD_CAL]
        assert result.failed == {}

    async def test_one_failing_calendar_does_not_fail_the_pass(self, provider, metrics):
        provider.put_event(PARENT_CAL, google_payload("p1", "Work", T0))
        fail_once(provider, "list_events", CHILD_CAL, CalendarTransientError(status_code=503, message="x"))

        result = await RemoteFetcher(provider, metrics=metrics).fetch_window(
            [PARENT_CAL, CHILD_CAL], WINDOW_START
        )

        assert [e.id for e in result.events] == ["p1"]
        assert result.fetched_calendar_ids == [PARENT_CAL]
        assert CHILD_CAL in result.failed
        assert ("fetch_failed", 1, {}) in metrics.calls

    async def test_auth_failure_on_own_calendar_is_raised(self, provider, metrics):
        fail_once(provider, "list_events", PARENT_CAL, CalendarAuthError("token rejected"))

        with pytest.raises(CalendarAuthError, match="token rejected"):
            await RemoteFetcher(provider, metrics=metrics).fetch_window(
                [PARENT_CAL, FAMILY_CAL], WINDOW_START
            )
        assert ("fetch_failed", 1, {}) in metrics.calls

    async def test_auth_failure_with_nothing_fetched_is_raised(self, provider):
        fail_once(provider, "list_events", PARENT_CAL, CalendarTransientError(status_code=503, message="x"))
        for calendar_id in (FAMILY_CAL, CHILD_CAL):
            fail_once(provider, "list_events", calendar_id, CalendarAuthError("token rejected"))

        with pytest.raises(CalendarAuthError):
            await RemoteFetcher(provider).fetch_window([PARENT_CAL, FAMILY_CAL, CHILD_CAL], WINDOW_START)

    async def test_auth_failure_on_shared_calendar_is_isolated(self, provider):
        fail_once(provider, "list_events", FAMILY_CAL, CalendarAuthError("token rejected"))

        result = await RemoteFetcher(provider).fetch_window([PARENT_CAL, FAMILY_CAL], WINDOW_START)

        assert result.fetched_calendar_ids == [PARENT_CAL]
        assert result.failed[FAMILY_CAL] == "token rejected"

    async def test_duplicate_event_ids_are_merged(self, provider):
        provider.put_event(PARENT_CAL, google_payload("shared", "Old", T0))
        provider.put_event(FAMILY_CAL, google_payload("shared", "New", T0))

        result = await RemoteFetcher(provider).fetch_window([PARENT_CAL, FAMILY_CAL], WINDOW_START)

        assert len(result.events) == 1
        assert result.events[0].calendar_id == FAMILY_CAL

    async def test_window_filters_events(self, provider):
        provider.put_event(PARENT_CAL, google_payload("old", "Old", WINDOW_START - timedelta(days=1)))
        provider.put_event(PARENT_CAL, google_payload("new", "New", T0))

        result = await RemoteFetcher(provider).fetch_window([PARENT_CAL], WINDOW_START)
        assert [e.id for e in result.events] == ["new"]

    async def test_no_calendars(self, provider):
        result = await RemoteFetcher(provider).fetch_window([], WINDOW_START)
        assert result.events == [] and result.fetched_calendar_ids == []
        assert provider.calls == []

    async def test_unexpected_errors_propagate(self, provider):
        fail_once(provider, "list_events", PARENT_CAL, RuntimeError("bug"))
        with pytest.raises(RuntimeError, match="bug"):
            await RemoteFetcher(provider).fetch_window([PARENT_CAL], WINDOW_START)
