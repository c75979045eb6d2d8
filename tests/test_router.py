"""Tests for attendee-driven calendar routing."""

from __future__ import annotations

import pytest

from famcal.calendar.errors import CalendarTransientError, RecordNotFoundError
from famcal.calendar.models import CalendarType, MemberProfile
from famcal.calendar.router import CalendarRouter, annotate_title, owner_calendar_id
from tests.conftest import CHILD_CAL, FAMILY_CAL, HOUSEHOLD_ID, PARENT_CAL, fail_once

pytestmark = pytest.mark.unit


@pytest.fixture
def scope(household_scope):
    return household_scope


@pytest.fixture
def router(household_store) -> CalendarRouter:
    return CalendarRouter(household_store)


class TestAnnotateTitle:
    def test_appends_names(self):
        assert annotate_title("Dinner", ["Alex", "Sam"]) == "Dinner (Alex, Sam)"

    def test_idempotent(self):
        assert annotate_title("Dinner (Alex, Sam)", ["Alex", "Sam"]) == "Dinner (Alex, Sam)"

    def test_no_names(self):
        assert annotate_title("Dinner", []) == "Dinner"


class TestOwnerCalendar:
    async def test_bound_calendar_wins(self, scope):
        _, owner, _ = scope
        owner.email = "other@example.com"
        assert owner_calendar_id(owner) == PARENT_CAL

    def test_falls_back_to_identity(self):
        owner = MemberProfile(
            member_id="m", household_id=HOUSEHOLD_ID, display_name="M", email="m@x"
        )
        assert owner_calendar_id(owner) == "m@x"
        owner.email = None
        assert owner_calendar_id(owner) == "m"


class TestResolveTarget:
    async def test_no_attendees_routes_to_owner(self, router, scope):
        household, owner, profiles = scope
        route = await router.resolve_target(
            title="Dentist", attendees=[], owner=owner, household=household, profiles=profiles
        )
        assert route.calendar_id == PARENT_CAL
        assert route.color == "#10B981"
        assert route.title == "Dentist"
        assert route.calendar_type is CalendarType.personal

    async def test_single_attendee_routes_to_their_calendar(self, router, scope):
        household, owner, profiles = scope
        route = await router.resolve_target(
            title="Swim", attendees=["child"], owner=owner, household=household, profiles=profiles
        )
        assert route.calendar_id == CHILD_CAL
        assert route.color == "#EF4444"
        assert route.title == "Swim"

    async def test_multiple_attendees_route_to_family(self, router, scope):
        household, owner, profiles = scope
        route = await router.resolve_target(
            title="Picnic",
            attendees=["parent", "child"],
            owner=owner,
            household=household,
            profiles=profiles,
        )
        assert route.calendar_id == FAMILY_CAL
        assert route.color == "#8B5CF6"
        assert route.title == "Picnic (Alex, Sam)"
        assert route.calendar_type is CalendarType.family

    async def test_family_without_calendar_falls_back_to_owner(self, router, scope):
        household, owner, profiles = scope
        household.family_calendar_id = None
        household.family_color = None
        route = await router.resolve_target(
            title="Picnic",
            attendees=["parent", "child"],
            owner=owner,
            household=household,
            profiles=profiles,
        )
        assert route.calendar_id == PARENT_CAL
        assert route.color == "#8B5CF6"

    async def test_unknown_attendee_raises(self, router, scope):
        household, owner, profiles = scope
        with pytest.raises(RecordNotFoundError):
            await router.resolve_target(
                title="Swim",
                attendees=["stranger"],
                owner=owner,
                household=household,
                profiles=profiles,
            )

    async def test_same_inputs_same_route(self, router, scope):
        household, owner, profiles = scope
        kwargs = dict(
            title="Picnic",
            attendees=["child", "parent"],
            owner=owner,
            household=household,
            profiles=profiles,
        )
        assert await router.resolve_target(**kwargs) == await router.resolve_target(**kwargs)


class TestSelfHealingBinding:
    async def test_unbound_attendee_is_bound_by_calendar_name(
        self, router, scope, provider, household_store
    ):
        household, owner, profiles = scope
        child = next(p for p in profiles if p.member_id == "child")
        child.binding = None

        route = await router.resolve_target(
            title="Swim",
            attendees=["child"],
            owner=owner,
            household=household,
            profiles=profiles,
            provider=provider,
        )

        assert route.calendar_id == CHILD_CAL
        assert household_store.binding_writes == [("child", CHILD_CAL)]
        assert child.selected_calendar_id == CHILD_CAL

    async def test_no_match_falls_back_to_owner(self, router, scope, provider, household_store):
        household, owner, profiles = scope
        child = next(p for p in profiles if p.member_id == "child")
        child.binding = None
        child.display_name = child.first_name = "Jordan"

        route = await router.resolve_target(
            title="Swim",
            attendees=["child"],
            owner=owner,
            household=household,
            profiles=profiles,
            provider=provider,
        )

        assert route.calendar_id == PARENT_CAL
        assert route.color == "#EF4444"
        assert household_store.binding_writes == []

    async def test_scan_failure_falls_back_to_owner(self, router, scope, provider):
        household, owner, profiles = scope
        next(p for p in profiles if p.member_id == "child").binding = None
        fail_once(provider, "list_calendars", "*", CalendarTransientError(status_code=503, message="busy"))

        route = await router.resolve_target(
            title="Swim",
            attendees=["child"],
            owner=owner,
            household=household,
            profiles=profiles,
            provider=provider,
        )
        assert route.calendar_id == PARENT_CAL
