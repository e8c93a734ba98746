import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from locus.domain.proximity import geo
from locus.domain.proximity.collaborators import InMemoryProfileDirectory, RecordingDispatcher
from locus.domain.proximity.engine import AlertEngine, matches_criteria, shared_interests
from locus.domain.proximity.models import AlertCriteria, ProfileSnapshot, ProximityAlert
from locus.domain.proximity.repository import InMemoryAlertRepository
from locus.settings import settings

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
CENTER = (40.7128, -74.0060)
INSIDE = (40.7150, -74.0060)  # ~245 m north of the centre
OUTSIDE = (40.7300, -74.0060)  # ~1.9 km north


class Harness:
    def __init__(self) -> None:
        self.alerts = InMemoryAlertRepository()
        self.profiles = InMemoryProfileDirectory()
        self.dispatcher = RecordingDispatcher()
        self.engine = AlertEngine(self.alerts, self.profiles, self.dispatcher)

    async def add_alert(self, alert_id: str = "a1", owner_id: str = "owner", **overrides) -> ProximityAlert:
        fields = dict(
            id=alert_id,
            owner_id=owner_id,
            lat=CENTER[0],
            lng=CENTER[1],
            radius_m=1_000.0,
            cooldown_minutes=60,
            max_triggers_per_day=10,
            created_at=NOW,
        )
        fields.update(overrides)
        alert = ProximityAlert(**fields)
        alert.cell = geo.alert_cell(alert.lat, alert.lng, alert.radius_m)
        created = await self.alerts.create_alert(alert, max_alerts=5)
        assert created is not None
        return created

    async def report(self, user_id: str, point=INSIDE, profile=None, *, now=NOW) -> int:
        return await self.engine.on_location_update(user_id, point[0], point[1], profile, now=now)


@pytest.fixture()
def harness():
    return Harness()


@pytest.mark.asyncio
async def test_triggers_inside_radius_and_notifies_owner(harness):
    await harness.add_alert(name="Coffee")
    harness.profiles.upsert(ProfileSnapshot(user_id="owner", interests=("chess", "jazz")))
    reporter = ProfileSnapshot(user_id="bob", interests=("Jazz", "hiking"), display_name="Bob")

    assert await harness.report("bob", profile=reporter) == 1

    [event] = harness.dispatcher.for_owner("owner")
    assert event.matched_user_id == "bob"
    assert event.alert_name == "Coffee"
    assert event.shared_interests == ("Jazz",)
    assert event.distance_m == pytest.approx(245, abs=5)
    assert isinstance(event.distance_m, int)
    alert = await harness.alerts.get_alert("a1")
    assert alert.triggers_today == 1
    assert alert.last_triggered_at == NOW


@pytest.mark.asyncio
async def test_outside_radius_does_not_trigger(harness):
    await harness.add_alert()
    assert await harness.report("bob", point=OUTSIDE) == 0
    assert harness.dispatcher.events == []


@pytest.mark.asyncio
async def test_own_alerts_are_ignored(harness):
    await harness.add_alert(owner_id="bob")
    assert await harness.report("bob") == 0


@pytest.mark.asyncio
async def test_inactive_alerts_are_ignored(harness):
    await harness.add_alert(is_active=False)
    assert await harness.report("bob") == 0


@pytest.mark.asyncio
async def test_cooldown_blocks_other_users_until_elapsed(harness):
    await harness.add_alert(cooldown_minutes=60)
    assert await harness.report("bob") == 1
    assert await harness.report("carol", now=NOW + timedelta(minutes=30)) == 0
    assert await harness.report("carol", now=NOW + timedelta(minutes=60)) == 1


@pytest.mark.asyncio
async def test_daily_cap_gates_independently_of_cooldown(harness):
    await harness.add_alert(cooldown_minutes=15, max_triggers_per_day=1)
    assert await harness.report("bob") == 1
    assert await harness.report("carol", now=NOW + timedelta(hours=2)) == 0
    alert = await harness.alerts.get_alert("a1")
    assert alert.triggers_today == 1


@pytest.mark.asyncio
async def test_same_user_deduplicated_for_24_hours(harness):
    await harness.add_alert(cooldown_minutes=15)
    assert await harness.report("bob") == 1
    assert await harness.report("bob", now=NOW + timedelta(hours=3)) == 0
    assert await harness.report("bob", now=NOW + timedelta(hours=25)) == 1
    assert len(harness.dispatcher.events) == 2


@pytest.mark.asyncio
async def test_concurrent_updates_from_same_user_trigger_once(harness):
    await harness.add_alert(cooldown_minutes=15)
    results = await asyncio.gather(*(harness.report("bob") for _ in range(5)))
    assert sum(results) == 1
    assert len(harness.dispatcher.events) == 1
    alert = await harness.alerts.get_alert("a1")
    assert alert.triggers_today == 1


@pytest.mark.asyncio
async def test_concurrent_updates_from_different_users_respect_cooldown(harness):
    await harness.add_alert(cooldown_minutes=15, max_triggers_per_day=10)
    results = await asyncio.gather(harness.report("bob"), harness.report("carol"), harness.report("dave"))
    assert sum(results) == 1
    alert = await harness.alerts.get_alert("a1")
    assert alert.triggers_today == 1


@pytest.mark.asyncio
async def test_criteria_must_hold(harness):
    await harness.add_alert(criteria=AlertCriteria(min_age=25, max_age=35, gender="female"))
    young = ProfileSnapshot(user_id="bob", age=21, gender="female")
    assert await harness.report("bob", profile=young) == 0
    match = ProfileSnapshot(user_id="carol", age=30, gender="Female")
    assert await harness.report("carol", profile=match) == 1


@pytest.mark.asyncio
async def test_missing_profile_skips_criteria_alerts_but_not_distance_only(harness):
    await harness.add_alert("picky", criteria=AlertCriteria(interests=("chess",)))
    await harness.add_alert("plain", owner_id="owner2")
    assert await harness.report("bob", profile=None) == 1
    [(owner, event)] = harness.dispatcher.events
    assert owner == "owner2"
    assert event.alert_id == "plain"
    assert event.shared_interests == ()


@pytest.mark.asyncio
async def test_dispatch_failure_keeps_match_and_counter(harness):
    harness.dispatcher.fail_with = RuntimeError("socket down")
    await harness.add_alert()
    assert await harness.report("bob") == 1
    alert = await harness.alerts.get_alert("a1")
    assert alert.triggers_today == 1
    matches = await harness.alerts.list_matches("a1", limit=10)
    assert [m.matched_user_id for m in matches] == ["bob"]


@pytest.mark.asyncio
async def test_failing_alert_does_not_stop_others(harness, monkeypatch):
    await harness.add_alert("broken", owner_id="o1")
    await harness.add_alert("fine", owner_id="o2")
    original = harness.alerts.has_recent_match

    async def flaky(alert_id, user_id, since):
        if alert_id == "broken":
            raise RuntimeError("boom")
        return await original(alert_id, user_id, since)

    monkeypatch.setattr(harness.alerts, "has_recent_match", flaky)
    assert await harness.report("bob") == 1
    assert [event.alert_id for _, event in harness.dispatcher.events] == ["fine"]


@pytest.mark.asyncio
async def test_linear_scan_matches_spatial_lookup(harness, monkeypatch):
    await harness.add_alert("near")
    await harness.add_alert("elsewhere", owner_id="o2", lat=48.85, lng=2.35)
    spatial = await harness.engine.candidate_alerts("bob", *INSIDE)
    monkeypatch.setattr(settings, "alerts_spatial_index_enabled", False)
    linear = await harness.engine.candidate_alerts("bob", *INSIDE)
    assert [a.id for a in spatial] == ["near"]
    assert {a.id for a in linear} == {"near", "elsewhere"}
    assert await harness.report("bob") == 1


def test_matches_criteria_skips_age_when_unknown():
    criteria = AlertCriteria(min_age=30)
    assert matches_criteria(criteria, ProfileSnapshot(user_id="u"))
    assert not matches_criteria(criteria, ProfileSnapshot(user_id="u", age=20))


def test_matches_criteria_trust_defaults_to_fifty():
    assert matches_criteria(AlertCriteria(min_trust_score=50), ProfileSnapshot(user_id="u"))
    assert not matches_criteria(AlertCriteria(min_trust_score=60), ProfileSnapshot(user_id="u"))


def test_matches_criteria_activity_intent_and_interests():
    profile = ProfileSnapshot(user_id="u", interests=("Running",), activity_intent="coffee")
    assert matches_criteria(AlertCriteria(activity_intent="coffee", interests=("running", "chess")), profile)
    assert not matches_criteria(AlertCriteria(activity_intent="study"), profile)
    assert not matches_criteria(AlertCriteria(interests=("chess",)), profile)


def test_shared_interests_requires_both_profiles():
    reporter = ProfileSnapshot(user_id="r", interests=("a", "b"))
    assert shared_interests(reporter, None) == ()
    assert shared_interests(reporter, ProfileSnapshot(user_id="o", interests=("B",))) == ("b",)
