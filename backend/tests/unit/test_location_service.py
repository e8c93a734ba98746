from datetime import datetime, timedelta, timezone

import pytest

from locus.domain.proximity import geo
from locus.domain.proximity.collaborators import InMemoryProfileDirectory, RecordingDispatcher
from locus.domain.proximity.engine import AlertEngine
from locus.domain.proximity.exceptions import LocationValidationError, StoreUnavailable
from locus.domain.proximity.models import ProximityAlert, UserLocationState, VisibilityLevel
from locus.domain.proximity.repository import InMemoryAlertRepository, InMemoryLocationRepository
from locus.domain.proximity.service import LocationService
from locus.infra.rate_limit import RateLimitExceeded
from locus.settings import settings

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class Parts:
    def __init__(self, locations=None) -> None:
        self.locations = locations or InMemoryLocationRepository()
        self.alerts = InMemoryAlertRepository()
        self.profiles = InMemoryProfileDirectory()
        self.dispatcher = RecordingDispatcher()
        self.engine = AlertEngine(self.alerts, self.profiles, self.dispatcher)
        self.service = LocationService(self.locations, self.profiles, self.engine)

    async def add_alert(self) -> None:
        alert = ProximityAlert(id="a1", owner_id="owner", lat=10.0, lng=10.0, radius_m=1_000.0)
        alert.cell = geo.alert_cell(alert.lat, alert.lng, alert.radius_m)
        await self.alerts.create_alert(alert, max_alerts=5)


class BrokenLocations(InMemoryLocationRepository):
    async def save_location(self, user_id, lat, lng, now):
        raise StoreUnavailable()


@pytest.mark.asyncio
async def test_report_persists_and_triggers():
    parts = Parts()
    await parts.add_alert()
    result = await parts.service.report_location("bob", 10.001, 10.0, now=NOW)
    assert result.ok
    assert result.triggered == 1
    assert result.updated_at == NOW
    state = await parts.locations.get_state("bob")
    assert (state.lat, state.lng) == (10.001, 10.0)


@pytest.mark.asyncio
async def test_invalid_coordinates_mutate_nothing():
    parts = Parts()
    with pytest.raises(LocationValidationError):
        await parts.service.report_location("bob", 95.0, 10.0, now=NOW)
    with pytest.raises(LocationValidationError):
        await parts.service.report_location("bob", None, 10.0, now=NOW)
    assert await parts.locations.get_state("bob") is None


@pytest.mark.asyncio
async def test_expired_beacon_is_corrected_on_location_write():
    parts = Parts()
    await parts.locations.save_visibility(
        UserLocationState(
            user_id="bob",
            visibility_level=VisibilityLevel.BEACON,
            beacon_expires_at=NOW - timedelta(minutes=1),
            beacon_duration_minutes=60,
        )
    )
    result = await parts.service.report_location("bob", 1.0, 1.0, now=NOW)
    assert result.visibility_level is VisibilityLevel.DISCOVERABLE
    stored = await parts.locations.get_state("bob")
    assert stored.visibility_level is VisibilityLevel.DISCOVERABLE
    assert stored.beacon_expires_at is None
    assert stored.visibility_updated_at == NOW


@pytest.mark.asyncio
async def test_active_beacon_is_left_alone():
    parts = Parts()
    expires = NOW + timedelta(minutes=30)
    await parts.locations.save_visibility(
        UserLocationState(user_id="bob", visibility_level=VisibilityLevel.BEACON, beacon_expires_at=expires)
    )
    result = await parts.service.report_location("bob", 1.0, 1.0, now=NOW)
    assert result.visibility_level is VisibilityLevel.BEACON


@pytest.mark.asyncio
async def test_store_failure_skips_matching():
    parts = Parts(locations=BrokenLocations())
    await parts.add_alert()
    with pytest.raises(StoreUnavailable):
        await parts.service.report_location("bob", 10.001, 10.0, now=NOW)
    assert parts.dispatcher.events == []
    assert (await parts.alerts.get_alert("a1")).triggers_today == 0


@pytest.mark.asyncio
async def test_engine_failure_does_not_fail_report(monkeypatch):
    parts = Parts()

    async def explode(*args, **kwargs):
        raise RuntimeError("matcher down")

    monkeypatch.setattr(parts.engine, "on_location_update", explode)
    result = await parts.service.report_location("bob", 1.0, 1.0, now=NOW)
    assert result.ok and result.triggered == 0


@pytest.mark.asyncio
async def test_profile_lookup_failure_still_evaluates_distance_only(monkeypatch):
    parts = Parts()
    await parts.add_alert()

    async def broken(user_id):
        raise ConnectionError("profiles offline")

    monkeypatch.setattr(parts.profiles, "get_profile_snapshot", broken)
    result = await parts.service.report_location("bob", 10.001, 10.0, now=NOW)
    assert result.triggered == 1


@pytest.mark.asyncio
async def test_rate_limit_applies_per_user(monkeypatch):
    parts = Parts()
    monkeypatch.setattr(settings, "environment", "production")
    monkeypatch.setattr(settings, "location_report_rate_per_minute", 2)
    await parts.service.report_location("bob", 1.0, 1.0)
    await parts.service.report_location("bob", 1.0, 1.0)
    with pytest.raises(RateLimitExceeded):
        await parts.service.report_location("bob", 1.0, 1.0)
    await parts.service.report_location("carol", 1.0, 1.0)
