"""Storage contracts and in-memory implementations for locations and alerts.

The in-memory repositories back local tooling and tests. They run on a single event
loop and never await inside a check-then-write section, which makes each of those
sections atomic with respect to other coroutines.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol, Sequence
from uuid import uuid4

from locus.domain.proximity.exceptions import AlertNotFound
from locus.domain.proximity.geo import Coordinate, distance_m
from locus.domain.proximity.models import (
    MatchInsertResult,
    ProximityAlert,
    ProximityMatch,
    Relationship,
    UserLocationState,
)


class LocationRepository(Protocol):
    async def get_state(self, user_id: str) -> UserLocationState | None:
        """Return the stored state, or None if the user never reported or configured anything."""

    async def list_states_near(self, lat: float, lng: float, radius_m: float) -> Sequence[UserLocationState]:
        """States with a reported location within `radius_m` of (lat, lng)."""

    async def save_location(self, user_id: str, lat: float, lng: float, now: datetime) -> UserLocationState:
        """Upsert the user's position and return the stored state."""

    async def save_visibility(self, state: UserLocationState) -> UserLocationState:
        """Persist visibility fields (level, beacon expiry/duration, updated-at)."""


class SocialGraph(Protocol):
    """Read-only view over circles and connections owned by the social subsystem."""

    async def circle_peers(self, user_id: str) -> set[str]:
        """Users sharing at least one circle with `user_id`."""

    async def connections(self, user_id: str) -> set[str]:
        """Users with an accepted connection to `user_id`."""

    async def relationship(self, user_id: str, other_id: str) -> Relationship:
        ...


class AlertRepository(Protocol):
    async def create_alert(self, alert: ProximityAlert, *, max_alerts: int) -> ProximityAlert | None:
        """Insert unless the owner already holds `max_alerts`; None when at cap."""

    async def get_alert(self, alert_id: str) -> ProximityAlert | None:
        ...

    async def update_alert(self, alert: ProximityAlert) -> ProximityAlert:
        """Persist owner-editable fields; counters are left untouched."""

    async def delete_alert(self, owner_id: str, alert_id: str) -> bool:
        ...

    async def list_alerts(self, owner_id: str) -> Sequence[ProximityAlert]:
        ...

    async def list_active_alerts_excluding(
        self, owner_id: str, *, cells: Optional[Iterable[str]] = None
    ) -> Sequence[ProximityAlert]:
        """Active, uncapped alerts of other owners, optionally limited to geohash cells."""

    async def active_cell_precisions(self) -> set[int]:
        ...

    async def has_recent_match(self, alert_id: str, matched_user_id: str, since: datetime) -> bool:
        ...

    async def record_match_if_absent(
        self, alert_id: str, matched_user_id: str, distance: float, *, now: datetime
    ) -> MatchInsertResult:
        """Atomically insert the match and claim a trigger slot, or do nothing."""

    async def increment_trigger(self, alert_id: str, *, now: datetime) -> bool:
        """Compare-and-set claim of one trigger (cap and cooldown checked)."""

    async def list_matches(self, alert_id: str, *, limit: int) -> Sequence[ProximityMatch]:
        ...

    async def reset_daily_counters(self) -> int:
        ...


class InMemoryLocationRepository(LocationRepository):
    def __init__(self) -> None:
        self._states: dict[str, UserLocationState] = {}

    async def get_state(self, user_id: str) -> UserLocationState | None:
        state = self._states.get(user_id)
        return replace(state) if state else None

    async def list_states_near(self, lat: float, lng: float, radius_m: float) -> Sequence[UserLocationState]:
        origin = Coordinate(lat, lng)
        return [
            replace(state)
            for state in self._states.values()
            if state.has_location and distance_m(origin, Coordinate(state.lat, state.lng)) <= radius_m  # type: ignore[arg-type]
        ]

    async def save_location(self, user_id: str, lat: float, lng: float, now: datetime) -> UserLocationState:
        state = self._states.get(user_id) or UserLocationState(user_id=user_id)
        state.lat = lat
        state.lng = lng
        state.updated_at = now
        self._states[user_id] = state
        return replace(state)

    async def save_visibility(self, state: UserLocationState) -> UserLocationState:
        stored = self._states.get(state.user_id) or UserLocationState(user_id=state.user_id)
        stored.visibility_level = state.visibility_level
        stored.beacon_expires_at = state.beacon_expires_at
        stored.beacon_duration_minutes = state.beacon_duration_minutes
        stored.visibility_updated_at = state.visibility_updated_at
        self._states[state.user_id] = stored
        return replace(stored)


class InMemorySocialGraph(SocialGraph):
    def __init__(self) -> None:
        self._circles: dict[str, set[str]] = {}
        self._accepted: set[frozenset[str]] = set()

    def add_circle_member(self, circle_id: str, user_id: str) -> None:
        self._circles.setdefault(circle_id, set()).add(user_id)

    def connect(self, user_a: str, user_b: str) -> None:
        self._accepted.add(frozenset((user_a, user_b)))

    async def circle_peers(self, user_id: str) -> set[str]:
        peers: set[str] = set()
        for members in self._circles.values():
            if user_id in members:
                peers |= members
        peers.discard(user_id)
        return peers

    async def connections(self, user_id: str) -> set[str]:
        return {other for pair in self._accepted if user_id in pair for other in pair if other != user_id}

    async def relationship(self, user_id: str, other_id: str) -> Relationship:
        return Relationship(
            is_circle_member=other_id in await self.circle_peers(user_id),
            is_connection=frozenset((user_id, other_id)) in self._accepted,
        )


class InMemoryAlertRepository(AlertRepository):
    def __init__(self, *, dedup_window_hours: int = 24) -> None:
        self._dedup_window = timedelta(hours=dedup_window_hours)
        self._alerts: dict[str, ProximityAlert] = {}
        self._matches: dict[str, ProximityMatch] = {}
        self._match_keys: set[tuple[str, str, object]] = set()

    async def create_alert(self, alert: ProximityAlert, *, max_alerts: int) -> ProximityAlert | None:
        owned = sum(1 for item in self._alerts.values() if item.owner_id == alert.owner_id)
        if owned >= max_alerts:
            return None
        self._alerts[alert.id] = replace(alert)
        return replace(alert)

    async def get_alert(self, alert_id: str) -> ProximityAlert | None:
        alert = self._alerts.get(alert_id)
        return replace(alert) if alert else None

    async def update_alert(self, alert: ProximityAlert) -> ProximityAlert:
        stored = self._alerts.get(alert.id)
        if stored is None:
            raise AlertNotFound()
        updated = replace(
            alert,
            triggers_today=stored.triggers_today,
            last_triggered_at=stored.last_triggered_at,
            created_at=stored.created_at,
        )
        self._alerts[alert.id] = updated
        return replace(updated)

    async def delete_alert(self, owner_id: str, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.owner_id != owner_id:
            return False
        del self._alerts[alert_id]
        for match_id in [mid for mid, m in self._matches.items() if m.alert_id == alert_id]:
            match = self._matches.pop(match_id)
            self._match_keys.discard((match.alert_id, match.matched_user_id, match.day_bucket))
        return True

    async def list_alerts(self, owner_id: str) -> Sequence[ProximityAlert]:
        owned = [replace(a) for a in self._alerts.values() if a.owner_id == owner_id]
        return sorted(owned, key=lambda a: a.created_at or datetime.min, reverse=True)

    async def list_active_alerts_excluding(
        self, owner_id: str, *, cells: Optional[Iterable[str]] = None
    ) -> Sequence[ProximityAlert]:
        wanted = set(cells) if cells is not None else None
        return [
            replace(a)
            for a in self._alerts.values()
            if a.owner_id != owner_id
            and a.is_active
            and not a.at_daily_cap()
            and (wanted is None or a.cell in wanted)
        ]

    async def active_cell_precisions(self) -> set[int]:
        return {a.cell_precision for a in self._alerts.values() if a.is_active and a.cell}

    async def has_recent_match(self, alert_id: str, matched_user_id: str, since: datetime) -> bool:
        return self._recent(alert_id, matched_user_id, since)

    def _recent(self, alert_id: str, matched_user_id: str, since: datetime) -> bool:
        return any(
            m.alert_id == alert_id and m.matched_user_id == matched_user_id and m.matched_at >= since
            for m in self._matches.values()
        )

    async def record_match_if_absent(
        self, alert_id: str, matched_user_id: str, distance: float, *, now: datetime
    ) -> MatchInsertResult:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return MatchInsertResult(inserted=False, reason="missing")
        key = (alert_id, matched_user_id, now.date())
        since = now - self._dedup_window
        if key in self._match_keys or self._recent(alert_id, matched_user_id, since):
            return MatchInsertResult(inserted=False, reason="duplicate")
        reason = self._claim(alert, now)
        if reason is not None:
            return MatchInsertResult(inserted=False, reason=reason)
        match = ProximityMatch(
            id=str(uuid4()),
            alert_id=alert_id,
            matched_user_id=matched_user_id,
            distance_m=float(distance),
            matched_at=now,
            day_bucket=now.date(),
        )
        self._matches[match.id] = match
        self._match_keys.add(key)
        return MatchInsertResult(inserted=True, match=replace(match))

    def _claim(self, alert: ProximityAlert, now: datetime) -> str | None:
        if not alert.is_active:
            return "inactive"
        if alert.at_daily_cap():
            return "cap"
        if alert.cooling_down(now):
            return "cooldown"
        alert.triggers_today += 1
        alert.last_triggered_at = now
        return None

    async def increment_trigger(self, alert_id: str, *, now: datetime) -> bool:
        alert = self._alerts.get(alert_id)
        return alert is not None and self._claim(alert, now) is None

    async def list_matches(self, alert_id: str, *, limit: int) -> Sequence[ProximityMatch]:
        matches = [replace(m) for m in self._matches.values() if m.alert_id == alert_id]
        matches.sort(key=lambda m: m.matched_at, reverse=True)
        return matches[:limit]

    async def reset_daily_counters(self) -> int:
        reset = 0
        for alert in self._alerts.values():
            if alert.triggers_today:
                reset += 1
            alert.triggers_today = 0
        return reset
