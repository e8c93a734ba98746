"""Proximity alert evaluation for a single location update.

Evaluation is request driven: the location service calls `AlertEngine.on_location_update`
after persisting a position. Each alert is evaluated independently; the only write
is `record_match_if_absent`, which deduplicates and claims the trigger atomically.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from locus.domain.proximity import geo
from locus.domain.proximity.collaborators import (
    NotificationDispatcher,
    ProfileDirectory,
    ProximityMatchEvent,
)
from locus.domain.proximity.models import AlertCriteria, ProfileSnapshot, ProximityAlert, ProximityMatch
from locus.domain.proximity.repository import AlertRepository
from locus.obs import metrics as obs_metrics
from locus.settings import settings

logger = logging.getLogger(__name__)


def _fold(values) -> set[str]:
    return {str(value).strip().casefold() for value in values if str(value).strip()}


def matches_criteria(criteria: AlertCriteria, profile: ProfileSnapshot) -> bool:
    """True when `profile` satisfies every configured criterion.

    Age bounds only apply when the profile carries an age.
    """
    if profile.age is not None:
        if criteria.min_age is not None and profile.age < criteria.min_age:
            return False
        if criteria.max_age is not None and profile.age > criteria.max_age:
            return False
    if criteria.gender and (profile.gender or "").casefold() != criteria.gender.casefold():
        return False
    if criteria.activity_intent and (profile.activity_intent or "").casefold() != criteria.activity_intent.casefold():
        return False
    if criteria.min_trust_score is not None and profile.trust_score < criteria.min_trust_score:
        return False
    if criteria.interests and not (_fold(criteria.interests) & _fold(profile.interests)):
        return False
    return True


def shared_interests(reporter: Optional[ProfileSnapshot], owner: Optional[ProfileSnapshot]) -> tuple[str, ...]:
    if reporter is None or owner is None:
        return ()
    owner_interests = _fold(owner.interests)
    seen: set[str] = set()
    shared: list[str] = []
    for interest in reporter.interests:
        key = str(interest).strip().casefold()
        if key in owner_interests and key not in seen:
            seen.add(key)
            shared.append(interest)
    return tuple(shared)


class AlertEngine:
    def __init__(
        self,
        alerts: AlertRepository,
        profiles: ProfileDirectory,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self._alerts = alerts
        self._profiles = profiles
        self._dispatcher = dispatcher

    async def candidate_alerts(self, reporting_user_id: str, lat: float, lng: float) -> Sequence[ProximityAlert]:
        if not settings.alerts_spatial_index_enabled:
            return await self._alerts.list_active_alerts_excluding(reporting_user_id)
        precisions = await self._alerts.active_cell_precisions()
        if not precisions:
            return []
        cells = geo.search_cells(lat, lng, precisions)
        return await self._alerts.list_active_alerts_excluding(reporting_user_id, cells=cells)

    async def on_location_update(
        self,
        reporting_user_id: str,
        lat: float,
        lng: float,
        profile: Optional[ProfileSnapshot],
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """Evaluate every candidate alert against the new position; return how many fired."""
        now = now or datetime.now(timezone.utc)
        started = time.perf_counter()
        position = geo.Coordinate(lat, lng)
        try:
            candidates = await self.candidate_alerts(reporting_user_id, lat, lng)
        except Exception:
            logger.exception("proximity candidate lookup failed", extra={"user_id": reporting_user_id})
            obs_metrics.inc_alert_evaluation("error")
            return 0

        if profile is None and any(not alert.criteria.is_empty() for alert in candidates):
            logger.warning(
                "proximity profile missing, criteria alerts skipped",
                extra={"user_id": reporting_user_id},
            )

        triggered = 0
        for alert in candidates:
            try:
                outcome = await self._evaluate(alert, reporting_user_id, position, profile, now)
            except Exception:
                logger.exception("proximity alert evaluation failed", extra={"alert_id": alert.id})
                outcome = "error"
            obs_metrics.inc_alert_evaluation(outcome)
            if outcome == "triggered":
                triggered += 1
        obs_metrics.observe_match_latency(time.perf_counter() - started)
        return triggered

    async def _evaluate(
        self,
        alert: ProximityAlert,
        reporting_user_id: str,
        position: geo.Coordinate,
        profile: Optional[ProfileSnapshot],
        now: datetime,
    ) -> str:
        if alert.cooling_down(now):
            return "cooldown"
        distance = geo.distance_m(geo.Coordinate(alert.lat, alert.lng), position)
        if distance > alert.radius_m:
            return "out_of_range"
        since = now - timedelta(hours=settings.alert_dedup_window_hours)
        if await self._alerts.has_recent_match(alert.id, reporting_user_id, since):
            return "duplicate"
        if not alert.criteria.is_empty():
            if profile is None:
                return "no_profile"
            if not matches_criteria(alert.criteria, profile):
                return "criteria"

        result = await self._alerts.record_match_if_absent(alert.id, reporting_user_id, distance, now=now)
        if not result.inserted or result.match is None:
            return result.reason or "duplicate"
        obs_metrics.inc_alert_trigger()
        await self._dispatch(alert, result.match, profile)
        return "triggered"

    async def _dispatch(
        self,
        alert: ProximityAlert,
        match: ProximityMatch,
        profile: Optional[ProfileSnapshot],
    ) -> None:
        try:
            owner = await self._profiles.get_profile_snapshot(alert.owner_id) if profile else None
            event = ProximityMatchEvent(
                alert_id=alert.id,
                alert_name=alert.name,
                matched_user_id=match.matched_user_id,
                display_name=profile.display_name if profile else None,
                distance_m=int(round(match.distance_m)),
                shared_interests=shared_interests(profile, owner),
                matched_at=match.matched_at,
            )
            await self._dispatcher.notify(alert.owner_id, event)
        except Exception:
            obs_metrics.inc_dispatch_failure()
            logger.warning(
                "proximity match dispatch failed",
                exc_info=True,
                extra={"alert_id": alert.id, "owner_id": alert.owner_id},
            )
