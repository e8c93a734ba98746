"""Owner-facing management of proximity alerts."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence
from uuid import uuid4

from locus.domain.proximity import geo
from locus.domain.proximity.collaborators import Entitlements, ProfileDirectory
from locus.domain.proximity.exceptions import (
    AlertLimitExceeded,
    AlertNotFound,
    LocationValidationError,
    PremiumRequired,
)
from locus.domain.proximity.models import ProfileSnapshot, ProximityAlert, ProximityMatch
from locus.domain.proximity.repository import AlertRepository
from locus.domain.proximity.schemas import AlertCreateRequest, AlertUpdateRequest
from locus.obs import metrics as obs_metrics
from locus.settings import settings

logger = logging.getLogger(__name__)

_CRITERIA_FIELDS = ("min_age", "max_age", "gender", "interests", "activity_intent", "min_trust_score")
# Fields that may not be cleared by an explicit null.
_REQUIRED_FIELDS = ("lat", "lng", "radius_m", "cooldown_minutes", "max_triggers_per_day", "is_active")


class AlertService:
    def __init__(
        self,
        repository: AlertRepository,
        entitlements: Entitlements,
        profiles: Optional[ProfileDirectory] = None,
    ) -> None:
        self._repository = repository
        self._entitlements = entitlements
        self._profiles = profiles

    async def _owned(self, owner_id: str, alert_id: str) -> ProximityAlert:
        alert = await self._repository.get_alert(alert_id)
        if alert is None or alert.owner_id != owner_id:
            raise AlertNotFound()
        return alert

    async def create_alert(
        self, owner_id: str, payload: AlertCreateRequest, *, now: Optional[datetime] = None
    ) -> ProximityAlert:
        if not await self._entitlements.is_premium(owner_id):
            raise PremiumRequired()
        coord = geo.validate_coordinates(payload.lat, payload.lng)
        radius = payload.radius_m or settings.alert_default_radius_m
        alert = ProximityAlert(
            id=str(uuid4()),
            owner_id=owner_id,
            name=payload.name,
            lat=coord.lat,
            lng=coord.lng,
            radius_m=float(radius),
            criteria=payload.criteria(),
            cooldown_minutes=payload.cooldown_minutes or settings.alert_default_cooldown_minutes,
            max_triggers_per_day=payload.max_triggers_per_day or settings.alert_default_max_triggers_per_day,
            cell=geo.alert_cell(coord.lat, coord.lng, radius),
            created_at=now or datetime.now(timezone.utc),
        )
        created = await self._repository.create_alert(alert, max_alerts=settings.alerts_max_per_user)
        if created is None:
            raise AlertLimitExceeded()
        logger.info("proximity alert created", extra={"alert_id": created.id, "user_id": owner_id})
        return created

    async def update_alert(self, owner_id: str, alert_id: str, patch: AlertUpdateRequest) -> ProximityAlert:
        alert = await self._owned(owner_id, alert_id)
        changes = patch.model_dump(exclude_unset=True)
        for key in _REQUIRED_FIELDS:
            if key in changes and changes[key] is None:
                del changes[key]

        criteria_changes = {key: changes.pop(key) for key in _CRITERIA_FIELDS if key in changes}
        if "interests" in criteria_changes:
            criteria_changes["interests"] = tuple(criteria_changes["interests"] or ())
        criteria = replace(alert.criteria, **criteria_changes)
        if criteria.min_age is not None and criteria.max_age is not None and criteria.min_age > criteria.max_age:
            raise LocationValidationError("invalid_age_range")

        if "radius_m" in changes:
            changes["radius_m"] = float(changes["radius_m"])
        updated = replace(alert, criteria=criteria, **changes)
        if {"lat", "lng", "radius_m"} & changes.keys():
            geo.validate_coordinates(updated.lat, updated.lng)
            updated.cell = geo.alert_cell(updated.lat, updated.lng, updated.radius_m)
        return await self._repository.update_alert(updated)

    async def delete_alert(self, owner_id: str, alert_id: str) -> None:
        if not await self._repository.delete_alert(owner_id, alert_id):
            raise AlertNotFound()
        logger.info("proximity alert deleted", extra={"alert_id": alert_id, "user_id": owner_id})

    async def list_my_alerts(self, owner_id: str) -> Sequence[ProximityAlert]:
        return await self._repository.list_alerts(owner_id)

    async def list_my_matches(self, owner_id: str, alert_id: str) -> Sequence[ProximityMatch]:
        await self._owned(owner_id, alert_id)
        return await self._repository.list_matches(alert_id, limit=settings.alert_matches_page_size)

    async def match_profiles(self, matches: Sequence[ProximityMatch]) -> Dict[str, ProfileSnapshot]:
        """Profiles of matched users, keyed by user id. Lookups are best effort."""
        if self._profiles is None:
            return {}
        snapshots: Dict[str, ProfileSnapshot] = {}
        for user_id in dict.fromkeys(match.matched_user_id for match in matches):
            try:
                snapshot = await self._profiles.get_profile_snapshot(user_id)
            except Exception:
                logger.warning("match profile lookup failed", extra={"user_id": user_id}, exc_info=True)
                continue
            if snapshot is not None:
                snapshots[user_id] = snapshot
        return snapshots

    async def reset_daily_counters(self) -> int:
        count = await self._repository.reset_daily_counters()
        obs_metrics.inc_counter_resets(count)
        logger.info("proximity alert counters reset", extra={"count": count})
        return count
