"""Location reporting: persist the caller's position, then evaluate proximity alerts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from locus.domain.proximity import geo
from locus.domain.proximity.collaborators import ProfileDirectory
from locus.domain.proximity.engine import AlertEngine
from locus.domain.proximity.exceptions import StoreUnavailable
from locus.domain.proximity.models import ProfileSnapshot
from locus.domain.proximity.repository import LocationRepository
from locus.domain.proximity.schemas import LocationReportResult
from locus.infra import rate_limit
from locus.obs import metrics as obs_metrics
from locus.settings import settings

logger = logging.getLogger(__name__)


def _report_limit() -> int:
	limit = settings.location_report_rate_per_minute
	return limit * 10 if settings.is_dev() else limit


class LocationService:
	def __init__(
		self,
		locations: LocationRepository,
		profiles: ProfileDirectory,
		engine: AlertEngine,
	) -> None:
		self._locations = locations
		self._profiles = profiles
		self._engine = engine

	async def _profile(self, user_id: str) -> Optional[ProfileSnapshot]:
		try:
			return await self._profiles.get_profile_snapshot(user_id)
		except Exception:
			logger.warning("profile lookup failed", exc_info=True, extra={"user_id": user_id})
			return None

	async def report_location(
		self,
		user_id: str,
		lat: object,
		lng: object,
		*,
		now: Optional[datetime] = None,
	) -> LocationReportResult:
		coord = geo.validate_coordinates(lat, lng)
		try:
			await rate_limit.enforce("loc", user_id, limit=_report_limit())
		except rate_limit.RateLimitExceeded:
			obs_metrics.inc_location_report("rate_limited")
			raise
		now = now or datetime.now(timezone.utc)

		try:
			state = await self._locations.save_location(user_id, coord.lat, coord.lng, now)
			corrected = state.corrected(now)
			if corrected is not state:
				state = await self._locations.save_visibility(corrected)
		except StoreUnavailable:
			obs_metrics.inc_location_report("store_error")
			logger.error("location persist failed", extra={"user_id": user_id})
			raise

		profile = await self._profile(user_id)
		try:
			triggered = await self._engine.on_location_update(user_id, coord.lat, coord.lng, profile, now=now)
		except Exception:
			logger.exception("proximity matching failed", extra={"user_id": user_id})
			triggered = 0

		obs_metrics.inc_location_report("ok")
		return LocationReportResult(
			ok=True,
			updated_at=now,
			visibility_level=state.visibility_level,
			triggered=triggered,
		)
