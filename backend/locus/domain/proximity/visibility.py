"""Visibility policy: who may see a user's location, and at what precision."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from locus.domain.proximity import geo
from locus.domain.proximity.exceptions import LocationValidationError
from locus.domain.proximity.models import (
	Relationship,
	UserLocationState,
	VisibilityDecision,
	VisibilityLevel,
)
from locus.domain.proximity.repository import LocationRepository, SocialGraph
from locus.obs import metrics as obs_metrics
from locus.settings import settings

# Levels that reveal the user to anyone in range, regardless of relationship.
_OPEN_LEVELS = frozenset({VisibilityLevel.FUZZY, VisibilityLevel.DISCOVERABLE, VisibilityLevel.BEACON})


def _now() -> datetime:
	return datetime.now(timezone.utc)


def parse_level(value: object) -> VisibilityLevel:
	if isinstance(value, VisibilityLevel):
		return value
	try:
		return VisibilityLevel(str(value).strip().lower())
	except ValueError:
		raise LocationValidationError("invalid_visibility_level") from None


def _permitted(level: VisibilityLevel, relationship: Relationship) -> bool:
	if level in _OPEN_LEVELS:
		return True
	if level is VisibilityLevel.CIRCLES:
		return relationship.is_circle_member
	if level is VisibilityLevel.SOCIAL:
		return relationship.is_circle_member or relationship.is_connection
	return False


def decide(
	observer_id: str,
	state: UserLocationState,
	observer_location: geo.Coordinate,
	radius_m: float,
	relationship: Relationship,
	now: datetime,
) -> VisibilityDecision:
	"""Apply the visibility policy to one candidate. Pure; never writes."""
	level = state.effective_level(now)
	if level is VisibilityLevel.GHOST:
		return VisibilityDecision.hidden("ghost", level)
	if state.user_id == observer_id:
		return VisibilityDecision.hidden("self", level)
	if not state.has_location:
		return VisibilityDecision.hidden("no_location", level)
	true_coord = geo.Coordinate(state.lat, state.lng)  # type: ignore[arg-type]
	true_distance = geo.distance_m(observer_location, true_coord)
	if true_distance > radius_m:
		return VisibilityDecision.hidden("out_of_range", level)
	if not _permitted(level, relationship):
		return VisibilityDecision.hidden("not_permitted", level)

	if level is VisibilityLevel.FUZZY and not relationship.is_circle_member:
		shown = geo.blur(
			true_coord,
			subject_id=state.user_id,
			observer_id=observer_id,
			day=now.date(),
			min_m=settings.blur_min_m,
			max_m=settings.blur_max_m,
		)
		return VisibilityDecision(
			visible=True,
			precision="approximate",
			lat=shown.lat,
			lng=shown.lng,
			distance_m=geo.distance_m(observer_location, shown),
			level=level,
		)
	return VisibilityDecision(
		visible=True,
		precision="exact",
		lat=true_coord.lat,
		lng=true_coord.lng,
		distance_m=true_distance,
		level=level,
	)


@dataclass(slots=True)
class VisibleUser:
	user_id: str
	lat: float
	lng: float
	precision: str
	distance_m: float
	level: VisibilityLevel
	is_circle_member: bool = False
	is_connection: bool = False
	beacon_expires_at: Optional[datetime] = None

	@property
	def is_beacon(self) -> bool:
		return self.level is VisibilityLevel.BEACON


@dataclass(slots=True)
class VisibilitySettings:
	user_id: str
	visibility_level: VisibilityLevel
	beacon_expires_at: Optional[datetime]
	beacon_duration_minutes: Optional[int]
	updated_at: Optional[datetime]


class VisibilityService:
	def __init__(self, locations: LocationRepository, social: SocialGraph) -> None:
		self._locations = locations
		self._social = social

	def _check_radius(self, radius_m: Optional[float]) -> float:
		if radius_m is None:
			return float(settings.visible_users_default_radius_m)
		if not 0 < radius_m <= settings.visible_users_max_radius_m:
			raise LocationValidationError("invalid_radius")
		return float(radius_m)

	async def resolve_visibility(
		self,
		observer_id: str,
		candidate_id: str,
		observer_location: geo.Coordinate,
		radius_m: Optional[float] = None,
		*,
		now: Optional[datetime] = None,
	) -> VisibilityDecision:
		origin = geo.validate_coordinates(observer_location.lat, observer_location.lng)
		radius = self._check_radius(radius_m)
		obs_metrics.inc_visibility_query("single")
		state = await self._locations.get_state(candidate_id)
		if state is None:
			return VisibilityDecision.hidden("no_location")
		relationship = await self._social.relationship(observer_id, candidate_id)
		return decide(observer_id, state, origin, radius, relationship, now or _now())

	async def list_visible_users(
		self,
		observer_id: str,
		location: geo.Coordinate,
		radius_m: Optional[float] = None,
		*,
		now: Optional[datetime] = None,
	) -> list[VisibleUser]:
		origin = geo.validate_coordinates(location.lat, location.lng)
		radius = self._check_radius(radius_m)
		now = now or _now()
		obs_metrics.inc_visibility_query("batch")
		candidates: Sequence[UserLocationState] = await self._locations.list_states_near(
			origin.lat, origin.lng, radius
		)
		circle_peers = await self._social.circle_peers(observer_id)
		connections = await self._social.connections(observer_id)

		visible: list[VisibleUser] = []
		for state in candidates:
			if state.user_id == observer_id:
				continue
			relationship = Relationship(
				is_circle_member=state.user_id in circle_peers,
				is_connection=state.user_id in connections,
			)
			decision = decide(observer_id, state, origin, radius, relationship, now)
			if not decision.visible:
				continue
			visible.append(
				VisibleUser(
					user_id=state.user_id,
					lat=decision.lat,  # type: ignore[arg-type]
					lng=decision.lng,  # type: ignore[arg-type]
					precision=decision.precision,  # type: ignore[arg-type]
					distance_m=decision.distance_m,  # type: ignore[arg-type]
					level=decision.level,  # type: ignore[arg-type]
					is_circle_member=relationship.is_circle_member,
					is_connection=relationship.is_connection,
					beacon_expires_at=state.beacon_expires_at if decision.level is VisibilityLevel.BEACON else None,
				)
			)
		visible.sort(key=lambda item: item.distance_m)
		return visible

	async def set_visibility_level(
		self,
		user_id: str,
		level: object,
		beacon_duration_minutes: Optional[int] = None,
		*,
		now: Optional[datetime] = None,
	) -> UserLocationState:
		target = parse_level(level)
		now = now or _now()
		state = await self._locations.get_state(user_id) or UserLocationState(user_id=user_id)
		state.visibility_level = target
		state.visibility_updated_at = now
		if target is VisibilityLevel.BEACON:
			minutes = settings.beacon_default_minutes if beacon_duration_minutes is None else beacon_duration_minutes
			if not settings.beacon_min_minutes <= minutes <= settings.beacon_max_minutes:
				raise LocationValidationError("invalid_beacon_duration")
			state.beacon_duration_minutes = minutes
			state.beacon_expires_at = now + timedelta(minutes=minutes)
		else:
			state.beacon_expires_at = None
			state.beacon_duration_minutes = None
		return await self._locations.save_visibility(state)

	async def quick_toggle(self, user_id: str, level: object, *, now: Optional[datetime] = None) -> UserLocationState:
		"""One-tap switch from the map; beacons always get the default window."""
		return await self.set_visibility_level(user_id, level, None, now=now)

	async def get_visibility_settings(self, user_id: str, *, now: Optional[datetime] = None) -> VisibilitySettings:
		now = now or _now()
		state = await self._locations.get_state(user_id) or UserLocationState(user_id=user_id)
		expired = state.beacon_expired(now)
		return VisibilitySettings(
			user_id=user_id,
			visibility_level=state.effective_level(now),
			beacon_expires_at=None if expired else state.beacon_expires_at,
			beacon_duration_minutes=state.beacon_duration_minutes,
			updated_at=state.visibility_updated_at,
		)
