"""Domain models used by the visibility resolver and the proximity alert engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Literal, Optional, Tuple

Precision = Literal["exact", "approximate"]


class VisibilityLevel(str, Enum):
	"""Disclosure policy a user sets for their own location."""

	GHOST = "ghost"
	CIRCLES = "circles"
	FUZZY = "fuzzy"
	SOCIAL = "social"
	DISCOVERABLE = "discoverable"
	BEACON = "beacon"


DEFAULT_VISIBILITY = VisibilityLevel.CIRCLES


@dataclass(slots=True)
class UserLocationState:
	"""Last known position and visibility preference of a single user."""

	user_id: str
	lat: Optional[float] = None
	lng: Optional[float] = None
	updated_at: Optional[datetime] = None
	visibility_level: VisibilityLevel = DEFAULT_VISIBILITY
	beacon_expires_at: Optional[datetime] = None
	beacon_duration_minutes: Optional[int] = None
	visibility_updated_at: Optional[datetime] = None

	@property
	def has_location(self) -> bool:
		return self.lat is not None and self.lng is not None

	def beacon_expired(self, now: datetime) -> bool:
		if self.visibility_level is not VisibilityLevel.BEACON:
			return False
		return self.beacon_expires_at is None or now > self.beacon_expires_at

	def effective_level(self, now: datetime) -> VisibilityLevel:
		"""Level after lazy beacon expiry; never persisted by reads."""
		if self.beacon_expired(now):
			return VisibilityLevel.DISCOVERABLE
		return self.visibility_level

	def corrected(self, now: datetime) -> "UserLocationState":
		"""Copy with an expired beacon downgraded, for the owner's write paths."""
		if not self.beacon_expired(now):
			return self
		return replace(
			self,
			visibility_level=VisibilityLevel.DISCOVERABLE,
			beacon_expires_at=None,
			visibility_updated_at=now,
		)


@dataclass(slots=True)
class AlertCriteria:
	min_age: Optional[int] = None
	max_age: Optional[int] = None
	gender: Optional[str] = None
	interests: Tuple[str, ...] = ()
	activity_intent: Optional[str] = None
	min_trust_score: Optional[int] = None

	def is_empty(self) -> bool:
		return (
			self.min_age is None
			and self.max_age is None
			and not self.gender
			and not self.interests
			and not self.activity_intent
			and self.min_trust_score is None
		)


@dataclass(slots=True)
class ProximityAlert:
	"""A standing watch: notify the owner when a matching user enters the geofence."""

	id: str
	owner_id: str
	lat: float
	lng: float
	radius_m: float
	criteria: AlertCriteria = field(default_factory=AlertCriteria)
	name: Optional[str] = None
	cooldown_minutes: int = 60
	max_triggers_per_day: int = 10
	triggers_today: int = 0
	last_triggered_at: Optional[datetime] = None
	is_active: bool = True
	cell: str = ""
	created_at: Optional[datetime] = None

	@property
	def cell_precision(self) -> int:
		return len(self.cell)

	def cooling_down(self, now: datetime) -> bool:
		if self.last_triggered_at is None:
			return False
		return now - self.last_triggered_at < timedelta(minutes=self.cooldown_minutes)

	def at_daily_cap(self) -> bool:
		return self.triggers_today >= self.max_triggers_per_day


@dataclass(slots=True)
class ProximityMatch:
	id: str
	alert_id: str
	matched_user_id: str
	distance_m: float
	matched_at: datetime
	day_bucket: date


@dataclass(slots=True)
class MatchInsertResult:
	inserted: bool
	match: Optional[ProximityMatch] = None
	# duplicate | cap | cooldown | inactive | missing when not inserted
	reason: Optional[str] = None


@dataclass(slots=True)
class ProfileSnapshot:
	"""Read-only view of the profile attributes the matcher consumes."""

	user_id: str
	age: Optional[int] = None
	gender: Optional[str] = None
	interests: Tuple[str, ...] = ()
	trust_score: int = 50
	activity_intent: Optional[str] = None
	display_name: Optional[str] = None


@dataclass(slots=True)
class Relationship:
	is_circle_member: bool = False
	is_connection: bool = False


@dataclass(slots=True)
class VisibilityDecision:
	visible: bool
	precision: Optional[Precision] = None
	lat: Optional[float] = None
	lng: Optional[float] = None
	distance_m: Optional[float] = None
	level: Optional[VisibilityLevel] = None
	reason: Optional[str] = None

	@classmethod
	def hidden(cls, reason: str, level: Optional[VisibilityLevel] = None) -> "VisibilityDecision":
		return cls(visible=False, reason=reason, level=level)
