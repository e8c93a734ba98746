"""Pydantic schemas for location, visibility and proximity alert endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from locus.domain.proximity.models import (
	AlertCriteria,
	ProfileSnapshot,
	ProximityAlert,
	ProximityMatch,
	VisibilityLevel,
)


class LocationReport(BaseModel):
	"""Body of POST /location; range checks happen in the domain so failures never mutate state."""

	lat: Optional[float] = None
	lng: Optional[float] = None


class LocationReportResult(BaseModel):
	ok: bool = True
	updated_at: datetime
	visibility_level: VisibilityLevel
	triggered: int = 0


class VisibilityUpdate(BaseModel):
	visibility_level: str
	beacon_duration_minutes: Optional[int] = None


class QuickToggle(BaseModel):
	level: str


class VisibilitySettingsOut(BaseModel):
	visibility_level: VisibilityLevel
	beacon_expires_at: Optional[datetime] = None
	beacon_duration_minutes: Optional[int] = None
	updated_at: Optional[datetime] = None


class VisibleUserOut(BaseModel):
	user_id: str
	lat: float
	lng: float
	precision: Literal["exact", "approximate"]
	distance_m: int = Field(..., ge=0)
	visibility_level: VisibilityLevel
	is_beacon: bool = False
	is_circle_member: bool = False
	is_connection: bool = False
	beacon_expires_at: Optional[datetime] = None


class VisibilityDecisionOut(BaseModel):
	visible: bool
	precision: Optional[Literal["exact", "approximate"]] = None
	lat: Optional[float] = None
	lng: Optional[float] = None
	distance_m: Optional[int] = None


class AlertCriteriaFields(BaseModel):
	min_age: Optional[int] = Field(default=None, ge=18, le=99)
	max_age: Optional[int] = Field(default=None, ge=18, le=99)
	gender: Optional[str] = Field(default=None, max_length=32)
	interests: Optional[list[str]] = Field(default=None, max_length=5)
	activity_intent: Optional[str] = Field(default=None, max_length=64)
	min_trust_score: Optional[int] = Field(default=None, ge=0, le=100)

	@model_validator(mode="after")
	def check_age_range(self) -> "AlertCriteriaFields":
		if self.min_age is not None and self.max_age is not None and self.min_age > self.max_age:
			raise ValueError("min_age must be ≤ max_age")
		return self


class AlertCreateRequest(AlertCriteriaFields):
	name: Optional[str] = Field(default=None, min_length=1, max_length=50)
	lat: float = Field(..., ge=-90.0, le=90.0)
	lng: float = Field(..., ge=-180.0, le=180.0)
	radius_m: Optional[int] = Field(default=None, ge=100, le=5000)
	cooldown_minutes: Optional[int] = Field(default=None, ge=15, le=1440)
	max_triggers_per_day: Optional[int] = Field(default=None, ge=1, le=50)

	def criteria(self) -> AlertCriteria:
		return AlertCriteria(
			min_age=self.min_age,
			max_age=self.max_age,
			gender=self.gender,
			interests=tuple(self.interests or ()),
			activity_intent=self.activity_intent,
			min_trust_score=self.min_trust_score,
		)


class AlertUpdateRequest(AlertCriteriaFields):
	"""Partial update; only fields present in the request body are applied."""

	name: Optional[str] = Field(default=None, min_length=1, max_length=50)
	lat: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
	lng: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
	radius_m: Optional[int] = Field(default=None, ge=100, le=5000)
	cooldown_minutes: Optional[int] = Field(default=None, ge=15, le=1440)
	max_triggers_per_day: Optional[int] = Field(default=None, ge=1, le=50)
	is_active: Optional[bool] = None


class AlertOut(BaseModel):
	id: str
	name: Optional[str] = None
	lat: float
	lng: float
	radius_m: float
	is_active: bool
	min_age: Optional[int] = None
	max_age: Optional[int] = None
	gender: Optional[str] = None
	interests: list[str] = Field(default_factory=list)
	activity_intent: Optional[str] = None
	min_trust_score: Optional[int] = None
	cooldown_minutes: int
	max_triggers_per_day: int
	triggers_today: int
	last_triggered_at: Optional[datetime] = None
	created_at: Optional[datetime] = None

	@classmethod
	def from_alert(cls, alert: ProximityAlert) -> "AlertOut":
		criteria = alert.criteria
		return cls(
			id=alert.id,
			name=alert.name,
			lat=alert.lat,
			lng=alert.lng,
			radius_m=alert.radius_m,
			is_active=alert.is_active,
			min_age=criteria.min_age,
			max_age=criteria.max_age,
			gender=criteria.gender,
			interests=list(criteria.interests),
			activity_intent=criteria.activity_intent,
			min_trust_score=criteria.min_trust_score,
			cooldown_minutes=alert.cooldown_minutes,
			max_triggers_per_day=alert.max_triggers_per_day,
			triggers_today=alert.triggers_today,
			last_triggered_at=alert.last_triggered_at,
			created_at=alert.created_at,
		)


class MatchOut(BaseModel):
	id: str
	matched_user_id: str
	distance_m: int
	matched_at: datetime
	display_name: Optional[str] = None
	trust_score: Optional[int] = None

	@classmethod
	def from_match(cls, match: ProximityMatch, profile: Optional[ProfileSnapshot] = None) -> "MatchOut":
		return cls(
			id=match.id,
			matched_user_id=match.matched_user_id,
			distance_m=int(round(match.distance_m)),
			matched_at=match.matched_at,
			display_name=profile.display_name if profile else None,
			trust_score=profile.trust_score if profile else None,
		)


class ResetResult(BaseModel):
	reset: int
