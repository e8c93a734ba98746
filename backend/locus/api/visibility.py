"""REST endpoints for visibility settings and visible-user lookups."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from locus.api.errors import to_http_error
from locus.domain.proximity import container
from locus.domain.proximity.exceptions import ProximityError
from locus.domain.proximity.geo import Coordinate
from locus.domain.proximity.models import UserLocationState
from locus.domain.proximity.schemas import (
	QuickToggle,
	VisibilityDecisionOut,
	VisibilitySettingsOut,
	VisibilityUpdate,
	VisibleUserOut,
)
from locus.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/visibility", tags=["visibility"])


def _settings_out(state: UserLocationState) -> VisibilitySettingsOut:
	return VisibilitySettingsOut(
		visibility_level=state.visibility_level,
		beacon_expires_at=state.beacon_expires_at,
		beacon_duration_minutes=state.beacon_duration_minutes,
		updated_at=state.visibility_updated_at,
	)


@router.get("", response_model=VisibilitySettingsOut)
async def get_visibility(auth_user: AuthenticatedUser = Depends(get_current_user)) -> VisibilitySettingsOut:
	view = await container.get_visibility_service().get_visibility_settings(auth_user.id)
	return VisibilitySettingsOut(
		visibility_level=view.visibility_level,
		beacon_expires_at=view.beacon_expires_at,
		beacon_duration_minutes=view.beacon_duration_minutes,
		updated_at=view.updated_at,
	)


@router.put("", response_model=VisibilitySettingsOut)
async def update_visibility(
	payload: VisibilityUpdate,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> VisibilitySettingsOut:
	service = container.get_visibility_service()
	try:
		state = await service.set_visibility_level(
			auth_user.id, payload.visibility_level, payload.beacon_duration_minutes
		)
	except ProximityError as exc:
		raise to_http_error(exc) from None
	return _settings_out(state)


@router.post("/quick-toggle", response_model=VisibilitySettingsOut)
async def quick_toggle(
	payload: QuickToggle,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> VisibilitySettingsOut:
	try:
		state = await container.get_visibility_service().quick_toggle(auth_user.id, payload.level)
	except ProximityError as exc:
		raise to_http_error(exc) from None
	return _settings_out(state)


@router.get("/visible-users", response_model=List[VisibleUserOut])
async def visible_users(
	lat: float = Query(...),
	lng: float = Query(...),
	radius_m: Optional[float] = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[VisibleUserOut]:
	service = container.get_visibility_service()
	try:
		users = await service.list_visible_users(auth_user.id, Coordinate(lat, lng), radius_m)
	except ProximityError as exc:
		raise to_http_error(exc) from None
	return [
		VisibleUserOut(
			user_id=user.user_id,
			lat=user.lat,
			lng=user.lng,
			precision=user.precision,  # type: ignore[arg-type]
			distance_m=int(round(user.distance_m)),
			visibility_level=user.level,
			is_beacon=user.is_beacon,
			is_circle_member=user.is_circle_member,
			is_connection=user.is_connection,
			beacon_expires_at=user.beacon_expires_at,
		)
		for user in users
	]


@router.get("/users/{candidate_id}", response_model=VisibilityDecisionOut)
async def resolve_user(
	candidate_id: str,
	lat: float = Query(...),
	lng: float = Query(...),
	radius_m: Optional[float] = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> VisibilityDecisionOut:
	service = container.get_visibility_service()
	try:
		decision = await service.resolve_visibility(auth_user.id, candidate_id, Coordinate(lat, lng), radius_m)
	except ProximityError as exc:
		raise to_http_error(exc) from None
	if not decision.visible:
		return VisibilityDecisionOut(visible=False)
	return VisibilityDecisionOut(
		visible=True,
		precision=decision.precision,
		lat=decision.lat,
		lng=decision.lng,
		distance_m=int(round(decision.distance_m or 0.0)),
	)
