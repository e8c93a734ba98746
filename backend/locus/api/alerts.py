"""REST endpoints for managing proximity alerts."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from locus.api.errors import to_http_error
from locus.domain.proximity import container
from locus.domain.proximity.exceptions import ProximityError
from locus.domain.proximity.schemas import (
	AlertCreateRequest,
	AlertOut,
	AlertUpdateRequest,
	MatchOut,
	ResetResult,
)
from locus.infra.auth import AuthenticatedUser, get_admin_user, get_current_user
from locus.jobs import daily_reset

router = APIRouter(prefix="/proximity-alerts", tags=["proximity-alerts"])
internal_router = APIRouter(prefix="/internal/proximity-alerts", tags=["internal"])


@router.get("", response_model=List[AlertOut])
async def list_alerts(auth_user: AuthenticatedUser = Depends(get_current_user)) -> List[AlertOut]:
	alerts = await container.get_alert_service().list_my_alerts(auth_user.id)
	return [AlertOut.from_alert(alert) for alert in alerts]


@router.post("", response_model=AlertOut, status_code=status.HTTP_201_CREATED)
async def create_alert(
	payload: AlertCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> AlertOut:
	try:
		alert = await container.get_alert_service().create_alert(auth_user.id, payload)
	except ProximityError as exc:
		raise to_http_error(exc) from None
	return AlertOut.from_alert(alert)


@router.put("/{alert_id}", response_model=AlertOut)
async def update_alert(
	alert_id: str,
	payload: AlertUpdateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> AlertOut:
	try:
		alert = await container.get_alert_service().update_alert(auth_user.id, alert_id, payload)
	except ProximityError as exc:
		raise to_http_error(exc) from None
	return AlertOut.from_alert(alert)


@router.delete("/{alert_id}")
async def delete_alert(alert_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> dict:
	try:
		await container.get_alert_service().delete_alert(auth_user.id, alert_id)
	except ProximityError as exc:
		raise to_http_error(exc) from None
	return {"ok": True}


@router.get("/{alert_id}/matches", response_model=List[MatchOut])
async def list_matches(alert_id: str, auth_user: AuthenticatedUser = Depends(get_current_user)) -> List[MatchOut]:
	service = container.get_alert_service()
	try:
		matches = await service.list_my_matches(auth_user.id, alert_id)
	except ProximityError as exc:
		raise to_http_error(exc) from None
	profiles = await service.match_profiles(matches)
	return [MatchOut.from_match(match, profiles.get(match.matched_user_id)) for match in matches]


@internal_router.post("/reset-daily", response_model=ResetResult)
async def reset_daily(_admin: AuthenticatedUser = Depends(get_admin_user)) -> ResetResult:
	return ResetResult(reset=await daily_reset.run())
