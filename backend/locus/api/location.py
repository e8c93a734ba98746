"""REST endpoint for reporting the caller's location."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from locus.api.errors import to_http_error
from locus.domain.proximity import container
from locus.domain.proximity.exceptions import ProximityError
from locus.domain.proximity.schemas import LocationReport, LocationReportResult
from locus.infra.auth import AuthenticatedUser, get_current_user
from locus.infra.rate_limit import RateLimitExceeded

router = APIRouter(tags=["location"])


@router.post("/location", response_model=LocationReportResult)
async def report_location(
	payload: LocationReport,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> LocationReportResult:
	service = container.get_location_service()
	try:
		return await service.report_location(auth_user.id, payload.lat, payload.lng)
	except (ProximityError, RateLimitExceeded) as exc:
		raise to_http_error(exc) from None
