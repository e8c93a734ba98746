"""Domain-level exceptions for location visibility and proximity alerts."""

from __future__ import annotations

from fastapi import status

if hasattr(status, "HTTP_422_UNPROCESSABLE_CONTENT"):
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_CONTENT
else:  # pragma: no cover - older Starlette builds
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_ENTITY


class ProximityError(Exception):
	"""Base class for proximity feature errors."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "proximity_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class LocationValidationError(ProximityError):
	status_code = _HTTP_422
	detail = "invalid_location"


class AlertLimitExceeded(ProximityError):
	status_code = status.HTTP_409_CONFLICT
	detail = "alert_limit_reached"


class PremiumRequired(ProximityError):
	status_code = status.HTTP_403_FORBIDDEN
	detail = "premium_required"


class AlertNotFound(ProximityError):
	status_code = status.HTTP_404_NOT_FOUND
	detail = "alert_not_found"


class StoreUnavailable(ProximityError):
	"""Raised when the durable store cannot accept a write."""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	detail = "store_unavailable"
