"""Error translation and global handlers that attach request_id to JSON errors."""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from locus.domain.proximity.exceptions import ProximityError
from locus.infra.rate_limit import RateLimitExceeded
from locus.obs.logging import current_request_id


def to_http_error(exc: Exception) -> HTTPException:
	"""Translate domain exceptions to FastAPI HTTP errors."""
	if isinstance(exc, ProximityError):
		return HTTPException(status_code=exc.status_code, detail=exc.detail)
	if isinstance(exc, RateLimitExceeded):
		headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
		return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate_limited", headers=headers)
	return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _request_id(request: Request) -> Optional[str]:
	return getattr(request.state, "request_id", None) or current_request_id()


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": _request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		payload = {"detail": "validation_error", "errors": exc.errors(), "request_id": _request_id(request)}
		return JSONResponse(status_code=422, content=jsonable_encoder(payload))
