"""Request instrumentation: request ids, route-level metrics and access logs."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from locus.obs import logging as obs_logging
from locus.obs import metrics
from locus.settings import settings

REQUEST_ID_HEADER = "X-Request-Id"


def _route_template(request: Request) -> str:
	# Templated paths keep metric label cardinality bounded (/proximity-alerts/{alert_id}).
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._access_log = obs_logging.get_logger("locus.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not (self._enabled and settings.obs_enabled):
			return await call_next(request)

		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		token = obs_logging.bind_context(request_id=request_id, user_id=request.headers.get("X-User-Id"))
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			self._access_log.exception("request failed", extra={"method": request.method})
			raise
		finally:
			elapsed = time.perf_counter() - started
			route = _route_template(request)
			metrics.observe_request(route, request.method, status_code, elapsed)
			self._access_log.info(
				"request handled",
				extra={
					"route": route,
					"method": request.method,
					"status": status_code,
					"latency_ms": round(elapsed * 1000, 3),
				},
			)
			obs_logging.reset_context(token)

		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
