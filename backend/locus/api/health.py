"""Liveness, readiness and metrics endpoints."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from locus.infra import postgres
from locus.infra.redis import redis_client
from locus.settings import settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["ops"])


async def _redis_status(timeout: float = 0.2) -> Dict[str, Any]:
	start = perf_counter()
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=timeout)
		return {"ok": True, "latency_ms": round((perf_counter() - start) * 1000, 2)}
	except Exception as exc:  # pragma: no cover - depends on runtime
		LOGGER.warning("Redis readiness check failed", exc_info=True)
		return {"ok": False, "error": type(exc).__name__}


async def _postgres_status(timeout: float = 0.3) -> Dict[str, Any]:
	if not settings.uses_postgres():
		return {"ok": True, "skipped": True}
	start = perf_counter()
	try:
		pool = await postgres.get_pool()
		await asyncio.wait_for(pool.fetchval("SELECT 1"), timeout=timeout)
		return {"ok": True, "latency_ms": round((perf_counter() - start) * 1000, 2)}
	except Exception as exc:  # pragma: no cover - depends on runtime
		LOGGER.warning("Postgres readiness check failed", exc_info=True)
		return {"ok": False, "error": type(exc).__name__}


@router.get("/health/live")
async def live() -> dict:
	return {"status": "ok", "service": settings.service_name}


@router.get("/health/ready")
async def ready() -> JSONResponse:
	checks = {"redis": await _redis_status(), "postgres": await _postgres_status()}
	healthy = all(check["ok"] for check in checks.values())
	code = status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE
	return JSONResponse(status_code=code, content={"status": "ok" if healthy else "degraded", "checks": checks})


@router.get("/metrics")
async def metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
