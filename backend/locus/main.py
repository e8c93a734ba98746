"""FastAPI application entrypoint for the location visibility and proximity alert service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from locus import obs
from locus.api import alerts, health, location, visibility
from locus.api.errors import install_error_handlers
from locus.domain.proximity import container
from locus.domain.proximity.sockets import AlertsNamespace, set_namespace
from locus.infra import postgres
from locus.infra.proximity_repo import ensure_schema
from locus.infra.scheduler import AlertResetScheduler
from locus.jobs import daily_reset
from locus.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.uses_postgres():
		pool = await postgres.init_pool()
		await ensure_schema(pool)
		container.configure_postgres(pool)
	scheduler: AlertResetScheduler | None = None
	if settings.alert_reset_job_enabled:
		scheduler = AlertResetScheduler()
		scheduler.start()
		daily_reset.register(scheduler)
		app.state.alert_scheduler = scheduler
	logger.info("locus started", extra={"storage": settings.storage_backend})
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()
		if settings.uses_postgres():
			await postgres.close_pool()


app = FastAPI(title="Locus Proximity Core", lifespan=lifespan)
install_error_handlers(app)

allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else ["https://app.locus.example"]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Middleware cannot be added once the app has started, so this runs at import time.
obs.init(app)

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
alerts_namespace = AlertsNamespace()
sio.register_namespace(alerts_namespace)
set_namespace(alerts_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)

app.include_router(health.router)
app.include_router(location.router)
app.include_router(visibility.router)
app.include_router(alerts.router)
app.include_router(alerts.internal_router)
