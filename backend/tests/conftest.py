import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Tests run against the in-memory container with dev header auth.
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("ALERT_RESET_JOB_ENABLED", "false")

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from locus.domain.proximity import container
from locus.domain.proximity.collaborators import (
	InMemoryEntitlements,
	InMemoryProfileDirectory,
	RecordingDispatcher,
)
from locus.domain.proximity.repository import (
	InMemoryAlertRepository,
	InMemoryLocationRepository,
	InMemorySocialGraph,
)
from locus.infra import postgres
from locus.main import app
from locus.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from locus.infra.redis import redis_client, set_redis_client

	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Pin settings that API tests rely on (dev header auth, in-memory storage)."""
	original = (settings.environment, settings.storage_backend, settings.alerts_spatial_index_enabled)
	settings.environment = "dev"
	settings.storage_backend = "memory"
	settings.alerts_spatial_index_enabled = True
	try:
		yield
	finally:
		settings.environment, settings.storage_backend, settings.alerts_spatial_index_enabled = original


class Wiring:
	"""Handles to the in-memory collaborators behind the container."""

	def __init__(self) -> None:
		self.locations = InMemoryLocationRepository()
		self.social = InMemorySocialGraph()
		self.alerts = InMemoryAlertRepository()
		self.profiles = InMemoryProfileDirectory()
		self.entitlements = InMemoryEntitlements()
		self.dispatcher = RecordingDispatcher()


@pytest.fixture(autouse=True)
def wiring():
	handles = Wiring()
	container.configure(
		locations=handles.locations,
		social=handles.social,
		alerts=handles.alerts,
		profiles=handles.profiles,
		entitlements=handles.entitlements,
		dispatcher=handles.dispatcher,
	)
	try:
		yield handles
	finally:
		container.reset_memory_state()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
