"""Service container for the location visibility and proximity alert feature."""

from __future__ import annotations

from typing import Optional

import asyncpg

from locus.domain.proximity.alerts import AlertService
from locus.domain.proximity.collaborators import (
    Entitlements,
    InMemoryEntitlements,
    InMemoryProfileDirectory,
    NotificationDispatcher,
    ProfileDirectory,
    SocketStreamDispatcher,
)
from locus.domain.proximity.engine import AlertEngine
from locus.domain.proximity.repository import (
    AlertRepository,
    InMemoryAlertRepository,
    InMemoryLocationRepository,
    InMemorySocialGraph,
    LocationRepository,
    SocialGraph,
)
from locus.domain.proximity.service import LocationService
from locus.domain.proximity.visibility import VisibilityService
from locus.infra.proximity_repo import (
    PostgresAlertRepository,
    PostgresEntitlements,
    PostgresLocationRepository,
    PostgresProfileDirectory,
    PostgresSocialGraph,
)
from locus.settings import settings

_locations: LocationRepository
_social: SocialGraph
_alerts: AlertRepository
_profiles: ProfileDirectory
_entitlements: Entitlements
_dispatcher: NotificationDispatcher
_engine: AlertEngine
_alert_service: AlertService
_visibility_service: VisibilityService
_location_service: LocationService


def configure(
    *,
    locations: Optional[LocationRepository] = None,
    social: Optional[SocialGraph] = None,
    alerts: Optional[AlertRepository] = None,
    profiles: Optional[ProfileDirectory] = None,
    entitlements: Optional[Entitlements] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> None:
    """Wire services; omitted collaborators fall back to in-memory implementations."""
    global _locations, _social, _alerts, _profiles, _entitlements, _dispatcher
    global _engine, _alert_service, _visibility_service, _location_service

    _locations = locations if locations is not None else InMemoryLocationRepository()
    _social = social if social is not None else InMemorySocialGraph()
    _alerts = alerts if alerts is not None else InMemoryAlertRepository(dedup_window_hours=settings.alert_dedup_window_hours)
    _profiles = profiles if profiles is not None else InMemoryProfileDirectory()
    _entitlements = entitlements if entitlements is not None else InMemoryEntitlements()
    _dispatcher = dispatcher if dispatcher is not None else SocketStreamDispatcher()

    _engine = AlertEngine(_alerts, _profiles, _dispatcher)
    _alert_service = AlertService(_alerts, _entitlements, _profiles)
    _visibility_service = VisibilityService(_locations, _social)
    _location_service = LocationService(_locations, _profiles, _engine)


def configure_postgres(pool: asyncpg.Pool, *, dispatcher: Optional[NotificationDispatcher] = None) -> None:
    configure(
        locations=PostgresLocationRepository(pool),
        social=PostgresSocialGraph(pool),
        alerts=PostgresAlertRepository(pool, dedup_window_hours=settings.alert_dedup_window_hours),
        profiles=PostgresProfileDirectory(pool),
        entitlements=PostgresEntitlements(pool),
        dispatcher=dispatcher,
    )


def reset_memory_state() -> None:
    """Test helper: rebuild every collaborator in memory."""
    configure()


def get_location_repository() -> LocationRepository:
    return _locations


def get_social_graph() -> SocialGraph:
    return _social


def get_alert_repository() -> AlertRepository:
    return _alerts


def get_profile_directory() -> ProfileDirectory:
    return _profiles


def get_entitlements() -> Entitlements:
    return _entitlements


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


def get_engine() -> AlertEngine:
    return _engine


def get_alert_service() -> AlertService:
    return _alert_service


def get_visibility_service() -> VisibilityService:
    return _visibility_service


def get_location_service() -> LocationService:
    return _location_service


configure()
