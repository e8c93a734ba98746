"""Interfaces the proximity engine consumes from neighbouring subsystems.

Profiles and subscriptions are owned elsewhere; this module only describes the
read contracts plus the outbound notification seam, each with an in-memory
implementation used by local development and tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Protocol

from locus.domain.proximity import sockets
from locus.domain.proximity.models import ProfileSnapshot
from locus.infra.redis import redis_client

logger = logging.getLogger(__name__)

MATCH_STREAM = "x:proximity.matches"


@dataclass(slots=True)
class ProximityMatchEvent:
    alert_id: str
    matched_user_id: str
    distance_m: int
    matched_at: datetime
    alert_name: Optional[str] = None
    shared_interests: tuple[str, ...] = ()
    display_name: Optional[str] = None
    type: str = "proximity_match"

    def to_payload(self) -> dict:
        return {
            "type": self.type,
            "alert_id": self.alert_id,
            "alert_name": self.alert_name,
            "matched_user_id": self.matched_user_id,
            "display_name": self.display_name,
            "distance_m": self.distance_m,
            "shared_interests": list(self.shared_interests),
            "matched_at": self.matched_at.isoformat(),
        }


class ProfileDirectory(Protocol):
    async def get_profile_snapshot(self, user_id: str) -> ProfileSnapshot | None:
        ...


class Entitlements(Protocol):
    async def is_premium(self, user_id: str) -> bool:
        ...


class NotificationDispatcher(Protocol):
    async def notify(self, owner_id: str, event: ProximityMatchEvent) -> None:
        """Deliver a match to the alert owner. May raise; callers treat it as best effort."""


class InMemoryProfileDirectory:
    def __init__(self, profiles: Iterable[ProfileSnapshot] = ()) -> None:
        self._profiles = {profile.user_id: profile for profile in profiles}

    def upsert(self, profile: ProfileSnapshot) -> None:
        self._profiles[profile.user_id] = profile

    async def get_profile_snapshot(self, user_id: str) -> ProfileSnapshot | None:
        return self._profiles.get(user_id)


class InMemoryEntitlements:
    def __init__(self, premium: Iterable[str] = ()) -> None:
        self._premium = set(premium)

    def grant(self, user_id: str) -> None:
        self._premium.add(user_id)

    def revoke(self, user_id: str) -> None:
        self._premium.discard(user_id)

    async def is_premium(self, user_id: str) -> bool:
        return user_id in self._premium


@dataclass
class RecordingDispatcher:
    """Collects events instead of delivering them."""

    events: list[tuple[str, ProximityMatchEvent]] = field(default_factory=list)
    fail_with: Optional[Exception] = None

    async def notify(self, owner_id: str, event: ProximityMatchEvent) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.events.append((owner_id, event))

    def for_owner(self, owner_id: str) -> list[ProximityMatchEvent]:
        return [event for owner, event in self.events if owner == owner_id]


class SocketStreamDispatcher:
    """Pushes matches to the owner's socket room and appends them to the audit stream."""

    async def notify(self, owner_id: str, event: ProximityMatchEvent) -> None:
        payload = event.to_payload()
        delivered = await sockets.emit_proximity_match(owner_id, payload)
        try:
            await redis_client.xadd_capped(
                MATCH_STREAM,
                {
                    "owner_id": owner_id,
                    "alert_id": event.alert_id,
                    "matched_user_id": event.matched_user_id,
                    "distance_m": event.distance_m,
                    "matched_at": payload["matched_at"],
                },
            )
        except Exception:  # pragma: no cover - stream is an audit trail only
            logger.warning("proximity match stream append failed", extra={"alert_id": event.alert_id})
        if not delivered:
            logger.info("proximity match not pushed, no socket namespace", extra={"alert_id": event.alert_id})
