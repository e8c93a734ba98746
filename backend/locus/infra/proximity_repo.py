"""PostgreSQL-backed repositories for user locations, social reads and proximity alerts."""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional, Sequence
from uuid import uuid4

import asyncpg

from locus.domain.proximity.exceptions import AlertNotFound, StoreUnavailable
from locus.domain.proximity.geo import METERS_PER_DEGREE, Coordinate, distance_m
from locus.domain.proximity.models import (
    AlertCriteria,
    MatchInsertResult,
    ProfileSnapshot,
    ProximityAlert,
    ProximityMatch,
    Relationship,
    UserLocationState,
    VisibilityLevel,
)
from locus.domain.proximity.repository import AlertRepository, LocationRepository, SocialGraph

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_locations (
    user_id TEXT PRIMARY KEY,
    lat DOUBLE PRECISION,
    lng DOUBLE PRECISION,
    updated_at TIMESTAMPTZ,
    visibility_level TEXT NOT NULL DEFAULT 'circles',
    beacon_expires_at TIMESTAMPTZ,
    beacon_duration_minutes INTEGER,
    visibility_updated_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS user_locations_lat_lng_idx ON user_locations (lat, lng);

CREATE TABLE IF NOT EXISTS circle_members (
    circle_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    PRIMARY KEY (circle_id, user_id)
);
CREATE INDEX IF NOT EXISTS circle_members_user_idx ON circle_members (user_id);

CREATE TABLE IF NOT EXISTS connections (
    user_a TEXT NOT NULL,
    user_b TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    PRIMARY KEY (user_a, user_b)
);

CREATE TABLE IF NOT EXISTS profiles (
    user_id TEXT PRIMARY KEY,
    display_name TEXT,
    age INTEGER,
    gender TEXT,
    interests TEXT[] NOT NULL DEFAULT '{}',
    trust_score INTEGER NOT NULL DEFAULT 50,
    activity_intent TEXT,
    subscription_status TEXT
);

CREATE TABLE IF NOT EXISTS proximity_alerts (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT,
    lat DOUBLE PRECISION NOT NULL,
    lng DOUBLE PRECISION NOT NULL,
    radius_m DOUBLE PRECISION NOT NULL,
    min_age INTEGER,
    max_age INTEGER,
    gender TEXT,
    interests TEXT[] NOT NULL DEFAULT '{}',
    activity_intent TEXT,
    min_trust_score INTEGER,
    cooldown_minutes INTEGER NOT NULL,
    max_triggers_per_day INTEGER NOT NULL,
    triggers_today INTEGER NOT NULL DEFAULT 0,
    last_triggered_at TIMESTAMPTZ,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    cell TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS proximity_alerts_owner_idx ON proximity_alerts (owner_id);
CREATE INDEX IF NOT EXISTS proximity_alerts_cell_idx ON proximity_alerts (cell);
CREATE INDEX IF NOT EXISTS proximity_alerts_active_idx ON proximity_alerts (owner_id) WHERE is_active;

CREATE TABLE IF NOT EXISTS proximity_matches (
    id TEXT PRIMARY KEY,
    alert_id TEXT NOT NULL REFERENCES proximity_alerts(id) ON DELETE CASCADE,
    matched_user_id TEXT NOT NULL,
    distance_m DOUBLE PRECISION NOT NULL,
    matched_at TIMESTAMPTZ NOT NULL,
    day_bucket DATE NOT NULL,
    UNIQUE (alert_id, matched_user_id, day_bucket)
);
CREATE INDEX IF NOT EXISTS proximity_matches_recent_idx
    ON proximity_matches (alert_id, matched_user_id, matched_at DESC);
"""

_ALERT_COLUMNS = """
    id, owner_id, name, lat, lng, radius_m, min_age, max_age, gender, interests,
    activity_intent, min_trust_score, cooldown_minutes, max_triggers_per_day,
    triggers_today, last_triggered_at, is_active, cell, created_at
"""

_LOCATION_COLUMNS = """
    user_id, lat, lng, updated_at, visibility_level, beacon_expires_at,
    beacon_duration_minutes, visibility_updated_at
"""

# Trigger claim: succeeds only while under the daily cap and outside the cooldown.
_CLAIM_SQL = """
UPDATE proximity_alerts
SET triggers_today = triggers_today + 1, last_triggered_at = $2
WHERE id = $1
  AND is_active
  AND triggers_today < max_triggers_per_day
  AND (last_triggered_at IS NULL OR last_triggered_at <= $2::timestamptz - make_interval(mins => cooldown_minutes))
RETURNING triggers_today
"""


async def ensure_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        logger.error("store operation failed", extra={"operation": operation, "error": type(exc).__name__})
        raise StoreUnavailable() from exc


class _ClaimRejected(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def _state_from_record(record: asyncpg.Record) -> UserLocationState:
    return UserLocationState(
        user_id=record["user_id"],
        lat=record["lat"],
        lng=record["lng"],
        updated_at=record["updated_at"],
        visibility_level=VisibilityLevel(record["visibility_level"]),
        beacon_expires_at=record["beacon_expires_at"],
        beacon_duration_minutes=record["beacon_duration_minutes"],
        visibility_updated_at=record["visibility_updated_at"],
    )


def _alert_from_record(record: asyncpg.Record) -> ProximityAlert:
    return ProximityAlert(
        id=record["id"],
        owner_id=record["owner_id"],
        name=record["name"],
        lat=record["lat"],
        lng=record["lng"],
        radius_m=record["radius_m"],
        criteria=AlertCriteria(
            min_age=record["min_age"],
            max_age=record["max_age"],
            gender=record["gender"],
            interests=tuple(record["interests"] or ()),
            activity_intent=record["activity_intent"],
            min_trust_score=record["min_trust_score"],
        ),
        cooldown_minutes=record["cooldown_minutes"],
        max_triggers_per_day=record["max_triggers_per_day"],
        triggers_today=record["triggers_today"],
        last_triggered_at=record["last_triggered_at"],
        is_active=record["is_active"],
        cell=record["cell"],
        created_at=record["created_at"],
    )


def _match_from_record(record: asyncpg.Record) -> ProximityMatch:
    return ProximityMatch(
        id=record["id"],
        alert_id=record["alert_id"],
        matched_user_id=record["matched_user_id"],
        distance_m=record["distance_m"],
        matched_at=record["matched_at"],
        day_bucket=record["day_bucket"],
    )


class PostgresLocationRepository(LocationRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_state(self, user_id: str) -> UserLocationState | None:
        async with _store_errors("get_state"):
            record = await self.pool.fetchrow(
                f"SELECT {_LOCATION_COLUMNS} FROM user_locations WHERE user_id = $1", user_id
            )
        return _state_from_record(record) if record else None

    async def list_states_near(self, lat: float, lng: float, radius_m: float) -> Sequence[UserLocationState]:
        lat_delta = radius_m / METERS_PER_DEGREE
        cos_lat = math.cos(math.radians(min(abs(lat) + lat_delta, 89.9)))
        lng_delta = lat_delta / max(cos_lat, 1e-6)
        query = f"""
        SELECT {_LOCATION_COLUMNS}
        FROM user_locations
        WHERE lat IS NOT NULL AND lng IS NOT NULL
          AND lat BETWEEN $1 AND $2
        """
        args: list[object] = [lat - lat_delta, lat + lat_delta]
        # Boxes crossing the antimeridian fall back to latitude-only pruning.
        if -180.0 <= lng - lng_delta and lng + lng_delta <= 180.0:
            query += " AND lng BETWEEN $3 AND $4"
            args.extend([lng - lng_delta, lng + lng_delta])
        async with _store_errors("list_states_near"):
            records = await self.pool.fetch(query, *args)
        origin = Coordinate(lat, lng)
        states = [_state_from_record(record) for record in records]
        return [s for s in states if distance_m(origin, Coordinate(s.lat, s.lng)) <= radius_m]  # type: ignore[arg-type]

    async def save_location(self, user_id: str, lat: float, lng: float, now: datetime) -> UserLocationState:
        query = f"""
        INSERT INTO user_locations (user_id, lat, lng, updated_at)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (user_id) DO UPDATE SET
            lat = EXCLUDED.lat,
            lng = EXCLUDED.lng,
            updated_at = EXCLUDED.updated_at
        RETURNING {_LOCATION_COLUMNS}
        """
        async with _store_errors("save_location"):
            record = await self.pool.fetchrow(query, user_id, lat, lng, now)
        assert record is not None
        return _state_from_record(record)

    async def save_visibility(self, state: UserLocationState) -> UserLocationState:
        query = f"""
        INSERT INTO user_locations (
            user_id, visibility_level, beacon_expires_at, beacon_duration_minutes, visibility_updated_at
        )
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (user_id) DO UPDATE SET
            visibility_level = EXCLUDED.visibility_level,
            beacon_expires_at = EXCLUDED.beacon_expires_at,
            beacon_duration_minutes = EXCLUDED.beacon_duration_minutes,
            visibility_updated_at = EXCLUDED.visibility_updated_at
        RETURNING {_LOCATION_COLUMNS}
        """
        async with _store_errors("save_visibility"):
            record = await self.pool.fetchrow(
                query,
                state.user_id,
                state.visibility_level.value,
                state.beacon_expires_at,
                state.beacon_duration_minutes,
                state.visibility_updated_at,
            )
        assert record is not None
        return _state_from_record(record)


class PostgresSocialGraph(SocialGraph):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def circle_peers(self, user_id: str) -> set[str]:
        query = """
        SELECT DISTINCT peer.user_id
        FROM circle_members me
        JOIN circle_members peer ON peer.circle_id = me.circle_id
        WHERE me.user_id = $1 AND peer.user_id <> $1
        """
        records = await self.pool.fetch(query, user_id)
        return {record["user_id"] for record in records}

    async def connections(self, user_id: str) -> set[str]:
        query = """
        SELECT CASE WHEN user_a = $1 THEN user_b ELSE user_a END AS other_id
        FROM connections
        WHERE status = 'accepted' AND (user_a = $1 OR user_b = $1)
        """
        records = await self.pool.fetch(query, user_id)
        return {record["other_id"] for record in records}

    async def relationship(self, user_id: str, other_id: str) -> Relationship:
        query = """
        SELECT
            EXISTS (
                SELECT 1 FROM circle_members me
                JOIN circle_members peer ON peer.circle_id = me.circle_id
                WHERE me.user_id = $1 AND peer.user_id = $2
            ) AS is_circle_member,
            EXISTS (
                SELECT 1 FROM connections
                WHERE status = 'accepted'
                  AND ((user_a = $1 AND user_b = $2) OR (user_a = $2 AND user_b = $1))
            ) AS is_connection
        """
        record = await self.pool.fetchrow(query, user_id, other_id)
        if record is None:
            return Relationship()
        return Relationship(
            is_circle_member=bool(record["is_circle_member"]),
            is_connection=bool(record["is_connection"]),
        )


class PostgresAlertRepository(AlertRepository):
    def __init__(self, pool: asyncpg.Pool, *, dedup_window_hours: int = 24) -> None:
        self.pool = pool
        self.dedup_window_hours = dedup_window_hours

    async def create_alert(self, alert: ProximityAlert, *, max_alerts: int) -> ProximityAlert | None:
        query = f"""
        INSERT INTO proximity_alerts (
            id, owner_id, name, lat, lng, radius_m, min_age, max_age, gender, interests,
            activity_intent, min_trust_score, cooldown_minutes, max_triggers_per_day,
            triggers_today, last_triggered_at, is_active, cell, created_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, 0, NULL, $15, $16, $17)
        RETURNING {_ALERT_COLUMNS}
        """
        criteria = alert.criteria
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                # Serialises concurrent creates by the same owner so the cap holds.
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext('proximity_alerts:' || $1::text))", alert.owner_id)
                owned = await conn.fetchval("SELECT count(*) FROM proximity_alerts WHERE owner_id = $1", alert.owner_id)
                if int(owned or 0) >= max_alerts:
                    return None
                record = await conn.fetchrow(
                    query,
                    alert.id,
                    alert.owner_id,
                    alert.name,
                    alert.lat,
                    alert.lng,
                    alert.radius_m,
                    criteria.min_age,
                    criteria.max_age,
                    criteria.gender,
                    list(criteria.interests),
                    criteria.activity_intent,
                    criteria.min_trust_score,
                    alert.cooldown_minutes,
                    alert.max_triggers_per_day,
                    alert.is_active,
                    alert.cell,
                    alert.created_at,
                )
        assert record is not None
        return _alert_from_record(record)

    async def get_alert(self, alert_id: str) -> ProximityAlert | None:
        record = await self.pool.fetchrow(f"SELECT {_ALERT_COLUMNS} FROM proximity_alerts WHERE id = $1", alert_id)
        return _alert_from_record(record) if record else None

    async def update_alert(self, alert: ProximityAlert) -> ProximityAlert:
        query = f"""
        UPDATE proximity_alerts SET
            name = $2, lat = $3, lng = $4, radius_m = $5, min_age = $6, max_age = $7,
            gender = $8, interests = $9, activity_intent = $10, min_trust_score = $11,
            cooldown_minutes = $12, max_triggers_per_day = $13, is_active = $14, cell = $15
        WHERE id = $1
        RETURNING {_ALERT_COLUMNS}
        """
        criteria = alert.criteria
        record = await self.pool.fetchrow(
            query,
            alert.id,
            alert.name,
            alert.lat,
            alert.lng,
            alert.radius_m,
            criteria.min_age,
            criteria.max_age,
            criteria.gender,
            list(criteria.interests),
            criteria.activity_intent,
            criteria.min_trust_score,
            alert.cooldown_minutes,
            alert.max_triggers_per_day,
            alert.is_active,
            alert.cell,
        )
        if record is None:
            raise AlertNotFound()
        return _alert_from_record(record)

    async def delete_alert(self, owner_id: str, alert_id: str) -> bool:
        result = await self.pool.execute(
            "DELETE FROM proximity_alerts WHERE id = $1 AND owner_id = $2", alert_id, owner_id
        )
        return result.endswith(" 1")

    async def list_alerts(self, owner_id: str) -> Sequence[ProximityAlert]:
        records = await self.pool.fetch(
            f"SELECT {_ALERT_COLUMNS} FROM proximity_alerts WHERE owner_id = $1 ORDER BY created_at DESC",
            owner_id,
        )
        return [_alert_from_record(record) for record in records]

    async def list_active_alerts_excluding(
        self, owner_id: str, *, cells: Optional[Iterable[str]] = None
    ) -> Sequence[ProximityAlert]:
        query = f"""
        SELECT {_ALERT_COLUMNS}
        FROM proximity_alerts
        WHERE owner_id <> $1
          AND is_active
          AND triggers_today < max_triggers_per_day
        """
        args: list[object] = [owner_id]
        if cells is not None:
            query += " AND cell = ANY($2::text[])"
            args.append(sorted(set(cells)))
        records = await self.pool.fetch(query, *args)
        return [_alert_from_record(record) for record in records]

    async def active_cell_precisions(self) -> set[int]:
        records = await self.pool.fetch(
            "SELECT DISTINCT length(cell) AS precision FROM proximity_alerts WHERE is_active AND cell <> ''"
        )
        return {int(record["precision"]) for record in records}

    async def has_recent_match(self, alert_id: str, matched_user_id: str, since: datetime) -> bool:
        found = await self.pool.fetchval(
            """
            SELECT 1 FROM proximity_matches
            WHERE alert_id = $1 AND matched_user_id = $2 AND matched_at >= $3
            LIMIT 1
            """,
            alert_id,
            matched_user_id,
            since,
        )
        return found is not None

    async def record_match_if_absent(
        self, alert_id: str, matched_user_id: str, distance: float, *, now: datetime
    ) -> MatchInsertResult:
        insert = """
        INSERT INTO proximity_matches (id, alert_id, matched_user_id, distance_m, matched_at, day_bucket)
        VALUES ($1, $2, $3, $4, $5, $6)
        ON CONFLICT (alert_id, matched_user_id, day_bucket) DO NOTHING
        RETURNING id, alert_id, matched_user_id, distance_m, matched_at, day_bucket
        """
        async with self.pool.acquire() as conn:
            try:
                async with conn.transaction():
                    # Per-pair lock keeps the rolling-window check and the insert linearizable,
                    # including across the day_bucket boundary.
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1::text), hashtext($2::text))", alert_id, matched_user_id
                    )
                    recent = await conn.fetchval(
                        """
                        SELECT 1 FROM proximity_matches
                        WHERE alert_id = $1 AND matched_user_id = $2
                          AND matched_at >= $3::timestamptz - make_interval(hours => $4::int)
                        LIMIT 1
                        """,
                        alert_id,
                        matched_user_id,
                        now,
                        self.dedup_window_hours,
                    )
                    if recent is not None:
                        return MatchInsertResult(inserted=False, reason="duplicate")
                    record = await conn.fetchrow(
                        insert, str(uuid4()), alert_id, matched_user_id, float(distance), now, now.date()
                    )
                    if record is None:
                        return MatchInsertResult(inserted=False, reason="duplicate")
                    claimed = await conn.fetchval(_CLAIM_SQL, alert_id, now)
                    if claimed is None:
                        raise _ClaimRejected(await self._rejection_reason(conn, alert_id, now))
            except _ClaimRejected as rejected:
                return MatchInsertResult(inserted=False, reason=rejected.reason)
            except asyncpg.ForeignKeyViolationError:
                return MatchInsertResult(inserted=False, reason="missing")
        return MatchInsertResult(inserted=True, match=_match_from_record(record))

    async def _rejection_reason(self, conn: asyncpg.Connection, alert_id: str, now: datetime) -> str:
        record = await conn.fetchrow(f"SELECT {_ALERT_COLUMNS} FROM proximity_alerts WHERE id = $1", alert_id)
        if record is None:
            return "missing"
        alert = _alert_from_record(record)
        if not alert.is_active:
            return "inactive"
        if alert.at_daily_cap():
            return "cap"
        return "cooldown"

    async def increment_trigger(self, alert_id: str, *, now: datetime) -> bool:
        claimed = await self.pool.fetchval(_CLAIM_SQL, alert_id, now)
        return claimed is not None

    async def list_matches(self, alert_id: str, *, limit: int) -> Sequence[ProximityMatch]:
        records = await self.pool.fetch(
            """
            SELECT id, alert_id, matched_user_id, distance_m, matched_at, day_bucket
            FROM proximity_matches
            WHERE alert_id = $1
            ORDER BY matched_at DESC
            LIMIT $2
            """,
            alert_id,
            limit,
        )
        return [_match_from_record(record) for record in records]

    async def reset_daily_counters(self) -> int:
        result = await self.pool.execute("UPDATE proximity_alerts SET triggers_today = 0 WHERE triggers_today > 0")
        return int(result.split()[-1]) if result else 0


class PostgresProfileDirectory:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_profile_snapshot(self, user_id: str) -> ProfileSnapshot | None:
        record = await self.pool.fetchrow(
            """
            SELECT user_id, display_name, age, gender, interests, trust_score, activity_intent
            FROM profiles WHERE user_id = $1
            """,
            user_id,
        )
        if record is None:
            return None
        return ProfileSnapshot(
            user_id=record["user_id"],
            display_name=record["display_name"],
            age=record["age"],
            gender=record["gender"],
            interests=tuple(record["interests"] or ()),
            trust_score=record["trust_score"] if record["trust_score"] is not None else 50,
            activity_intent=record["activity_intent"],
        )


class PostgresEntitlements:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def is_premium(self, user_id: str) -> bool:
        status = await self.pool.fetchval("SELECT subscription_status FROM profiles WHERE user_id = $1", user_id)
        return status in ("active", "trial")
