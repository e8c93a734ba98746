from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from locus.domain.proximity.exceptions import AlertNotFound, StoreUnavailable
from locus.domain.proximity.models import ProximityAlert
from locus.infra.proximity_repo import (
    SCHEMA_SQL,
    PostgresAlertRepository,
    _ClaimRejected,
    PostgresLocationRepository,
    ensure_schema,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _pool_with_conn():
    mock_pool = MagicMock()
    mock_conn = AsyncMock()
    mock_pool.acquire.return_value.__aenter__.return_value = mock_conn
    mock_transaction = MagicMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=None)
    mock_transaction.__aexit__ = AsyncMock(return_value=None)
    mock_conn.transaction = MagicMock(return_value=mock_transaction)
    return mock_pool, mock_conn


@pytest.mark.asyncio
async def test_ensure_schema_runs_ddl():
    pool, conn = _pool_with_conn()
    await ensure_schema(pool)
    conn.execute.assert_awaited_once_with(SCHEMA_SQL)


@pytest.mark.asyncio
async def test_location_write_failure_raises_store_unavailable():
    pool = MagicMock()
    pool.fetchrow = AsyncMock(side_effect=asyncpg.InterfaceError("pool closed"))
    repo = PostgresLocationRepository(pool)
    with pytest.raises(StoreUnavailable):
        await repo.save_location("u1", 1.0, 2.0, NOW)


@pytest.mark.asyncio
async def test_create_alert_returns_none_at_cap():
    pool, conn = _pool_with_conn()
    conn.fetchval.return_value = 5
    repo = PostgresAlertRepository(pool)
    alert = ProximityAlert(id="a1", owner_id="owner", lat=1.0, lng=1.0, radius_m=500.0, cell="s00")
    assert await repo.create_alert(alert, max_alerts=5) is None
    lock_sql = conn.execute.await_args.args[0]
    assert "pg_advisory_xact_lock" in lock_sql
    conn.fetchrow.assert_not_awaited()


@pytest.mark.asyncio
async def test_record_match_reports_recent_duplicate_without_insert():
    pool, conn = _pool_with_conn()
    conn.fetchval.return_value = 1
    repo = PostgresAlertRepository(pool, dedup_window_hours=24)
    result = await repo.record_match_if_absent("a1", "bob", 10.0, now=NOW)
    assert not result.inserted
    assert result.reason == "duplicate"
    conn.fetchrow.assert_not_awaited()


@pytest.mark.asyncio
async def test_delete_alert_reads_command_tag():
    pool = MagicMock()
    pool.execute = AsyncMock(side_effect=["DELETE 1", "DELETE 0"])
    repo = PostgresAlertRepository(pool)
    assert await repo.delete_alert("owner", "a1")
    assert not await repo.delete_alert("owner", "a1")


@pytest.mark.asyncio
async def test_reset_daily_counters_reads_command_tag():
    pool = MagicMock()
    pool.execute = AsyncMock(return_value="UPDATE 3")
    assert await PostgresAlertRepository(pool).reset_daily_counters() == 3


def _match_record(alert_id="a1", matched_user_id="bob"):
    return {
        "id": "m1",
        "alert_id": alert_id,
        "matched_user_id": matched_user_id,
        "distance_m": 10.0,
        "matched_at": NOW,
        "day_bucket": NOW.date(),
    }


def _alert_record(**overrides):
    record = {
        "id": "a1",
        "owner_id": "owner",
        "name": None,
        "lat": 1.0,
        "lng": 1.0,
        "radius_m": 500.0,
        "min_age": None,
        "max_age": None,
        "gender": None,
        "interests": [],
        "activity_intent": None,
        "min_trust_score": None,
        "cooldown_minutes": 15,
        "max_triggers_per_day": 3,
        "triggers_today": 1,
        "last_triggered_at": NOW,
        "is_active": True,
        "cell": "s00",
        "created_at": NOW,
    }
    record.update(overrides)
    return record


@pytest.mark.asyncio
async def test_record_match_inserts_and_claims_trigger():
    pool, conn = _pool_with_conn()
    conn.fetchval.side_effect = [None, 2]
    conn.fetchrow.return_value = _match_record()
    repo = PostgresAlertRepository(pool)

    result = await repo.record_match_if_absent("a1", "bob", 10.0, now=NOW)

    assert result.inserted
    assert result.match.matched_user_id == "bob"
    assert result.match.day_bucket == NOW.date()
    claim_sql = conn.fetchval.await_args_list[1].args[0]
    assert "triggers_today < max_triggers_per_day" in claim_sql
    assert conn.transaction.return_value.__aexit__.await_args.args[0] is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "alert_overrides, reason",
    [
        ({"is_active": False}, "inactive"),
        ({"triggers_today": 3}, "cap"),
        ({}, "cooldown"),
    ],
)
async def test_rejected_claim_rolls_back_insert(alert_overrides, reason):
    pool, conn = _pool_with_conn()
    conn.fetchval.side_effect = [None, None]
    conn.fetchrow.side_effect = [_match_record(), _alert_record(**alert_overrides)]
    repo = PostgresAlertRepository(pool)

    result = await repo.record_match_if_absent("a1", "bob", 10.0, now=NOW)

    assert not result.inserted
    assert result.reason == reason
    assert result.match is None
    # The exception has to cross the transaction block so the inserted row is rolled back.
    exc_type, exc, _ = conn.transaction.return_value.__aexit__.await_args.args
    assert exc_type is _ClaimRejected
    assert exc.reason == reason


@pytest.mark.asyncio
async def test_rejected_claim_for_vanished_alert_reports_missing():
    pool, conn = _pool_with_conn()
    conn.fetchval.side_effect = [None, None]
    conn.fetchrow.side_effect = [_match_record(), None]
    result = await PostgresAlertRepository(pool).record_match_if_absent("a1", "bob", 10.0, now=NOW)
    assert not result.inserted
    assert result.reason == "missing"


@pytest.mark.asyncio
async def test_record_match_foreign_key_violation_reports_missing():
    pool, conn = _pool_with_conn()
    conn.fetchval.return_value = None
    conn.fetchrow.side_effect = asyncpg.ForeignKeyViolationError("alert gone")
    repo = PostgresAlertRepository(pool)

    result = await repo.record_match_if_absent("a1", "bob", 10.0, now=NOW)

    assert not result.inserted
    assert result.reason == "missing"
    assert conn.transaction.return_value.__aexit__.await_args.args[0] is asyncpg.ForeignKeyViolationError


@pytest.mark.asyncio
async def test_update_alert_missing_row_raises_not_found():
    pool = MagicMock()
    pool.fetchrow = AsyncMock(return_value=None)
    repo = PostgresAlertRepository(pool)
    alert = ProximityAlert(id="a1", owner_id="owner", lat=1.0, lng=1.0, radius_m=500.0, cell="s00")
    with pytest.raises(AlertNotFound):
        await repo.update_alert(alert)
