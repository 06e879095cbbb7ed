import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from services.capability_tokens import consume_capability_token, issue_capability_token
from services.catalog import FEATURE_CHAT_SEND, PLAN_FREE
from services.clock import utcnow
from services.entitlement_claims import issue_claim
from services.errors import LedgerUnavailable
from services.maintenance_queue import purge_expired_ledger_entries
from services.token_ledger import (
    TIER_DEGRADED,
    TIER_DURABLE,
    DegradableTokenLedger,
    InMemoryTokenLedger,
    LedgerRecord,
    SqlTokenLedger,
    memory_ledger,
)


def _record(token_id, user_id="ledger-user", issued_at=None, ttl_seconds=120):
    issued = issued_at or utcnow()
    return LedgerRecord(
        token_id=token_id,
        user_id=user_id,
        feature=FEATURE_CHAT_SEND,
        method="POST",
        path="/messages",
        issued_at=issued,
        expires_at=issued + timedelta(seconds=ttl_seconds),
    )


def _failing_session():
    error = OperationalError("UPDATE capability_token_ledger", {}, Exception("connection refused"))
    db = MagicMock()
    db.add = MagicMock()
    db.commit = AsyncMock(side_effect=error)
    db.execute = AsyncMock(side_effect=error)
    db.rollback = AsyncMock()
    return db


@pytest.mark.asyncio
async def test_sql_ledger_consume_requires_matching_user_and_binding(session_maker):
    async with session_maker() as db:
        ledger = SqlTokenLedger(db)
        await ledger.insert(_record("sql-token"))

        assert not await ledger.try_consume("sql-token", "other-user", "POST", "/messages")
        assert not await ledger.try_consume("sql-token", "ledger-user", "GET", "/messages")
        assert not await ledger.try_consume("missing-token", "ledger-user", "POST", "/messages")
        assert await ledger.try_consume("sql-token", "ledger-user", "POST", "/messages")
        assert not await ledger.try_consume("sql-token", "ledger-user", "POST", "/messages")


@pytest.mark.asyncio
async def test_sql_ledger_refuses_consumption_after_expiry(session_maker):
    async with session_maker() as db:
        ledger = SqlTokenLedger(db)
        record = _record("expiring-token", ttl_seconds=60)
        await ledger.insert(record)
        assert not await ledger.try_consume(
            "expiring-token", "ledger-user", "POST", "/messages", now=record.expires_at
        )
        assert await ledger.contains("expiring-token")


@pytest.mark.asyncio
async def test_sql_ledger_fails_closed_when_store_is_down():
    db = _failing_session()
    ledger = SqlTokenLedger(db)

    with pytest.raises(LedgerUnavailable) as exc_info:
        await ledger.insert(_record("down-token"))
    assert exc_info.value.code == "server_error"
    assert exc_info.value.status_code == 503
    db.rollback.assert_awaited()

    with pytest.raises(LedgerUnavailable):
        await ledger.try_consume("down-token", "ledger-user", "POST", "/messages")


@pytest.mark.asyncio
async def test_sql_ledger_times_out_into_unavailable():
    async def slow_commit():
        await asyncio.sleep(1)

    db = MagicMock()
    db.add = MagicMock()
    db.commit = AsyncMock(side_effect=slow_commit)
    db.rollback = AsyncMock()

    with pytest.raises(LedgerUnavailable):
        await SqlTokenLedger(db, timeout_seconds=0.01).insert(_record("slow-token"))


@pytest.mark.asyncio
async def test_issuance_never_returns_an_unbacked_token():
    claim = issue_claim("ledger-user", PLAN_FREE)["claim"]
    with pytest.raises(LedgerUnavailable):
        await issue_capability_token(claim, FEATURE_CHAT_SEND, "POST", "/messages", SqlTokenLedger(_failing_session()))


@pytest.mark.asyncio
async def test_in_memory_ledger_is_bounded_and_evicts_expired_first():
    ledger = InMemoryTokenLedger(max_entries=2)
    now = utcnow()
    await ledger.insert(_record("old-live", issued_at=now))
    await ledger.insert(_record("stale", issued_at=now - timedelta(minutes=10), ttl_seconds=60))
    await ledger.insert(_record("newest", issued_at=now))

    assert len(ledger) == 2
    assert await ledger.contains("old-live")
    assert not await ledger.contains("stale")

    await ledger.insert(_record("overflow", issued_at=now))
    assert not await ledger.contains("old-live")
    assert await ledger.contains("overflow")
    assert ledger.tier == TIER_DEGRADED


@pytest.mark.asyncio
async def test_degradable_ledger_issues_into_memory_when_durable_store_is_down():
    fallback = InMemoryTokenLedger()
    ledger = DegradableTokenLedger(SqlTokenLedger(_failing_session()), fallback)
    assert ledger.tier == TIER_DURABLE

    claim = issue_claim("ledger-user", PLAN_FREE)["claim"]
    issued = await issue_capability_token(claim, FEATURE_CHAT_SEND, "POST", "/messages", ledger)
    assert ledger.tier == TIER_DEGRADED
    assert await fallback.contains(issued["token_id"])

    grant = await consume_capability_token(issued["token"], "POST", "/messages", {FEATURE_CHAT_SEND}, ledger)
    assert grant.token_id == issued["token_id"]


@pytest.mark.asyncio
async def test_degradable_ledger_never_falls_back_for_durable_tokens():
    ledger = DegradableTokenLedger(SqlTokenLedger(_failing_session()), InMemoryTokenLedger())
    with pytest.raises(LedgerUnavailable):
        await ledger.try_consume("durable-token", "ledger-user", "POST", "/messages")


@pytest.mark.asyncio
async def test_purge_removes_only_expired_durable_rows(session_maker):
    now = utcnow()
    async with session_maker() as db:
        ledger = SqlTokenLedger(db)
        await ledger.insert(_record("expired-row", issued_at=now - timedelta(hours=3), ttl_seconds=60))
        await ledger.insert(_record("live-row", issued_at=now))
    await memory_ledger.insert(_record("expired-memory", issued_at=now - timedelta(hours=3), ttl_seconds=60))

    purged = await purge_expired_ledger_entries(before=now, session_maker=session_maker)
    assert purged == 1

    async with session_maker() as db:
        ledger = SqlTokenLedger(db)
        assert not await ledger.contains("expired-row")
        assert await ledger.contains("live-row")
    assert await memory_ledger.contains("expired-memory")
