"""
Single-use ledger for capability token ids.

`try_consume` is the exactly-once primitive. The durable implementation runs
one conditional UPDATE (token id, user, binding, `consumed_at IS NULL`,
`expires_at > now`) and treats "exactly one row affected" as success, so two
concurrent consumers in different processes cannot both win.

Tiers:
* `SqlTokenLedger`: durable, cross-process atomic. Store failures and
  timeouts raise `LedgerUnavailable`; callers must fail closed.
* `InMemoryTokenLedger`: DEGRADED. Process-local, bounded, atomic only within
  one process. Tokens issued here cannot be consumed by another worker.
* `DegradableTokenLedger`: durable first; when enabled, issuance falls back
  to the in-memory tier if the durable store is unreachable. Consumption of
  a durable token never falls back.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.capability_ledger import CapabilityLedgerEntry
from services.clock import ensure_utc, utcnow
from services.errors import LedgerUnavailable


logger = logging.getLogger(__name__)

TIER_DURABLE = "durable"
TIER_DEGRADED = "degraded_memory"


@dataclass(frozen=True)
class LedgerRecord:
    token_id: str
    user_id: str
    feature: str
    method: str
    path: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None


class TokenLedger:
    """Interface shared by every ledger tier."""

    tier = TIER_DURABLE

    async def insert(self, record: LedgerRecord) -> None:
        raise NotImplementedError

    async def try_consume(
        self,
        token_id: str,
        user_id: str,
        method: str,
        path: str,
        now: Optional[datetime] = None,
    ) -> bool:
        raise NotImplementedError

    async def contains(self, token_id: str) -> bool:
        raise NotImplementedError

    async def purge_expired(self, before: Optional[datetime] = None) -> int:
        raise NotImplementedError


class SqlTokenLedger(TokenLedger):
    """Ledger rows in `capability_token_ledger`; the schema must already exist."""

    tier = TIER_DURABLE

    def __init__(self, db: AsyncSession, timeout_seconds: Optional[float] = None):
        self.db = db
        self.timeout_seconds = float(timeout_seconds or settings.DATABASE_TIMEOUT_SECONDS)

    async def _run(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            try:
                await self.db.rollback()
            except (SQLAlchemyError, OSError):
                logger.warning("Ledger rollback after %s failure also failed", operation)
            raise LedgerUnavailable(operation) from exc

    async def insert(self, record: LedgerRecord) -> None:
        async def _insert():
            self.db.add(
                CapabilityLedgerEntry(
                    token_id=record.token_id,
                    user_id=record.user_id,
                    feature=record.feature,
                    method=record.method,
                    path=record.path,
                    issued_at=record.issued_at,
                    expires_at=record.expires_at,
                    consumed_at=None,
                )
            )
            await self.db.commit()

        await self._run("insert", _insert())

    async def try_consume(
        self,
        token_id: str,
        user_id: str,
        method: str,
        path: str,
        now: Optional[datetime] = None,
    ) -> bool:
        current = now or utcnow()

        async def _consume() -> int:
            result = await self.db.execute(
                update(CapabilityLedgerEntry)
                .where(
                    CapabilityLedgerEntry.token_id == token_id,
                    CapabilityLedgerEntry.user_id == user_id,
                    CapabilityLedgerEntry.method == method,
                    CapabilityLedgerEntry.path == path,
                    CapabilityLedgerEntry.consumed_at.is_(None),
                    CapabilityLedgerEntry.expires_at > current,
                )
                .values(consumed_at=current)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return int(result.rowcount or 0)

        return await self._run("consume", _consume()) == 1

    async def contains(self, token_id: str) -> bool:
        async def _lookup():
            result = await self.db.execute(
                select(CapabilityLedgerEntry.token_id).where(CapabilityLedgerEntry.token_id == token_id)
            )
            return result.scalar_one_or_none() is not None

        return await self._run("lookup", _lookup())

    async def purge_expired(self, before: Optional[datetime] = None) -> int:
        cutoff = before or utcnow()

        async def _purge() -> int:
            result = await self.db.execute(
                delete(CapabilityLedgerEntry).where(CapabilityLedgerEntry.expires_at <= cutoff)
            )
            await self.db.commit()
            return int(result.rowcount or 0)

        return await self._run("purge", _purge())


class InMemoryTokenLedger(TokenLedger):
    """Degraded, process-local ledger.

    Bounded to `max_entries`; when full, expired rows are dropped first and
    then the oldest rows. An evicted token can no longer be consumed.
    """

    tier = TIER_DEGRADED

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max(int(max_entries), 1)
        self._records: "OrderedDict[str, LedgerRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    async def insert(self, record: LedgerRecord) -> None:
        with self._lock:
            if len(self._records) >= self.max_entries:
                self._evict(utcnow())
            self._records[record.token_id] = record

    def _evict(self, now: datetime) -> None:
        expired = [key for key, rec in self._records.items() if ensure_utc(rec.expires_at) <= now]
        for key in expired:
            self._records.pop(key, None)
        while len(self._records) >= self.max_entries:
            self._records.popitem(last=False)

    async def try_consume(
        self,
        token_id: str,
        user_id: str,
        method: str,
        path: str,
        now: Optional[datetime] = None,
    ) -> bool:
        current = now or utcnow()
        with self._lock:
            record = self._records.get(token_id)
            if (
                record is None
                or record.user_id != user_id
                or record.method != method
                or record.path != path
                or record.consumed_at is not None
                or ensure_utc(record.expires_at) <= current
            ):
                return False
            self._records[token_id] = replace(record, consumed_at=current)
            return True

    async def contains(self, token_id: str) -> bool:
        with self._lock:
            return token_id in self._records

    async def purge_expired(self, before: Optional[datetime] = None) -> int:
        cutoff = before or utcnow()
        with self._lock:
            expired = [key for key, rec in self._records.items() if ensure_utc(rec.expires_at) <= cutoff]
            for key in expired:
                self._records.pop(key, None)
            return len(expired)


class DegradableTokenLedger(TokenLedger):
    """Durable ledger with an opt-in degraded issuance tier."""

    def __init__(self, durable: TokenLedger, fallback: InMemoryTokenLedger):
        self.durable = durable
        self.fallback = fallback
        self.tier = durable.tier

    async def insert(self, record: LedgerRecord) -> None:
        try:
            await self.durable.insert(record)
            self.tier = self.durable.tier
        except LedgerUnavailable:
            logger.warning(
                "Durable ledger unavailable; token %s for user %s recorded in DEGRADED in-memory ledger "
                "(single-process consumption only)",
                record.token_id,
                record.user_id,
            )
            await self.fallback.insert(record)
            self.tier = self.fallback.tier

    async def try_consume(
        self,
        token_id: str,
        user_id: str,
        method: str,
        path: str,
        now: Optional[datetime] = None,
    ) -> bool:
        if await self.fallback.contains(token_id):
            return await self.fallback.try_consume(token_id, user_id, method, path, now=now)
        return await self.durable.try_consume(token_id, user_id, method, path, now=now)

    async def contains(self, token_id: str) -> bool:
        if await self.fallback.contains(token_id):
            return True
        return await self.durable.contains(token_id)

    async def purge_expired(self, before: Optional[datetime] = None) -> int:
        purged = await self.fallback.purge_expired(before)
        return purged + await self.durable.purge_expired(before)


memory_ledger = InMemoryTokenLedger(settings.LEDGER_MEMORY_MAX_ENTRIES)


def build_token_ledger(db: AsyncSession) -> TokenLedger:
    """Ledger for one request/session, honoring LEDGER_MEMORY_FALLBACK_ENABLED."""
    durable = SqlTokenLedger(db)
    if settings.LEDGER_MEMORY_FALLBACK_ENABLED:
        return DegradableTokenLedger(durable, memory_ledger)
    return durable
