"""Maintenance job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.clock import utcnow
from services.token_ledger import SqlTokenLedger


logger = logging.getLogger(__name__)

MAINTENANCE_QUEUE_NAME = "maintenance"
LEDGER_PURGE_GRACE_SECONDS = 3600


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_maintenance_queue() -> Queue:
    return Queue(
        name=MAINTENANCE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


async def purge_expired_ledger_entries(before: Optional[datetime] = None, session_maker=None) -> int:
    """Delete durable ledger rows (consumed or not) whose expiry is older than `before`.

    Defaults to one hour ago so rows stay around briefly for audit. The
    in-memory tier is process-local and drops expired rows itself when it
    fills up, so it is not touched here.
    """
    cutoff = before or (utcnow() - timedelta(seconds=LEDGER_PURGE_GRACE_SECONDS))
    maker = session_maker or async_session_maker
    async with maker() as db:
        purged = await SqlTokenLedger(db).purge_expired(cutoff)
    logger.info("ledger_purge cutoff=%s purged=%s", cutoff.isoformat(), purged)
    return purged


def run_ledger_purge_job() -> int:
    """RQ entrypoint."""
    return asyncio.run(purge_expired_ledger_entries())


def enqueue_ledger_purge_job() -> Job:
    queue = get_maintenance_queue()
    return queue.enqueue(
        "services.maintenance_queue.run_ledger_purge_job",
        job_id=f"ledger-purge:{utcnow().strftime('%Y%m%d%H')}",
        retry=Retry(max=3, interval=[30, 120, 600]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )
