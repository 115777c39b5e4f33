"""Single-replica execution for background coupon maintenance.

Replicas sharing one PostgreSQL database race for a session-level advisory lock keyed by the job name;
the winner runs the job until it is stopped, the others poll until the lock frees up.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from gateflow.core.config import settings
from gateflow.db.session import engine, make_engine

logger = logging.getLogger(__name__)

Job = Callable[[asyncio.Event], Awaitable[None]]

_RETRY_SECONDS = 15
_MIN_RETRY_SECONDS = 5
_LEADER_ENGINE: AsyncEngine | None = None


def _is_postgres() -> bool:
    return (engine.url.get_backend_name() or "").lower() == "postgresql"


def lock_id(name: str) -> int:
    digest = hashlib.blake2b(str(name or "").encode("utf-8"), digest_size=8).digest()
    # pg advisory locks take a signed BIGINT
    return int.from_bytes(digest, "big", signed=False) % (2**63 - 1)


def _leader_engine() -> AsyncEngine:
    global _LEADER_ENGINE
    if _LEADER_ENGINE is None:
        _LEADER_ENGINE = make_engine(settings.database_url, pool_size=1, max_overflow=0, pool_pre_ping=True)
    return _LEADER_ENGINE


async def _pause(stop: asyncio.Event, seconds: int) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def _try_acquire(conn: AsyncConnection, key: int) -> bool:
    result = await conn.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": key})
    return bool(result.scalar())


async def _release(conn: AsyncConnection, key: int) -> None:
    try:
        await conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": key})
    except Exception as exc:
        # the lock dies with the connection anyway
        logger.warning("leader_lock_release_failed", extra={"lock_id": key, "error": str(exc)})


async def run_as_leader(
    *,
    name: str,
    stop: asyncio.Event,
    work: Job,
    retry_seconds: int = _RETRY_SECONDS,
) -> None:
    """Run ``work(stop)`` on exactly one replica; without PostgreSQL it simply runs here."""
    if not _is_postgres():
        await work(stop)
        return

    key = lock_id(name)
    retry = max(_MIN_RETRY_SECONDS, int(retry_seconds or _RETRY_SECONDS))

    while not stop.is_set():
        try:
            async with _leader_engine().connect() as conn:
                if not await _try_acquire(conn, key):
                    await _pause(stop, retry)
                    continue
                logger.info("leader_lock_acquired", extra={"lock_name": name, "lock_id": key})
                try:
                    await work(stop)
                finally:
                    await _release(conn, key)
                return
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("leader_lock_failed", extra={"lock_name": name, "lock_id": key, "error": str(exc)})
            await _pause(stop, retry)
