from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI

from gateflow.core.config import settings
from gateflow.db import session as db_session
from gateflow.services import coupon_reservations, leader_lock

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 30


def sweep_interval() -> int:
    return max(MIN_INTERVAL_SECONDS, int(settings.coupon_reservation_sweep_interval_seconds or 0))


async def _run_once() -> int:
    async with db_session.SessionLocal() as session:
        return await coupon_reservations.cleanup_expired_reservations(session)


async def _loop(stop: asyncio.Event) -> None:
    interval = sweep_interval()
    while not stop.is_set():
        try:
            await _run_once()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("reservation_sweeper_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not settings.coupon_reservation_sweep_enabled:
        return
    if getattr(app.state, "reservation_sweeper_task", None) is not None:
        return

    stop_event = asyncio.Event()
    app.state.reservation_sweeper_stop = stop_event
    app.state.reservation_sweeper_task = asyncio.create_task(
        leader_lock.run_as_leader(name="coupon_reservation_sweeper", stop=stop_event, work=_loop)
    )


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "reservation_sweeper_stop", None)
    task = getattr(app.state, "reservation_sweeper_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.reservation_sweeper_stop = None
    app.state.reservation_sweeper_task = None
