import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from gateflow.core import metrics
from gateflow.core.config import settings
from gateflow.db import session as db_session
from gateflow.models import CouponReservation, ReservationStatus
from gateflow.services import coupon_reservations, leader_lock, reservation_sweeper
from gateflow.services.coupon_reservations import CouponError


def _hold(session_factory: async_sessionmaker, code: str, email: str):
    async def _run():
        async with session_factory() as session:
            return await coupon_reservations.verify(session, code=code, product_id="prod-1", email=email)

    return asyncio.run(_run())


def _statuses(session_factory: async_sessionmaker) -> dict:
    async def _run() -> dict:
        async with session_factory() as session:
            rows = (await session.execute(select(CouponReservation))).scalars()
            return {row.customer_email: row.status for row in rows}

    return asyncio.run(_run())


def _cleanup(session_factory: async_sessionmaker) -> int:
    async def _run() -> int:
        async with session_factory() as session:
            return await coupon_reservations.cleanup_expired_reservations(session)

    return asyncio.run(_run())


def test_cleanup_marks_only_lapsed_holds(session_factory, make_coupon, monkeypatch: pytest.MonkeyPatch) -> None:
    make_coupon("OLD")
    make_coupon("FRESH")
    _hold(session_factory, "OLD", "old@example.com")

    later = datetime.now(timezone.utc) + timedelta(minutes=11)
    monkeypatch.setattr(coupon_reservations, "utcnow", lambda: later)
    _hold(session_factory, "FRESH", "fresh@example.com")

    monkeypatch.setattr(coupon_reservations, "utcnow", lambda: later + timedelta(seconds=1))
    assert _cleanup(session_factory) == 1
    assert _cleanup(session_factory) == 0

    statuses = _statuses(session_factory)
    assert statuses == {"old@example.com": ReservationStatus.expired, "fresh@example.com": ReservationStatus.held}
    assert metrics.snapshot()["coupon_reservations_expired"] == 1


def test_cleanup_reclaims_capacity(session_factory, make_coupon, monkeypatch: pytest.MonkeyPatch) -> None:
    make_coupon("ONCE", usage_limit_global=1)
    _hold(session_factory, "ONCE", "a@example.com")
    assert _hold(session_factory, "ONCE", "b@example.com").error == CouponError.global_limit_reached

    later = datetime.now(timezone.utc) + timedelta(minutes=15)
    monkeypatch.setattr(coupon_reservations, "utcnow", lambda: later)
    assert _cleanup(session_factory) == 1

    assert _hold(session_factory, "ONCE", "b@example.com").valid is True


def test_sweeper_run_once_uses_app_sessions(session_factory, make_coupon, monkeypatch: pytest.MonkeyPatch) -> None:
    make_coupon("SAVE10")
    _hold(session_factory, "SAVE10", "a@example.com")
    monkeypatch.setattr(db_session, "SessionLocal", session_factory)
    monkeypatch.setattr(
        coupon_reservations, "utcnow", lambda: datetime.now(timezone.utc) + timedelta(hours=1)
    )

    assert asyncio.run(reservation_sweeper._run_once()) == 1


def test_sweeper_loop_survives_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []

    async def failing_run_once() -> int:
        calls.append(1)
        raise RuntimeError("db down")

    monkeypatch.setattr(reservation_sweeper, "_run_once", failing_run_once)
    monkeypatch.setattr(reservation_sweeper, "sweep_interval", lambda: 0.01)

    async def _scenario() -> None:
        stop = asyncio.Event()
        task = asyncio.create_task(reservation_sweeper._loop(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(_scenario())
    assert len(calls) >= 2


def test_sweep_interval_has_floor(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "coupon_reservation_sweep_interval_seconds", 1)
    assert reservation_sweeper.sweep_interval() == reservation_sweeper.MIN_INTERVAL_SECONDS
    monkeypatch.setattr(settings, "coupon_reservation_sweep_interval_seconds", 600)
    assert reservation_sweeper.sweep_interval() == 600


def test_sweeper_start_and_stop(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "coupon_reservation_sweep_enabled", True)
    ran = asyncio.Event()

    async def fake_loop(stop: asyncio.Event) -> None:
        ran.set()
        await stop.wait()

    monkeypatch.setattr(reservation_sweeper, "_loop", fake_loop)
    app = FastAPI()

    async def _scenario() -> None:
        reservation_sweeper.start(app)
        task = app.state.reservation_sweeper_task
        reservation_sweeper.start(app)
        assert app.state.reservation_sweeper_task is task
        await asyncio.wait_for(ran.wait(), timeout=1)
        await reservation_sweeper.stop(app)
        assert task.done()
        assert app.state.reservation_sweeper_task is None

    asyncio.run(_scenario())


def test_sweeper_disabled_does_not_start(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "coupon_reservation_sweep_enabled", False)
    app = FastAPI()
    reservation_sweeper.start(app)
    assert getattr(app.state, "reservation_sweeper_task", None) is None


def test_leader_lock_runs_directly_without_postgres() -> None:
    ran: list[bool] = []

    async def work(stop: asyncio.Event) -> None:
        ran.append(True)

    asyncio.run(leader_lock.run_as_leader(name="coupon_reservation_sweeper", stop=asyncio.Event(), work=work))
    assert ran == [True]
    assert leader_lock.lock_id("a") == leader_lock.lock_id("a")
    assert 0 <= leader_lock.lock_id("coupon_reservation_sweeper") < 2**63


def test_cleanup_endpoint(client: TestClient, make_coupon, admin_headers, monkeypatch: pytest.MonkeyPatch) -> None:
    make_coupon("SAVE10")
    for email in ("a@example.com", "b@example.com"):
        res = client.post("/api/coupons/verify", json={"code": "SAVE10", "productId": "prod-1", "email": email})
        assert res.json()["valid"] is True

    monkeypatch.setattr(coupon_reservations, "utcnow", lambda: datetime.now(timezone.utc) + timedelta(minutes=20))

    res = client.post("/api/v1/coupons/reservations/cleanup", headers=admin_headers)
    assert res.status_code == 200, res.text
    assert res.json() == {"reclaimed": 2}

    assert client.post("/api/v1/coupons/reservations/cleanup").status_code == 401
