"""Races between checkout attempts hitting the same coupon from independent sessions."""

import asyncio
from collections import Counter

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from gateflow.models import Coupon, CouponRedemption, CouponReservation
from gateflow.services import coupon_reservations
from gateflow.services.coupon_reservations import CouponError


async def _verify_then_redeem(session_factory: async_sessionmaker, code: str, email: str):
    async with session_factory() as session:
        verified = await coupon_reservations.verify(session, code=code, product_id="prod-1", email=email)
    if not verified.valid:
        return verified.error
    async with session_factory() as session:
        redeemed = await coupon_reservations.redeem(session, reservation_id=verified.reservation_id, discount_amount="5.00")
    return "redeemed" if redeemed.ok else redeemed.error


async def _count(session_factory: async_sessionmaker, model, **filters) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(model).filter_by(**filters)
        return int((await session.execute(stmt)).scalar_one())


def test_last_unit_goes_to_exactly_one_customer(session_factory, make_coupon) -> None:
    coupon = make_coupon("RACE10", usage_limit_global=1, usage_limit_per_user=1)

    async def _race() -> list:
        return await asyncio.gather(
            *(_verify_then_redeem(session_factory, "RACE10", f"racer{i}@example.com") for i in range(10))
        )

    outcomes = Counter(asyncio.run(_race()))

    assert outcomes["redeemed"] == 1
    assert outcomes[CouponError.global_limit_reached] == 9
    assert asyncio.run(_count(session_factory, CouponRedemption, coupon_id=coupon.id)) == 1


def test_concurrent_customers_never_exceed_global_limit(session_factory, make_coupon) -> None:
    coupon = make_coupon("FIVE", usage_limit_global=5, usage_limit_per_user=1)

    async def _race() -> list:
        return await asyncio.gather(
            *(_verify_then_redeem(session_factory, "FIVE", f"buyer{i}@example.com") for i in range(20))
        )

    outcomes = Counter(asyncio.run(_race()))

    assert outcomes["redeemed"] == 5
    assert sum(outcomes.values()) == 20
    assert asyncio.run(_count(session_factory, CouponRedemption, coupon_id=coupon.id)) == 5

    async def _usage() -> int:
        async with session_factory() as session:
            return (await session.get(Coupon, coupon.id)).current_usage_count

    assert asyncio.run(_usage()) == 5


def test_same_customer_concurrent_verifies_share_one_reservation(session_factory, make_coupon) -> None:
    coupon = make_coupon("SAME5", usage_limit_global=100, usage_limit_per_user=1)

    async def _verify() -> coupon_reservations.VerifyResult:
        async with session_factory() as session:
            return await coupon_reservations.verify(session, code="SAME5", product_id="prod-1", email="same@example.com")

    async def _race() -> list:
        return await asyncio.gather(*(_verify() for _ in range(5)))

    results = asyncio.run(_race())

    assert all(result.valid for result in results)
    assert sum(1 for result in results if result.already_reserved) >= 4
    assert len({result.reservation_id for result in results}) == 1
    assert asyncio.run(_count(session_factory, CouponReservation, coupon_id=coupon.id)) == 1


def test_redeemed_customer_is_blocked_even_concurrently(session_factory, make_coupon) -> None:
    make_coupon("ONEEACH", usage_limit_global=100, usage_limit_per_user=1)

    async def _scenario() -> list:
        async with session_factory() as session:
            first = await coupon_reservations.verify(session, code="ONEEACH", product_id="prod-1", email="a@example.com")
            await coupon_reservations.redeem(session, reservation_id=first.reservation_id)

        async def _again():
            async with session_factory() as session:
                return await coupon_reservations.verify(session, code="ONEEACH", product_id="prod-1", email="a@example.com")

        return await asyncio.gather(*(_again() for _ in range(5)))

    results = asyncio.run(_scenario())

    assert all(result.error == CouponError.per_user_limit_reached for result in results)
