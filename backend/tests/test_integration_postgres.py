import asyncio
import os
import uuid
from collections import Counter
from decimal import Decimal

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from gateflow.core.config import settings
from gateflow.db.session import SessionLocal, engine as app_engine
from gateflow.main import app
from gateflow.models import Base, Coupon, CouponRedemption, DiscountType
from gateflow.services import coupon_reservations


if os.environ.get("RUN_POSTGRES_INTEGRATION") != "1":
    pytest.skip("Postgres integration tests are opt-in", allow_module_level=True)

if not settings.database_url.startswith("postgresql"):
    pytest.skip("Postgres integration test requires DATABASE_URL pointing to Postgres", allow_module_level=True)


@pytest.fixture(autouse=True)
async def _schema_and_dispose():
    async with app_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await app_engine.dispose()


async def _seed_coupon(**fields) -> str:
    code = f"PG{uuid.uuid4().hex[:8].upper()}"
    async with SessionLocal() as session:
        session.add(
            Coupon(
                code=code,
                discount_type=DiscountType.percentage,
                discount_value=Decimal("10.00"),
                allowed_product_ids=[],
                allowed_emails=[],
                **fields,
            )
        )
        await session.commit()
    return code


async def _verify_then_redeem(code: str, email: str):
    async with SessionLocal() as session:
        verified = await coupon_reservations.verify(session, code=code, product_id="prod-1", email=email)
    if not verified.valid:
        return verified.error
    async with SessionLocal() as session:
        redeemed = await coupon_reservations.redeem(session, reservation_id=verified.reservation_id)
    return "redeemed" if redeemed.ok else redeemed.error


@pytest.mark.anyio
async def test_postgres_row_lock_caps_last_unit() -> None:
    code = await _seed_coupon(usage_limit_global=1, usage_limit_per_user=1)

    outcomes = Counter(
        await asyncio.gather(*(_verify_then_redeem(code, f"pg-racer{i}@example.com") for i in range(10)))
    )

    assert outcomes["redeemed"] == 1
    assert outcomes[coupon_reservations.CouponError.global_limit_reached] == 9

    async with SessionLocal() as session:
        coupon = (await session.execute(select(Coupon).where(Coupon.code == code))).scalar_one()
        redemptions = (
            await session.execute(
                select(func.count()).select_from(CouponRedemption).where(CouponRedemption.coupon_id == coupon.id)
            )
        ).scalar_one()
    assert redemptions == 1
    assert coupon.current_usage_count == 1


@pytest.mark.anyio
async def test_postgres_verify_over_http() -> None:
    code = await _seed_coupon(usage_limit_global=5)
    transport = httpx.ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        payload = {"code": code.lower(), "productId": "prod-1", "email": "pg-http@example.com"}
        first = await client.post("/api/coupons/verify", json=payload)
        second = await client.post("/api/coupons/verify", json=payload)

    assert first.status_code == 200, first.text
    assert first.json()["valid"] is True
    assert second.json()["already_reserved"] is True
    assert second.json()["reservation_id"] == first.json()["reservation_id"]
