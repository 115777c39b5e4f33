from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gateflow.core.config import settings
from gateflow.models.coupons import Coupon, CouponRedemption, CouponReservation, DiscountType
from gateflow.schemas.coupons import (
    CouponCreate,
    CouponDailyUsage,
    CouponRedemptionRead,
    CouponStats,
    CouponStatsSummary,
    CouponUpdate,
)
from gateflow.services import coupon_reservations

RECENT_REDEMPTIONS = 10
DAILY_USAGE_DAYS = 30


def _quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DiscountBreakdown:
    main_price: Decimal
    bump_price: Decimal | None
    main_discount: Decimal
    bump_discount: Decimal

    @property
    def discount_amount(self) -> Decimal:
        return self.main_discount + self.bump_discount

    @property
    def discounted_main_price(self) -> Decimal:
        return self.main_price - self.main_discount

    @property
    def discounted_bump_price(self) -> Decimal | None:
        if self.bump_price is None:
            return None
        return self.bump_price - self.bump_discount

    @property
    def total(self) -> Decimal:
        return self.discounted_main_price + (self.discounted_bump_price or Decimal("0.00"))


def compute_discount(
    coupon: Coupon,
    main_price: Decimal,
    bump_price: Decimal | None = None,
    *,
    min_charge: Decimal | None = None,
) -> DiscountBreakdown:
    """Split a coupon's discount across the main product and an optional order bump.

    Percentage coupons discount both lines unless order bumps are excluded. Fixed coupons only touch
    the main product and never push it below the processor's minimum charge.
    """
    floor = _quantize_money(settings.payment_min_charge if min_charge is None else min_charge)
    main = _quantize_money(Decimal(main_price))
    bump = _quantize_money(Decimal(bump_price)) if bump_price is not None else None
    value = Decimal(coupon.discount_value)

    if coupon.discount_type == DiscountType.percentage:
        main_discount = _quantize_money(main * value / Decimal(100))
        bump_discount = Decimal("0.00")
        if bump is not None and not coupon.exclude_order_bumps:
            bump_discount = _quantize_money(bump * value / Decimal(100))
    else:
        main_discount = _quantize_money(min(value, max(main - floor, Decimal("0.00"))))
        bump_discount = Decimal("0.00")

    return DiscountBreakdown(main_price=main, bump_price=bump, main_discount=main_discount, bump_discount=bump_discount)


async def get_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon:
    coupon = await session.get(Coupon, coupon_id)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    return coupon


async def get_coupon_by_code(session: AsyncSession, *, code: str) -> Coupon | None:
    normalized = coupon_reservations.normalize_code(code)
    if not normalized:
        return None
    return (await session.execute(select(Coupon).where(Coupon.code == normalized))).scalar_one_or_none()


async def list_coupons(
    session: AsyncSession, *, active: bool | None = None, limit: int = 50, offset: int = 0
) -> list[Coupon]:
    stmt = select(Coupon).order_by(Coupon.created_at.desc(), Coupon.code).limit(limit).offset(offset)
    if active is not None:
        stmt = stmt.where(Coupon.is_active.is_(active))
    return list((await session.execute(stmt)).scalars())


async def create_coupon(session: AsyncSession, payload: CouponCreate) -> Coupon:
    if payload.usage_limit_global is not None and payload.current_usage_count > payload.usage_limit_global:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="current_usage_count cannot exceed usage_limit_global",
        )
    if await get_coupon_by_code(session, code=payload.code) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")

    data = payload.model_dump()
    if data.get("currency"):
        data["currency"] = data["currency"].upper()
    coupon = Coupon(**data)
    session.add(coupon)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")
    await session.refresh(coupon)
    return coupon


async def update_coupon(session: AsyncSession, coupon_id: UUID, payload: CouponUpdate) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("currency"):
        changes["currency"] = changes["currency"].upper()

    def merged(field: str):
        return changes[field] if field in changes else getattr(coupon, field)

    discount_type = merged("discount_type")
    currency = merged("currency")
    if discount_type == DiscountType.percentage:
        if Decimal(merged("discount_value")) > 100:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Percentage discount cannot exceed 100%")
        if currency:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Percentage coupons cannot declare a currency"
            )
    if discount_type == DiscountType.fixed and not currency:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Currency is required for fixed discount coupons")
    starts_at = coupon_reservations.as_utc(merged("starts_at"))
    expires_at = coupon_reservations.as_utc(merged("expires_at"))
    if starts_at and expires_at and expires_at <= starts_at:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="expires_at must be after starts_at")

    new_code = changes.get("code")
    if new_code and new_code != coupon.code:
        existing = await get_coupon_by_code(session, code=new_code)
        if existing is not None and existing.id != coupon.id:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")

    for field, value in changes.items():
        setattr(coupon, field, value)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")
    await session.refresh(coupon)
    return coupon


async def delete_coupon(session: AsyncSession, coupon_id: UUID) -> None:
    """Administrative cleanup: the coupon goes together with its reservations and redemptions."""
    await get_coupon(session, coupon_id)
    await session.execute(delete(CouponRedemption).where(CouponRedemption.coupon_id == coupon_id))
    await session.execute(delete(CouponReservation).where(CouponReservation.coupon_id == coupon_id))
    await session.execute(delete(Coupon).where(Coupon.id == coupon_id))
    await session.commit()


def _day(value: datetime) -> date:
    return coupon_reservations.as_utc(value).date()


async def coupon_stats(session: AsyncSession, coupon_id: UUID) -> CouponStats:
    coupon = await get_coupon(session, coupon_id)
    now = coupon_reservations.utcnow()

    totals = (
        await session.execute(
            select(
                func.count(CouponRedemption.id),
                func.coalesce(func.sum(CouponRedemption.discount_amount), 0),
                func.count(func.distinct(CouponRedemption.customer_email)),
            ).where(CouponRedemption.coupon_id == coupon.id)
        )
    ).one()
    total_redemptions, total_amount, unique_users = int(totals[0]), _quantize_money(Decimal(str(totals[1]))), int(totals[2])

    live = await coupon_reservations.count_live_reservations(session, coupon_id=coupon.id, now=now)
    remaining = None
    if coupon.usage_limit_global is not None:
        used = max(total_redemptions, int(coupon.current_usage_count or 0))
        remaining = max(coupon.usage_limit_global - used, 0)

    recent = (
        await session.execute(
            select(CouponRedemption)
            .where(CouponRedemption.coupon_id == coupon.id)
            .order_by(CouponRedemption.created_at.desc())
            .limit(RECENT_REDEMPTIONS)
        )
    ).scalars()

    since = now - timedelta(days=DAILY_USAGE_DAYS)
    window = (
        await session.execute(
            select(CouponRedemption.created_at, CouponRedemption.discount_amount).where(
                CouponRedemption.coupon_id == coupon.id,
                CouponRedemption.created_at >= since,
            )
        )
    ).all()
    per_day: dict[date, list[Decimal]] = defaultdict(list)
    for created_at, amount in window:
        per_day[_day(created_at)].append(Decimal(amount or 0))
    daily = [
        CouponDailyUsage(date=day, count=len(amounts), amount=_quantize_money(sum(amounts, Decimal("0.00"))))
        for day, amounts in sorted(per_day.items())
    ]

    return CouponStats(
        coupon_id=coupon.id,
        coupon_code=coupon.code,
        currency=coupon.currency,
        summary=CouponStatsSummary(
            total_redemptions=total_redemptions,
            total_discount_amount=total_amount,
            unique_users=unique_users,
            usage_limit_global=coupon.usage_limit_global,
            usage_limit_per_user=coupon.usage_limit_per_user,
            remaining_global_uses=remaining,
            live_reservations=live,
        ),
        recent_redemptions=[CouponRedemptionRead.model_validate(row) for row in recent],
        daily_usage=daily,
    )
