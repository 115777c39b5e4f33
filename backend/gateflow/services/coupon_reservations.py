"""Coupon admission control, reservation lifecycle and redemption finalization.

Every public coroutine here runs as one database transaction on the session it is given and commits it.
Capacity accounting for a coupon is serialized by locking the coupon row (``SELECT ... FOR UPDATE``) before
any reservation or redemption is counted, so concurrent callers on different processes observe each
other's writes in order. On SQLite the engine begins every transaction with ``BEGIN IMMEDIATE`` instead.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from gateflow.core import metrics
from gateflow.core.config import settings
from gateflow.models.coupons import (
    Coupon,
    CouponRedemption,
    CouponReservation,
    DiscountType,
    ReservationStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_ERRORS = (OperationalError, InterfaceError, IntegrityError)


class CouponError(str, enum.Enum):
    not_found = "not_found"
    inactive = "inactive"
    not_started = "not_started"
    expired = "expired"
    currency_mismatch = "currency_mismatch"
    product_not_eligible = "product_not_eligible"
    email_not_eligible = "email_not_eligible"
    global_limit_reached = "global_limit_reached"
    per_user_limit_reached = "per_user_limit_reached"
    reservation_not_found = "reservation_not_found"
    reservation_expired = "reservation_expired"
    reservation_already_consumed = "reservation_already_consumed"


ERROR_MESSAGES: dict[CouponError, str] = {
    CouponError.not_found: "Invalid code",
    CouponError.inactive: "Coupon is not active",
    CouponError.not_started: "Coupon is not yet active",
    CouponError.expired: "Coupon has expired",
    CouponError.currency_mismatch: "Coupon currency does not match the checkout currency",
    CouponError.product_not_eligible: "Coupon not valid for this product",
    CouponError.email_not_eligible: "Coupon not valid for this email",
    CouponError.global_limit_reached: "Coupon usage limit reached",
    CouponError.per_user_limit_reached: "You have already used this coupon",
    CouponError.reservation_not_found: "Coupon reservation not found",
    CouponError.reservation_expired: "Coupon reservation has expired, verify the coupon again",
    CouponError.reservation_already_consumed: "Coupon reservation was already redeemed",
}


class CouponStorageError(RuntimeError):
    """The coupon ledger could not be read or written, even after retrying."""

    def __init__(self, operation: str):
        super().__init__(f"Coupon storage unavailable during {operation}")
        self.operation = operation


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    error: CouponError | None = None
    coupon_id: UUID | None = None
    coupon_code: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    exclude_order_bumps: bool | None = None
    reservation_id: UUID | None = None
    reservation_expires_at: datetime | None = None
    already_reserved: bool | None = None
    email_check_deferred: bool | None = None

    @property
    def message(self) -> str | None:
        return ERROR_MESSAGES.get(self.error) if self.error else None


@dataclass(frozen=True)
class RedemptionResult:
    ok: bool
    error: CouponError | None = None
    redemption_id: UUID | None = None
    coupon_id: UUID | None = None
    coupon_code: str | None = None
    customer_email: str | None = None
    discount_amount: Decimal | None = None

    @property
    def message(self) -> str | None:
        return ERROR_MESSAGES.get(self.error) if self.error else None


@dataclass(frozen=True)
class ReservationResult:
    ok: bool
    error: CouponError | None = None
    reservation_id: UUID | None = None
    status: ReservationStatus | None = None

    @property
    def message(self) -> str | None:
        return ERROR_MESSAGES.get(self.error) if self.error else None


@dataclass(frozen=True)
class AutoApplyResult:
    found: bool
    coupon_code: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    exclude_order_bumps: bool | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _normalize_email(email: str | None) -> str | None:
    cleaned = (email or "").strip().lower()
    return cleaned or None


def _quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def reservation_ttl() -> timedelta:
    return timedelta(minutes=settings.coupon_reservation_ttl_minutes)


def coupon_window_error(coupon: Coupon, now: datetime) -> CouponError | None:
    if not coupon.is_active:
        return CouponError.inactive
    starts_at = as_utc(coupon.starts_at)
    if starts_at and starts_at > now:
        return CouponError.not_started
    expires_at = as_utc(coupon.expires_at)
    if expires_at and expires_at < now:
        return CouponError.expired
    return None


def _currency_error(coupon: Coupon, currency: str | None) -> CouponError | None:
    if coupon.discount_type != DiscountType.fixed or not coupon.currency or not currency:
        return None
    if coupon.currency.strip().upper() != currency.strip().upper():
        return CouponError.currency_mismatch
    return None


def _product_allowed(coupon: Coupon, product_id: str) -> bool:
    allowed = [str(item) for item in (coupon.allowed_product_ids or [])]
    return not allowed or str(product_id) in allowed


def _allowed_emails(coupon: Coupon) -> set[str]:
    return {str(item).strip().lower() for item in (coupon.allowed_emails or []) if str(item).strip()}


async def _with_storage_retry(
    session: AsyncSession,
    operation: str,
    attempt: Callable[[], Awaitable[T]],
    **log_extra: object,
) -> T:
    attempts = max(0, int(settings.coupon_storage_retry_attempts)) + 1
    for number in range(1, attempts + 1):
        try:
            return await attempt()
        except _RETRYABLE_ERRORS as exc:
            await session.rollback()
            metrics.record_storage_failure()
            if number >= attempts:
                logger.error(
                    "coupon_storage_failed",
                    extra={"operation": operation, "attempts": number, **log_extra},
                    exc_info=True,
                )
                raise CouponStorageError(operation) from exc
            metrics.record_storage_retry()
            logger.warning(
                "coupon_storage_retry",
                extra={"operation": operation, "attempt": number, "error": exc.__class__.__name__, **log_extra},
            )
    raise CouponStorageError(operation)  # pragma: no cover - loop always returns or raises


async def _lock_coupon(session: AsyncSession, *, coupon_id: UUID | None = None, code: str | None = None) -> Coupon | None:
    stmt = select(Coupon).with_for_update().execution_options(populate_existing=True)
    if coupon_id is not None:
        stmt = stmt.where(Coupon.id == coupon_id)
    else:
        stmt = stmt.where(Coupon.code == code)
    return (await session.execute(stmt)).scalar_one_or_none()


async def _expire_lapsed_holds(session: AsyncSession, *, now: datetime, coupon_id: UUID | None = None) -> int:
    stmt = (
        update(CouponReservation)
        .where(CouponReservation.status == ReservationStatus.held, CouponReservation.expires_at <= now)
        .values(status=ReservationStatus.expired)
        .execution_options(synchronize_session=False)
    )
    if coupon_id is not None:
        stmt = stmt.where(CouponReservation.coupon_id == coupon_id)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def _count_redemptions(session: AsyncSession, *, coupon_id: UUID, email: str | None = None) -> int:
    stmt = select(func.count()).select_from(CouponRedemption).where(CouponRedemption.coupon_id == coupon_id)
    if email is not None:
        stmt = stmt.where(CouponRedemption.customer_email == email)
    return int((await session.execute(stmt)).scalar_one())


async def permanent_usage(session: AsyncSession, coupon: Coupon) -> int:
    redeemed = await _count_redemptions(session, coupon_id=coupon.id)
    return max(redeemed, int(coupon.current_usage_count or 0))


async def count_live_reservations(
    session: AsyncSession, *, coupon_id: UUID, now: datetime, exclude_email: str | None = None
) -> int:
    stmt = (
        select(func.count())
        .select_from(CouponReservation)
        .where(
            CouponReservation.coupon_id == coupon_id,
            CouponReservation.status == ReservationStatus.held,
            CouponReservation.expires_at > now,
        )
    )
    if exclude_email is not None:
        stmt = stmt.where(CouponReservation.customer_email != exclude_email)
    return int((await session.execute(stmt)).scalar_one())


async def _live_reservation(
    session: AsyncSession, *, coupon_id: UUID, email: str, now: datetime
) -> CouponReservation | None:
    stmt = select(CouponReservation).where(
        CouponReservation.coupon_id == coupon_id,
        CouponReservation.customer_email == email,
        CouponReservation.status == ReservationStatus.held,
        CouponReservation.expires_at > now,
    )
    return (await session.execute(stmt)).scalars().first()


def _rejected(error: CouponError, coupon: Coupon | None = None) -> VerifyResult:
    return VerifyResult(
        valid=False,
        error=error,
        coupon_id=coupon.id if coupon else None,
        coupon_code=coupon.code if coupon else None,
    )


def _accepted(coupon: Coupon, **kwargs) -> VerifyResult:
    return VerifyResult(
        valid=True,
        coupon_id=coupon.id,
        coupon_code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=Decimal(coupon.discount_value),
        exclude_order_bumps=bool(coupon.exclude_order_bumps),
        **kwargs,
    )


async def _admit(
    session: AsyncSession, *, code: str, product_id: str, email: str | None, currency: str | None
) -> VerifyResult:
    now = utcnow()
    coupon = await _lock_coupon(session, code=code)
    if coupon is None:
        return _rejected(CouponError.not_found)

    error = coupon_window_error(coupon, now) or _currency_error(coupon, currency)
    if error is None and not _product_allowed(coupon, product_id):
        error = CouponError.product_not_eligible
    allowed_emails = _allowed_emails(coupon)
    if error is None and email is not None and allowed_emails and email not in allowed_emails:
        error = CouponError.email_not_eligible
    if error is not None:
        return _rejected(error, coupon)

    await _expire_lapsed_holds(session, now=now, coupon_id=coupon.id)

    if coupon.usage_limit_global is not None:
        used = await permanent_usage(session, coupon)
        held_by_others = await count_live_reservations(session, coupon_id=coupon.id, now=now, exclude_email=email)
        if used + held_by_others >= coupon.usage_limit_global:
            return _rejected(CouponError.global_limit_reached, coupon)

    if email is None:
        return _accepted(coupon, email_check_deferred=bool(allowed_emails))

    if coupon.usage_limit_per_user is not None:
        used_by_customer = await _count_redemptions(session, coupon_id=coupon.id, email=email)
        if used_by_customer >= coupon.usage_limit_per_user:
            return _rejected(CouponError.per_user_limit_reached, coupon)

    existing = await _live_reservation(session, coupon_id=coupon.id, email=email, now=now)
    if existing is not None:
        return _accepted(
            coupon,
            reservation_id=existing.id,
            reservation_expires_at=as_utc(existing.expires_at),
            already_reserved=True,
        )

    reservation = CouponReservation(
        coupon_id=coupon.id,
        customer_email=email,
        status=ReservationStatus.held,
        created_at=now,
        expires_at=now + reservation_ttl(),
    )
    session.add(reservation)
    await session.flush()
    return _accepted(
        coupon,
        reservation_id=reservation.id,
        reservation_expires_at=reservation.expires_at,
        already_reserved=False,
    )


async def verify(
    session: AsyncSession,
    *,
    code: str,
    product_id: str,
    email: str | None = None,
    currency: str | None = None,
) -> VerifyResult:
    """Check a coupon for a checkout attempt and hold one unit of its capacity for the customer.

    Rejections are returned as ``VerifyResult(valid=False, error=...)``. Without an email the
    email allow-list and per-customer limit cannot be evaluated yet, so no reservation is made.
    """
    normalized_code = normalize_code(code)
    customer_email = _normalize_email(email)
    metrics.record_coupon_verification()
    if not normalized_code:
        result = _rejected(CouponError.not_found)
    else:

        async def _attempt() -> VerifyResult:
            admitted = await _admit(
                session, code=normalized_code, product_id=str(product_id), email=customer_email, currency=currency
            )
            await session.commit()
            return admitted

        result = await _with_storage_retry(session, "verify", _attempt, coupon_code=normalized_code)

    if not result.valid:
        metrics.record_coupon_rejected(result.error.value if result.error else "unknown")
        logger.info(
            "coupon_rejected",
            extra={
                "coupon_code": normalized_code,
                "product_id": str(product_id),
                "reason": result.error.value if result.error else None,
            },
        )
    elif result.already_reserved:
        metrics.record_coupon_reservation_reused()
    elif result.reservation_id is not None:
        metrics.record_coupon_reserved()
        logger.info(
            "coupon_reserved",
            extra={
                "coupon_code": normalized_code,
                "reservation_id": str(result.reservation_id),
                "expires_at": result.reservation_expires_at,
            },
        )
    return result


async def _load_reservation_locked(session: AsyncSession, reservation_id: UUID) -> tuple[CouponReservation | None, Coupon | None]:
    reservation = await session.get(CouponReservation, reservation_id)
    if reservation is None:
        return None, None
    coupon = await _lock_coupon(session, coupon_id=reservation.coupon_id)
    stmt = (
        select(CouponReservation)
        .where(CouponReservation.id == reservation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none(), coupon


async def _finalize(
    session: AsyncSession, *, reservation_id: UUID, discount_amount: Decimal, payment_session_id: str | None
) -> RedemptionResult:
    now = utcnow()
    reservation, coupon = await _load_reservation_locked(session, reservation_id)
    if reservation is None or coupon is None:
        return RedemptionResult(ok=False, error=CouponError.reservation_not_found)

    def _failed(error: CouponError) -> RedemptionResult:
        return RedemptionResult(
            ok=False, error=error, coupon_id=coupon.id, coupon_code=coupon.code, customer_email=reservation.customer_email
        )

    if reservation.status == ReservationStatus.consumed:
        return _failed(CouponError.reservation_already_consumed)
    if reservation.status == ReservationStatus.expired:
        return _failed(CouponError.reservation_expired)
    if as_utc(reservation.expires_at) <= now:
        reservation.status = ReservationStatus.expired
        return _failed(CouponError.reservation_expired)

    if coupon.usage_limit_global is not None and await permanent_usage(session, coupon) >= coupon.usage_limit_global:
        reservation.status = ReservationStatus.expired
        return _failed(CouponError.global_limit_reached)
    if coupon.usage_limit_per_user is not None:
        used_by_customer = await _count_redemptions(session, coupon_id=coupon.id, email=reservation.customer_email)
        if used_by_customer >= coupon.usage_limit_per_user:
            reservation.status = ReservationStatus.expired
            return _failed(CouponError.per_user_limit_reached)

    redemption = CouponRedemption(
        coupon_id=coupon.id,
        reservation_id=reservation.id,
        customer_email=reservation.customer_email,
        discount_amount=discount_amount,
        session_id=payment_session_id or reservation.session_id,
        created_at=now,
    )
    session.add(redemption)
    reservation.status = ReservationStatus.consumed
    reservation.consumed_at = now
    if payment_session_id and not reservation.session_id:
        reservation.session_id = payment_session_id
    coupon.current_usage_count = int(coupon.current_usage_count or 0) + 1
    await session.flush()
    return RedemptionResult(
        ok=True,
        redemption_id=redemption.id,
        coupon_id=coupon.id,
        coupon_code=coupon.code,
        customer_email=reservation.customer_email,
        discount_amount=discount_amount,
    )


async def redeem(
    session: AsyncSession,
    *,
    reservation_id: UUID,
    discount_amount: Decimal | int | str = Decimal("0.00"),
    session_id: str | None = None,
) -> RedemptionResult:
    """Turn a held reservation into a permanent redemption and bump the coupon's usage counter.

    Reservation and limit failures come back as ``RedemptionResult(ok=False, error=...)``.
    ``discount_amount`` must be a non-negative money value; a negative amount is a caller bug and raises
    ``ValueError`` before any database work. Untrusted input (webhook metadata) is clamped upstream.
    """
    amount = _quantize_money(Decimal(str(discount_amount)))
    if amount < 0:
        raise ValueError("discount_amount must not be negative")

    async def _attempt() -> RedemptionResult:
        finalized = await _finalize(
            session, reservation_id=reservation_id, discount_amount=amount, payment_session_id=session_id
        )
        await session.commit()
        return finalized

    result = await _with_storage_retry(session, "redeem", _attempt, reservation_id=str(reservation_id))
    if result.ok:
        metrics.record_coupon_redeemed()
        logger.info(
            "coupon_redeemed",
            extra={
                "coupon_code": result.coupon_code,
                "reservation_id": str(reservation_id),
                "redemption_id": str(result.redemption_id),
                "discount_amount": str(amount),
            },
        )
    else:
        logger.warning(
            "coupon_redeem_rejected",
            extra={
                "coupon_code": result.coupon_code,
                "reservation_id": str(reservation_id),
                "reason": result.error.value if result.error else None,
            },
        )
    return result


async def release(session: AsyncSession, *, reservation_id: UUID, reason: str = "released") -> ReservationResult:
    """Hand a held reservation's capacity back before its TTL runs out."""

    async def _attempt() -> ReservationResult:
        reservation, _coupon = await _load_reservation_locked(session, reservation_id)
        if reservation is None:
            outcome = ReservationResult(ok=False, error=CouponError.reservation_not_found, reservation_id=reservation_id)
        elif reservation.status == ReservationStatus.consumed:
            outcome = ReservationResult(
                ok=False,
                error=CouponError.reservation_already_consumed,
                reservation_id=reservation_id,
                status=reservation.status,
            )
        else:
            reservation.status = ReservationStatus.expired
            outcome = ReservationResult(ok=True, reservation_id=reservation_id, status=ReservationStatus.expired)
        await session.commit()
        return outcome

    result = await _with_storage_retry(session, "release", _attempt, reservation_id=str(reservation_id))
    if result.ok:
        metrics.record_coupon_released()
        logger.info("coupon_reservation_released", extra={"reservation_id": str(reservation_id), "reason": reason})
    return result


async def attach_session(session: AsyncSession, *, reservation_id: UUID, session_id: str) -> ReservationResult:
    """Record the payment session created for a held reservation."""

    async def _attempt() -> ReservationResult:
        reservation = await session.get(CouponReservation, reservation_id, populate_existing=True)
        if reservation is None:
            outcome = ReservationResult(ok=False, error=CouponError.reservation_not_found, reservation_id=reservation_id)
        elif reservation.status == ReservationStatus.consumed:
            outcome = ReservationResult(
                ok=False, error=CouponError.reservation_already_consumed, reservation_id=reservation_id, status=reservation.status
            )
        elif reservation.status == ReservationStatus.expired or as_utc(reservation.expires_at) <= utcnow():
            outcome = ReservationResult(
                ok=False, error=CouponError.reservation_expired, reservation_id=reservation_id, status=reservation.status
            )
        else:
            reservation.session_id = session_id
            outcome = ReservationResult(ok=True, reservation_id=reservation_id, status=reservation.status)
        await session.commit()
        return outcome

    return await _with_storage_retry(session, "attach_session", _attempt, reservation_id=str(reservation_id))


async def reservation_for_payment_session(session: AsyncSession, *, session_id: str) -> UUID | None:
    stmt = (
        select(CouponReservation.id)
        .where(CouponReservation.session_id == session_id)
        .order_by(CouponReservation.created_at.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def cleanup_expired_reservations(session: AsyncSession) -> int:
    """Mark every held reservation past its expiry as expired; returns how many were reclaimed."""

    async def _attempt() -> int:
        reclaimed = await _expire_lapsed_holds(session, now=utcnow())
        await session.commit()
        return reclaimed

    reclaimed = await _with_storage_retry(session, "cleanup_expired_reservations", _attempt)
    metrics.record_reservations_expired(reclaimed)
    if reclaimed:
        logger.info("coupon_reservations_expired", extra={"count": reclaimed})
    return reclaimed


async def find_auto_apply_coupon(session: AsyncSession, *, email: str, product_id: str) -> AutoApplyResult:
    customer_email = _normalize_email(email)
    if customer_email is None:
        return AutoApplyResult(found=False)
    now = utcnow()
    rows = await session.execute(
        select(Coupon).where(Coupon.is_active.is_(True)).order_by(Coupon.created_at.desc(), Coupon.code)
    )
    for coupon in rows.scalars():
        if customer_email not in _allowed_emails(coupon):
            continue
        if coupon_window_error(coupon, now) is not None or not _product_allowed(coupon, product_id):
            continue
        if coupon.usage_limit_global is not None and await permanent_usage(session, coupon) >= coupon.usage_limit_global:
            continue
        return AutoApplyResult(
            found=True,
            coupon_code=coupon.code,
            discount_type=coupon.discount_type,
            discount_value=Decimal(coupon.discount_value),
            exclude_order_bumps=bool(coupon.exclude_order_bumps),
        )
    return AutoApplyResult(found=False)
