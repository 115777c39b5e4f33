from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

import stripe
from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gateflow.core import metrics
from gateflow.core.config import settings
from gateflow.models.webhook import PaymentWebhookEvent
from gateflow.services import coupon_reservations

logger = logging.getLogger(__name__)

REDEEM_EVENTS = {"checkout.session.completed", "payment_intent.succeeded"}
RELEASE_EVENTS = {"checkout.session.expired", "payment_intent.payment_failed", "payment_intent.canceled"}

RESERVATION_METADATA_KEY = "coupon_reservation_id"
DISCOUNT_METADATA_KEY = "discount_amount"


def stripe_webhook_secret() -> str:
    return (settings.stripe_webhook_secret or "").strip()


def is_webhook_configured() -> bool:
    secret = stripe_webhook_secret()
    return bool(secret) and "placeholder" not in secret.lower()


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    getter = getattr(obj, "get", None)
    if callable(getter):
        return getter(key)
    return getattr(obj, key, None)


def _event_object(event: Any) -> Any:
    return _field(_field(event, "data"), "object")


def _event_payload_summary(event: Any) -> dict[str, Any]:
    obj = _event_object(event)
    summary: dict[str, Any] = {"id": _field(event, "id"), "type": _field(event, "type")}
    obj_summary = {key: _field(obj, key) for key in ("id", "object", "status", "payment_status")}
    metadata = _field(obj, "metadata")
    if metadata:
        obj_summary["metadata"] = {key: _field(metadata, key) for key in (RESERVATION_METADATA_KEY, DISCOUNT_METADATA_KEY)}
    summary["data"] = {"object": {key: value for key, value in obj_summary.items() if value is not None}}
    return summary


def _webhook_event_id(event: Any) -> str:
    event_id = str(_field(event, "id") or "").strip()
    if not event_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id")
    return event_id


def _parse_reservation_id(value: Any) -> UUID | None:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


def _parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value)) if value not in (None, "") else Decimal("0.00")
    except InvalidOperation:
        return Decimal("0.00")
    return amount if amount.is_finite() and amount >= 0 else Decimal("0.00")


async def _record_event(session: AsyncSession, *, event_id: str, event_type: str | None, payload: dict) -> PaymentWebhookEvent:
    now = datetime.now(timezone.utc)
    record = PaymentWebhookEvent(event_id=event_id, event_type=event_type, attempts=1, last_attempt_at=now, payload=payload)
    session.add(record)
    try:
        await session.commit()
        return record
    except IntegrityError:
        await session.rollback()

    existing = (
        await session.execute(select(PaymentWebhookEvent).where(PaymentWebhookEvent.event_id == event_id))
    ).scalar_one()
    existing.attempts = int(existing.attempts or 0) + 1
    existing.last_attempt_at = now
    await session.commit()
    return existing


async def _resolve_reservation(session: AsyncSession, obj: Any) -> UUID | None:
    reservation_id = _parse_reservation_id(_field(_field(obj, "metadata"), RESERVATION_METADATA_KEY))
    if reservation_id is not None:
        return reservation_id
    payment_session_id = _field(obj, "id")
    if not payment_session_id:
        return None
    return await coupon_reservations.reservation_for_payment_session(session, session_id=str(payment_session_id))


async def _apply_coupon_outcome(session: AsyncSession, event_type: str | None, obj: Any) -> dict[str, Any] | None:
    if event_type not in REDEEM_EVENTS and event_type not in RELEASE_EVENTS:
        return None
    reservation_id = await _resolve_reservation(session, obj)
    if reservation_id is None:
        return None

    if event_type in REDEEM_EVENTS:
        redeemed = await coupon_reservations.redeem(
            session,
            reservation_id=reservation_id,
            discount_amount=_parse_amount(_field(_field(obj, "metadata"), DISCOUNT_METADATA_KEY)),
            session_id=str(_field(obj, "id") or "") or None,
        )
        outcome = {"action": "redeem", "ok": redeemed.ok, "reservation_id": str(reservation_id)}
        if not redeemed.ok and redeemed.error:
            outcome["error"] = redeemed.error.value
        return outcome

    released = await coupon_reservations.release(session, reservation_id=reservation_id, reason=event_type or "released")
    outcome = {"action": "release", "ok": released.ok, "reservation_id": str(reservation_id)}
    if not released.ok and released.error:
        outcome["error"] = released.error.value
    return outcome


async def handle_webhook_event(session: AsyncSession, payload: bytes, sig_header: str | None) -> dict[str, Any]:
    """Verify a processor webhook, record it once, and settle the coupon reservation it refers to.

    Coupon rejections are reported in the returned acknowledgement; the purchase itself always stands.
    """
    if not is_webhook_configured():
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook secret not set")
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, stripe_webhook_secret())
    except Exception as exc:  # broad for Stripe signature and payload errors
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc

    event_id = _webhook_event_id(event)
    event_type = str(_field(event, "type") or "").strip() or None
    record = await _record_event(session, event_id=event_id, event_type=event_type, payload=_event_payload_summary(event))
    if record.processed_at is not None:
        logger.info("payment_webhook_duplicate", extra={"event_id": event_id, "event_type": event_type})
        return {"received": True, "type": event_type, "duplicate": True, "coupon": None}

    coupon_outcome = await _apply_coupon_outcome(session, event_type, _event_object(event))

    record.processed_at = datetime.now(timezone.utc)
    if coupon_outcome:
        record.coupon_action = coupon_outcome["action"]
        record.reservation_id = UUID(coupon_outcome["reservation_id"])
        record.last_error = coupon_outcome.get("error")
    else:
        record.last_error = None
    session.add(record)
    await session.commit()
    metrics.record_webhook_processed()
    logger.info(
        "payment_webhook_processed",
        extra={"event_id": event_id, "event_type": event_type, "coupon": coupon_outcome},
    )
    return {"received": True, "type": event_type, "duplicate": False, "coupon": coupon_outcome}
