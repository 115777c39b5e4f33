from gateflow.db.base import Base  # noqa: F401
from gateflow.models.coupons import (
    Coupon,
    CouponRedemption,
    CouponReservation,
    DiscountType,
    ReservationStatus,
)  # noqa: F401
from gateflow.models.webhook import PaymentWebhookEvent  # noqa: F401

__all__ = [
    "Base",
    "Coupon",
    "CouponRedemption",
    "CouponReservation",
    "DiscountType",
    "ReservationStatus",
    "PaymentWebhookEvent",
]
