from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from gateflow.models.coupons import DiscountType

CODE_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class CouponVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1, max_length=50)
    product_id: str = Field(alias="productId", min_length=1, max_length=64)
    email: str | None = Field(default=None, max_length=255)
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    @field_validator("code")
    @classmethod
    def _code_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Coupon code is required")
        return value

    @field_validator("email")
    @classmethod
    def _blank_email_is_absent(cls, value: str | None) -> str | None:
        cleaned = (value or "").strip()
        return cleaned or None


class CouponVerifyResponse(BaseModel):
    valid: bool
    error: str | None = None
    message: str | None = None
    reservation_id: UUID | None = None
    reservation_expires_at: datetime | None = None
    already_reserved: bool | None = None
    email_check_deferred: bool | None = None
    code: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    exclude_order_bumps: bool | None = None


class AutoApplyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(min_length=3, max_length=255)
    product_id: str = Field(alias="productId", min_length=1, max_length=64)


class AutoApplyResponse(BaseModel):
    found: bool
    code: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = None
    exclude_order_bumps: bool | None = None


class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=50)
    name: str | None = Field(default=None, max_length=120)
    discount_type: DiscountType
    discount_value: Decimal = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    usage_limit_global: int | None = Field(default=None, ge=1)
    usage_limit_per_user: int | None = Field(default=1, ge=1)
    current_usage_count: int = Field(default=0, ge=0)
    is_active: bool = True
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    allowed_product_ids: list[str] = Field(default_factory=list)
    allowed_emails: list[str] = Field(default_factory=list)
    exclude_order_bumps: bool = False

    @field_validator("code")
    @classmethod
    def _valid_code(cls, value: str) -> str:
        cleaned = value.strip()
        if not CODE_RE.match(cleaned):
            raise ValueError("Coupon code can only contain letters, numbers, hyphens, and underscores")
        return cleaned.upper()

    @field_validator("allowed_emails")
    @classmethod
    def _lower_emails(cls, value: list[str]) -> list[str]:
        return [email.strip().lower() for email in value if email.strip()]

    @model_validator(mode="after")
    def _check_discount(self) -> "CouponCreate":
        if self.discount_type == DiscountType.percentage:
            if self.discount_value > 100:
                raise ValueError("Percentage discount cannot exceed 100%")
            if self.currency:
                raise ValueError("Percentage coupons cannot declare a currency")
        if self.discount_type == DiscountType.fixed and not self.currency:
            raise ValueError("Currency is required for fixed discount coupons")
        if self.starts_at and self.expires_at and self.expires_at <= self.starts_at:
            raise ValueError("expires_at must be after starts_at")
        return self


class CouponUpdate(BaseModel):
    """Partial update. An explicit null clears ``name``, ``usage_limit_global``, ``starts_at``, ``expires_at``
    or ``currency``; every other field rejects it."""

    code: str | None = Field(default=None, min_length=3, max_length=50)
    name: str | None = Field(default=None, max_length=120)
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(default=None, gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    usage_limit_global: int | None = Field(default=None, ge=1)
    usage_limit_per_user: int | None = Field(default=None, ge=1)
    is_active: bool | None = None
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    allowed_product_ids: list[str] | None = None
    allowed_emails: list[str] | None = None
    exclude_order_bumps: bool | None = None

    @field_validator(
        "code",
        "discount_type",
        "discount_value",
        "usage_limit_per_user",
        "is_active",
        "allowed_product_ids",
        "allowed_emails",
        "exclude_order_bumps",
    )
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        # explicit null; omitted fields never reach validators
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value

    @field_validator("code")
    @classmethod
    def _valid_code(cls, value: str) -> str:
        cleaned = value.strip()
        if not CODE_RE.match(cleaned):
            raise ValueError("Coupon code can only contain letters, numbers, hyphens, and underscores")
        return cleaned.upper()

    @field_validator("allowed_emails")
    @classmethod
    def _lower_emails(cls, value: list[str]) -> list[str]:
        return [email.strip().lower() for email in value if email.strip()]


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str | None = None
    discount_type: DiscountType
    discount_value: Decimal
    currency: str | None = None
    usage_limit_global: int | None = None
    usage_limit_per_user: int | None = None
    current_usage_count: int
    is_active: bool
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    allowed_product_ids: list[str]
    allowed_emails: list[str]
    exclude_order_bumps: bool
    created_at: datetime
    updated_at: datetime


class CouponRedemptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_email: str
    discount_amount: Decimal
    session_id: str | None = None
    created_at: datetime


class CouponStatsSummary(BaseModel):
    total_redemptions: int
    total_discount_amount: Decimal
    unique_users: int
    usage_limit_global: int | None = None
    usage_limit_per_user: int | None = None
    remaining_global_uses: int | None = None
    live_reservations: int


class CouponDailyUsage(BaseModel):
    date: date
    count: int
    amount: Decimal


class CouponStats(BaseModel):
    coupon_id: UUID
    coupon_code: str
    currency: str | None = None
    summary: CouponStatsSummary
    recent_redemptions: list[CouponRedemptionRead]
    daily_usage: list[CouponDailyUsage]


class ReservationCleanupResponse(BaseModel):
    reclaimed: int
