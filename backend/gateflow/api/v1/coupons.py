from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gateflow.db.session import get_session
from gateflow.schemas.coupons import (
    AutoApplyRequest,
    AutoApplyResponse,
    CouponVerifyRequest,
    CouponVerifyResponse,
)
from gateflow.services import coupon_reservations

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/verify", response_model=CouponVerifyResponse, response_model_exclude_none=True)
async def verify_coupon(
    payload: CouponVerifyRequest,
    session: AsyncSession = Depends(get_session),
) -> CouponVerifyResponse:
    result = await coupon_reservations.verify(
        session,
        code=payload.code,
        product_id=payload.product_id,
        email=payload.email,
        currency=payload.currency,
    )
    if not result.valid:
        return CouponVerifyResponse(valid=False, error=result.error.value if result.error else None, message=result.message)
    return CouponVerifyResponse(
        valid=True,
        code=result.coupon_code,
        discount_type=result.discount_type,
        discount_value=result.discount_value,
        exclude_order_bumps=result.exclude_order_bumps,
        reservation_id=result.reservation_id,
        reservation_expires_at=result.reservation_expires_at,
        already_reserved=result.already_reserved,
        email_check_deferred=result.email_check_deferred,
    )


@router.post("/auto-apply", response_model=AutoApplyResponse, response_model_exclude_none=True)
async def auto_apply_coupon(
    payload: AutoApplyRequest,
    session: AsyncSession = Depends(get_session),
) -> AutoApplyResponse:
    result = await coupon_reservations.find_auto_apply_coupon(session, email=payload.email, product_id=payload.product_id)
    if not result.found:
        return AutoApplyResponse(found=False)
    return AutoApplyResponse(
        found=True,
        code=result.coupon_code,
        discount_type=result.discount_type,
        discount_value=result.discount_value,
        exclude_order_bumps=result.exclude_order_bumps,
    )
