from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from gateflow.core.dependencies import require_admin
from gateflow.db.session import get_session
from gateflow.schemas.coupons import (
    CouponCreate,
    CouponRead,
    CouponStats,
    CouponUpdate,
    ReservationCleanupResponse,
)
from gateflow.services import coupon_reservations
from gateflow.services import coupons as coupons_service

router = APIRouter(prefix="/v1/coupons", tags=["coupons-admin"], dependencies=[Depends(require_admin)])


@router.post("/reservations/cleanup", response_model=ReservationCleanupResponse)
async def cleanup_reservations(session: AsyncSession = Depends(get_session)) -> ReservationCleanupResponse:
    reclaimed = await coupon_reservations.cleanup_expired_reservations(session)
    return ReservationCleanupResponse(reclaimed=reclaimed)


@router.get("", response_model=list[CouponRead])
async def list_coupons(
    active: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> list[CouponRead]:
    coupons = await coupons_service.list_coupons(session, active=active, limit=limit, offset=offset)
    return [CouponRead.model_validate(coupon) for coupon in coupons]


@router.post("", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def create_coupon(payload: CouponCreate, session: AsyncSession = Depends(get_session)) -> CouponRead:
    coupon = await coupons_service.create_coupon(session, payload)
    return CouponRead.model_validate(coupon)


@router.get("/{coupon_id}", response_model=CouponRead)
async def get_coupon(coupon_id: UUID, session: AsyncSession = Depends(get_session)) -> CouponRead:
    return CouponRead.model_validate(await coupons_service.get_coupon(session, coupon_id))


@router.patch("/{coupon_id}", response_model=CouponRead)
async def update_coupon(
    coupon_id: UUID, payload: CouponUpdate, session: AsyncSession = Depends(get_session)
) -> CouponRead:
    coupon = await coupons_service.update_coupon(session, coupon_id, payload)
    return CouponRead.model_validate(coupon)


@router.delete("/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_coupon(coupon_id: UUID, session: AsyncSession = Depends(get_session)) -> Response:
    await coupons_service.delete_coupon(session, coupon_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{coupon_id}/stats", response_model=CouponStats)
async def coupon_stats(coupon_id: UUID, session: AsyncSession = Depends(get_session)) -> CouponStats:
    return await coupons_service.coupon_stats(session, coupon_id)
