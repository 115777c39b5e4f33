from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gateflow.db.session import get_session
from gateflow.services import payments

router = APIRouter(prefix="/webhooks", tags=["payments"])


@router.post("/payments", status_code=status.HTTP_200_OK)
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> dict:
    payload = await request.body()
    return await payments.handle_webhook_event(session, payload, stripe_signature)
