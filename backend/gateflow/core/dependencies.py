import hmac

from fastapi import Header, HTTPException, status

from gateflow.core.config import settings


async def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    expected = (settings.admin_api_token or "").strip()
    supplied = (x_admin_token or "").strip()
    if not supplied:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
