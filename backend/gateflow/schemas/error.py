from typing import Any, Literal

from pydantic import BaseModel

ErrorCode = Literal["validation_error", "coupon_service_unavailable"]


class ErrorResponse(BaseModel):
    """Body of every non-2xx response; ``code`` is set only for machine-actionable failures."""

    detail: Any
    code: ErrorCode | None = None
