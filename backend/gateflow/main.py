import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gateflow.api.v1 import api_router
from gateflow.core.config import settings
from gateflow.core.logging_config import configure_logging
from gateflow.core.sentry import init_sentry
from gateflow.core.startup_checks import validate_production_settings
from gateflow.middleware import RequestLoggingMiddleware
from gateflow.schemas.error import ErrorResponse
from gateflow.services import reservation_sweeper
from gateflow.services.coupon_reservations import CouponStorageError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    reservation_sweeper.start(app)
    try:
        yield
    finally:
        await reservation_sweeper.stop(app)


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    validate_production_settings()
    init_sentry()
    tags_metadata = [
        {"name": "coupons", "description": "Coupon verification and reservations for checkout"},
        {"name": "coupons-admin", "description": "Coupon administration and usage statistics"},
        {"name": "payments", "description": "Payment processor webhooks"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    @app.exception_handler(CouponStorageError)
    async def coupon_storage_exception_handler(request: Request, exc: CouponStorageError):
        logger.error("coupon_service_unavailable", extra={"operation": exc.operation, "path": request.url.path})
        payload = ErrorResponse(detail="Coupon service temporarily unavailable", code="coupon_service_unavailable")
        return JSONResponse(status_code=503, content=payload.model_dump())

    return app


app = get_application()
