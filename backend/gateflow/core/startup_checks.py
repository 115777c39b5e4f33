from __future__ import annotations

import logging

from gateflow.core.config import settings

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _looks_like_localhost(url: str | None) -> bool:
    value = (url or "").strip().lower()
    return "localhost" in value or "127.0.0.1" in value


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_core_production_settings(problems: list[str]) -> None:
    token = (settings.admin_api_token or "").strip()
    _append_if(
        problems,
        condition=token in {"", "dev-admin-token"} or len(token) < 32,
        message="ADMIN_API_TOKEN must be set to a strong random value (not the dev default).",
    )
    _append_if(
        problems,
        condition=not (settings.stripe_webhook_secret or "").strip(),
        message="STRIPE_WEBHOOK_SECRET must be configured in production.",
    )
    _append_if(
        problems,
        condition=_looks_like_localhost(settings.database_url),
        message="DATABASE_URL must not point at localhost in production.",
    )
    _append_if(
        problems,
        condition=settings.database_url.startswith("sqlite"),
        message="DATABASE_URL must use PostgreSQL in production (row locks are required).",
    )


def _validate_coupon_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=settings.coupon_reservation_ttl_minutes < 1,
        message="COUPON_RESERVATION_TTL_MINUTES must be at least 1.",
    )
    _append_if(
        problems,
        condition=settings.coupon_reservation_sweep_interval_seconds < 1,
        message="COUPON_RESERVATION_SWEEP_INTERVAL_SECONDS must be at least 1.",
    )
    _append_if(
        problems,
        condition=settings.coupon_storage_retry_attempts < 0,
        message="COUPON_STORAGE_RETRY_ATTEMPTS must not be negative.",
    )


def validate_production_settings() -> None:
    """
    Fail fast on insecure defaults when running in production.

    Outside production the checks are skipped so local setups can run on sqlite and dev tokens.
    """
    if not _is_production():
        return

    problems: list[str] = []
    _validate_core_production_settings(problems)
    _validate_coupon_settings(problems)
    if not (settings.sentry_dsn or "").strip():
        logger.warning("sentry_not_configured", extra={"environment": settings.environment})

    if problems:
        raise RuntimeError("Production configuration checks failed:\n- " + "\n- ".join(problems))
