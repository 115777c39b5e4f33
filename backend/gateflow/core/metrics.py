from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_coupon_verification() -> None:
    _inc("coupon_verifications")


def record_coupon_reserved() -> None:
    _inc("coupon_reservations_created")


def record_coupon_reservation_reused() -> None:
    _inc("coupon_reservations_reused")


def record_coupon_rejected(reason: str) -> None:
    _inc("coupon_rejections")
    _inc(f"coupon_rejections.{reason}")


def record_coupon_redeemed() -> None:
    _inc("coupon_redemptions")


def record_coupon_released() -> None:
    _inc("coupon_reservations_released")


def record_reservations_expired(count: int) -> None:
    if count > 0:
        _inc("coupon_reservations_expired", count)


def record_storage_failure() -> None:
    _inc("coupon_storage_failures")


def record_storage_retry() -> None:
    _inc("coupon_storage_retries")


def record_webhook_processed() -> None:
    _inc("payment_webhooks_processed")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
