import json
import logging
import sys

from gateflow.core.logging_config import JsonFormatter, RequestIdFilter, request_id_ctx_var


def _record(msg: str = "coupon_reserved", **extra) -> logging.LogRecord:
    record = logging.LogRecord("gateflow.services.coupon_reservations", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_promotes_extras() -> None:
    record = _record(coupon_code="SAVE10", reservation_id="abc", attempts=2)
    RequestIdFilter().filter(record)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "coupon_reserved"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "gateflow.services.coupon_reservations"
    assert payload["coupon_code"] == "SAVE10"
    assert payload["attempts"] == 2
    assert payload["request_id"] == "-"
    assert "msg" not in payload
    assert "args" not in payload


def test_json_formatter_uses_request_id_context() -> None:
    token = request_id_ctx_var.set("req-123")
    try:
        record = _record()
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)

    assert json.loads(JsonFormatter().format(record))["request_id"] == "req-123"


def test_json_formatter_stringifies_unknown_values_and_exceptions() -> None:
    class Opaque:
        def __str__(self) -> str:
            return "opaque-value"

    try:
        raise RuntimeError("database is locked")
    except RuntimeError:
        record = logging.LogRecord(
            "gateflow", logging.ERROR, __file__, 20, "coupon_storage_failed", None, sys.exc_info()
        )
    record.operation = Opaque()
    record.long_text = "x" * 5000

    payload = json.loads(JsonFormatter().format(record))

    assert payload["operation"] == "opaque-value"
    assert len(payload["long_text"]) == 2000
    assert "RuntimeError: database is locked" in payload["exception"]
