"""JSON log output.

Support looks up a subscriber's payment trail by checkout_request_id and a
scheduler batch by run_id, so those keys must survive as top-level JSON.
"""

from __future__ import annotations

import json
import logging
import sys

import pytest

from app.core.logging import _ContainerFormatter, _JsonFormatter


def _record(msg: str = "test message", args: tuple = (), exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="app.services.payment_orchestrator",
        level=logging.INFO,
        pathname="payment_orchestrator.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


def test_json_formatter_produces_valid_json() -> None:
    output = _JsonFormatter().format(_record("Checkout started for %s", ("Weekly Plan",)))
    parsed = json.loads(output)
    assert parsed["level"] == "INFO"
    assert parsed["logger"] == "app.services.payment_orchestrator"
    assert parsed["message"] == "Checkout started for Weekly Plan"
    assert "timestamp" in parsed


def test_json_formatter_includes_request_fields() -> None:
    record = _record()
    record.request_id = "abc-123"  # type: ignore[attr-defined]
    record.method = "POST"  # type: ignore[attr-defined]
    record.path = "/v1/payments/mpesa/callback"  # type: ignore[attr-defined]
    record.duration_ms = 12.5  # type: ignore[attr-defined]

    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["request_id"] == "abc-123"
    assert parsed["method"] == "POST"
    assert parsed["path"] == "/v1/payments/mpesa/callback"
    assert parsed["duration_ms"] == 12.5


def test_json_formatter_includes_domain_fields() -> None:
    logger = logging.getLogger("test.domain")
    record = logger.makeRecord(
        logger.name,
        logging.INFO,
        "payment_orchestrator.py",
        1,
        "Payment completed",
        (),
        None,
        extra={
            "user_id": "u-1",
            "payment_id": "p-1",
            "checkout_request_id": "ws_CO_1",
            "run_id": "abc123",
            "intent": "pause",
        },
    )
    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["user_id"] == "u-1"
    assert parsed["payment_id"] == "p-1"
    assert parsed["checkout_request_id"] == "ws_CO_1"
    assert parsed["run_id"] == "abc123"
    assert parsed["intent"] == "pause"


def test_json_formatter_omits_absent_fields() -> None:
    parsed = json.loads(_JsonFormatter().format(_record()))
    assert "checkout_request_id" not in parsed
    assert "request_id" not in parsed


def test_json_formatter_includes_exception_info() -> None:
    try:
        raise ValueError("test error")
    except ValueError:
        output = _JsonFormatter().format(_record("Something failed", exc_info=sys.exc_info()))

    parsed = json.loads(output)
    assert "ValueError: test error" in parsed["exception"]


def test_container_formatter_is_not_json() -> None:
    output = _ContainerFormatter().format(_record("server started"))
    assert "INFO" in output
    assert "server started" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output)
