"""JSON log formatter: request context fields and secret redaction."""

import json
import logging
from io import StringIO

from resort_api.context import payment_intent_id_var, request_id_var, user_id_var
from resort_api.utils.logging import JSONFormatter
from resort_api.utils.sanitize import sanitize_obj, sanitize_str


def _logger(name: str) -> tuple[logging.Logger, StringIO]:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    return logger, stream


def test_json_formatter_includes_context_vars() -> None:
    logger, stream = _logger("test_context_logger")

    tokens = [
        request_id_var.set("req_123"),
        user_id_var.set("user-guest-1"),
        payment_intent_id_var.set("pi_abc"),
    ]
    try:
        logger.info("PAYMENT_INTENT_CREATED")
    finally:
        for var, token in zip((request_id_var, user_id_var, payment_intent_id_var), tokens):
            var.reset(token)

    log_data = json.loads(stream.getvalue())
    assert log_data["message"] == "PAYMENT_INTENT_CREATED"
    assert log_data["request_id"] == "req_123"
    assert log_data["user_id"] == "user-guest-1"
    assert log_data["payment_intent_id"] == "pi_abc"
    assert log_data["level"] == "INFO"


def test_json_formatter_omits_missing_context() -> None:
    logger, stream = _logger("test_no_context_logger")

    logger.info("Background task message")

    log_data = json.loads(stream.getvalue())
    assert "request_id" not in log_data
    assert "payment_intent_id" not in log_data


def test_json_formatter_includes_extra_fields() -> None:
    logger, stream = _logger("test_extra_logger")

    logger.info("WEBHOOK_RECEIVED", extra={"provider": "stripe", "payload_size": 512})

    log_data = json.loads(stream.getvalue())
    assert log_data["provider"] == "stripe"
    assert log_data["payload_size"] == 512


def test_extra_secrets_are_redacted() -> None:
    logger, stream = _logger("test_redaction_logger")

    logger.warning(
        "STRIPE_REQUEST_FAILED",
        extra={
            "auth_header": "Bearer sk_live_abcdef",
            "context": {"client_secret": "pi_1_secret_2", "email": "guest@example.com", "amount": 5200},
        },
    )

    output = stream.getvalue()
    log_data = json.loads(output)
    assert "sk_live_abcdef" not in output
    assert "guest@example.com" not in output
    assert "pi_1_secret_2" not in output
    assert log_data["context"]["amount"] == 5200


def test_sanitize_str_redacts_processor_secrets() -> None:
    assert sanitize_str("key sk_test_123 and whsec_456") == "key [REDACTED] and [REDACTED]"
    assert sanitize_str("secret pi_3Abc_secret_XyZ end") == "secret [REDACTED] end"


def test_sanitize_str_truncates_oversized_values() -> None:
    result = sanitize_str("x" * 5000)

    assert result.startswith("[TRUNCATED len=5000 sha256=")


def test_sanitize_obj_depth_limit() -> None:
    nested: dict = {"a": {"b": {"c": {"d": {"e": {"f": {"g": "deep"}}}}}}}

    assert "[DEPTH_LIMIT]" in json.dumps(sanitize_obj(nested))
