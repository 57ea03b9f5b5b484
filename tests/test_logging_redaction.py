import json
import logging

from app.infra.logging import RedactingJsonFormatter, redact_pii


def _format(message: str, extra: dict | None = None) -> dict:
    record = logging.LogRecord("app.test", logging.INFO, __file__, 1, message, None, None)
    if extra is not None:
        record.extra = extra
    return json.loads(RedactingJsonFormatter().format(record))


def test_message_redacts_email_and_phone():
    payload = _format("contact ivan@example.com or +996 555 123 456")

    assert "ivan@example.com" not in payload["message"]
    assert "[REDACTED_EMAIL]" in payload["message"]
    assert "[REDACTED_PHONE]" in payload["message"]


def test_extra_payload_drops_booking_free_text():
    payload = _format(
        "booking_created",
        {
            "booking_id": "b-1",
            "notes": "gate code 1234",
            "address": "12 Chui Prospekt",
            "cancellation_reason": "moving away",
            "starts_at": "2026-03-03T04:00:00+00:00",
        },
    )

    assert payload["booking_id"] == "b-1"
    assert payload["notes"] == "[REDACTED]"
    assert payload["address"] == "[REDACTED]"
    assert payload["cancellation_reason"] == "[REDACTED]"
    assert payload["starts_at"] == "2026-03-03T04:00:00+00:00"


def test_address_pattern_in_free_text():
    assert redact_pii("meet at 12 Chui Prospekt tomorrow") == "meet at [REDACTED_ADDRESS] tomorrow"
