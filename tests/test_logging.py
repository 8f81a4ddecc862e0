"""
Tests for structured logging processors.
"""

import structlog

from app.observability.logging import (
    REDACTED,
    add_app_context,
    build_processors,
    log_context,
    redact_credentials,
)


class TestProcessors:
    """Tests for the custom structlog processors."""

    def test_app_context(self):
        event = add_app_context(None, "info", {"event": "usage_consumed"})

        assert event["service"] == "tryon-usage-gate"
        assert event["version"] == "0.1.0"

    def test_credentials_redacted(self):
        event = redact_credentials(
            None,
            "warning",
            {
                "event": "api_key_rejected",
                "api_key": "secret-key",
                "X-Webhook-Signature": "abc123",
                "user_id": "user_1",
            },
        )

        assert event["api_key"] == REDACTED
        assert event["X-Webhook-Signature"] == REDACTED
        assert event["user_id"] == "user_1"

    def test_missing_credential_left_alone(self):
        event = redact_credentials(None, "warning", {"event": "x", "signature": None})

        assert event["signature"] is None

    def test_renderer_follows_format(self, test_settings):
        json_chain = build_processors(test_settings.model_copy(update={"log_format": "json"}))
        console_chain = build_processors(
            test_settings.model_copy(update={"log_format": "console"})
        )

        assert isinstance(json_chain[-1], structlog.processors.JSONRenderer)
        assert isinstance(console_chain[-1], structlog.dev.ConsoleRenderer)
        assert redact_credentials in json_chain


class TestLogContext:
    """Tests for log_context()."""

    def test_binds_and_unbinds(self):
        with log_context(request_id="req-1"):
            assert structlog.contextvars.get_contextvars()["request_id"] == "req-1"

        assert "request_id" not in structlog.contextvars.get_contextvars()
