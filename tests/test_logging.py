"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from gatekeeper.app.core.config import Settings
from gatekeeper.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
)
from gatekeeper.app.main import create_app


def make_record(msg: str = "Test message", **attrs) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"] == {"file": "test.py", "line": 1, "function": None}

    def test_limiter_context_fields(self):
        record = make_record(
            "rate_limit.exceeded",
            event="rate_limit.exceeded",
            policy="auth",
            rate_limit_key="auth:ip:ab12",
            request_id="req-1",
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["event"] == "rate_limit.exceeded"
        assert data["policy"] == "auth"
        assert data["rate_limit_key"] == "auth:ip:ab12"
        assert data["request_id"] == "req-1"

    def test_unset_context_fields_omitted(self):
        record = make_record()
        ContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert "policy" not in data
        assert "circuit_state" not in data

    def test_other_extras_grouped(self):
        data = json.loads(JSONFormatter().format(make_record(retry_after_s=57)))

        assert data["extra"]["retry_after_s"] == 57

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))

        assert any("ValueError: boom" in line for line in data["exception"])


class TestContextFilter:
    """Test context filter for adding default fields."""

    def test_adds_default_fields(self):
        record = make_record()

        assert ContextFilter().filter(record) is True
        for field in JSONFormatter.CONTEXT_FIELDS:
            assert hasattr(record, field)

    def test_preserves_existing_values(self):
        record = make_record(circuit_state="open")

        ContextFilter().filter(record)

        assert record.circuit_state == "open"


class TestGetLoggingConfig:
    """Test logging configuration generation."""

    def test_default_text_format(self):
        with patch("gatekeeper.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "INFO"

            config = get_logging_config()

        assert "json" not in config["formatters"]
        assert config["handlers"]["console"]["formatter"] == "standard"

    def test_structured_format(self):
        with patch("gatekeeper.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "structured"
            mock_settings.log_level = "debug"

            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "structured"
        assert config["handlers"]["console"]["level"] == "DEBUG"

    def test_json_format(self):
        with patch("gatekeeper.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "WARNING"

            config = get_logging_config()

        assert config["formatters"]["json"]["()"] == "gatekeeper.app.core.logging.JSONFormatter"
        assert config["handlers"]["console"]["formatter"] == "json"

    def test_gatekeeper_logger_configured(self):
        config = get_logging_config()

        assert "context" in config["handlers"]["console"]["filters"]
        assert config["loggers"]["gatekeeper"]["propagate"] is False

    def test_explicit_settings_override_global(self):
        app_settings = Settings(_env_file=None, log_format="json", log_level="warning")

        with patch("gatekeeper.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "INFO"

            config = get_logging_config(app_settings)

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["loggers"]["gatekeeper"]["level"] == "WARNING"


class TestSetupLogging:

    def test_create_app_configures_logging_from_its_settings(self):
        app_settings = Settings(_env_file=None, redis_enabled=False, log_format="structured")

        with patch("gatekeeper.app.main.setup_logging") as mock_setup:
            create_app(app_settings)

        mock_setup.assert_called_once_with(app_settings)


class TestGetLogger:

    def test_get_logger_default_name(self):
        assert get_logger().name == "gatekeeper"

    def test_get_logger_custom_name(self):
        assert get_logger("gatekeeper.app.main").name == "gatekeeper.app.main"


class TestGetLogContext:
    """Test get_log_context helper function."""

    def test_context_filters_none(self):
        context = get_log_context(request_id="req-1", policy=None, rate_limit_key="k")

        assert context == {"request_id": "req-1", "rate_limit_key": "k"}

    def test_context_with_extra(self):
        context = get_log_context(policy="api", event="circuit_open", limit=5)

        assert context["event"] == "circuit_open"
        assert context["limit"] == 5
