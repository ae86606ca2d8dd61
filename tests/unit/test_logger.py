"""
Tests for the logging system.

This module tests the logger configuration, bound bot context, sensitive data
masking and string truncation.
"""

import json
import logging
from pathlib import Path

import pytest
import structlog

from perpbot.utils import (
    LogConfig,
    add_context,
    bind_bot_context,
    clear_context,
    get_logger,
    set_log_level,
    setup_logging,
)
from perpbot.utils.logger import add_bot_context, filter_sensitive, mask_value, truncate_strings


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    structlog.reset_defaults()

    yield

    clear_context()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)


@pytest.mark.unit
class TestLogConfig:
    def test_default_config(self):
        config = LogConfig()

        assert config.level == "INFO"
        assert config.format == "pretty"
        assert config.file_path is None
        assert config.include_timestamp is True


@pytest.mark.unit
class TestProcessors:
    def test_mask_value(self):
        assert mask_value("abcdefgh") == "ab***gh"
        assert mask_value("abc") == "***"
        assert mask_value(12345) == "***"

    def test_sensitive_keys_are_masked_recursively(self):
        event = {
            "event": "request_signed",
            "api_key": "AKIAXXXXXXXX",
            "nested": {"signature": "deadbeefcafe", "symbol": "BTCUSDT"},
            "items": [{"listenKey": "lk-0123456789"}],
        }

        masked = filter_sensitive(None, "info", event)

        assert masked["api_key"] == "AK***XX"
        assert masked["nested"]["signature"] == "de***fe"
        assert masked["nested"]["symbol"] == "BTCUSDT"
        assert masked["items"][0]["listenKey"] == "lk***89"

    def test_long_strings_are_truncated(self):
        setup_logging(LogConfig(max_string_length=10, console_output=False))

        result = truncate_strings(None, "info", {"raw_response": "x" * 50, "short": "ok"})

        assert result["raw_response"] == "x" * 10 + "... [truncated]"
        assert result["short"] == "ok"

    def test_bot_context_does_not_override_event_fields(self):
        bind_bot_context(bot_id=7, symbol="BTCUSDT")

        event = add_bot_context(None, "info", {"event": "x", "symbol": "ETHUSDT"})

        assert event["bot_id"] == 7
        assert event["symbol"] == "ETHUSDT"

    def test_add_context_is_scoped(self):
        bind_bot_context(bot_id=7)

        with add_context(order_id="123"):
            inside = add_bot_context(None, "info", {"event": "x"})
        outside = add_bot_context(None, "info", {"event": "x"})

        assert inside["order_id"] == "123"
        assert "order_id" not in outside
        assert outside["bot_id"] == 7


@pytest.mark.unit
class TestSetup:
    def test_json_file_output(self, tmp_path: Path):
        log_file = tmp_path / "logs" / "perpbot.log"
        setup_logging(
            LogConfig(
                level="DEBUG",
                format="json",
                file_path=str(log_file),
                console_output=False,
                include_caller_info=False,
                environment="test",
            )
        )
        bind_bot_context(bot_id=7)

        get_logger("perpbot.test").info("state_transition", from_state="IDLE", to_state="EVALUATING")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = [line for line in log_file.read_text().splitlines() if line.strip()]
        entry = json.loads(lines[-1])
        assert entry["event"] == "state_transition"
        assert entry["to_state"] == "EVALUATING"
        assert entry["bot_id"] == 7
        assert entry["app"] == "perpbot"
        assert entry["environment"] == "test"
        assert entry["level"] == "info"

    def test_set_log_level(self):
        setup_logging(LogConfig(level="INFO", console_output=False))

        set_log_level("WARNING")

        assert logging.getLogger().level == logging.WARNING
