"""Tests for logging setup."""

import logging
from pathlib import Path

from linkd.config import Config
from linkd.logging import (
    PhoneRedactionFilter,
    redact_phone_numbers,
    reset_logging,
    setup_logging,
    short_key,
)


class TestSetupLogging:
    """Test setup_logging."""

    def test_returns_linkd_logger(self):
        """Configures the package logger."""
        logger = setup_logging(Config())

        assert logger.name == "linkd"
        assert logger.level == logging.INFO
        assert logger.propagate is False

    def test_level_from_config(self):
        """Log level comes from config, case-insensitively."""
        config = Config()
        config.log_level = "debug"

        logger = setup_logging(config)

        assert logger.level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        """Unknown level names fall back to INFO."""
        config = Config()
        config.log_level = "chatty"

        assert setup_logging(config).level == logging.INFO

    def test_configured_once(self):
        """Second call returns the same logger without adding handlers."""
        first = setup_logging(Config())
        handlers = len(first.handlers)

        second = setup_logging(Config())

        assert second is first
        assert len(second.handlers) == handlers

    def test_file_handler(self, tmp_path: Path):
        """log_file adds a file handler and creates parent directories."""
        config = Config()
        config.log_file = str(tmp_path / "logs" / "linkd.log")

        logger = setup_logging(config)
        logger.info("hello file")
        for handler in logger.handlers:
            handler.flush()

        log_path = tmp_path / "logs" / "linkd.log"
        assert log_path.exists()
        assert "[INFO] hello file" in log_path.read_text()

    def test_reset_allows_reconfigure(self):
        """reset_logging() clears cached state."""
        setup_logging(Config())
        reset_logging()

        config = Config()
        config.log_level = "WARNING"
        logger = setup_logging(config)

        assert logger.level == logging.WARNING


class TestShortKey:
    """Test key truncation for log lines."""

    def test_short_key_unchanged(self):
        assert short_key("session_1555") == "session_1555"

    def test_long_key_truncated(self):
        key = "qr_session_0123456789abcdef"

        assert short_key(key) == "qr_session_01234..."


class TestPhoneRedaction:
    """Test phone number masking in log output."""

    def test_redacts_all_but_last_four(self):
        assert redact_phone_numbers("linked as 15551234567") == "linked as *******4567"

    def test_redacts_inside_session_keys(self):
        assert redact_phone_numbers("session_201012345678") == "session_********5678"

    def test_leaves_short_numbers(self):
        text = "attempt 2/3 in 4.0s, port 3000"

        assert redact_phone_numbers(text) == text

    def test_leaves_overlong_runs(self):
        digits = "1" * 20

        assert redact_phone_numbers(digits) == digits

    def test_filter_rewrites_formatted_message(self):
        record = logging.LogRecord(
            "linkd", logging.INFO, __file__, 1, "Session %s for %s", ("ready", "15551234567"), None
        )

        assert PhoneRedactionFilter().filter(record) is True
        assert record.getMessage() == "Session ready for *******4567"

    def test_file_output_is_redacted(self, tmp_path: Path):
        config = Config()
        config.log_file = str(tmp_path / "linkd.log")

        logger = setup_logging(config)
        logger.info("Session linked: session_15551234567")
        for handler in logger.handlers:
            handler.flush()

        content = (tmp_path / "linkd.log").read_text()
        assert "15551234567" not in content
        assert "session_*******4567" in content

    def test_redaction_can_be_disabled(self, tmp_path: Path):
        config = Config()
        config.log_file = str(tmp_path / "linkd.log")
        config.redact_phone_numbers = False

        logger = setup_logging(config)
        logger.info("Session linked: session_15551234567")
        for handler in logger.handlers:
            handler.flush()

        assert "session_15551234567" in (tmp_path / "linkd.log").read_text()
