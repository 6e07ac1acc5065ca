"""Logging setup for linkd.

All modules log through children of the "linkd" logger. Phone numbers
show up in session keys and linked identities, so handlers can mask
them before anything reaches the console or the log file.
"""

import logging
import re
from pathlib import Path

from linkd.config import Config

LOGGER_NAME = "linkd"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Runs of 10-15 digits, i.e. anything that looks like a full phone number
_PHONE_RUN = re.compile(r"(?<!\d)(\d{6,11})(\d{4})(?!\d)")

_configured: logging.Logger | None = None


def redact_phone_numbers(text: str) -> str:
    """Mask all but the last four digits of phone-number-like runs."""
    return _PHONE_RUN.sub(lambda m: "*" * len(m.group(1)) + m.group(2), text)


class PhoneRedactionFilter(logging.Filter):
    """Rewrites each record's message with phone numbers masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_phone_numbers(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _handlers(config: Config) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path))
    return handlers


def setup_logging(config: Config) -> logging.Logger:
    """Configure the "linkd" logger from config. Only the first call has effect.

    Args:
        config: Configuration object with log settings.

    Returns:
        The configured logger.
    """
    global _configured

    if _configured is not None:
        return _configured

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in _handlers(config):
        handler.setFormatter(formatter)
        if config.redact_phone_numbers:
            handler.addFilter(PhoneRedactionFilter())
        logger.addHandler(handler)

    # Keep linkd output out of the root logger
    logger.propagate = False

    _configured = logger
    return logger


def reset_logging() -> None:
    """Drop handlers and cached state. Used for testing."""
    global _configured
    if _configured is None:
        return
    for handler in _configured.handlers:
        handler.close()
    _configured.handlers.clear()
    _configured.propagate = True
    _configured = None


def short_key(key: str) -> str:
    """Truncate a session key for log lines."""
    if len(key) <= 16:
        return key
    return f"{key[:16]}..."
