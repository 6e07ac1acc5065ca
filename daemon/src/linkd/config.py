"""Configuration management for linkd."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml


DEFAULT_CONFIRMATION_MESSAGE = (
    "Your session credential has been sent above.\n"
    "Keep this file private: anyone holding it can act as this account. "
    "This linked device will now be disconnected."
)


@dataclass
class ReconnectConfig:
    """Reconnection backoff configuration."""

    max_attempts: int = 3
    base_delay: float = 2.0  # seconds
    max_delay: float = 10.0  # seconds


@dataclass
class DeliveryConfig:
    """Credential delivery configuration."""

    grace_period: float = 10.0  # seconds before teardown after delivery
    confirmation_message: str = DEFAULT_CONFIRMATION_MESSAGE


@dataclass
class RateLimitConfig:
    """HTTP rate limiting configuration."""

    max_requests: int = 100
    window_seconds: int = 900  # 15 minutes


@dataclass
class Config:
    """Daemon configuration."""

    port: int = 3000
    bind_address: str = "0.0.0.0"
    log_level: str = "INFO"
    log_file: str | None = None
    redact_phone_numbers: bool = True  # mask phone digits in log output
    credentials_dir: str = "~/.config/linkd/sessions"
    transport: str | None = None  # "package.module:factory"
    linking_timeout: float = 300.0  # 5 minutes
    artifact_wait: float = 20.0  # how long /session/auth waits for QR or code
    session_retention: float = 600.0  # keep failed sessions observable this long
    stale_credential_age: float = 3600.0  # purge credential dirs older than this
    sweep_interval: float = 3600.0
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "linkd" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if not isinstance(data, dict):
        return Config()

    reconnect_data = data.get("reconnect") or {}
    reconnect_config = ReconnectConfig(
        max_attempts=reconnect_data.get("max_attempts", ReconnectConfig.max_attempts),
        base_delay=reconnect_data.get("base_delay", ReconnectConfig.base_delay),
        max_delay=reconnect_data.get("max_delay", ReconnectConfig.max_delay),
    )

    delivery_data = data.get("delivery") or {}
    delivery_config = DeliveryConfig(
        grace_period=delivery_data.get("grace_period", DeliveryConfig.grace_period),
        confirmation_message=delivery_data.get(
            "confirmation_message", DeliveryConfig.confirmation_message
        ),
    )

    rate_limit_data = data.get("rate_limit") or {}
    rate_limit_config = RateLimitConfig(
        max_requests=rate_limit_data.get(
            "max_requests", RateLimitConfig.max_requests
        ),
        window_seconds=rate_limit_data.get(
            "window_seconds", RateLimitConfig.window_seconds
        ),
    )

    return Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        redact_phone_numbers=data.get(
            "redact_phone_numbers", Config.redact_phone_numbers
        ),
        credentials_dir=data.get("credentials_dir", Config.credentials_dir),
        transport=data.get("transport", Config.transport),
        linking_timeout=data.get("linking_timeout", Config.linking_timeout),
        artifact_wait=data.get("artifact_wait", Config.artifact_wait),
        session_retention=data.get("session_retention", Config.session_retention),
        stale_credential_age=data.get(
            "stale_credential_age", Config.stale_credential_age
        ),
        sweep_interval=data.get("sweep_interval", Config.sweep_interval),
        reconnect=reconnect_config,
        delivery=delivery_config,
        rate_limit=rate_limit_config,
    )
