"""
Core Module - Configuration.

============================================================
PURPOSE
============================================================
Connector settings: HTTP timeouts, retry policy, rate limit
overrides, circuit breaker, order fill streams and logging.

Resolution order:
1. Dataclass defaults
2. YAML file (CONNECTORS_CONFIG or an explicit path)
3. Environment variables (a .env file is loaded first)

============================================================
ENVIRONMENT
============================================================
CONNECTORS_CONFIG             Path to YAML settings
CONNECTORS_CONNECT_TIMEOUT    Seconds
CONNECTORS_READ_TIMEOUT       Seconds
CONNECTORS_MAX_RETRIES        Retries for idempotent calls
CONNECTORS_ADMISSION_TIMEOUT  Seconds to wait for a rate limit slot
CONNECTORS_LOG_LEVEL          DEBUG / INFO / WARNING / ERROR

============================================================
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

from core.circuit_breaker import CircuitBreakerConfig
from core.exceptions import ErrorKind, InvalidConfigError
from core.logging_utils import configure_logging
from core.rate_limiter import RateLimiterConfig, RateLimiterRegistry
from core.retry import DEFAULT_RETRY_POLICIES, RetryPolicy


logger = logging.getLogger(__name__)

ENV_PREFIX = "CONNECTORS_"


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """
    HTTP timeouts.
    """

    connection_timeout_seconds: float = 5.0
    """Connection timeout."""

    read_timeout_seconds: float = 30.0
    """Total time allowed for a request/response."""


# ============================================================
# WEBSOCKET CONFIGURATION
# ============================================================

@dataclass
class WebSocketConfig:
    """
    Order fill stream connection and reconnection behavior.
    """

    max_reconnect_attempts: int = 10
    initial_reconnect_delay_ms: float = 100
    max_reconnect_delay_ms: float = 30000
    reconnect_backoff_multiplier: float = 1.5

    connection_timeout_ms: float = 10000
    """Bound on connect plus authentication."""

    heartbeat_interval_ms: Optional[float] = 30000
    """Ping interval, None disables heartbeats."""

    user_agent: str = "trading-connectors/0.1"

    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    """Guards connection attempts."""

    def reconnect_delay_ms(self, attempt: int) -> float:
        """Backoff before reconnect `attempt` (1-based)."""
        delay = self.initial_reconnect_delay_ms * (
            self.reconnect_backoff_multiplier ** (attempt - 1)
        )
        return min(delay, self.max_reconnect_delay_ms)


# ============================================================
# CONNECTOR SETTINGS
# ============================================================

@dataclass
class ConnectorSettings:
    """
    Settings shared by every connector built in this process.
    """

    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)

    retry_policy: RetryPolicy = field(
        default_factory=lambda: DEFAULT_RETRY_POLICIES[ErrorKind.EXCHANGE]
    )
    """Policy for idempotent connector calls."""

    rate_limits: Dict[str, RateLimiterConfig] = field(default_factory=dict)
    """Per-provider overrides of the default limits."""

    circuit_breaker: Optional[CircuitBreakerConfig] = None
    """Breaker thresholds, None disables the breaker."""

    admission_timeout_seconds: Optional[float] = None
    """Bound on the rate limiter wait, None waits indefinitely."""

    websocket: WebSocketConfig = field(default_factory=WebSocketConfig)
    """Order fill stream behavior."""

    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectorSettings":
        """Build settings from a parsed YAML mapping."""
        settings = cls()

        try:
            if "timeouts" in data:
                to = data["timeouts"] or {}
                settings.timeouts = TimeoutConfig(
                    connection_timeout_seconds=float(
                        to.get("connection_timeout_seconds", 5.0)
                    ),
                    read_timeout_seconds=float(to.get("read_timeout_seconds", 30.0)),
                )

            if "retry" in data:
                rp = data["retry"] or {}
                default = settings.retry_policy
                settings.retry_policy = RetryPolicy(
                    max_retries=int(rp.get("max_retries", default.max_retries)),
                    initial_delay_ms=float(
                        rp.get("initial_delay_ms", default.initial_delay_ms)
                    ),
                    max_delay_ms=float(rp.get("max_delay_ms", default.max_delay_ms)),
                    backoff_multiplier=float(
                        rp.get("backoff_multiplier", default.backoff_multiplier)
                    ),
                )

            for provider, rl in (data.get("rate_limits") or {}).items():
                settings.rate_limits[provider] = RateLimiterConfig(
                    max_requests=int(rl["max_requests"]),
                    window_ms=float(rl["window_ms"]),
                    min_interval_ms=rl.get("min_interval_ms"),
                    strict_window=bool(rl.get("strict_window", True)),
                )

            if data.get("circuit_breaker"):
                cb = data["circuit_breaker"]
                settings.circuit_breaker = CircuitBreakerConfig(
                    failure_threshold=int(cb.get("failure_threshold", 5)),
                    failure_window_ms=float(cb.get("failure_window_ms", 60000)),
                    reset_timeout_ms=float(cb.get("reset_timeout_ms", 30000)),
                    success_threshold=int(cb.get("success_threshold", 2)),
                )

            if data.get("websocket"):
                settings.websocket = _websocket_config(data["websocket"])
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidConfigError("connectors", data, str(e))

        if data.get("admission_timeout_seconds") is not None:
            settings.admission_timeout_seconds = _to_float(
                "admission_timeout_seconds", data["admission_timeout_seconds"]
            )
        if data.get("log_level"):
            settings.log_level = str(data["log_level"]).upper()

        return settings

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ConnectorSettings":
        """Load settings from a YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise InvalidConfigError(str(path), type(data).__name__, "expected a mapping")

        # Allow the settings to live under a top-level "connectors" key
        return cls.from_dict(data.get("connectors", data))

    def with_env_overrides(self, environ: Optional[Dict[str, str]] = None) -> "ConnectorSettings":
        """Return a copy with CONNECTORS_* environment variables applied."""
        env = os.environ if environ is None else environ
        settings = replace(self, rate_limits=dict(self.rate_limits))

        connect = env.get(f"{ENV_PREFIX}CONNECT_TIMEOUT")
        read = env.get(f"{ENV_PREFIX}READ_TIMEOUT")
        if connect or read:
            settings.timeouts = TimeoutConfig(
                connection_timeout_seconds=(
                    _to_float("CONNECT_TIMEOUT", connect)
                    if connect else self.timeouts.connection_timeout_seconds
                ),
                read_timeout_seconds=(
                    _to_float("READ_TIMEOUT", read)
                    if read else self.timeouts.read_timeout_seconds
                ),
            )

        retries = env.get(f"{ENV_PREFIX}MAX_RETRIES")
        if retries:
            try:
                settings.retry_policy = replace(
                    self.retry_policy, max_retries=int(retries)
                )
            except ValueError:
                raise InvalidConfigError("MAX_RETRIES", retries, "expected an integer")

        admission = env.get(f"{ENV_PREFIX}ADMISSION_TIMEOUT")
        if admission:
            settings.admission_timeout_seconds = _to_float("ADMISSION_TIMEOUT", admission)

        level = env.get(f"{ENV_PREFIX}LOG_LEVEL")
        if level:
            settings.log_level = level.upper()

        return settings


def _to_float(key: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(key, value, "expected a number")


def _websocket_config(ws: Dict[str, Any]) -> WebSocketConfig:
    default = WebSocketConfig()
    heartbeat = ws.get("heartbeat_interval_ms", default.heartbeat_interval_ms)
    return WebSocketConfig(
        max_reconnect_attempts=int(
            ws.get("max_reconnect_attempts", default.max_reconnect_attempts)
        ),
        initial_reconnect_delay_ms=float(
            ws.get("initial_reconnect_delay_ms", default.initial_reconnect_delay_ms)
        ),
        max_reconnect_delay_ms=float(
            ws.get("max_reconnect_delay_ms", default.max_reconnect_delay_ms)
        ),
        reconnect_backoff_multiplier=float(
            ws.get("reconnect_backoff_multiplier", default.reconnect_backoff_multiplier)
        ),
        connection_timeout_ms=float(
            ws.get("connection_timeout_ms", default.connection_timeout_ms)
        ),
        heartbeat_interval_ms=float(heartbeat) if heartbeat is not None else None,
        user_agent=str(ws.get("user_agent", default.user_agent)),
    )


def apply_settings(settings: ConnectorSettings) -> None:
    """
    Put process-wide settings into effect.

    Configures the root logger at `log_level` and installs the
    per-provider `rate_limits` in the limiter registry.
    """
    configure_logging(settings.log_level)
    if settings.rate_limits:
        RateLimiterRegistry.configure(settings.rate_limits)


def load_settings(
    path: Optional[Union[str, Path]] = None,
    apply: bool = False,
) -> ConnectorSettings:
    """
    Resolve connector settings from defaults, YAML and environment.

    Args:
        path: YAML file; defaults to $CONNECTORS_CONFIG when set
        apply: Also run apply_settings() on the result

    Returns:
        ConnectorSettings
    """
    load_dotenv()

    path = path or os.environ.get(f"{ENV_PREFIX}CONFIG")
    if path:
        settings = ConnectorSettings.from_yaml(path)
        logger.info(f"Loaded connector settings from {path}")
    else:
        settings = ConnectorSettings()

    settings = settings.with_env_overrides()
    if apply:
        apply_settings(settings)
    return settings


__all__ = [
    "TimeoutConfig",
    "WebSocketConfig",
    "ConnectorSettings",
    "apply_settings",
    "load_settings",
]
