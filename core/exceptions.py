"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the error taxonomy of the exchange connectivity layer.

- Every failure crossing a connector boundary is one of these
- Each kind carries an HTTP status and a retryable flag
- The retry orchestrator only inspects `retryable`

============================================================
EXCEPTION HIERARCHY
============================================================
TradingException (base)
├── ValidationError           400  never retryable
├── BusinessRuleError         422  never retryable
├── DatabaseError             500  always retryable
├── ExchangeError             502  retryable unless told otherwise
│   ├── RateLimitTimeoutError
│   └── CircuitOpenError
├── OrderExecutionError       500  retryable by default
├── ConfigurationError        500  never retryable
│   ├── MissingConfigError
│   └── InvalidConfigError
├── NotFoundError             404  never retryable
└── CriticalStrategyError     500  never retryable, halts the bot

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, may impact operations."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# ERROR KINDS
# ============================================================

class ErrorKind(Enum):
    """Closed set of error kinds."""

    VALIDATION = "validation"
    BUSINESS_RULE = "business-rule"
    DATABASE = "database"
    EXCHANGE = "exchange"
    ORDER_EXECUTION = "order-execution"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not-found"
    CRITICAL_STRATEGY = "critical-strategy"


# ============================================================
# BASE EXCEPTION
# ============================================================

class TradingException(Exception):
    """
    Base exception for all connectivity errors.

    All exceptions carry:
    - kind / code / status_code: taxonomy entry
    - retryable: consulted by the retry orchestrator
    - context: for debugging
    - timestamp: when the error occurred
    """

    kind: ErrorKind = ErrorKind.ORDER_EXECUTION
    code: str = "TRADING_ERROR"
    status_code: int = 500
    default_retryable: bool = False
    default_severity: Severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        retryable: Optional[bool] = None,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.message = message
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause is not None:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def requires_immediate_action(self) -> bool:
        """Check if error requires immediate action."""
        return self.severity in (Severity.HIGH, Severity.CRITICAL)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "kind": self.kind.value,
            "code": self.code,
            "status_code": self.status_code,
            "message": self.message,
            "retryable": self.retryable,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        line = (
            f"[{self.severity.value.upper()}] {type(self).__name__}: {self}"
            f" | kind={self.kind.value} | retryable={self.retryable}"
        )
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        if ctx_str:
            line += f" | {ctx_str}"
        return line


# ============================================================
# VALIDATION / BUSINESS RULES
# ============================================================

class ValidationError(TradingException):
    """Caller input failed validation."""

    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"
    status_code = 400
    default_severity = Severity.LOW

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        kwargs.pop("retryable", None)

        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)[:100]

        self.field = field
        super().__init__(message, retryable=False, context=context, **kwargs)


class BusinessRuleError(TradingException):
    """Request is well-formed but breaks a business rule."""

    kind = ErrorKind.BUSINESS_RULE
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422

    def __init__(self, message: str, rule: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        kwargs.pop("retryable", None)

        if rule:
            context["rule"] = rule

        super().__init__(message, retryable=False, context=context, **kwargs)


# ============================================================
# DATABASE ERRORS
# ============================================================

class DatabaseError(TradingException):
    """Persistence operation failed. Always retryable."""

    kind = ErrorKind.DATABASE
    code = "DATABASE_ERROR"
    status_code = 500
    default_severity = Severity.HIGH

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        kwargs.pop("retryable", None)

        if operation:
            context["operation"] = operation

        super().__init__(message, retryable=True, context=context, **kwargs)


# ============================================================
# EXCHANGE ERRORS
# ============================================================

class ExchangeError(TradingException):
    """
    Provider API failure.

    Carries the provider name, the provider's HTTP status (when
    there was a response) and the raw response payload. The string
    form is prefixed with the provider: "[Binance] Insufficient funds".
    """

    kind = ErrorKind.EXCHANGE
    code = "EXCHANGE_ERROR"
    status_code = 502
    default_retryable = True
    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        exchange: str,
        http_status: Optional[int] = None,
        raw_payload: Optional[Any] = None,
        retryable: bool = True,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["exchange"] = exchange
        if http_status is not None:
            context["http_status"] = http_status

        self.exchange = exchange
        self.http_status = http_status
        self.raw_payload = raw_payload
        super().__init__(message, retryable=retryable, context=context, **kwargs)

    def __str__(self) -> str:
        return f"[{self.exchange}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["exchange"] = self.exchange
        data["http_status"] = self.http_status
        data["raw_payload"] = self.raw_payload
        return data


class RateLimitTimeoutError(ExchangeError):
    """Admission by the rate limiter did not happen before the deadline."""

    code = "RATE_LIMIT_TIMEOUT"

    def __init__(self, exchange: str, timeout_seconds: float, **kwargs):
        context = kwargs.pop("context", {})
        context["timeout_seconds"] = timeout_seconds
        super().__init__(
            f"Rate limiter admission timed out after {timeout_seconds}s",
            exchange,
            retryable=True,
            context=context,
            **kwargs,
        )


class CircuitOpenError(ExchangeError):
    """Circuit breaker is open; the call was rejected without I/O."""

    code = "CIRCUIT_OPEN"

    def __init__(self, exchange: str, retry_after_ms: float, **kwargs):
        context = kwargs.pop("context", {})
        context["retry_after_ms"] = round(retry_after_ms)
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Circuit breaker is OPEN. Retry after {round(retry_after_ms)}ms",
            exchange,
            retryable=True,
            context=context,
            **kwargs,
        )


# ============================================================
# ORDER EXECUTION ERRORS
# ============================================================

class OrderExecutionError(TradingException):
    """Order could not be executed."""

    kind = ErrorKind.ORDER_EXECUTION
    code = "ORDER_EXECUTION_ERROR"
    status_code = 500
    default_retryable = True
    default_severity = Severity.HIGH

    def __init__(self, message: str, order_id: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})

        if order_id:
            context["order_id"] = order_id

        self.order_id = order_id
        super().__init__(message, context=context, **kwargs)


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(TradingException):
    """Error in configuration."""

    kind = ErrorKind.CONFIGURATION
    code = "CONFIGURATION_ERROR"
    status_code = 500
    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        kwargs.pop("retryable", None)

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, retryable=False, context=context, **kwargs)


class MissingConfigError(ConfigurationError):
    """Required configuration is missing."""

    def __init__(self, key: str, source: str = "config"):
        super().__init__(
            message=f"Missing required configuration: {key}",
            config_key=key,
            context={"source": source},
        )


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            config_key=key,
            actual_value=value,
            context={"reason": reason},
        )


# ============================================================
# NOT FOUND
# ============================================================

class NotFoundError(TradingException):
    """A referenced resource does not exist."""

    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"
    status_code = 404
    default_severity = Severity.LOW

    def __init__(self, resource: str, identifier: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        kwargs.pop("retryable", None)
        context["resource"] = resource
        if identifier is not None:
            context["identifier"] = identifier
            message = f"{resource} with id {identifier} not found"
        else:
            message = f"{resource} not found"

        self.resource = resource
        self.identifier = identifier
        super().__init__(message, retryable=False, context=context, **kwargs)


# ============================================================
# CRITICAL STRATEGY ERRORS
# ============================================================

class CriticalStrategyError(TradingException):
    """
    Strategy failure that must stop the bot.

    Always CRITICAL, never retryable.
    """

    kind = ErrorKind.CRITICAL_STRATEGY
    code = "CRITICAL_STRATEGY_ERROR"
    status_code = 500
    default_severity = Severity.CRITICAL

    def __init__(self, message: str, bot_id: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        kwargs.pop("retryable", None)
        kwargs["severity"] = Severity.CRITICAL

        if bot_id:
            context["bot_id"] = bot_id

        self.bot_id = bot_id
        super().__init__(message, retryable=False, context=context, **kwargs)

    @property
    def halts_bot(self) -> bool:
        """Critical strategy errors always halt the bot."""
        return True


# ============================================================
# EXCEPTION UTILITIES
# ============================================================

def is_retryable_error(error: BaseException) -> bool:
    """
    Classify a failure for the retry orchestrator.

    Only taxonomy errors flagged retryable are retried; anything
    else (including KeyError from a malformed payload) is not.
    """
    if isinstance(error, TradingException):
        return error.retryable
    return False


def classify_http_failure(http_status: Optional[int]) -> bool:
    """
    Decide whether a provider failure is transient.

    Args:
        http_status: Provider HTTP status, None for network errors
            and timeouts (no response)

    Returns:
        True when the failure may be retried
    """
    if http_status is None:
        return True
    if http_status in (418, 429):
        return True
    return http_status >= 500


__all__ = [
    "Severity",
    "ErrorKind",
    "TradingException",
    "ValidationError",
    "BusinessRuleError",
    "DatabaseError",
    "ExchangeError",
    "RateLimitTimeoutError",
    "CircuitOpenError",
    "OrderExecutionError",
    "ConfigurationError",
    "MissingConfigError",
    "InvalidConfigError",
    "NotFoundError",
    "CriticalStrategyError",
    "is_retryable_error",
    "classify_http_failure",
]
