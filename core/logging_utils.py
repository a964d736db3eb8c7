"""
Core Module - Logging.

============================================================
PURPOSE
============================================================
Logging setup and credential-safe structured logging for
provider connectors.

============================================================
SECURITY REQUIREMENTS
============================================================
1. API keys, secrets and signatures never reach log output
2. Auth headers of every supported provider are masked
3. Request bodies are logged as a short hash, not verbatim

============================================================
"""

import hashlib
import json
import logging
import re
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


# ============================================================
# LOGGING SETUP
# ============================================================

def configure_logging(
    level: str = "INFO",
    fmt: str = DEFAULT_LOG_FORMAT,
    stream: Any = None,
) -> None:
    """
    Configure the root logger once.

    Args:
        level: Level name (DEBUG, INFO, ...)
        fmt: logging format string
        stream: Output stream (defaults to stderr)
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger()
    root.setLevel(numeric)

    for handler in root.handlers:
        if getattr(handler, "_connectors_handler", False):
            handler.setLevel(numeric)
            return

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(fmt))
    handler.setLevel(numeric)
    handler._connectors_handler = True
    root.addHandler(handler)


# ============================================================
# SENSITIVE DATA
# ============================================================

SENSITIVE_HEADERS = {
    "authorization",
    "x-mbx-apikey",
    "cb-access-key",
    "cb-access-sign",
    "cb-access-passphrase",
    "apca-api-key-id",
    "apca-api-secret-key",
}

SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "api_secret",
    "secret",
    "signature",
    "password",
    "passphrase",
    "token",
}

# Hex HMAC-SHA256 digests
_HEX_DIGEST = re.compile(r"\b[a-f0-9]{64}\b", re.IGNORECASE)


def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, keeping a short prefix.

    "abcdef123456" -> "abcd...***"; short values become "***".
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Copy of `headers` with auth headers masked."""
    if not headers:
        return {}
    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def mask_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of `params` with secrets and signatures masked (recursive)."""
    if not params:
        return {}

    masked: Dict[str, Any] = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        elif isinstance(value, str):
            masked[key] = _HEX_DIGEST.sub("***HMAC***", value)
        else:
            masked[key] = value
    return masked


def mask_url(url: str) -> str:
    """Mask sensitive query parameters in a URL or request path."""
    if not url:
        return url
    for param in SENSITIVE_PARAMS:
        url = re.sub(rf"({param}=)([^&]+)", r"\1***", url, flags=re.IGNORECASE)
    return url


# ============================================================
# LOG ENTRIES
# ============================================================

def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RequestLogEntry:
    """Outgoing request record."""

    timestamp: str
    exchange: str
    operation: str
    method: str
    path: str
    request_id: str
    headers: Optional[Dict[str, str]] = None
    params: Optional[Dict[str, Any]] = None
    body_hash: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {k: v for k, v in asdict(self).items() if v is not None}, default=str
        )


@dataclass
class ResponseLogEntry:
    """Response or transport failure record."""

    timestamp: str
    exchange: str
    operation: str
    request_id: str
    status_code: Optional[int]
    latency_ms: float
    success: bool
    error_message: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {k: v for k, v in asdict(self).items() if v is not None}, default=str
        )


# ============================================================
# ADAPTER LOGGER
# ============================================================

class AdapterLogger:
    """
    Per-provider structured logger with masking.

    Requests and successful responses go to DEBUG, failures to
    WARNING, order events to INFO.
    """

    def __init__(self, exchange: str, logger_name: Optional[str] = None):
        self._exchange = exchange
        self._logger = logging.getLogger(
            logger_name or f"connectors.{exchange.lower().replace(' ', '_')}"
        )
        self._request_counter = 0

    def log_request(
        self,
        operation: str,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[str] = None,
    ) -> str:
        """
        Log an outgoing request.

        Returns:
            Request id for correlating the response
        """
        self._request_counter += 1
        request_id = f"{self._exchange}-{self._request_counter}"

        entry = RequestLogEntry(
            timestamp=_utc_now(),
            exchange=self._exchange,
            operation=operation,
            method=method,
            path=mask_url(path),
            request_id=request_id,
            headers=mask_headers(headers) or None,
            params=mask_params(params) or None,
            body_hash=hashlib.sha256(body.encode()).hexdigest()[:16] if body else None,
        )
        self._logger.debug(f"REQUEST: {entry.to_json()}")
        return request_id

    def log_response(
        self,
        operation: str,
        request_id: str,
        status_code: Optional[int],
        latency_ms: float,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Log a response (status None for transport failures)."""
        entry = ResponseLogEntry(
            timestamp=_utc_now(),
            exchange=self._exchange,
            operation=operation,
            request_id=request_id,
            status_code=status_code,
            latency_ms=round(latency_ms, 2),
            success=success,
            error_message=error_message[:200] if error_message else None,
        )
        if success:
            self._logger.debug(f"RESPONSE: {entry.to_json()}")
        else:
            self._logger.warning(f"RESPONSE_ERROR: {entry.to_json()}")

    def log_order(self, operation: str, **fields: Any) -> None:
        """Log an order event (submit, cancel, query)."""
        record = {"timestamp": _utc_now(), "exchange": self._exchange, "operation": operation}
        record.update({k: v for k, v in fields.items() if v is not None})
        payload = json.dumps(record, default=str)

        if "error" in fields and fields["error"]:
            self._logger.warning(f"ORDER_ERROR: {payload}")
        else:
            self._logger.info(f"ORDER: {payload}")

    def info(self, message: str) -> None:
        self._logger.info(f"[{self._exchange}] {message}")

    def warning(self, message: str) -> None:
        self._logger.warning(f"[{self._exchange}] {message}")

    def error(self, message: str, exc_info: bool = False) -> None:
        self._logger.error(f"[{self._exchange}] {message}", exc_info=exc_info)

    def debug(self, message: str) -> None:
        self._logger.debug(f"[{self._exchange}] {message}")


__all__ = [
    "configure_logging",
    "mask_value",
    "mask_headers",
    "mask_params",
    "mask_url",
    "AdapterLogger",
]
