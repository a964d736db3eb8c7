"""
Connectors - Authenticated REST Client.

============================================================
PURPOSE
============================================================
The one HTTP capability shared by every provider connector.

Per wire request:
1. Circuit breaker check (when configured)
2. Rate limiter admission
3. Auth strategy signs the prepared request
4. aiohttp call, JSON decoding
5. Failures normalized into ExchangeError

============================================================
ERROR NORMALIZATION
============================================================
- aiohttp.ClientError / asyncio.TimeoutError -> retryable
- HTTP 429, 418, >= 500                        -> retryable
- Other HTTP 4xx                               -> not retryable
Provider message, HTTP status and raw payload are preserved.

============================================================
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Sequence

import aiohttp
from yarl import URL

from core.circuit_breaker import CircuitBreaker
from core.config import TimeoutConfig
from core.exceptions import ExchangeError, classify_http_failure
from core.logging_utils import AdapterLogger
from core.rate_limiter import RateLimiter
from connectors.auth import PreparedRequest, RequestAuth, build_query_string
from connectors.metrics import ConnectorMetrics


logger = logging.getLogger(__name__)

DEFAULT_ERROR_KEYS = ("msg", "message", "error", "error_description")


class RestClient:
    """
    aiohttp-based REST client for one provider base URL.

    The session is created lazily on the first request unless one
    is injected.
    """

    def __init__(
        self,
        exchange: str,
        base_url: str,
        limiter: RateLimiter,
        auth: Optional[RequestAuth] = None,
        breaker: Optional[CircuitBreaker] = None,
        timeouts: Optional[TimeoutConfig] = None,
        verify_ssl: bool = True,
        admission_timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
        metrics: Optional[ConnectorMetrics] = None,
        error_keys: Sequence[str] = DEFAULT_ERROR_KEYS,
    ):
        """
        Args:
            exchange: Provider display name used in errors and logs
            base_url: Scheme + host (+ optional path prefix)
            limiter: Admission controller shared by the provider
            auth: Signing strategy, None for unauthenticated APIs
            breaker: Optional circuit breaker
            timeouts: Connect/read timeouts
            verify_ssl: False for self-signed local gateways
            admission_timeout: Bound on the limiter wait (seconds)
            session: Injected aiohttp session (not closed by close())
            metrics: Request metrics sink
            error_keys: Payload keys searched for the provider message
        """
        self._exchange = exchange
        self._base_url = base_url.rstrip("/")
        self._limiter = limiter
        self._auth = auth or RequestAuth()
        self._breaker = breaker
        self._timeouts = timeouts or TimeoutConfig()
        self._verify_ssl = verify_ssl
        self._admission_timeout = admission_timeout
        self._session = session
        self._owns_session = session is None
        self._metrics = metrics or ConnectorMetrics(exchange)
        self._error_keys = tuple(error_keys)
        self._log = AdapterLogger(exchange)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def breaker(self) -> Optional[CircuitBreaker]:
        return self._breaker

    @property
    def metrics(self) -> ConnectorMetrics:
        return self._metrics

    # --------------------------------------------------------
    # SESSION
    # --------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                connect=self._timeouts.connection_timeout_seconds,
                total=self._timeouts.read_timeout_seconds,
            )
            connector = None if self._verify_ssl else aiohttp.TCPConnector(ssl=False)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
            self._owns_session = True
        return self._session

    @property
    def session(self) -> aiohttp.ClientSession:
        """The session requests go through (created on first use)."""
        return self._get_session()

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # --------------------------------------------------------
    # REQUESTS
    # --------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
        signed: bool = False,
        operation: str = "request",
    ) -> Any:
        """
        Send one request through breaker, limiter and auth.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            params: Query parameters (insertion order is kept)
            body: JSON-serializable body
            signed: Provider-specific "needs signature" flag
            operation: Label for logs

        Returns:
            Decoded JSON payload (None for empty bodies)

        Raises:
            ExchangeError: Transport or HTTP failure
        """
        async def send() -> Any:
            return await self._send(method, path, params, body, signed, operation)

        async def admitted() -> Any:
            return await self._limiter.execute(send, timeout=self._admission_timeout)

        if self._breaker is not None:
            return await self._breaker.execute(admitted)
        return await admitted()

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        body: Optional[Any],
        signed: bool,
        operation: str,
    ) -> Any:
        prepared = PreparedRequest(
            method=method.upper(),
            path=path,
            params=dict(params or {}),
            body=json.dumps(body, separators=(",", ":")) if body is not None else "",
            signed=signed,
        )
        prepared.query_string = build_query_string(prepared.params)
        if prepared.body:
            prepared.headers["Content-Type"] = "application/json"
        self._auth.apply(prepared)

        url = URL(f"{self._base_url}{prepared.request_path}", encoded=True)
        request_id = self._log.log_request(
            operation, prepared.method, prepared.path,
            headers=prepared.headers, params=prepared.params, body=prepared.body,
        )

        session = self._get_session()
        started = time.monotonic()
        try:
            async with session.request(
                prepared.method,
                url,
                data=prepared.body or None,
                headers=prepared.headers,
            ) as response:
                payload = await self._read_payload(response)
                latency_ms = (time.monotonic() - started) * 1000
                status = response.status
        except aiohttp.ClientError as e:
            self._record_failure(operation, request_id, prepared.path, started, None, str(e))
            raise ExchangeError(
                f"Network error: {e}", self._exchange, retryable=True, cause=e
            )
        except asyncio.TimeoutError as e:
            self._record_failure(operation, request_id, prepared.path, started, None, "timeout")
            raise ExchangeError(
                "Request timed out", self._exchange, retryable=True, cause=e
            )

        if status >= 400:
            message = self._extract_message(payload, status)
            self._record_failure(operation, request_id, prepared.path, started, status, message)
            raise ExchangeError(
                message,
                self._exchange,
                http_status=status,
                raw_payload=payload,
                retryable=classify_http_failure(status),
            )

        self._metrics.record_request(prepared.path, latency_ms, True, status)
        self._log.log_response(operation, request_id, status, latency_ms, True)
        return payload

    @staticmethod
    async def _read_payload(response: aiohttp.ClientResponse) -> Any:
        text = await response.text()
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    def _extract_message(self, payload: Any, status: int) -> str:
        if isinstance(payload, dict):
            for key in self._error_keys:
                value = payload.get(key)
                if isinstance(value, str) and value:
                    return value
                if isinstance(value, dict) and value.get("message"):
                    return str(value["message"])
        elif isinstance(payload, str) and payload:
            return payload[:200]
        return f"HTTP {status}"

    def _record_failure(
        self,
        operation: str,
        request_id: str,
        path: str,
        started: float,
        status: Optional[int],
        message: str,
    ) -> None:
        latency_ms = (time.monotonic() - started) * 1000
        self._metrics.record_request(path, latency_ms, False, status)
        self._log.log_response(operation, request_id, status, latency_ms, False, message)


__all__ = ["RestClient", "DEFAULT_ERROR_KEYS"]
