"""
Connectors - Exchange Connector Base.

============================================================
PURPOSE
============================================================
Abstract contract shared by every provider connector.

DESIGN PRINCIPLES:
- One provider-agnostic surface (ping, balances, ticker,
  candles, create/cancel/get order, close)
- Idempotent reads and cancels are retried with backoff
- create_order is validated up front and NEVER retried
- Failures cross the boundary as taxonomy errors only;
  ping is the one call that reports failure as False
- Provider payloads that fail to parse surface as
  non-retryable ExchangeError carrying the raw payload;
  ValidationError is reserved for caller input
- Order fill streams are optional; providers that have
  one return it from `_create_fill_stream`

Subclasses implement the `_fetch_*` / `_submit_order` /
`_cancel_order` hooks and only deal with wire formats.

============================================================
"""

import contextvars
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

import aiohttp

from core.circuit_breaker import CircuitBreaker
from core.clock import ClockFactory, ClockProtocol, ms_to_iso8601
from core.config import ConnectorSettings
from core.exceptions import BusinessRuleError, ExchangeError, TradingException, ValidationError
from core.logging_utils import AdapterLogger
from core.rate_limiter import RateLimiter, RateLimiterRegistry
from core.retry import RetryPolicy, with_retry
from connectors.auth import RequestAuth
from connectors.http import DEFAULT_ERROR_KEYS, RestClient
from connectors.metrics import ConnectorMetrics, get_metrics_registry
from connectors.models import (
    MALFORMED_PAYLOAD_ERRORS,
    Balance,
    NormalizedOrder,
    OrderRequest,
    Ticker,
)
from connectors.validation import validate_order_request
from connectors.websocket import (
    ConnectionState,
    OrderFillListener,
    OrderFillStream,
    WebSocketStatus,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Last payload returned by _request in the current task
_last_payload: contextvars.ContextVar[Any] = contextvars.ContextVar("last_payload", default=None)


def build_rest_client(
    exchange: str,
    provider: str,
    base_url: str,
    auth: Optional[RequestAuth] = None,
    settings: Optional[ConnectorSettings] = None,
    limiter: Optional[RateLimiter] = None,
    breaker: Optional[CircuitBreaker] = None,
    clock: Optional[ClockProtocol] = None,
    session: Optional[aiohttp.ClientSession] = None,
    metrics: Optional[ConnectorMetrics] = None,
    verify_ssl: bool = True,
    error_keys=DEFAULT_ERROR_KEYS,
) -> RestClient:
    """
    Assemble a RestClient from settings plus injected collaborators.

    The limiter defaults to the process-wide one for `provider`,
    sized by `settings.rate_limits` when it has an entry; a
    breaker is created only when settings configure one.
    """
    settings = settings or ConnectorSettings()
    if breaker is None and settings.circuit_breaker is not None:
        breaker = CircuitBreaker(exchange, settings.circuit_breaker, clock)

    return RestClient(
        exchange,
        base_url,
        limiter=limiter or RateLimiterRegistry.get(provider, settings.rate_limits.get(provider)),
        auth=auth,
        breaker=breaker,
        timeouts=settings.timeouts,
        verify_ssl=verify_ssl,
        admission_timeout=settings.admission_timeout_seconds,
        session=session,
        metrics=metrics,
        error_keys=error_keys,
    )


# ============================================================
# EXCHANGE CONNECTOR
# ============================================================

class ExchangeConnector(ABC):
    """
    Abstract base class for provider connectors.

    Class attributes:
        name: Display name used in errors ("Binance")
        exchange_id: Provider id stamped on orders ("binance")
    """

    name: str = "Exchange"
    exchange_id: str = "exchange"

    def __init__(
        self,
        client: RestClient,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[ClockProtocol] = None,
        settings: Optional[ConnectorSettings] = None,
    ):
        self._client = client
        self._settings = settings or ConnectorSettings()
        self._retry_policy = retry_policy or self._settings.retry_policy
        self._clock = clock or ClockFactory.get_clock()
        self._log = AdapterLogger(self.name)
        self._fill_stream: Optional[OrderFillStream] = None
        get_metrics_registry().register(self.exchange_id, client.metrics)

    @property
    def metrics(self) -> ConnectorMetrics:
        return self._client.metrics

    @property
    def limiter(self) -> RateLimiter:
        return self._client.limiter

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def http_session(self) -> aiohttp.ClientSession:
        """Session shared by REST calls and the fill stream."""
        return self._client.session

    # --------------------------------------------------------
    # PUBLIC CONTRACT
    # --------------------------------------------------------

    async def ping(self) -> bool:
        """
        Check connectivity.

        Returns:
            True when the provider answered, False on any failure
        """
        try:
            return await self._idempotent("ping", self._ping)
        except Exception as e:
            self._log.debug(f"ping failed: {e}")
            return False

    async def get_balances(self) -> List[Balance]:
        """Get non-empty asset balances."""
        return await self._idempotent("get_balances", self._fetch_balances)

    async def get_ticker(self, symbol: str) -> Ticker:
        """Get the latest price snapshot for `symbol`."""
        return await self._idempotent("get_ticker", self._fetch_ticker, symbol)

    async def get_candles(self, symbol: str, interval: str, limit: int = 100) -> List[Any]:
        """
        Get OHLCV candles in the provider's raw row format.

        Providers without a candle endpoint return [].
        """
        return await self._idempotent(
            "get_candles", self._fetch_candles, symbol, interval, limit
        )

    async def create_order(
        self,
        request: Union[OrderRequest, Mapping[str, Any]],
    ) -> NormalizedOrder:
        """
        Submit an order. Not retried.

        Args:
            request: OrderRequest or camelCase partial order dict

        Returns:
            NormalizedOrder snapshot of the accepted order

        Raises:
            ValidationError: Request rejected before any I/O
            ExchangeError: Provider rejected or transport failed
        """
        if not isinstance(request, OrderRequest):
            request = OrderRequest.from_dict(request)
        validate_order_request(request)

        self._log.log_order(
            "submit",
            pair=request.pair,
            side=request.side.value,
            type=request.type.value,
            amount=request.amount,
            price=request.price,
            client_order_id=request.client_order_id,
        )
        try:
            order = await self._guard("create_order", self._submit_order, request)
        except TradingException as e:
            self.metrics.record_order_rejected()
            self._log.log_order("submit", pair=request.pair, error=str(e))
            raise

        self.metrics.record_order_submitted()
        self._log.log_order(
            "submitted", order_id=order.id, pair=order.pair, status=order.status.value
        )
        return order

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        """Cancel an order. Returns True once the provider accepted it."""
        result = await self._idempotent("cancel_order", self._cancel_order, order_id, symbol)
        self.metrics.record_order_canceled()
        self._log.log_order("cancel", order_id=order_id, pair=symbol)
        return result

    async def get_order(self, order_id: str, symbol: str) -> NormalizedOrder:
        """Fetch a fresh snapshot of an order."""
        return await self._idempotent("get_order", self._fetch_order, order_id, symbol)

    async def close(self) -> None:
        """Stop the fill stream and release the HTTP session."""
        if self._fill_stream is not None:
            await self._fill_stream.disconnect()
        await self._client.close()

    # --------------------------------------------------------
    # ORDER FILL STREAM
    # --------------------------------------------------------

    @property
    def fill_stream(self) -> Optional[OrderFillStream]:
        """The provider's order event stream, None when it has none."""
        if self._fill_stream is None:
            self._fill_stream = self._create_fill_stream()
        return self._fill_stream

    async def subscribe_to_order_fills(self, pair: str, listener: OrderFillListener) -> None:
        """
        Deliver fills, partial fills and cancellations on `pair` to `listener`.

        Raises:
            BusinessRuleError: Provider has no order stream
            ExchangeError: Stream connection failed
        """
        stream = self.fill_stream
        if stream is None:
            raise BusinessRuleError(
                f"{self.name} does not support order fill streams",
                rule="fill_stream",
            )
        await stream.subscribe(pair, listener)

    async def unsubscribe_from_order_fills(self, pair: str, listener: OrderFillListener) -> None:
        """Stop delivering events on `pair` to `listener`."""
        if self._fill_stream is not None:
            await self._fill_stream.unsubscribe(pair, listener)

    def is_websocket_connected(self) -> bool:
        return self._fill_stream is not None and self._fill_stream.is_connected

    def get_websocket_status(self) -> WebSocketStatus:
        if self._fill_stream is not None:
            return self._fill_stream.status()
        return WebSocketStatus(
            exchange=self.name,
            state=ConnectionState.DISCONNECTED,
            is_connected=False,
            subscription_count=0,
        )

    async def __aenter__(self) -> "ExchangeConnector":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --------------------------------------------------------
    # PROVIDER HOOKS
    # --------------------------------------------------------

    @abstractmethod
    async def _ping(self) -> bool:
        pass

    @abstractmethod
    async def _fetch_balances(self) -> List[Balance]:
        pass

    @abstractmethod
    async def _fetch_ticker(self, symbol: str) -> Ticker:
        pass

    async def _fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Any]:
        return []

    @abstractmethod
    async def _submit_order(self, request: OrderRequest) -> NormalizedOrder:
        pass

    @abstractmethod
    async def _cancel_order(self, order_id: str, symbol: str) -> bool:
        pass

    @abstractmethod
    async def _fetch_order(self, order_id: str, symbol: str) -> NormalizedOrder:
        pass

    def _create_fill_stream(self) -> Optional[OrderFillStream]:
        return None

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        client: Optional[RestClient] = None,
        **kwargs: Any,
    ) -> Any:
        payload = await (client or self._client).request(method, path, **kwargs)
        _last_payload.set(payload)
        return payload

    async def _guard(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """
        Run a hook, turning unparseable provider data into ExchangeError.

        The error keeps the last payload the hook received.
        """
        token = _last_payload.set(None)
        try:
            return await fn(*args)
        except ValidationError as e:
            raise ExchangeError(
                f"Invalid {operation} response: {e.message}",
                self.name,
                raw_payload=_last_payload.get(),
                retryable=False,
                cause=e,
            )
        except TradingException:
            raise
        except MALFORMED_PAYLOAD_ERRORS as e:
            raise ExchangeError(
                f"Unexpected {operation} response: {type(e).__name__}: {e}",
                self.name,
                raw_payload=_last_payload.get(),
                retryable=False,
                cause=e,
            )
        finally:
            _last_payload.reset(token)

    async def _idempotent(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        return await with_retry(
            lambda: self._guard(operation, fn, *args),
            self._retry_policy,
            f"{self.name}.{operation}",
            clock=self._clock,
        )

    def _now_iso(self) -> str:
        return ms_to_iso8601(self._clock.epoch_ms())

    def describe(self) -> Dict[str, Any]:
        """Connector identity and limiter state, for diagnostics."""
        limiter = self._client.limiter
        breaker = self._client.breaker
        return {
            "name": self.name,
            "exchange_id": self.exchange_id,
            "base_url": self._client.base_url,
            "limiter": {
                "name": limiter.name,
                "tokens": limiter.token_count,
                "queue_length": limiter.queue_length,
            },
            "circuit_breaker": breaker.stats() if breaker else None,
        }


__all__ = [
    "ExchangeConnector",
    "build_rest_client",
]
