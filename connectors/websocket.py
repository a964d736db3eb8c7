"""
Connectors - Order Fill Streams.

============================================================
PURPOSE
============================================================
WebSocket streams that push order fills, partial fills and
cancellations to registered listeners.

FEATURES:
- Listeners registered per trading pair
- Connects on the first subscription, disconnects after the last
- Automatic reconnection with exponential backoff
- Connection attempts guarded by a circuit breaker
- Heartbeat via aiohttp ping/pong
- Listener failures are logged and never reach the stream

Subclasses implement the provider handshake and message
parsing: _prepare, _authenticate, _on_message and optionally
_send_subscribe / _send_unsubscribe / _on_open / _teardown.

============================================================
USAGE
============================================================
```python
class FillPrinter(OrderFillListener):
    async def on_order_filled(self, order):
        print("filled", order.id)
    ...

await connector.subscribe_to_order_fills("BTC/USDT", FillPrinter())
print(connector.get_websocket_status().to_dict())
```

============================================================
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from core.circuit_breaker import CircuitBreaker
from core.clock import ClockFactory, ClockProtocol
from core.config import WebSocketConfig
from core.exceptions import CircuitOpenError, ExchangeError, TradingException
from connectors.models import MALFORMED_PAYLOAD_ERRORS, NormalizedOrder


logger = logging.getLogger(__name__)

SessionProvider = Callable[[], aiohttp.ClientSession]


# ============================================================
# CONNECTION STATE
# ============================================================

class ConnectionState(Enum):
    """WebSocket connection states."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    AUTHENTICATING = "AUTHENTICATING"
    AUTHENTICATED = "AUTHENTICATED"
    RECONNECTING = "RECONNECTING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    ERROR = "ERROR"


# States from which connect() opens a new connection
_CONNECTABLE = (
    ConnectionState.DISCONNECTED,
    ConnectionState.RECONNECTING,
    ConnectionState.CLOSED,
    ConnectionState.ERROR,
)

# Failures of the socket handshake or the provider's auth exchange
_CONNECT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError) + MALFORMED_PAYLOAD_ERRORS


# ============================================================
# LISTENER
# ============================================================

class OrderFillListener(ABC):
    """
    Receives order events for the pairs it subscribed to.

    Exceptions raised by these callbacks are logged by the stream
    and do not affect other listeners.
    """

    @abstractmethod
    async def on_order_filled(self, order: NormalizedOrder) -> None:
        pass

    @abstractmethod
    async def on_order_partially_filled(self, order: NormalizedOrder) -> None:
        pass

    @abstractmethod
    async def on_order_cancelled(self, order_id: str, pair: str) -> None:
        pass

    async def on_websocket_connected(self, exchange: str) -> None:
        """Stream authenticated and ready."""

    async def on_websocket_disconnected(self, exchange: str) -> None:
        """Stream lost; no events until it reconnects."""

    async def on_websocket_error(self, exchange: str, error: Exception) -> None:
        """A message could not be handled. The connection may still be up."""


# ============================================================
# STATUS
# ============================================================

@dataclass
class WebSocketStatus:
    """Snapshot of a stream for monitoring."""

    exchange: str
    state: ConnectionState
    is_connected: bool
    subscription_count: int
    reconnect_attempts: int = 0
    connection_uptime_ms: float = 0.0

    last_event_ms: Optional[int] = None
    """Epoch ms of the last order event delivered."""

    last_error: Optional[str] = None
    listeners_by_pair: Dict[str, int] = field(default_factory=dict)
    circuit_breaker: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exchange": self.exchange,
            "state": self.state.value,
            "is_connected": self.is_connected,
            "subscription_count": self.subscription_count,
            "reconnect_attempts": self.reconnect_attempts,
            "connection_uptime_ms": self.connection_uptime_ms,
            "last_event_ms": self.last_event_ms,
            "last_error": self.last_error,
            "listeners_by_pair": dict(self.listeners_by_pair),
            "circuit_breaker": self.circuit_breaker,
        }


# ============================================================
# ORDER FILL STREAM
# ============================================================

class OrderFillStream(ABC):
    """
    Base class for provider order event streams.

    Provides:
    - Connection lifecycle (connect, authenticate, reconnect, disconnect)
    - Per-pair listener registry and event fan-out
    - Status reporting
    """

    def __init__(
        self,
        exchange: str,
        session_provider: SessionProvider,
        config: Optional[WebSocketConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Args:
            exchange: Provider display name used in logs and errors
            session_provider: Returns the aiohttp session to connect with
            config: Reconnection and heartbeat settings
            clock: Clock for backoff sleeps and status timestamps
        """
        self._exchange = exchange
        self._session_provider = session_provider
        self._config = config or WebSocketConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._breaker = CircuitBreaker(
            f"{exchange}-WebSocket", self._config.circuit_breaker, self._clock
        )

        # Connection
        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._connected_at_ms: Optional[float] = None

        # Reconnection
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0

        # Diagnostics
        self._last_event_ms: Optional[int] = None
        self._last_error: Optional[str] = None

        self._listeners: Dict[str, List[OrderFillListener]] = {}

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def exchange(self) -> str:
        return self._exchange

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Connected and authenticated."""
        return self._state == ConnectionState.AUTHENTICATED and self._ws is not None

    @property
    def pairs(self) -> List[str]:
        return list(self._listeners)

    def status(self) -> WebSocketStatus:
        uptime = 0.0
        if self._connected_at_ms is not None:
            uptime = self._clock.monotonic_ms() - self._connected_at_ms
        return WebSocketStatus(
            exchange=self._exchange,
            state=self._state,
            is_connected=self.is_connected,
            subscription_count=sum(len(listeners) for listeners in self._listeners.values()),
            reconnect_attempts=self._reconnect_attempts,
            connection_uptime_ms=uptime,
            last_event_ms=self._last_event_ms,
            last_error=self._last_error,
            listeners_by_pair={pair: len(listeners) for pair, listeners in self._listeners.items()},
            circuit_breaker=self._breaker.stats(),
        )

    # --------------------------------------------------------
    # SUBSCRIPTIONS
    # --------------------------------------------------------

    async def subscribe(self, pair: str, listener: OrderFillListener) -> None:
        """
        Register `listener` for order events on `pair`.

        Connects when the stream is down.

        Raises:
            ExchangeError: Connection failed (a reconnect is scheduled
                when the failure is retryable)
        """
        listeners = self._listeners.setdefault(pair, [])
        if listener in listeners:
            return
        listeners.append(listener)
        logger.info(f"[{self._exchange}] Listening for order fills on {pair}")

        if self._state in _CONNECTABLE and self._reconnect_task is None:
            try:
                await self.connect()
            except TradingException as e:
                if e.retryable:
                    self._start_reconnect()
                raise
        elif len(listeners) == 1 and self.is_connected:
            await self._send_subscribe([pair])

    async def unsubscribe(self, pair: str, listener: OrderFillListener) -> None:
        """Remove `listener`; the stream disconnects after the last one."""
        listeners = self._listeners.get(pair)
        if not listeners or listener not in listeners:
            return

        listeners.remove(listener)
        if not listeners:
            del self._listeners[pair]
            if self.is_connected:
                await self._send_unsubscribe([pair])

        if not self._listeners:
            await self.disconnect()

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """
        Open, authenticate and subscribe all registered pairs.

        Raises:
            CircuitOpenError: Too many recent connection failures
            ExchangeError: Handshake or authentication failed
        """
        if self._state not in _CONNECTABLE:
            return

        timeout = self._config.connection_timeout_ms / 1000

        async def attempt() -> None:
            await asyncio.wait_for(self._open(), timeout)

        try:
            await self._breaker.execute(attempt)
        except TradingException as e:
            self._fail(e)
            raise
        except _CONNECT_ERRORS as e:
            self._fail(e)
            raise ExchangeError(
                f"WebSocket connection failed: {type(e).__name__}: {e}",
                self._exchange,
                retryable=True,
                cause=e,
            )

        self._reconnect_attempts = 0
        logger.info(f"[{self._exchange}] WebSocket connected")
        await self._notify_all("on_websocket_connected", self._exchange)

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting. Listeners are kept."""
        self._set_state(ConnectionState.CLOSING)

        current = asyncio.current_task()
        for task in (self._reconnect_task, self._receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._receive_task = None

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

        await self._teardown()
        self._connected_at_ms = None
        self._set_state(ConnectionState.CLOSED)
        logger.info(f"[{self._exchange}] WebSocket disconnected")

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        url = await self._prepare()

        heartbeat = self._config.heartbeat_interval_ms
        ws = await self._session_provider().ws_connect(
            url,
            heartbeat=heartbeat / 1000 if heartbeat else None,
            headers={"User-Agent": self._config.user_agent},
        )
        self._set_state(ConnectionState.CONNECTED)

        try:
            self._set_state(ConnectionState.AUTHENTICATING)
            await self._authenticate(ws)

            self._ws = ws
            self._connected_at_ms = self._clock.monotonic_ms()
            self._set_state(ConnectionState.AUTHENTICATED)

            if self._listeners:
                await self._send_subscribe(list(self._listeners))
            await self._on_open()
        except BaseException:
            self._ws = None
            self._connected_at_ms = None
            await ws.close()
            raise

        self._receive_task = asyncio.get_running_loop().create_task(self._receive_loop(ws))

    def _fail(self, error: BaseException) -> None:
        self._set_state(ConnectionState.ERROR)
        self._last_error = str(error)
        logger.error(f"[{self._exchange}] WebSocket connection failed: {error}")

    # --------------------------------------------------------
    # RECONNECTION
    # --------------------------------------------------------

    def _start_reconnect(self) -> None:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect_loop()
            )

    async def _reconnect_loop(self) -> None:
        try:
            while self._listeners and self._state in _CONNECTABLE:
                if self._reconnect_attempts >= self._config.max_reconnect_attempts:
                    logger.error(
                        f"[{self._exchange}] Max reconnection attempts reached "
                        f"({self._config.max_reconnect_attempts})"
                    )
                    self._set_state(ConnectionState.ERROR)
                    return

                self._reconnect_attempts += 1
                delay_ms = self._config.reconnect_delay_ms(self._reconnect_attempts)
                self._set_state(ConnectionState.RECONNECTING)
                logger.info(
                    f"[{self._exchange}] Reconnecting in {delay_ms:.0f}ms "
                    f"(attempt {self._reconnect_attempts})"
                )
                await self._clock.sleep(delay_ms / 1000)

                try:
                    await self.connect()
                    return
                except CircuitOpenError as e:
                    await self._clock.sleep(e.retry_after_ms / 1000)
                except TradingException as e:
                    if not e.retryable:
                        return
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # --------------------------------------------------------
    # MESSAGE HANDLING
    # --------------------------------------------------------

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._last_error = str(ws.exception())
                    logger.error(f"[{self._exchange}] WebSocket error: {self._last_error}")
                    break
        except aiohttp.ClientError as e:
            self._last_error = str(e)
            logger.error(f"[{self._exchange}] Error in receive loop: {e}")
        finally:
            if self._ws is ws:
                self._ws = None

        await self._connection_lost()

    async def _dispatch(self, raw: Any) -> None:
        try:
            message = self._decode(raw)
            if not isinstance(message, dict):
                logger.debug(f"[{self._exchange}] Ignoring non-object message")
                return
            await self._on_message(message)
        except (TradingException,) + MALFORMED_PAYLOAD_ERRORS as e:
            self._last_error = str(e)
            logger.error(f"[{self._exchange}] Message handling error: {e}")
            await self._notify_all("on_websocket_error", self._exchange, e)

    @staticmethod
    def _decode(raw: Any) -> Any:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def _connection_lost(self) -> None:
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return

        self._set_state(ConnectionState.DISCONNECTED)
        self._connected_at_ms = None
        logger.warning(f"[{self._exchange}] WebSocket closed by peer")
        await self._notify_all("on_websocket_disconnected", self._exchange)

        if self._listeners:
            self._start_reconnect()

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise ExchangeError("WebSocket not connected", self._exchange, retryable=True)
        await ws.send_json(payload)

    def _pair_for(self, symbol: str, to_symbol: Callable[[str], str]) -> Optional[str]:
        """Subscribed pair whose provider symbol is `symbol`."""
        for pair in self._listeners:
            if to_symbol(pair) == symbol:
                return pair
        return None

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    async def _emit_filled(self, pair: str, order: NormalizedOrder) -> None:
        await self._emit(pair, "on_order_filled", order)

    async def _emit_partially_filled(self, pair: str, order: NormalizedOrder) -> None:
        await self._emit(pair, "on_order_partially_filled", order)

    async def _emit_cancelled(self, pair: str, order_id: str) -> None:
        await self._emit(pair, "on_order_cancelled", order_id, pair)

    async def _emit(self, pair: str, method: str, *args: Any) -> None:
        self._last_event_ms = self._clock.epoch_ms()
        listeners = list(self._listeners.get(pair, ()))
        await asyncio.gather(*(self._notify(listener, method, *args) for listener in listeners))

    async def _notify_all(self, method: str, *args: Any) -> None:
        unique: List[OrderFillListener] = []
        for listeners in self._listeners.values():
            for listener in listeners:
                if listener not in unique:
                    unique.append(listener)
        await asyncio.gather(*(self._notify(listener, method, *args) for listener in unique))

    async def _notify(self, listener: OrderFillListener, method: str, *args: Any) -> None:
        try:
            await getattr(listener, method)(*args)
        except Exception as e:
            logger.error(f"[{self._exchange}] Listener {method} failed: {e}")

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"[{self._exchange}] WebSocket {self._state.value} -> {state.value}")
            self._state = state

    # --------------------------------------------------------
    # PROVIDER HOOKS
    # --------------------------------------------------------

    @abstractmethod
    async def _prepare(self) -> str:
        """Return the URL to connect to."""

    async def _authenticate(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Provider handshake on a fresh socket."""

    @abstractmethod
    async def _on_message(self, data: Dict[str, Any]) -> None:
        """Handle one decoded JSON object."""

    async def _send_subscribe(self, pairs: List[str]) -> None:
        """Ask the provider for events on `pairs`."""

    async def _send_unsubscribe(self, pairs: List[str]) -> None:
        """Stop provider events for `pairs`."""

    async def _on_open(self) -> None:
        """Called once the connection is authenticated and subscribed."""

    async def _teardown(self) -> None:
        """Release provider resources on disconnect."""


__all__ = [
    "ConnectionState",
    "OrderFillListener",
    "WebSocketStatus",
    "OrderFillStream",
    "SessionProvider",
]
