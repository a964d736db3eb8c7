"""
Shared test fixtures.

FakeSession stands in for aiohttp.ClientSession: it records every
request and replays queued responses, so connector tests exercise
signing, URL building and error normalization without a network.
Its ws_connect hands out FakeWebSocket instances for stream tests.
"""

import asyncio
import json
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import aiohttp
import pytest

from core.clock import MockClock
from core.rate_limiter import RateLimiter, RateLimiterConfig, RateLimiterRegistry
from core.retry import RetryPolicy
from connectors.websocket import OrderFillListener


# ============================================================
# FAKE HTTP
# ============================================================

class FakeResponse:
    """Minimal aiohttp response."""

    def __init__(self, status: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status = status
        if text is not None:
            self._text = text
        elif payload is None:
            self._text = ""
        else:
            self._text = json.dumps(payload)

    async def text(self) -> str:
        return self._text


class _RequestContext:
    def __init__(self, outcome: Union[FakeResponse, BaseException]):
        self._outcome = outcome

    async def __aenter__(self) -> FakeResponse:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class FakeSession:
    """Records requests, replays queued responses in order."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self._outcomes: Deque[Union[FakeResponse, BaseException]] = deque()
        self._sockets: Deque[Union["FakeWebSocket", BaseException]] = deque()
        self.ws_calls: List[Dict[str, Any]] = []
        self.websockets: List["FakeWebSocket"] = []
        self.closed = False

    def queue(self, payload: Any = None, status: int = 200, text: Optional[str] = None) -> "FakeSession":
        self._outcomes.append(FakeResponse(status, payload, text))
        return self

    def queue_error(self, error: BaseException) -> "FakeSession":
        self._outcomes.append(error)
        return self

    def request(self, method: str, url: Any, data: Any = None, headers: Any = None) -> _RequestContext:
        self.calls.append({
            "method": method,
            "url": str(url),
            "data": data,
            "headers": dict(headers or {}),
        })
        if not self._outcomes:
            raise AssertionError(f"unexpected request {method} {url}")
        return _RequestContext(self._outcomes.popleft())

    def queue_websocket(self, outcome: Union["FakeWebSocket", BaseException]) -> "FakeSession":
        self._sockets.append(outcome)
        return self

    async def ws_connect(self, url: Any, **kwargs: Any) -> "FakeWebSocket":
        self.ws_calls.append({"url": str(url), **kwargs})
        outcome = self._sockets.popleft() if self._sockets else FakeWebSocket()
        if isinstance(outcome, BaseException):
            raise outcome
        self.websockets.append(outcome)
        return outcome

    async def close(self) -> None:
        self.closed = True

    @property
    def last(self) -> Dict[str, Any]:
        return self.calls[-1]

    def body(self, index: int = -1) -> Any:
        data = self.calls[index]["data"]
        return json.loads(data) if data else None


# ============================================================
# FAKE WEBSOCKET
# ============================================================

class FakeWSMessage:
    """Minimal aiohttp.WSMessage."""

    def __init__(self, type: aiohttp.WSMsgType, data: Any = None):
        self.type = type
        self.data = data


class FakeWebSocket:
    """
    Stands in for aiohttp.ClientWebSocketResponse.

    Tests push frames with push_json / push_close; everything the
    stream sends lands in `sent`.
    """

    def __init__(self):
        self.sent: List[Any] = []
        self.closed = False
        self._inbox: "asyncio.Queue[FakeWSMessage]" = asyncio.Queue()
        self._error: Optional[BaseException] = None

    def push_json(self, payload: Any, binary: bool = False) -> None:
        text = json.dumps(payload)
        if binary:
            self._inbox.put_nowait(FakeWSMessage(aiohttp.WSMsgType.BINARY, text.encode()))
        else:
            self._inbox.put_nowait(FakeWSMessage(aiohttp.WSMsgType.TEXT, text))

    def push_text(self, text: str) -> None:
        self._inbox.put_nowait(FakeWSMessage(aiohttp.WSMsgType.TEXT, text))

    def push_close(self) -> None:
        self._inbox.put_nowait(FakeWSMessage(aiohttp.WSMsgType.CLOSED))

    def push_error(self, error: BaseException) -> None:
        self._error = error
        self._inbox.put_nowait(FakeWSMessage(aiohttp.WSMsgType.ERROR, error))

    async def send_json(self, payload: Any) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(payload)

    async def receive(self) -> FakeWSMessage:
        return await self._inbox.get()

    def exception(self) -> Optional[BaseException]:
        return self._error

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(FakeWSMessage(aiohttp.WSMsgType.CLOSED))

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> FakeWSMessage:
        msg = await self.receive()
        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
            raise StopAsyncIteration
        return msg


class RecordingListener(OrderFillListener):
    """Records every callback as (event, payload) tuples."""

    def __init__(self, fail: bool = False):
        self.events: List[tuple] = []
        self._fail = fail

    def _record(self, event: str, payload: Any) -> None:
        self.events.append((event, payload))
        if self._fail:
            raise RuntimeError(f"listener failed on {event}")

    async def on_order_filled(self, order) -> None:
        self._record("filled", order)

    async def on_order_partially_filled(self, order) -> None:
        self._record("partial", order)

    async def on_order_cancelled(self, order_id: str, pair: str) -> None:
        self._record("cancelled", (order_id, pair))

    async def on_websocket_connected(self, exchange: str) -> None:
        self._record("connected", exchange)

    async def on_websocket_disconnected(self, exchange: str) -> None:
        self._record("disconnected", exchange)

    async def on_websocket_error(self, exchange: str, error: Exception) -> None:
        self._record("error", error)

    def of(self, event: str) -> List[Any]:
        return [payload for name, payload in self.events if name == event]


async def wait_until(predicate: Callable[[], bool], rounds: int = 200) -> None:
    """Yield to the event loop until `predicate()` holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock()


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def open_limiter(mock_clock) -> RateLimiter:
    """Limiter that never makes tests wait."""
    return RateLimiter(RateLimiterConfig(max_requests=10000, window_ms=1000), name="test", clock=mock_clock)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=2, initial_delay_ms=10, max_delay_ms=40, backoff_multiplier=2)


@pytest.fixture
def connector_kwargs(fake_session, open_limiter, fast_retry, mock_clock) -> Dict[str, Any]:
    """Injected collaborators for building a connector under test."""
    return {
        "session": fake_session,
        "limiter": open_limiter,
        "retry_policy": fast_retry,
        "clock": mock_clock,
    }


@pytest.fixture(autouse=True)
def _reset_limiter_registry():
    yield
    RateLimiterRegistry.reset_registry()


@pytest.fixture
def fake_ws(fake_session) -> FakeWebSocket:
    """The socket handed out by the next ws_connect."""
    ws = FakeWebSocket()
    fake_session.queue_websocket(ws)
    return ws


@pytest.fixture
def make_listener() -> Callable[..., RecordingListener]:
    return RecordingListener


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def settle() -> Callable[..., Any]:
    """Await until a condition holds, driving the event loop."""
    return wait_until
