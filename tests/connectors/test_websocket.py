"""
Order Fill Stream Tests.

The stream under test is a minimal OrderFillStream whose wire
format is one JSON object per order event; FakeSession hands out
FakeWebSocket instances in place of aiohttp sockets.
"""

import asyncio
from decimal import Decimal

import aiohttp
import pytest

from core.circuit_breaker import CircuitBreakerConfig
from core.config import WebSocketConfig
from core.exceptions import ExchangeError
from connectors.models import NormalizedOrder, OrderSide, OrderStatus, OrderType, to_decimal
from connectors.websocket import ConnectionState, OrderFillStream


WS_URL = "wss://stream.example.test/orders"

WS_CONFIG = WebSocketConfig(
    max_reconnect_attempts=3,
    initial_reconnect_delay_ms=100,
    reconnect_backoff_multiplier=2,
    heartbeat_interval_ms=None,
    circuit_breaker=CircuitBreakerConfig(failure_threshold=10, reset_timeout_ms=5000),
)


def _order(pair: str, order_id: str, status: OrderStatus, filled: str) -> NormalizedOrder:
    return NormalizedOrder(
        id=order_id,
        user_id="",
        bot_id="",
        exchange_id="test",
        pair=pair,
        side=OrderSide.BUY,
        type=OrderType.LIMIT,
        status=status,
        price=Decimal("100"),
        amount=Decimal("2"),
        filled_amount=Decimal(filled),
    )


class PairStream(OrderFillStream):
    """Stream whose messages are {"event", "pair", "id"} objects."""

    def __init__(self, session, clock, config=WS_CONFIG):
        super().__init__("Test", lambda: session, config, clock)
        self.subscribed = []
        self.unsubscribed = []
        self.opened = 0
        self.torn_down = 0

    async def _prepare(self):
        return WS_URL

    async def _send_subscribe(self, pairs):
        self.subscribed.append(list(pairs))
        await self._send_json({"op": "subscribe", "pairs": pairs})

    async def _send_unsubscribe(self, pairs):
        self.unsubscribed.append(list(pairs))

    async def _on_open(self):
        self.opened += 1

    async def _teardown(self):
        self.torn_down += 1

    async def _on_message(self, data):
        pair = data["pair"]
        event = data["event"]
        if event == "fill":
            await self._emit_filled(pair, _order(pair, data["id"], OrderStatus.FILLED, "2"))
        elif event == "partial":
            await self._emit_partially_filled(pair, _order(pair, data["id"], OrderStatus.OPEN, "1"))
        elif event == "cancel":
            await self._emit_cancelled(pair, data["id"])
        elif event == "bad":
            to_decimal(data["qty"], "qty")


@pytest.fixture
def stream(fake_session, mock_clock):
    return PairStream(fake_session, mock_clock)


# ============================================================
# SUBSCRIPTIONS
# ============================================================

class TestSubscriptions:
    """Tests for connecting on demand and per-pair subscriptions."""

    @pytest.mark.asyncio
    async def test_first_subscription_connects(self, stream, fake_session, fake_ws, listener):
        await stream.subscribe("BTC/USDT", listener)

        assert stream.is_connected
        assert stream.state == ConnectionState.AUTHENTICATED
        call = fake_session.ws_calls[0]
        assert call["url"] == WS_URL
        assert call["heartbeat"] is None
        assert call["headers"]["User-Agent"] == WS_CONFIG.user_agent
        assert fake_ws.sent == [{"op": "subscribe", "pairs": ["BTC/USDT"]}]
        assert stream.opened == 1
        assert listener.of("connected") == ["Test"]

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_heartbeat_passed_in_seconds(self, fake_session, mock_clock, listener):
        stream = PairStream(fake_session, mock_clock, WebSocketConfig(heartbeat_interval_ms=15000))

        await stream.subscribe("BTC/USDT", listener)

        assert fake_session.ws_calls[0]["heartbeat"] == 15
        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_new_pair_on_open_connection(self, stream, fake_session, fake_ws, listener):
        await stream.subscribe("BTC/USDT", listener)
        await stream.subscribe("ETH/USDT", listener)

        assert stream.subscribed == [["BTC/USDT"], ["ETH/USDT"]]
        assert len(fake_session.ws_calls) == 1

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_second_listener_same_pair(self, stream, fake_ws, make_listener):
        first, second = make_listener(), make_listener()

        await stream.subscribe("BTC/USDT", first)
        await stream.subscribe("BTC/USDT", second)
        await stream.subscribe("BTC/USDT", second)

        assert stream.subscribed == [["BTC/USDT"]]
        assert stream.status().listeners_by_pair == {"BTC/USDT": 2}

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_last_unsubscribe_disconnects(self, stream, fake_ws, listener):
        await stream.subscribe("BTC/USDT", listener)
        await stream.subscribe("ETH/USDT", listener)

        await stream.unsubscribe("BTC/USDT", listener)
        assert stream.unsubscribed == [["BTC/USDT"]]
        assert stream.is_connected

        await stream.unsubscribe("ETH/USDT", listener)
        assert stream.state == ConnectionState.CLOSED
        assert not stream.is_connected
        assert fake_ws.closed
        assert stream.torn_down == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_listener(self, stream, fake_ws, make_listener):
        subscribed, stranger = make_listener(), make_listener()
        await stream.subscribe("BTC/USDT", subscribed)

        await stream.unsubscribe("BTC/USDT", stranger)
        await stream.unsubscribe("ETH/USDT", stranger)

        assert stream.is_connected
        assert stream.unsubscribed == []

        await stream.disconnect()


# ============================================================
# EVENTS
# ============================================================

class TestEvents:
    """Tests for message dispatch to listeners."""

    @pytest.mark.asyncio
    async def test_events_routed_by_pair(self, stream, fake_ws, make_listener, settle):
        btc, eth = make_listener(), make_listener()
        await stream.subscribe("BTC/USDT", btc)
        await stream.subscribe("ETH/USDT", eth)

        fake_ws.push_json({"event": "fill", "pair": "BTC/USDT", "id": "1"})
        fake_ws.push_json({"event": "partial", "pair": "ETH/USDT", "id": "2"})
        fake_ws.push_json({"event": "cancel", "pair": "ETH/USDT", "id": "3"})
        await settle(lambda: eth.of("cancelled"))

        [filled] = btc.of("filled")
        assert filled.id == "1"
        assert filled.status == OrderStatus.FILLED
        [partial] = eth.of("partial")
        assert partial.filled_amount == Decimal("1")
        assert eth.of("cancelled") == [("3", "ETH/USDT")]
        assert btc.of("cancelled") == []
        assert eth.of("filled") == []
        assert stream.status().last_event_ms is not None

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_binary_frames(self, stream, fake_ws, listener, settle):
        await stream.subscribe("BTC/USDT", listener)

        fake_ws.push_json({"event": "fill", "pair": "BTC/USDT", "id": "1"}, binary=True)
        await settle(lambda: listener.of("filled"))

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_failing_listener_isolated(self, stream, fake_ws, make_listener, settle):
        broken, healthy = make_listener(fail=True), make_listener()
        await stream.subscribe("BTC/USDT", broken)
        await stream.subscribe("BTC/USDT", healthy)

        fake_ws.push_json({"event": "fill", "pair": "BTC/USDT", "id": "1"})
        fake_ws.push_json({"event": "fill", "pair": "BTC/USDT", "id": "2"})
        await settle(lambda: len(healthy.of("filled")) == 2)

        assert len(broken.of("filled")) == 2
        assert stream.is_connected

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_bad_messages_reported_to_listeners(self, stream, fake_ws, listener, settle):
        await stream.subscribe("BTC/USDT", listener)

        fake_ws.push_json({"event": "bad", "pair": "BTC/USDT", "qty": "n/a"})
        fake_ws.push_text("not json")
        fake_ws.push_json({"event": "fill"})
        await settle(lambda: len(listener.of("error")) == 3)

        assert stream.is_connected
        assert stream.status().last_error is not None

        fake_ws.push_json({"event": "fill", "pair": "BTC/USDT", "id": "1"})
        await settle(lambda: listener.of("filled"))

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_non_object_messages_ignored(self, stream, fake_ws, listener, settle):
        await stream.subscribe("BTC/USDT", listener)

        fake_ws.push_json([1, 2, 3])
        fake_ws.push_json({"event": "fill", "pair": "BTC/USDT", "id": "1"})
        await settle(lambda: listener.of("filled"))

        assert listener.of("error") == []

        await stream.disconnect()


# ============================================================
# RECONNECTION
# ============================================================

class TestReconnection:
    """Tests for reconnect with backoff and the connection breaker."""

    @pytest.mark.asyncio
    async def test_reconnects_after_peer_close(self, stream, fake_session, fake_ws, listener, mock_clock, settle):
        await stream.subscribe("BTC/USDT", listener)

        fake_ws.push_close()
        await settle(lambda: len(fake_session.websockets) == 2 and stream.is_connected)

        assert listener.of("disconnected") == ["Test"]
        assert listener.of("connected") == ["Test", "Test"]
        assert mock_clock.sleeps == [0.1]
        assert fake_session.websockets[1].sent == [{"op": "subscribe", "pairs": ["BTC/USDT"]}]
        assert stream.status().reconnect_attempts == 0

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_error_frame_reconnects(self, stream, fake_session, fake_ws, listener, settle):
        await stream.subscribe("BTC/USDT", listener)

        fake_ws.push_error(RuntimeError("frame corrupted"))
        await settle(lambda: len(fake_session.websockets) == 2 and stream.is_connected)

        assert stream.status().last_error == "frame corrupted"

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_failed_first_connect_retried(self, stream, fake_session, listener, mock_clock, settle):
        fake_session.queue_websocket(aiohttp.ClientConnectionError("refused"))

        with pytest.raises(ExchangeError) as exc_info:
            await stream.subscribe("BTC/USDT", listener)

        assert exc_info.value.retryable
        assert "WebSocket connection failed" in exc_info.value.message
        await settle(lambda: stream.is_connected)
        assert mock_clock.sleeps == [0.1]
        assert len(fake_session.ws_calls) == 2

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, stream, fake_session, listener, mock_clock, settle):
        for _ in range(4):
            fake_session.queue_websocket(aiohttp.ClientConnectionError("refused"))

        with pytest.raises(ExchangeError):
            await stream.subscribe("BTC/USDT", listener)
        await settle(lambda: len(fake_session.ws_calls) == 4)
        for _ in range(20):
            await asyncio.sleep(0)

        assert len(fake_session.ws_calls) == 4
        assert stream.state == ConnectionState.ERROR
        assert mock_clock.sleeps == [0.1, 0.2, 0.4]
        assert stream.status().reconnect_attempts == 3

    @pytest.mark.asyncio
    async def test_circuit_breaker_delays_reconnect(self, fake_session, listener, mock_clock, settle):
        config = WebSocketConfig(
            max_reconnect_attempts=5,
            initial_reconnect_delay_ms=100,
            reconnect_backoff_multiplier=2,
            heartbeat_interval_ms=None,
            circuit_breaker=CircuitBreakerConfig(failure_threshold=2, reset_timeout_ms=5000),
        )
        stream = PairStream(fake_session, mock_clock, config)
        fake_session.queue_websocket(aiohttp.ClientConnectionError("refused"))
        fake_session.queue_websocket(aiohttp.ClientConnectionError("refused"))

        with pytest.raises(ExchangeError):
            await stream.subscribe("BTC/USDT", listener)
        await settle(lambda: stream.is_connected)

        # Attempt 2 is rejected by the open circuit without touching the network
        assert len(fake_session.ws_calls) == 3
        assert mock_clock.sleeps == pytest.approx([0.1, 0.2, 4.8, 0.4])
        assert stream.status().circuit_breaker["total_rejected"] == 1

        await stream.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_stops_reconnecting(self, stream, fake_session, fake_ws, listener, settle):
        await stream.subscribe("BTC/USDT", listener)

        await stream.disconnect()
        for _ in range(20):
            await asyncio.sleep(0)

        assert stream.state == ConnectionState.CLOSED
        assert len(fake_session.ws_calls) == 1
        assert listener.of("disconnected") == []


# ============================================================
# STATUS
# ============================================================

class TestStatus:
    """Tests for the monitoring snapshot."""

    @pytest.mark.asyncio
    async def test_status_while_connected(self, stream, fake_ws, make_listener, mock_clock):
        await stream.subscribe("BTC/USDT", make_listener())
        await stream.subscribe("BTC/USDT", make_listener())
        await stream.subscribe("ETH/USDT", make_listener())
        mock_clock.advance(seconds=2)

        status = stream.status()
        data = status.to_dict()

        assert status.is_connected
        assert status.subscription_count == 3
        assert status.connection_uptime_ms == pytest.approx(2000)
        assert data["state"] == "AUTHENTICATED"
        assert data["exchange"] == "Test"
        assert data["listeners_by_pair"] == {"BTC/USDT": 2, "ETH/USDT": 1}
        assert data["circuit_breaker"]["state"] == "CLOSED"

        await stream.disconnect()

    def test_status_before_connect(self, stream):
        status = stream.status()

        assert status.state == ConnectionState.DISCONNECTED
        assert not status.is_connected
        assert status.subscription_count == 0
        assert status.connection_uptime_ms == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
