"""
Alpaca Connector Tests.
"""

from decimal import Decimal

import pytest

from core.exceptions import ExchangeError
from connectors.exchanges.alpaca import (
    ALPACA_DATA_URL,
    ALPACA_LIVE_URL,
    ALPACA_LIVE_WS_URL,
    ALPACA_PAPER_URL,
    ALPACA_PAPER_WS_URL,
    AlpacaConnector,
)
from connectors.models import OrderStatus, OrderType
from connectors.websocket import ConnectionState


ORDER = {
    "id": "61e69015-8549-4bfd-b9c3-01e75843f47d",
    "client_order_id": "eb9e2aaa-f71a-4f51-b5b4-52a6c565dad4",
    "created_at": "2024-01-02T14:30:00.123456789Z",
    "symbol": "AAPL",
    "qty": "10",
    "filled_qty": "0",
    "filled_avg_price": None,
    "type": "limit",
    "side": "buy",
    "limit_price": "185.5",
    "status": "new",
    "extended_hours": True,
}


@pytest.fixture
def alpaca(connector_kwargs):
    return AlpacaConnector("key-id", "secret-key", **connector_kwargs)


class TestAlpacaConnector:
    """Tests for AlpacaConnector."""

    def test_paper_and_live_urls(self, connector_kwargs):
        paper = AlpacaConnector("k", "s", **connector_kwargs)
        live = AlpacaConnector("k", "s", is_paper=False, **connector_kwargs)

        assert paper.describe()["base_url"] == ALPACA_PAPER_URL
        assert live.describe()["base_url"] == ALPACA_LIVE_URL
        assert paper.is_paper and not live.is_paper

    @pytest.mark.asyncio
    async def test_ping_uses_clock_endpoint(self, alpaca, fake_session):
        fake_session.queue({"is_open": False})

        assert await alpaca.ping() is True

        call = fake_session.last
        assert call["url"] == f"{ALPACA_PAPER_URL}/v2/clock"
        assert call["headers"]["APCA-API-KEY-ID"] == "key-id"
        assert call["headers"]["APCA-API-SECRET-KEY"] == "secret-key"

    @pytest.mark.asyncio
    async def test_balances(self, alpaca, fake_session):
        fake_session.queue({"cash": "1000.50", "equity": "1500.75"})

        balances = await alpaca.get_balances()

        assert len(balances) == 1
        assert balances[0].asset == "USD"
        assert balances[0].free == Decimal("1000.50")
        assert balances[0].locked == Decimal("500.25")

    @pytest.mark.asyncio
    async def test_balances_short_position(self, alpaca, fake_session):
        fake_session.queue({"cash": "2000", "equity": "1800"})

        balances = await alpaca.get_balances()

        assert balances[0].locked == 0

    @pytest.mark.asyncio
    async def test_ticker_from_data_api(self, alpaca, fake_session):
        fake_session.queue({
            "symbol": "AAPL",
            "trade": {"t": "2024-01-02T03:04:05.123456789Z", "p": 185.25, "s": 100},
        })

        ticker = await alpaca.get_ticker("aapl")

        assert fake_session.last["url"] == f"{ALPACA_DATA_URL}/stocks/AAPL/trades/latest"
        assert ticker.symbol == "AAPL"
        assert ticker.last_price == Decimal("185.25")
        assert ticker.bid == ticker.ask == ticker.last_price
        assert ticker.volume == Decimal("100")
        assert ticker.timestamp == 1704164645123

    @pytest.mark.asyncio
    async def test_candles_unsupported(self, alpaca, fake_session):
        assert await alpaca.get_candles("AAPL", "1d") == []
        assert fake_session.calls == []

    @pytest.mark.asyncio
    async def test_limit_order_extended_hours_by_default(self, alpaca, fake_session):
        fake_session.queue(ORDER)

        order = await alpaca.create_order({
            "pair": "AAPL", "side": "buy", "type": "limit", "amount": "10", "price": "185.5",
        })

        assert fake_session.body() == {
            "symbol": "AAPL",
            "qty": "10",
            "side": "buy",
            "type": "limit",
            "time_in_force": "day",
            "extended_hours": True,
            "limit_price": "185.5",
        }
        assert order.id == ORDER["id"]
        assert order.status == OrderStatus.OPEN
        assert order.extended_hours is True
        assert order.price == Decimal("185.5")
        assert order.timestamp == ORDER["created_at"]

    @pytest.mark.asyncio
    async def test_regular_hours_limit_is_gtc(self, alpaca, fake_session):
        fake_session.queue(dict(ORDER, extended_hours=False))

        await alpaca.create_order({
            "pair": "AAPL", "side": "buy", "type": "limit", "amount": "10",
            "price": "185.5", "extendedHours": False,
        })

        body = fake_session.body()
        assert body["time_in_force"] == "gtc"
        assert body["extended_hours"] is False

    @pytest.mark.asyncio
    async def test_market_order_never_extended(self, alpaca, fake_session):
        fake_session.queue(dict(ORDER, type="market", limit_price=None, extended_hours=False))

        order = await alpaca.create_order({
            "pair": "AAPL", "side": "sell", "type": "market", "amount": "3", "extendedHours": True,
        })

        body = fake_session.body()
        assert body["time_in_force"] == "gtc"
        assert body["extended_hours"] is False
        assert "limit_price" not in body
        assert order.type == OrderType.MARKET

    @pytest.mark.asyncio
    async def test_cancel(self, alpaca, fake_session):
        fake_session.queue(status=204)

        assert await alpaca.cancel_order(ORDER["id"], "AAPL") is True
        assert fake_session.last["method"] == "DELETE"
        assert fake_session.last["url"] == f"{ALPACA_PAPER_URL}/v2/orders/{ORDER['id']}"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw,expected", [
        ("new", OrderStatus.OPEN),
        ("partially_filled", OrderStatus.OPEN),
        ("filled", OrderStatus.FILLED),
        ("canceled", OrderStatus.CANCELED),
        ("pending_new", OrderStatus.REJECTED),
    ])
    async def test_get_order_status(self, alpaca, fake_session, raw, expected):
        filled = "10" if raw == "filled" else "0"
        fake_session.queue(dict(ORDER, status=raw, filled_qty=filled))

        order = await alpaca.get_order(ORDER["id"], "AAPL")

        assert order.status == expected
        assert order.pair == "AAPL"

    @pytest.mark.asyncio
    async def test_close_keeps_injected_session(self, alpaca, fake_session):
        async with alpaca:
            pass
        assert not fake_session.closed


# ============================================================
# TRADE UPDATES STREAM
# ============================================================

AUTHORIZED = {"stream": "authorization", "data": {"status": "authorized", "action": "authenticate"}}


def _update(event, **order_fields):
    return {
        "stream": "trade_updates",
        "data": {
            "event": event,
            "price": "185.40",
            "timestamp": "2024-01-02T14:30:01Z",
            "order": dict(ORDER, **order_fields),
        },
    }


class TestTradeUpdateStream:
    """Tests for order fills over trade_updates."""

    @pytest.mark.asyncio
    async def test_handshake(self, alpaca, fake_session, fake_ws, listener):
        fake_ws.push_json({"stream": "listening", "data": {"streams": []}})
        fake_ws.push_json(AUTHORIZED)

        await alpaca.subscribe_to_order_fills("AAPL", listener)

        assert fake_session.ws_calls[0]["url"] == ALPACA_PAPER_WS_URL
        assert fake_ws.sent == [
            {"action": "authenticate", "data": {"key_id": "key-id", "secret_key": "secret-key"}},
            {"action": "listen", "data": {"streams": ["trade_updates"]}},
        ]
        assert alpaca.is_websocket_connected()
        assert listener.of("connected") == ["Alpaca"]

        await alpaca.close()

    @pytest.mark.asyncio
    async def test_live_stream_url(self, connector_kwargs, fake_session, fake_ws, listener):
        live = AlpacaConnector("k", "s", is_paper=False, **connector_kwargs)
        fake_ws.push_json(AUTHORIZED)

        await live.subscribe_to_order_fills("AAPL", listener)

        assert fake_session.ws_calls[0]["url"] == ALPACA_LIVE_WS_URL
        await live.close()

    @pytest.mark.asyncio
    async def test_authentication_rejected(self, alpaca, fake_ws, listener):
        fake_ws.push_json({"stream": "authorization", "data": {"status": "unauthorized"}})

        with pytest.raises(ExchangeError) as exc_info:
            await alpaca.subscribe_to_order_fills("AAPL", listener)

        assert not exc_info.value.retryable
        assert "unauthorized" in exc_info.value.message
        assert fake_ws.closed
        assert not alpaca.is_websocket_connected()
        assert alpaca.get_websocket_status().state == ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_trade_updates(self, alpaca, fake_ws, listener, settle):
        fake_ws.push_json(AUTHORIZED)
        await alpaca.subscribe_to_order_fills("AAPL", listener)

        fake_ws.push_json(_update("new"))
        fake_ws.push_json(_update("fill", symbol="MSFT", filled_qty="10"))
        fake_ws.push_json(
            _update("partial_fill", filled_qty="4", type="market", limit_price=None), binary=True
        )
        fake_ws.push_json(_update("fill", filled_qty="10"))
        fake_ws.push_json(_update("expired"))
        await settle(lambda: listener.of("cancelled"))

        [partial] = listener.of("partial")
        assert partial.status == OrderStatus.OPEN
        assert partial.type == OrderType.MARKET
        assert partial.filled_amount == Decimal("4")
        assert partial.price == Decimal("185.40")

        [filled] = listener.of("filled")
        assert filled.pair == "AAPL"
        assert filled.status == OrderStatus.FILLED
        assert filled.price == Decimal("185.5")
        assert filled.extended_hours is True
        assert filled.timestamp == "2024-01-02T14:30:01Z"

        assert listener.of("cancelled") == [(ORDER["id"], "AAPL")]

        await alpaca.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
