"""
Connectors - Alpaca Connector.

============================================================
PURPOSE
============================================================
Alpaca Trading API v2 (paper or live) plus Market Data v2.

Endpoints:
- GET    /v2/clock
- GET    /v2/account
- GET    /stocks/{symbol}/trades/latest   (data API)
- POST   /v2/orders
- DELETE /v2/orders/{id}
- GET    /v2/orders/{id}

Extended-hours orders must be limit orders with
time_in_force "day"; everything else is sent "gtc".

Order fills stream from trade_updates on /stream of the
trading host.

============================================================
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from core.circuit_breaker import CircuitBreaker
from core.clock import ClockProtocol, ms_to_iso8601, parse_rfc3339_ms
from core.config import ConnectorSettings, WebSocketConfig
from core.exceptions import ExchangeError
from core.rate_limiter import RateLimiter, RateLimiterRegistry
from core.retry import RetryPolicy
from connectors.auth import AlpacaAuth
from connectors.base import ExchangeConnector, build_rest_client
from connectors.http import RestClient
from connectors.models import (
    Balance,
    NormalizedOrder,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    Ticker,
    map_status,
    to_decimal,
)
from connectors.websocket import OrderFillStream


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

ALPACA_PAPER_URL = "https://paper-api.alpaca.markets"
ALPACA_LIVE_URL = "https://api.alpaca.markets"
ALPACA_DATA_URL = "https://data.alpaca.markets/v2"
ALPACA_PAPER_WS_URL = "wss://paper-api.alpaca.markets/stream"
ALPACA_LIVE_WS_URL = "wss://api.alpaca.markets/stream"

ALPACA_STATUS_MAP: Dict[str, OrderStatus] = {
    "new": OrderStatus.OPEN,
    "partially_filled": OrderStatus.OPEN,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
}

# trade_updates event -> status of the order it carries
ALPACA_EVENT_STATUS_MAP: Dict[str, OrderStatus] = {
    "new": OrderStatus.OPEN,
    "partial_fill": OrderStatus.OPEN,
    "fill": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "expired": OrderStatus.EXPIRED,
    "rejected": OrderStatus.REJECTED,
}

ALPACA_CURRENCY = "USD"


# ============================================================
# ALPACA CONNECTOR
# ============================================================

class AlpacaConnector(ExchangeConnector):
    """Alpaca equities connector."""

    name = "Alpaca"
    exchange_id = "alpaca"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        is_paper: bool = True,
        settings: Optional[ConnectorSettings] = None,
        limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[ClockProtocol] = None,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None,
        data_url: str = ALPACA_DATA_URL,
        ws_url: Optional[str] = None,
    ):
        settings = settings or ConnectorSettings()
        limiter = limiter or RateLimiterRegistry.get("alpaca", settings.rate_limits.get("alpaca"))
        auth = AlpacaAuth(api_key, api_secret)
        self._is_paper = is_paper
        self._api_key = api_key
        self._api_secret = api_secret
        self._ws_url = ws_url or (ALPACA_PAPER_WS_URL if is_paper else ALPACA_LIVE_WS_URL)

        client = build_rest_client(
            self.name,
            "alpaca",
            ALPACA_PAPER_URL if is_paper else ALPACA_LIVE_URL,
            auth=auth,
            settings=settings,
            limiter=limiter,
            breaker=breaker,
            clock=clock,
            session=session,
            error_keys=("message",),
        )
        # Market data shares the trading limiter, breaker and metrics
        self._data: RestClient = build_rest_client(
            self.name,
            "alpaca",
            data_url,
            auth=auth,
            settings=settings,
            limiter=limiter,
            breaker=client.breaker,
            clock=clock,
            session=session,
            metrics=client.metrics,
            error_keys=("message",),
        )
        super().__init__(client, retry_policy or settings.retry_policy, clock, settings)

    @property
    def is_paper(self) -> bool:
        return self._is_paper

    async def close(self) -> None:
        await super().close()
        await self._data.close()

    # --------------------------------------------------------
    # MARKET DATA / ACCOUNT
    # --------------------------------------------------------

    async def _ping(self) -> bool:
        await self._request("GET", "/v2/clock", operation="ping")
        return True

    async def _fetch_balances(self) -> List[Balance]:
        account = await self._request("GET", "/v2/account", operation="get_balances")

        cash = to_decimal(account["cash"], "cash")
        equity = to_decimal(account["equity"], "equity")
        # equity < cash with short positions; locked never goes negative
        return [
            Balance(
                asset=ALPACA_CURRENCY,
                free=max(cash, Decimal("0")),
                locked=max(equity - cash, Decimal("0")),
            )
        ]

    async def _fetch_ticker(self, symbol: str) -> Ticker:
        data = await self._request(
            "GET", f"/stocks/{symbol.upper()}/trades/latest",
            client=self._data, operation="get_ticker",
        )
        trade = data["trade"]
        price = to_decimal(trade["p"], "p")

        return Ticker(
            symbol=symbol.upper(),
            last_price=price,
            bid=price,
            ask=price,
            volume=to_decimal(trade.get("s"), "s", default="0"),
            timestamp=parse_rfc3339_ms(trade["t"]) if trade.get("t") else self._clock.epoch_ms(),
        )

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def _submit_order(self, request: OrderRequest) -> NormalizedOrder:
        extended = request.extended_hours if request.extended_hours is not None else True
        if request.type == OrderType.MARKET:
            extended = False

        payload: Dict[str, Any] = {
            "symbol": request.pair.upper(),
            "qty": str(request.amount),
            "side": request.side.value,
            "type": request.type.value,
            "time_in_force": "day" if extended else "gtc",
            "extended_hours": extended,
        }
        if request.type == OrderType.LIMIT:
            payload["limit_price"] = str(request.price)
        if request.client_order_id:
            payload["client_order_id"] = request.client_order_id

        data = await self._request("POST", "/v2/orders", body=payload, operation="create_order")
        return self._to_order(data, user_id=request.user_id, bot_id=request.bot_id)

    async def _cancel_order(self, order_id: str, symbol: str) -> bool:
        await self._request("DELETE", f"/v2/orders/{order_id}", operation="cancel_order")
        return True

    async def _fetch_order(self, order_id: str, symbol: str) -> NormalizedOrder:
        data = await self._request("GET", f"/v2/orders/{order_id}", operation="get_order")
        return self._to_order(data)

    def _create_fill_stream(self) -> "AlpacaTradeUpdateStream":
        return AlpacaTradeUpdateStream(
            self,
            self._api_key,
            self._api_secret,
            ws_url=self._ws_url,
            config=self._settings.websocket,
            clock=self._clock,
        )

    def _to_order(self, data: Dict[str, Any], user_id: str = "", bot_id: str = "") -> NormalizedOrder:
        filled = to_decimal(data.get("filled_qty"), "filled_qty", default="0")
        price = data.get("limit_price") or data.get("filled_avg_price")

        return NormalizedOrder(
            id=str(data["id"]),
            user_id=user_id,
            bot_id=bot_id,
            exchange_id=self.exchange_id,
            pair=data["symbol"],
            side=OrderSide(data["side"]),
            type=OrderType.MARKET if data.get("type") == "market" else OrderType.LIMIT,
            status=map_status(data.get("status"), ALPACA_STATUS_MAP),
            price=to_decimal(price, "limit_price", default="0"),
            amount=to_decimal(data.get("qty"), "qty", default=str(filled)),
            filled_amount=filled,
            fee=Decimal("0"),
            fee_currency=ALPACA_CURRENCY,
            extended_hours=data.get("extended_hours"),
            timestamp=data.get("created_at") or self._now_iso(),
        )


# ============================================================
# TRADE UPDATES STREAM
# ============================================================

class AlpacaTradeUpdateStream(OrderFillStream):
    """
    Order events from the Alpaca `trade_updates` stream.

    Handshake: authenticate with the key pair, wait for the
    authorization reply, then listen to trade_updates. Frames may
    arrive as binary.
    """

    def __init__(
        self,
        connector: "AlpacaConnector",
        api_key: str,
        api_secret: str,
        ws_url: str = ALPACA_PAPER_WS_URL,
        config: Optional[WebSocketConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        super().__init__(connector.name, connector.http_session, config, clock)
        self._connector = connector
        self._api_key = api_key
        self._api_secret = api_secret
        self._ws_url = ws_url

    async def _prepare(self) -> str:
        return self._ws_url

    async def _authenticate(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        await ws.send_json({
            "action": "authenticate",
            "data": {"key_id": self._api_key, "secret_key": self._api_secret},
        })

        while True:
            msg = await ws.receive()
            if msg.type not in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                raise ExchangeError(
                    f"Connection closed during authentication ({msg.type.name})",
                    self.exchange,
                    retryable=True,
                )

            reply = self._decode(msg.data)
            if not isinstance(reply, dict) or reply.get("stream") != "authorization":
                continue

            status = (reply.get("data") or {}).get("status")
            if status != "authorized":
                raise ExchangeError(
                    f"Authentication failed: {status}",
                    self.exchange,
                    raw_payload=reply,
                    retryable=False,
                )
            break

        await ws.send_json({"action": "listen", "data": {"streams": ["trade_updates"]}})

    async def _on_message(self, data: Dict[str, Any]) -> None:
        if data.get("stream") != "trade_updates":
            return

        update = data["data"]
        order = update["order"]
        pair = self._pair_for(order["symbol"], str.upper)
        if pair is None:
            return

        event = update.get("event")
        if event == "fill":
            await self._emit_filled(pair, self._to_order(update, pair))
        elif event == "partial_fill":
            await self._emit_partially_filled(pair, self._to_order(update, pair))
        elif event in ("canceled", "expired", "rejected"):
            await self._emit_cancelled(pair, str(order["id"]))

    def _to_order(self, update: Dict[str, Any], pair: str) -> NormalizedOrder:
        order = update["order"]
        price = to_decimal(order.get("limit_price"), "limit_price", default="0")
        if price == 0:
            price = to_decimal(update.get("price"), "price", default="0")

        return NormalizedOrder(
            id=str(order["id"]),
            user_id="",
            bot_id="",
            exchange_id=self._connector.exchange_id,
            pair=pair,
            side=OrderSide(order["side"]),
            type=OrderType.MARKET if "market" in (order.get("type") or "") else OrderType.LIMIT,
            status=map_status(update.get("event"), ALPACA_EVENT_STATUS_MAP),
            price=price,
            amount=to_decimal(order.get("qty"), "qty"),
            filled_amount=to_decimal(order.get("filled_qty"), "filled_qty", default="0"),
            fee=Decimal("0"),
            fee_currency=ALPACA_CURRENCY,
            extended_hours=order.get("extended_hours"),
            timestamp=(
                update.get("timestamp")
                or order.get("updated_at")
                or order.get("submitted_at")
                or ms_to_iso8601(self._clock.epoch_ms())
            ),
        )


__all__ = [
    "AlpacaConnector",
    "AlpacaTradeUpdateStream",
    "ALPACA_PAPER_WS_URL",
    "ALPACA_LIVE_WS_URL",
    "ALPACA_EVENT_STATUS_MAP",
    "ALPACA_PAPER_URL",
    "ALPACA_LIVE_URL",
    "ALPACA_DATA_URL",
    "ALPACA_STATUS_MAP",
]
