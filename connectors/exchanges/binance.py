"""
Connectors - Binance Spot Connector.

============================================================
PURPOSE
============================================================
Binance Spot REST API v3.

Endpoints:
- GET    /api/v3/ping
- GET    /api/v3/account        (SIGNED)
- GET    /api/v3/ticker/24hr
- GET    /api/v3/klines
- POST   /api/v3/order          (SIGNED)
- DELETE /api/v3/order          (SIGNED)
- GET    /api/v3/order          (SIGNED)
- POST   /api/v3/userDataStream (API key)
- PUT    /api/v3/userDataStream (API key)

Order fills stream from wss://stream.binance.com:9443/ws/{listenKey}.

Symbols: "BTC/USDT" -> "BTCUSDT".

============================================================
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from core.circuit_breaker import CircuitBreaker
from core.clock import ClockProtocol, ms_to_iso8601
from core.config import ConnectorSettings, WebSocketConfig
from core.exceptions import ExchangeError
from core.rate_limiter import RateLimiter
from core.retry import RetryPolicy
from connectors.auth import BinanceAuth
from connectors.base import ExchangeConnector, build_rest_client
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

BINANCE_REST_URL = "https://api.binance.com"
BINANCE_WS_URL = "wss://stream.binance.com:9443/ws"

# Listen keys expire after 60 minutes without a keepalive
LISTEN_KEY_KEEPALIVE_SECONDS = 30 * 60

BINANCE_STATUS_MAP: Dict[str, OrderStatus] = {
    "NEW": OrderStatus.OPEN,
    "PARTIALLY_FILLED": OrderStatus.OPEN,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELED,
}

# Execution reports also carry terminal statuses the REST order never shows
BINANCE_STREAM_STATUS_MAP: Dict[str, OrderStatus] = {
    **BINANCE_STATUS_MAP,
    "EXPIRED": OrderStatus.EXPIRED,
    "REJECTED": OrderStatus.REJECTED,
}

DEFAULT_QUOTE_ASSET = "USDT"


def to_binance_symbol(pair: str) -> str:
    """Convert "btc/usdt" to "BTCUSDT"."""
    return pair.upper().replace("/", "")


def _order_type(raw: str) -> OrderType:
    return OrderType.MARKET if raw.upper() == "MARKET" else OrderType.LIMIT


# ============================================================
# BINANCE CONNECTOR
# ============================================================

class BinanceConnector(ExchangeConnector):
    """Binance Spot connector."""

    name = "Binance"
    exchange_id = "binance"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        settings: Optional[ConnectorSettings] = None,
        limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[ClockProtocol] = None,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: str = BINANCE_REST_URL,
        recv_window: Optional[int] = None,
        ws_url: str = BINANCE_WS_URL,
        listen_key_keepalive_seconds: Optional[float] = LISTEN_KEY_KEEPALIVE_SECONDS,
    ):
        self._ws_url = ws_url
        self._listen_key_keepalive = listen_key_keepalive_seconds
        settings = settings or ConnectorSettings()
        client = build_rest_client(
            self.name,
            "binance",
            base_url,
            auth=BinanceAuth(api_key, api_secret, clock, recv_window=recv_window),
            settings=settings,
            limiter=limiter,
            breaker=breaker,
            clock=clock,
            session=session,
            error_keys=("msg", "message"),
        )
        super().__init__(client, retry_policy or settings.retry_policy, clock, settings)

    # --------------------------------------------------------
    # MARKET DATA / ACCOUNT
    # --------------------------------------------------------

    async def _ping(self) -> bool:
        await self._request("GET", "/api/v3/ping", operation="ping")
        return True

    async def _fetch_balances(self) -> List[Balance]:
        data = await self._request(
            "GET", "/api/v3/account", signed=True, operation="get_balances"
        )

        balances = []
        for item in data["balances"]:
            free = to_decimal(item["free"], "free")
            locked = to_decimal(item["locked"], "locked")
            if free > 0 or locked > 0:
                balances.append(Balance(asset=item["asset"], free=free, locked=locked))
        return balances

    async def _fetch_ticker(self, symbol: str) -> Ticker:
        data = await self._request(
            "GET",
            "/api/v3/ticker/24hr",
            params={"symbol": to_binance_symbol(symbol)},
            operation="get_ticker",
        )

        return Ticker(
            symbol=data["symbol"],
            last_price=to_decimal(data["lastPrice"], "lastPrice"),
            bid=to_decimal(data["bidPrice"], "bidPrice"),
            ask=to_decimal(data["askPrice"], "askPrice"),
            volume=to_decimal(data["volume"], "volume"),
            timestamp=int(data["closeTime"]),
        )

    async def _fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Any]:
        return await self._request(
            "GET",
            "/api/v3/klines",
            params={
                "symbol": to_binance_symbol(symbol),
                "interval": interval,
                "limit": limit,
            },
            operation="get_candles",
        )

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def _submit_order(self, request: OrderRequest) -> NormalizedOrder:
        params: Dict[str, Any] = {
            "symbol": to_binance_symbol(request.pair),
            "side": request.side.value.upper(),
            "type": request.type.value.upper(),
            "quantity": request.amount,
        }
        if request.type == OrderType.LIMIT:
            params["price"] = request.price
            params["timeInForce"] = "GTC"
        if request.client_order_id:
            params["newClientOrderId"] = request.client_order_id

        data = await self._request(
            "POST", "/api/v3/order", params=params, signed=True, operation="create_order"
        )
        return self._to_order(
            data,
            pair=request.pair,
            user_id=request.user_id,
            bot_id=request.bot_id,
            created_ms=data.get("transactTime"),
        )

    async def _cancel_order(self, order_id: str, symbol: str) -> bool:
        await self._request(
            "DELETE",
            "/api/v3/order",
            params={"symbol": to_binance_symbol(symbol), "orderId": order_id},
            signed=True,
            operation="cancel_order",
        )
        return True

    async def _fetch_order(self, order_id: str, symbol: str) -> NormalizedOrder:
        data = await self._request(
            "GET",
            "/api/v3/order",
            params={"symbol": to_binance_symbol(symbol), "orderId": order_id},
            signed=True,
            operation="get_order",
        )
        return self._to_order(
            data,
            pair=symbol if "/" in symbol else data["symbol"],
            created_ms=data.get("time") or data.get("updateTime"),
        )

    # --------------------------------------------------------
    # USER DATA STREAM
    # --------------------------------------------------------

    async def create_listen_key(self) -> str:
        """Open (or extend) the account's user data stream."""
        async def fetch() -> str:
            data = await self._request(
                "POST", "/api/v3/userDataStream", operation="create_listen_key"
            )
            return data["listenKey"]

        return await self._idempotent("create_listen_key", fetch)

    async def keepalive_listen_key(self, listen_key: str) -> None:
        async def put() -> None:
            await self._request(
                "PUT",
                "/api/v3/userDataStream",
                params={"listenKey": listen_key},
                operation="keepalive_listen_key",
            )

        await self._idempotent("keepalive_listen_key", put)

    def _create_fill_stream(self) -> "BinanceUserDataStream":
        return BinanceUserDataStream(
            self,
            ws_url=self._ws_url,
            config=self._settings.websocket,
            clock=self._clock,
            keepalive_interval_seconds=self._listen_key_keepalive,
        )

    def _to_order(
        self,
        data: Dict[str, Any],
        pair: str,
        user_id: str = "",
        bot_id: str = "",
        created_ms: Optional[int] = None,
    ) -> NormalizedOrder:
        amount = to_decimal(data["origQty"], "origQty")
        filled = to_decimal(data.get("executedQty"), "executedQty", default="0")
        price = to_decimal(data.get("price"), "price", default="0")

        # Market orders report price 0; use the average fill price
        quote_filled = data.get("cummulativeQuoteQty")
        if price == 0 and filled > 0 and quote_filled:
            price = to_decimal(quote_filled, "cummulativeQuoteQty") / filled

        fee = Decimal("0")
        fee_currency = pair.split("/")[1] if "/" in pair else DEFAULT_QUOTE_ASSET
        fills = data.get("fills") or []
        for fill in fills:
            fee += to_decimal(fill.get("commission"), "commission", default="0")
        if fills and fills[0].get("commissionAsset"):
            fee_currency = fills[0]["commissionAsset"]

        return NormalizedOrder(
            id=str(data["orderId"]),
            user_id=user_id,
            bot_id=bot_id,
            exchange_id=self.exchange_id,
            pair=pair,
            side=OrderSide(data["side"].lower()),
            type=_order_type(data["type"]),
            status=map_status(data.get("status"), BINANCE_STATUS_MAP),
            price=price,
            amount=amount,
            filled_amount=filled,
            fee=fee,
            fee_currency=fee_currency,
            timestamp=ms_to_iso8601(created_ms) if created_ms else self._now_iso(),
        )


# ============================================================
# USER DATA STREAM
# ============================================================

class BinanceUserDataStream(OrderFillStream):
    """
    Order events from the Binance user data stream.

    The listen key is created over REST on every (re)connect and
    kept alive with a PUT while connected. Only `executionReport`
    events for subscribed pairs are delivered.
    """

    def __init__(
        self,
        connector: "BinanceConnector",
        ws_url: str = BINANCE_WS_URL,
        config: Optional[WebSocketConfig] = None,
        clock: Optional[ClockProtocol] = None,
        keepalive_interval_seconds: Optional[float] = LISTEN_KEY_KEEPALIVE_SECONDS,
    ):
        super().__init__(connector.name, connector.http_session, config, clock)
        self._connector = connector
        self._ws_url = ws_url.rstrip("/")
        self._keepalive_interval = keepalive_interval_seconds
        self._keepalive_task: Optional[asyncio.Task] = None
        self._listen_key: Optional[str] = None

    @property
    def listen_key(self) -> Optional[str]:
        return self._listen_key

    async def _prepare(self) -> str:
        self._listen_key = await self._connector.create_listen_key()
        return f"{self._ws_url}/{self._listen_key}"

    async def _on_open(self) -> None:
        await self._stop_keepalive()
        if self._keepalive_interval:
            self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive_loop())

    async def _teardown(self) -> None:
        await self._stop_keepalive()

    async def _stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _keepalive_loop(self) -> None:
        while True:
            await self._clock.sleep(self._keepalive_interval)
            if self._listen_key is None:
                continue
            try:
                await self._connector.keepalive_listen_key(self._listen_key)
            except ExchangeError as e:
                logger.warning(f"[{self.exchange}] Listen key keepalive failed: {e}")

    async def _on_message(self, data: Dict[str, Any]) -> None:
        if data.get("e") != "executionReport":
            return

        pair = self._pair_for(data["s"], to_binance_symbol)
        if pair is None:
            return

        execution = data["x"]
        if execution == "TRADE":
            order = self._to_order(data, pair)
            if data["X"] == "FILLED":
                await self._emit_filled(pair, order)
            elif data["X"] == "PARTIALLY_FILLED":
                await self._emit_partially_filled(pair, order)
        elif execution in ("CANCELED", "EXPIRED", "REJECTED"):
            await self._emit_cancelled(pair, str(data["i"]))

    def _to_order(self, report: Dict[str, Any], pair: str) -> NormalizedOrder:
        price = to_decimal(report.get("p"), "p", default="0")
        if price == 0:
            price = to_decimal(report.get("L"), "L", default="0")

        return NormalizedOrder(
            id=str(report["i"]),
            user_id="",
            bot_id="",
            exchange_id=self._connector.exchange_id,
            pair=pair,
            side=OrderSide(report["S"].lower()),
            type=_order_type(report["o"]),
            status=map_status(report["X"], BINANCE_STREAM_STATUS_MAP),
            price=price,
            amount=to_decimal(report["q"], "q"),
            filled_amount=to_decimal(report.get("z"), "z", default="0"),
            fee=to_decimal(report.get("n"), "n", default="0"),
            fee_currency=report.get("N") or pair.split("/")[-1],
            timestamp=ms_to_iso8601(report.get("T") or self._clock.epoch_ms()),
        )


__all__ = [
    "BinanceConnector",
    "BinanceUserDataStream",
    "BINANCE_WS_URL",
    "BINANCE_STREAM_STATUS_MAP",
    "BINANCE_REST_URL",
    "BINANCE_STATUS_MAP",
    "to_binance_symbol",
]
