"""
Connectors - Coinbase Advanced Trade Connector.

============================================================
PURPOSE
============================================================
Coinbase Advanced Trade REST API v3, spot and futures.

Spot and futures differ only in how liveness is checked and
where balances come from. Both are the same CoinbaseConnector
class composed with a CoinbaseProduct strategy:

    CoinbaseConnector(key, secret)                    # spot
    CoinbaseConnector(key, secret, product=FUTURES)   # futures

Product ids: "BTC/USD" -> "BTC-USD".

Order fills stream from the `user` channel of
wss://advanced-trade-ws.coinbase.com.

============================================================
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from core.circuit_breaker import CircuitBreaker
from core.clock import ClockProtocol
from core.config import ConnectorSettings, WebSocketConfig
from core.exceptions import BusinessRuleError, ExchangeError
from core.rate_limiter import RateLimiter
from core.retry import RetryPolicy
from connectors.auth import CoinbaseAuth, sign_coinbase_channel
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

COINBASE_REST_URL = "https://api.coinbase.com"
COINBASE_WS_URL = "wss://advanced-trade-ws.coinbase.com"
BROKERAGE = "/api/v3/brokerage"

COINBASE_STATUS_MAP: Dict[str, OrderStatus] = {
    "OPEN": OrderStatus.OPEN,
    "FILLED": OrderStatus.FILLED,
    "CANCELLED": OrderStatus.CANCELED,
}

COINBASE_FEE_CURRENCY = "USD"

# Candle interval -> (granularity enum, seconds)
GRANULARITIES: Dict[str, tuple] = {
    "1m": ("ONE_MINUTE", 60),
    "5m": ("FIVE_MINUTE", 300),
    "15m": ("FIFTEEN_MINUTE", 900),
    "30m": ("THIRTY_MINUTE", 1800),
    "1h": ("ONE_HOUR", 3600),
    "2h": ("TWO_HOUR", 7200),
    "6h": ("SIX_HOUR", 21600),
    "1d": ("ONE_DAY", 86400),
}


def to_product_id(symbol: str) -> str:
    """Convert "btc/usd" to "BTC-USD"."""
    return symbol.replace("/", "-").upper()


def _money(value: Optional[Dict[str, Any]], field: str) -> Decimal:
    """Read a {"value": "...", "currency": "..."} amount."""
    return to_decimal((value or {}).get("value"), field, default="0")


# ============================================================
# PRODUCT STRATEGIES
# ============================================================

def _spot_balances(data: Dict[str, Any]) -> List[Balance]:
    return [
        Balance(
            asset=account["currency"],
            free=_money(account.get("available_balance"), "available_balance"),
            locked=_money(account.get("hold"), "hold"),
        )
        for account in data["accounts"]
    ]


def _futures_balances(data: Dict[str, Any]) -> List[Balance]:
    return [
        Balance(
            asset=COINBASE_FEE_CURRENCY,
            free=_money(account.get("available_funds"), "available_funds"),
            locked=_money(account.get("margin_requirement"), "margin_requirement"),
        )
        for account in data["accounts"]
    ]


@dataclass(frozen=True)
class CoinbaseProduct:
    """What differs between Coinbase spot and futures."""

    exchange_id: str
    name: str
    product_type: str
    ping_path: str
    ping_params: Dict[str, Any]
    balances_path: str
    parse_balances: Callable[[Dict[str, Any]], List[Balance]]
    supports_futures: bool = False


SPOT = CoinbaseProduct(
    exchange_id="coinbase",
    name="Coinbase",
    product_type="SPOT",
    ping_path=f"{BROKERAGE}/accounts",
    ping_params={"limit": 1},
    balances_path=f"{BROKERAGE}/accounts",
    parse_balances=_spot_balances,
)

FUTURES = CoinbaseProduct(
    exchange_id="coinbase-futures",
    name="Coinbase Futures",
    product_type="FUTURE",
    ping_path=f"{BROKERAGE}/products",
    ping_params={"product_type": "FUTURE"},
    balances_path=f"{BROKERAGE}/cfm/accounts",
    parse_balances=_futures_balances,
    supports_futures=True,
)


# ============================================================
# COINBASE CONNECTOR
# ============================================================

class CoinbaseConnector(ExchangeConnector):
    """Coinbase Advanced Trade connector for one product type."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        product: CoinbaseProduct = SPOT,
        settings: Optional[ConnectorSettings] = None,
        limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[ClockProtocol] = None,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: str = COINBASE_REST_URL,
        ws_url: str = COINBASE_WS_URL,
    ):
        self._product = product
        self._api_key = api_key
        self._api_secret = api_secret
        self._ws_url = ws_url
        self.name = product.name
        self.exchange_id = product.exchange_id

        settings = settings or ConnectorSettings()
        # Spot and futures share one account-wide Coinbase limit
        client = build_rest_client(
            product.name,
            "coinbase",
            base_url,
            auth=CoinbaseAuth(api_key, api_secret, clock),
            settings=settings,
            limiter=limiter,
            breaker=breaker,
            clock=clock,
            session=session,
            error_keys=("message", "error", "error_details"),
        )
        super().__init__(client, retry_policy or settings.retry_policy, clock, settings)

    @property
    def product(self) -> CoinbaseProduct:
        return self._product

    # --------------------------------------------------------
    # MARKET DATA / ACCOUNT
    # --------------------------------------------------------

    async def _ping(self) -> bool:
        await self._request(
            "GET", self._product.ping_path, params=self._product.ping_params, operation="ping"
        )
        return True

    async def _fetch_balances(self) -> List[Balance]:
        data = await self._request("GET", self._product.balances_path, operation="get_balances")
        return self._product.parse_balances(data)

    async def _fetch_ticker(self, symbol: str) -> Ticker:
        product = await self._request(
            "GET", f"{BROKERAGE}/products/{to_product_id(symbol)}", operation="get_ticker"
        )

        last = to_decimal(product["price"], "price")
        return Ticker(
            symbol=symbol.upper(),
            last_price=last,
            bid=to_decimal(product.get("bid") or product.get("best_bid"), "bid", default=str(last)),
            ask=to_decimal(product.get("ask") or product.get("best_ask"), "ask", default=str(last)),
            volume=to_decimal(product.get("volume_24h"), "volume_24h", default="0"),
            timestamp=self._clock.epoch_ms(),
        )

    async def _fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Any]:
        granularity, seconds = GRANULARITIES.get(interval, (interval, 60))
        end = int(self._clock.timestamp())
        start = end - limit * seconds

        data = await self._request(
            "GET",
            f"{BROKERAGE}/products/{to_product_id(symbol)}/candles",
            params={"start": start, "end": end, "granularity": granularity},
            operation="get_candles",
        )
        return data["candles"]

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def _submit_order(self, request: OrderRequest) -> NormalizedOrder:
        if request.type == OrderType.LIMIT:
            configuration = {
                "limit_limit_gtc": {
                    "base_size": str(request.amount),
                    "limit_price": str(request.price),
                }
            }
        else:
            configuration = {"market_market_ioc": {"base_size": str(request.amount)}}

        body = {
            "client_order_id": request.client_order_id or uuid.uuid4().hex,
            "product_id": to_product_id(request.pair),
            "side": request.side.value.upper(),
            "order_configuration": configuration,
        }

        data = await self._request(
            "POST", f"{BROKERAGE}/orders", body=body, operation="create_order"
        )

        if not data.get("success", False):
            error = data.get("error_response") or {}
            raise ExchangeError(
                error.get("message")
                or error.get("preview_failure_reason")
                or data.get("failure_reason")
                or "Order rejected",
                self.name,
                raw_payload=data,
                retryable=False,
            )

        accepted = data.get("success_response") or {}
        return NormalizedOrder(
            id=str(accepted.get("order_id") or data["order_id"]),
            user_id=request.user_id,
            bot_id=request.bot_id,
            exchange_id=self.exchange_id,
            pair=request.pair,
            side=request.side,
            type=request.type,
            status=OrderStatus.OPEN,
            price=request.price if request.price is not None else Decimal("0"),
            amount=request.amount,
            filled_amount=Decimal("0"),
            fee=Decimal("0"),
            fee_currency=COINBASE_FEE_CURRENCY,
            timestamp=self._now_iso(),
        )

    async def _cancel_order(self, order_id: str, symbol: str) -> bool:
        data = await self._request(
            "POST",
            f"{BROKERAGE}/orders/batch_cancel",
            body={"order_ids": [order_id]},
            operation="cancel_order",
        )

        results = (data or {}).get("results") or []
        if results and not results[0].get("success", False):
            raise ExchangeError(
                results[0].get("failure_reason") or "Cancel rejected",
                self.name,
                raw_payload=data,
                retryable=False,
            )
        return True

    async def _fetch_order(self, order_id: str, symbol: str) -> NormalizedOrder:
        data = await self._request(
            "GET", f"{BROKERAGE}/orders/historical/{order_id}", operation="get_order"
        )
        order = data["order"]

        configuration = order.get("order_configuration") or {}
        limit = configuration.get("limit_limit_gtc") or {}
        market = configuration.get("market_market_ioc") or {}

        filled = to_decimal(order.get("filled_size"), "filled_size", default="0")
        amount = to_decimal(
            limit.get("base_size") or market.get("base_size"),
            "base_size",
            default=str(filled),
        )
        price = to_decimal(
            limit.get("limit_price") or order.get("average_filled_price"),
            "price",
            default="0",
        )

        # Futures product ids (BIT-31JAN25-CDE) are not BASE-QUOTE pairs
        pair = order["product_id"]
        if not self._product.supports_futures:
            pair = pair.replace("-", "/")
        order_type = (order.get("order_type") or "").upper()

        return NormalizedOrder(
            id=str(order["order_id"]),
            user_id="",
            bot_id="",
            exchange_id=self.exchange_id,
            pair=pair,
            side=OrderSide(order["side"].lower()),
            type=OrderType.MARKET if order_type == "MARKET" else OrderType.LIMIT,
            status=map_status(order.get("status"), COINBASE_STATUS_MAP),
            price=price,
            amount=amount,
            filled_amount=filled,
            fee=to_decimal(order.get("total_fees"), "total_fees", default="0"),
            fee_currency=COINBASE_FEE_CURRENCY,
            timestamp=order.get("created_time") or self._now_iso(),
        )

    def _create_fill_stream(self) -> "CoinbaseUserStream":
        return CoinbaseUserStream(
            self,
            self._api_key,
            self._api_secret,
            ws_url=self._ws_url,
            config=self._settings.websocket,
            clock=self._clock,
        )

    # --------------------------------------------------------
    # FUTURES ONLY
    # --------------------------------------------------------

    def _require_futures(self, operation: str) -> None:
        if not self._product.supports_futures:
            raise BusinessRuleError(
                f"{operation} is only available for Coinbase futures",
                rule="futures_only",
            )

    async def get_futures_positions(self) -> List[Dict[str, Any]]:
        """Open CFM futures positions (raw provider rows)."""
        self._require_futures("get_futures_positions")

        async def fetch() -> List[Dict[str, Any]]:
            data = await self._request(
                "GET", f"{BROKERAGE}/cfm/positions", operation="get_futures_positions"
            )
            return data["positions"]

        return await self._idempotent("get_futures_positions", fetch)

    async def get_margin_summary(self) -> Dict[str, Any]:
        """CFM balance summary (margin, buying power, liquidation)."""
        self._require_futures("get_margin_summary")

        async def fetch() -> Dict[str, Any]:
            data = await self._request(
                "GET", f"{BROKERAGE}/cfm/balance_summary", operation="get_margin_summary"
            )
            return data["balance_summary"]

        return await self._idempotent("get_margin_summary", fetch)


# ============================================================
# USER CHANNEL STREAM
# ============================================================

class CoinbaseUserStream(OrderFillStream):
    """
    Order events from the Coinbase Advanced Trade `user` channel.

    Authentication rides on each signed subscribe message, so the
    socket needs no separate handshake.

    Messages handled:
    - match: partial fill of the maker or taker order
    - done:  filled (snapshot fetched over REST) or canceled
    - user:  order snapshots with FILLED / CANCELLED status
    - error: reported to listeners via on_websocket_error
    """

    channel = "user"

    def __init__(
        self,
        connector: "CoinbaseConnector",
        api_key: str,
        api_secret: str,
        ws_url: str = COINBASE_WS_URL,
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

    async def _send_subscribe(self, pairs: List[str]) -> None:
        await self._send_json(self._signed_message("subscribe", pairs))
        logger.info(f"[{self.exchange}] Subscribed to user channel for {', '.join(pairs)}")

    async def _send_unsubscribe(self, pairs: List[str]) -> None:
        await self._send_json(self._signed_message("unsubscribe", pairs))

    def _signed_message(self, action: str, pairs: List[str]) -> Dict[str, Any]:
        product_ids = [to_product_id(pair) for pair in pairs]
        timestamp = str(int(self._clock.timestamp()))
        return {
            "type": action,
            "product_ids": product_ids,
            "channel": self.channel,
            "api_key": self._api_key,
            "timestamp": timestamp,
            "signature": sign_coinbase_channel(
                self._api_secret, timestamp, self.channel, product_ids
            ),
        }

    def _pair(self, product_id: str) -> str:
        return self._pair_for(product_id, to_product_id) or product_id.replace("-", "/")

    async def _on_message(self, data: Dict[str, Any]) -> None:
        kind = data.get("type")

        if kind == "match":
            await self._handle_match(data)
        elif kind == "done":
            await self._handle_done(data)
        elif kind == "user":
            for update in data.get("orders") or []:
                await self._handle_order_update(update)
        elif kind == "error":
            raise ExchangeError(
                data.get("message") or data.get("reason") or "WebSocket error",
                self.exchange,
                raw_payload=data,
                retryable=False,
            )
        elif kind not in ("subscriptions", "heartbeat", "heartbeats"):
            logger.debug(f"[{self.exchange}] Unhandled message type: {kind}")

    async def _handle_match(self, data: Dict[str, Any]) -> None:
        pair = self._pair(data["product_id"])
        side = OrderSide(data["side"].lower())
        order_id = data["taker_order_id"] if side == OrderSide.BUY else data["maker_order_id"]
        size = to_decimal(data["size"], "size")

        # Still open until the done message arrives
        order = NormalizedOrder(
            id=str(order_id),
            user_id="",
            bot_id="",
            exchange_id=self._connector.exchange_id,
            pair=pair,
            side=side,
            type=OrderType.LIMIT,
            status=OrderStatus.OPEN,
            price=to_decimal(data.get("price"), "price", default="0"),
            amount=size,
            filled_amount=size,
            fee=Decimal("0"),
            fee_currency=COINBASE_FEE_CURRENCY,
            timestamp=data.get("time") or "",
        )
        await self._emit_partially_filled(pair, order)

    async def _handle_done(self, data: Dict[str, Any]) -> None:
        pair = self._pair(data["product_id"])
        order_id = str(data["order_id"])
        reason = data.get("reason")

        if reason == "filled":
            # done carries no sizes; the REST snapshot has them
            order = await self._connector.get_order(order_id, pair)
            await self._emit_filled(pair, order)
        elif reason == "canceled":
            await self._emit_cancelled(pair, order_id)

    async def _handle_order_update(self, update: Dict[str, Any]) -> None:
        pair = self._pair(update["product_id"])
        status = update.get("status")

        if status == "FILLED":
            filled = to_decimal(
                update.get("filled_size") or update.get("cumulative_quantity"), "filled_size"
            )
            order_type = (update.get("order_type") or "").upper()
            order = NormalizedOrder(
                id=str(update["order_id"]),
                user_id="",
                bot_id="",
                exchange_id=self._connector.exchange_id,
                pair=pair,
                side=OrderSide((update.get("order_side") or update["side"]).lower()),
                type=OrderType.MARKET if "MARKET" in order_type else OrderType.LIMIT,
                status=OrderStatus.FILLED,
                price=to_decimal(update.get("price") or update.get("avg_price"), "price", default="0"),
                amount=to_decimal(update.get("size"), "size", default=str(filled)),
                filled_amount=filled,
                fee=to_decimal(
                    update.get("fill_fees") or update.get("total_fees"), "fill_fees", default="0"
                ),
                fee_currency=COINBASE_FEE_CURRENCY,
                timestamp=update.get("done_at") or update.get("created_at") or "",
            )
            await self._emit_filled(pair, order)
        elif status == "CANCELLED":
            await self._emit_cancelled(pair, str(update["order_id"]))


__all__ = [
    "CoinbaseConnector",
    "CoinbaseUserStream",
    "COINBASE_WS_URL",
    "CoinbaseProduct",
    "SPOT",
    "FUTURES",
    "COINBASE_REST_URL",
    "COINBASE_STATUS_MAP",
    "to_product_id",
]
