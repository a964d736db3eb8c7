"""
Connectors - Interactive Brokers Connector.

============================================================
PURPOSE
============================================================
IBKR Client Portal Gateway REST API v1.

The gateway runs locally with a self-signed certificate and
owns the brokerage session, so requests are not signed and
TLS verification is disabled.

- The first account from /iserver/accounts is used (cached)
- Symbols resolve to contract ids (conid) via
  /iserver/secdef/search before every order operation (cached)
- Order placement may answer with confirmation prompts, which
  are accepted through /iserver/reply/{id}
- No order fill stream: subscribe_to_order_fills raises
  BusinessRuleError

============================================================
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from core.circuit_breaker import CircuitBreaker
from core.clock import ClockProtocol
from core.config import ConnectorSettings
from core.exceptions import ExchangeError, NotFoundError
from core.rate_limiter import RateLimiter
from core.retry import RetryPolicy
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


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

IBKR_DEFAULT_HOST = "localhost"
IBKR_DEFAULT_PORT = 5000

IBKR_STATUS_MAP: Dict[str, OrderStatus] = {
    "Filled": OrderStatus.FILLED,
    "Cancelled": OrderStatus.CANCELED,
    "ApiCancelled": OrderStatus.CANCELED,
    "Submitted": OrderStatus.OPEN,
    "PreSubmitted": OrderStatus.OPEN,
    "PendingSubmit": OrderStatus.OPEN,
    "PendingCancel": OrderStatus.OPEN,
}

# Market data snapshot fields
FIELD_LAST = "31"
FIELD_BID = "84"
FIELD_ASK = "86"
FIELD_VOLUME = "87"
SNAPSHOT_FIELDS = ",".join([FIELD_LAST, FIELD_BID, FIELD_ASK, FIELD_VOLUME])

IBKR_CURRENCY = "USD"
MAX_ORDER_CONFIRMATIONS = 5


def ibkr_base_url(host: str, port: int) -> str:
    return f"https://{host}:{port}/v1/api"


def _snapshot_number(value: Any) -> Decimal:
    """
    Parse a snapshot field.

    The gateway prefixes values with status letters ("C" closing
    price, "H" halted) and abbreviates volume ("1.2K", "3M").
    """
    if value is None or value == "":
        return Decimal("0")
    text = str(value).strip().lstrip("CH").replace(",", "")
    multiplier = Decimal("1")
    if text[-1:] in ("K", "M", "B"):
        multiplier = {"K": Decimal("1e3"), "M": Decimal("1e6"), "B": Decimal("1e9")}[text[-1]]
        text = text[:-1]
    return to_decimal(text, "snapshot") * multiplier


def _amount(value: Any, field: str) -> Decimal:
    """Summary fields are either numbers or {"amount": ...} objects."""
    if isinstance(value, dict):
        value = value.get("amount")
    return to_decimal(value, field, default="0")


# ============================================================
# IBKR CONNECTOR
# ============================================================

class IBKRConnector(ExchangeConnector):
    """IBKR Client Portal connector."""

    name = "IBKR"
    exchange_id = "ibkr"

    def __init__(
        self,
        host: str = IBKR_DEFAULT_HOST,
        port: int = IBKR_DEFAULT_PORT,
        settings: Optional[ConnectorSettings] = None,
        limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[ClockProtocol] = None,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._host = host
        self._port = port
        self._account_id: Optional[str] = None
        self._conids: Dict[str, int] = {}

        settings = settings or ConnectorSettings()
        client = build_rest_client(
            self.name,
            "ibkr",
            ibkr_base_url(host, port),
            settings=settings,
            limiter=limiter,
            breaker=breaker,
            clock=clock,
            session=session,
            verify_ssl=False,
            error_keys=("error", "message"),
        )
        super().__init__(client, retry_policy or settings.retry_policy, clock, settings)

    # --------------------------------------------------------
    # RESOLUTION
    # --------------------------------------------------------

    async def _get_account_id(self) -> str:
        if self._account_id is None:
            data = await self._request("GET", "/iserver/accounts", operation="accounts")
            accounts = (data or {}).get("accounts") or []
            if not accounts:
                raise ExchangeError("No accounts found", self.name, raw_payload=data, retryable=False)
            self._account_id = str(accounts[0])
        return self._account_id

    async def resolve_conid(self, symbol: str) -> int:
        """Contract id for `symbol` (cached per connector)."""
        key = symbol.upper()
        if key not in self._conids:
            data = await self._request(
                "GET", "/iserver/secdef/search", params={"symbol": key}, operation="secdef_search"
            )
            if not data or not data[0].get("conid"):
                raise NotFoundError("IBKR contract", key)
            self._conids[key] = int(data[0]["conid"])
        return self._conids[key]

    # --------------------------------------------------------
    # MARKET DATA / ACCOUNT
    # --------------------------------------------------------

    async def _ping(self) -> bool:
        await self._request("POST", "/tickle", operation="ping")
        return True

    async def _fetch_balances(self) -> List[Balance]:
        account_id = await self._get_account_id()
        data = await self._request(
            "GET", f"/iserver/account/{account_id}/summary", operation="get_balances"
        )
        return [
            Balance(
                asset=IBKR_CURRENCY,
                free=_amount(data.get("availablefunds"), "availablefunds"),
                locked=_amount(data.get("maintmargin"), "maintmargin"),
            )
        ]

    async def _fetch_ticker(self, symbol: str) -> Ticker:
        conid = await self.resolve_conid(symbol)
        data = await self._request(
            "GET",
            "/iserver/marketdata/snapshot",
            params={"conids": conid, "fields": SNAPSHOT_FIELDS},
            operation="get_ticker",
        )
        row = data[0]

        return Ticker(
            symbol=symbol.upper(),
            last_price=_snapshot_number(row.get(FIELD_LAST)),
            bid=_snapshot_number(row.get(FIELD_BID)),
            ask=_snapshot_number(row.get(FIELD_ASK)),
            volume=_snapshot_number(row.get(FIELD_VOLUME)),
            timestamp=int(row.get("_updated") or self._clock.epoch_ms()),
        )

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def _submit_order(self, request: OrderRequest) -> NormalizedOrder:
        account_id = await self._get_account_id()
        conid = await self.resolve_conid(request.pair)
        extended = request.extended_hours if request.extended_hours is not None else True

        order: Dict[str, Any] = {
            "conid": conid,
            "orderType": "LMT" if request.type == OrderType.LIMIT else "MKT",
            "side": request.side.value.upper(),
            "quantity": float(request.amount),
            "tif": "GTC",
            "outsideRTH": extended,
        }
        if request.type == OrderType.LIMIT:
            order["price"] = float(request.price)
        if request.client_order_id:
            order["cOID"] = request.client_order_id

        data = await self._request(
            "POST",
            f"/iserver/account/{account_id}/orders",
            body={"orders": [order]},
            operation="create_order",
        )
        reply = await self._confirm(data)

        return NormalizedOrder(
            id=str(reply.get("order_id") or reply["id"]),
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
            fee_currency=IBKR_CURRENCY,
            extended_hours=extended,
            timestamp=self._now_iso(),
        )

    async def _confirm(self, data: Any) -> Dict[str, Any]:
        """Accept gateway confirmation prompts until an order id comes back."""
        for _ in range(MAX_ORDER_CONFIRMATIONS):
            if isinstance(data, dict) and data.get("error"):
                raise ExchangeError(data["error"], self.name, raw_payload=data, retryable=False)
            reply = data[0]
            if reply.get("order_id") or "message" not in reply:
                return reply
            self._log.info(f"confirming order prompt: {reply.get('message')}")
            data = await self._request(
                "POST",
                f"/iserver/reply/{reply['id']}",
                body={"confirmed": True},
                operation="create_order_reply",
            )
        raise ExchangeError(
            "Order still awaiting confirmation", self.name, raw_payload=data, retryable=False
        )

    async def _cancel_order(self, order_id: str, symbol: str) -> bool:
        account_id = await self._get_account_id()
        await self.resolve_conid(symbol)
        await self._request(
            "DELETE",
            f"/iserver/account/{account_id}/order/{order_id}",
            operation="cancel_order",
        )
        return True

    async def _fetch_order(self, order_id: str, symbol: str) -> NormalizedOrder:
        await self._get_account_id()
        await self.resolve_conid(symbol)
        data = await self._request(
            "GET", f"/iserver/account/order/status/{order_id}", operation="get_order"
        )

        side = str(data.get("side", "")).upper()
        order_type = str(data.get("order_type") or data.get("orderType") or "").upper()
        filled = to_decimal(data.get("cum_fill"), "cum_fill", default="0")

        return NormalizedOrder(
            id=str(data.get("order_id") or order_id),
            user_id="",
            bot_id="",
            exchange_id=self.exchange_id,
            pair=symbol.upper(),
            side=OrderSide.BUY if side.startswith("B") else OrderSide.SELL,
            type=OrderType.MARKET if order_type in ("MKT", "MARKET") else OrderType.LIMIT,
            status=map_status(data.get("order_status"), IBKR_STATUS_MAP),
            price=to_decimal(
                data.get("limit_price") or data.get("average_price"), "limit_price", default="0"
            ),
            amount=to_decimal(data.get("total_size"), "total_size", default=str(filled)),
            filled_amount=filled,
            fee=to_decimal(data.get("commission"), "commission", default="0"),
            fee_currency=IBKR_CURRENCY,
            extended_hours=data.get("outside_rth"),
            timestamp=self._now_iso(),
        )


__all__ = [
    "IBKRConnector",
    "IBKR_DEFAULT_HOST",
    "IBKR_DEFAULT_PORT",
    "IBKR_STATUS_MAP",
    "ibkr_base_url",
]
