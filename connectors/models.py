"""
Connectors - Normalized Types.

============================================================
PURPOSE
============================================================
Provider-independent shapes returned by every connector.

- NormalizedOrder: immutable order snapshot
- Balance: per-asset free/locked amounts
- Ticker: last/bid/ask/volume snapshot
- OrderRequest: the partial order accepted by create_order

Amounts and prices are Decimal. Status strings from providers
are mapped through total tables; anything unknown is REJECTED.

============================================================
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from core.exceptions import ValidationError


# Errors raised while reading a provider payload that lacks expected fields
MALFORMED_PAYLOAD_ERRORS = (KeyError, IndexError, TypeError, ValueError, ArithmeticError)


# ============================================================
# ENUMS
# ============================================================

class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    LIMIT = "limit"
    MARKET = "market"


class OrderStatus(str, Enum):
    OPEN = "open"
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"
    EXPIRED = "expired"


def map_status(raw: Optional[str], table: Mapping[str, OrderStatus]) -> OrderStatus:
    """
    Map a provider status string through `table`.

    Unknown or missing statuses map to REJECTED.
    """
    if raw is None:
        return OrderStatus.REJECTED
    return table.get(raw, OrderStatus.REJECTED)


def to_decimal(value: Any, field: str = "value", default: Optional[str] = None) -> Decimal:
    """
    Convert a provider number (str/int/float) to Decimal.

    Floats go through str() to avoid binary noise. None and ""
    use `default` when given.

    Raises:
        ValidationError: Value is not numeric
    """
    if value is None or value == "":
        if default is None:
            raise ValidationError(f"{field} is required", field=field)
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} is not a number", field=field, value=value)


# ============================================================
# NORMALIZED ORDER
# ============================================================

@dataclass(frozen=True)
class NormalizedOrder:
    """
    Order snapshot in the provider-independent shape.

    Invariants (checked on construction):
    - filled_amount <= amount
    - status FILLED implies filled_amount > 0
    """

    id: str
    """Provider order id."""

    user_id: str
    bot_id: str

    exchange_id: str
    """Provider identifier, e.g. "binance"."""

    pair: str
    side: OrderSide
    type: OrderType
    status: OrderStatus
    price: Decimal
    amount: Decimal
    filled_amount: Decimal
    fee: Decimal = Decimal("0")
    fee_currency: str = ""

    timestamp: str = ""
    """ISO 8601 creation/update time."""

    extended_hours: Optional[bool] = None
    reduce_only: Optional[bool] = None

    def __post_init__(self) -> None:
        if self.filled_amount > self.amount:
            raise ValidationError(
                f"filled_amount {self.filled_amount} exceeds amount {self.amount}",
                field="filled_amount",
                value=self.filled_amount,
            )
        if self.status == OrderStatus.FILLED and self.filled_amount <= 0:
            raise ValidationError(
                "filled order must have filled_amount > 0",
                field="filled_amount",
                value=self.filled_amount,
            )

    def to_dict(self) -> Dict[str, Any]:
        """Document shape (camelCase) for persistence."""
        data = {
            "id": self.id,
            "userId": self.user_id,
            "botId": self.bot_id,
            "exchangeId": self.exchange_id,
            "pair": self.pair,
            "side": self.side.value,
            "type": self.type.value,
            "status": self.status.value,
            "price": str(self.price),
            "amount": str(self.amount),
            "filledAmount": str(self.filled_amount),
            "fee": str(self.fee),
            "feeCurrency": self.fee_currency,
            "timestamp": self.timestamp,
        }
        if self.extended_hours is not None:
            data["extendedHours"] = self.extended_hours
        if self.reduce_only is not None:
            data["reduceOnly"] = self.reduce_only
        return data


# ============================================================
# BALANCE / TICKER
# ============================================================

@dataclass(frozen=True)
class Balance:
    """Amounts held for one asset."""

    asset: str
    free: Decimal
    locked: Decimal

    def __post_init__(self) -> None:
        if self.free < 0 or self.locked < 0:
            raise ValidationError(
                f"negative balance for {self.asset}",
                field="balance",
                value=f"free={self.free} locked={self.locked}",
            )

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


@dataclass(frozen=True)
class Ticker:
    """
    Price snapshot.

    bid <= last_price <= ask is expected but not enforced.
    """

    symbol: str
    last_price: Decimal
    bid: Decimal
    ask: Decimal
    volume: Decimal
    """24h volume."""

    timestamp: int
    """Epoch milliseconds."""


# ============================================================
# ORDER REQUEST
# ============================================================

@dataclass(frozen=True)
class OrderRequest:
    """Partial order accepted by create_order."""

    pair: str
    side: OrderSide
    type: OrderType
    amount: Decimal
    price: Optional[Decimal] = None
    user_id: str = ""
    bot_id: str = ""
    extended_hours: Optional[bool] = None
    reduce_only: Optional[bool] = None
    client_order_id: Optional[str] = None

    @property
    def base_asset(self) -> str:
        return self.pair.split("/")[0]

    @property
    def quote_asset(self) -> Optional[str]:
        parts = self.pair.split("/")
        return parts[1] if len(parts) == 2 else None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OrderRequest":
        """
        Build from a camelCase partial order.

        Raises:
            ValidationError: Missing or malformed field
        """
        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return None

        pair = pick("pair")
        if not pair:
            raise ValidationError("pair is required", field="pair")

        try:
            side = OrderSide(str(pick("side")).lower())
        except ValueError:
            raise ValidationError("side must be buy or sell", field="side", value=pick("side"))
        try:
            order_type = OrderType(str(pick("type")).lower())
        except ValueError:
            raise ValidationError(
                "type must be limit or market", field="type", value=pick("type")
            )

        price = pick("price")

        return cls(
            pair=str(pair),
            side=side,
            type=order_type,
            amount=to_decimal(pick("amount"), "amount"),
            price=to_decimal(price, "price") if price is not None else None,
            user_id=str(pick("userId", "user_id") or ""),
            bot_id=str(pick("botId", "bot_id") or ""),
            extended_hours=pick("extendedHours", "extended_hours"),
            reduce_only=pick("reduceOnly", "reduce_only"),
            client_order_id=pick("clientOrderId", "client_order_id"),
        )


__all__ = [
    "MALFORMED_PAYLOAD_ERRORS",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "map_status",
    "to_decimal",
    "NormalizedOrder",
    "Balance",
    "Ticker",
    "OrderRequest",
]
