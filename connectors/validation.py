"""
Connectors - Order Request Validation.

Checks run before any I/O in create_order. Every failure is a
ValidationError naming the offending field.
"""

import re
from decimal import Decimal
from typing import Any, Optional

from core.exceptions import ValidationError
from connectors.models import OrderRequest, OrderType


# BASE/QUOTE for crypto pairs, bare ticker for equities (AAPL)
PAIR_PATTERN = re.compile(r"^[A-Z0-9]+(/[A-Z0-9]+)?$")


def validate_required(value: Any, field: str) -> None:
    if value is None or value == "":
        raise ValidationError(f"{field} is required", field=field)


def validate_positive(value: Optional[Decimal], field: str) -> None:
    if value is None or not value.is_finite() or value <= 0:
        raise ValidationError(f"{field} must be a positive number", field=field, value=value)


def validate_non_negative(value: Optional[Decimal], field: str) -> None:
    if value is None or not value.is_finite() or value < 0:
        raise ValidationError(
            f"{field} must be a non-negative number", field=field, value=value
        )


def validate_pair(pair: str) -> None:
    validate_required(pair, "pair")
    if not PAIR_PATTERN.match(pair):
        raise ValidationError(
            "pair must be BASE/QUOTE (e.g. BTC/USD) or an equity symbol",
            field="pair",
            value=pair,
        )


def validate_order_request(request: OrderRequest) -> None:
    """
    Validate an order before submission.

    Raises:
        ValidationError: First failing rule
    """
    validate_pair(request.pair)
    validate_positive(request.amount, "amount")

    if request.type == OrderType.LIMIT:
        if request.price is None:
            raise ValidationError("price is required for limit orders", field="price")
        validate_positive(request.price, "price")
    elif request.price is not None:
        validate_non_negative(request.price, "price")
