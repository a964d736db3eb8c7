"""
Connectors - Request Signing.

============================================================
PURPOSE
============================================================
Per-provider authentication applied to a prepared request
right before it goes on the wire (after rate limit admission,
so timestamps are fresh).

Binance:
    signature = HMAC_SHA256_hex(secret, query_string)
    where query_string already contains timestamp; the
    signature is appended as the last query parameter and the
    key travels in X-MBX-APIKEY.

Coinbase Advanced Trade:
    CB-ACCESS-SIGN = HMAC_SHA256_hex(secret,
                         timestamp + METHOD + path + body)
    timestamp is integer Unix seconds, path excludes the query.
    WebSocket subscriptions sign timestamp + channel +
    comma-joined product ids.

Alpaca:
    static APCA-API-KEY-ID / APCA-API-SECRET-KEY headers.

IBKR:
    no signing; the local gateway holds the brokerage session.

============================================================
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence
from urllib.parse import urlencode

from core.clock import ClockFactory, ClockProtocol


# ============================================================
# PRIMITIVES
# ============================================================

def hmac_sha256_hex(secret: str, message: str) -> str:
    """Lowercase hex HMAC-SHA256 of `message` keyed by `secret`."""
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def sign_binance(api_secret: str, query_string: str) -> str:
    return hmac_sha256_hex(api_secret, query_string)


def sign_coinbase(
    api_secret: str,
    timestamp: str,
    method: str,
    request_path: str,
    body: str = "",
) -> str:
    return hmac_sha256_hex(api_secret, f"{timestamp}{method.upper()}{request_path}{body}")


def sign_coinbase_channel(
    api_secret: str,
    timestamp: str,
    channel: str,
    product_ids: Sequence[str],
) -> str:
    """Signature for a WebSocket subscribe/unsubscribe message."""
    return hmac_sha256_hex(api_secret, f"{timestamp}{channel}{','.join(product_ids)}")


def build_query_string(params: Optional[Dict[str, Any]]) -> str:
    """URL-encode params in insertion order, skipping None values."""
    if not params:
        return ""
    return urlencode([(k, _query_value(v)) for k, v in params.items() if v is not None])


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ============================================================
# PREPARED REQUEST
# ============================================================

@dataclass
class PreparedRequest:
    """A request about to be sent, mutable by auth strategies."""

    method: str
    path: str
    params: Dict[str, Any] = field(default_factory=dict)
    body: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    signed: bool = False
    query_string: str = ""

    @property
    def request_path(self) -> str:
        """Path plus encoded query."""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path


# ============================================================
# AUTH STRATEGIES
# ============================================================

class RequestAuth:
    """No authentication."""

    def apply(self, request: PreparedRequest) -> None:
        return None


class BinanceAuth(RequestAuth):
    """HMAC query signing for SIGNED endpoints."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        clock: Optional[ClockProtocol] = None,
        recv_window: Optional[int] = None,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self._clock = clock or ClockFactory.get_clock()
        self._recv_window = recv_window

    def apply(self, request: PreparedRequest) -> None:
        if self._api_key:
            request.headers["X-MBX-APIKEY"] = self._api_key
        if not request.signed:
            return

        params = dict(request.params)
        if self._recv_window:
            params["recvWindow"] = self._recv_window
        params["timestamp"] = self._clock.epoch_ms()

        query = build_query_string(params)
        signature = sign_binance(self._api_secret, query)
        request.query_string = f"{query}&signature={signature}"


class CoinbaseAuth(RequestAuth):
    """CB-ACCESS-* header signing."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        clock: Optional[ClockProtocol] = None,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self._clock = clock or ClockFactory.get_clock()

    def apply(self, request: PreparedRequest) -> None:
        timestamp = str(int(self._clock.timestamp()))
        signature = sign_coinbase(
            self._api_secret, timestamp, request.method, request.path, request.body
        )
        request.headers.update({
            "CB-ACCESS-KEY": self._api_key,
            "CB-ACCESS-SIGN": signature,
            "CB-ACCESS-TIMESTAMP": timestamp,
            "Content-Type": "application/json",
        })


class AlpacaAuth(RequestAuth):
    """Static key headers."""

    def __init__(self, api_key: str, api_secret: str):
        self._api_key = api_key
        self._api_secret = api_secret

    def apply(self, request: PreparedRequest) -> None:
        request.headers.update({
            "APCA-API-KEY-ID": self._api_key,
            "APCA-API-SECRET-KEY": self._api_secret,
        })


__all__ = [
    "hmac_sha256_hex",
    "sign_binance",
    "sign_coinbase",
    "sign_coinbase_channel",
    "build_query_string",
    "PreparedRequest",
    "RequestAuth",
    "BinanceAuth",
    "CoinbaseAuth",
    "AlpacaAuth",
]
