"""
Connectors Package.

============================================================
PURPOSE
============================================================
One async contract for trading against brokerage and exchange
REST APIs, with per-provider signing, rate limiting, retries
and error normalization.

UTILITIES:
- create_connector: Build a connector by provider tag
- RestClient: Shared authenticated HTTP capability
- ConnectorMetrics: Request/order counters
- OrderFillListener: Callbacks for streamed order fills

============================================================
"""

from .models import (
    Balance,
    NormalizedOrder,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    Ticker,
)
from .base import ExchangeConnector
from .websocket import ConnectionState, OrderFillListener, OrderFillStream, WebSocketStatus
from .http import RestClient
from .metrics import ConnectorMetrics, get_metrics_registry
from .exchanges import (
    AlpacaConnector,
    BinanceConnector,
    CoinbaseConnector,
    IBKRConnector,
)
from .factory import (
    ConnectorCredentials,
    ConnectorFactory,
    ExchangeType,
    create_connector,
)


__all__ = [
    "Balance",
    "NormalizedOrder",
    "OrderRequest",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Ticker",
    "ExchangeConnector",
    "ConnectionState",
    "OrderFillListener",
    "OrderFillStream",
    "WebSocketStatus",
    "RestClient",
    "ConnectorMetrics",
    "get_metrics_registry",
    "AlpacaConnector",
    "BinanceConnector",
    "CoinbaseConnector",
    "IBKRConnector",
    "ConnectorCredentials",
    "ConnectorFactory",
    "ExchangeType",
    "create_connector",
]
