"""
Connectors - Provider Implementations.

AVAILABLE CONNECTORS:
- BinanceConnector: Binance Spot v3
- CoinbaseConnector: Coinbase Advanced Trade v3 (SPOT / FUTURES product)
- AlpacaConnector: Alpaca Trading + Market Data v2
- IBKRConnector: IBKR Client Portal Gateway v1

ORDER FILL STREAMS:
- BinanceUserDataStream: user data stream (listen key)
- CoinbaseUserStream: Advanced Trade `user` channel
- AlpacaTradeUpdateStream: trade_updates
"""

from .binance import BinanceConnector, BinanceUserDataStream, to_binance_symbol
from .coinbase import (
    FUTURES,
    SPOT,
    CoinbaseConnector,
    CoinbaseProduct,
    CoinbaseUserStream,
    to_product_id,
)
from .alpaca import AlpacaConnector, AlpacaTradeUpdateStream
from .ibkr import IBKRConnector


__all__ = [
    "BinanceConnector",
    "BinanceUserDataStream",
    "to_binance_symbol",
    "CoinbaseConnector",
    "CoinbaseProduct",
    "CoinbaseUserStream",
    "SPOT",
    "FUTURES",
    "to_product_id",
    "AlpacaConnector",
    "AlpacaTradeUpdateStream",
    "IBKRConnector",
]
