"""
Connectors - Connector Factory.

============================================================
PURPOSE
============================================================
Builds a connector from a provider tag and credentials.

FEATURES:
- Closed tag set (ExchangeType); the builder table is checked
  for exhaustiveness when this module is imported
- Pure construction, no I/O
- Credentials from explicit values or environment variables
- Limiter, retry policy, clock and settings are injectable

============================================================
USAGE
============================================================
```python
connector = create_connector(
    "binance",
    ConnectorCredentials(api_key="...", api_secret="..."),
)

# Or from BINANCE_API_KEY / BINANCE_API_SECRET
connector = create_connector("binance", ConnectorCredentials.from_env("binance"))
```

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from core.exceptions import ConfigurationError
from connectors.base import ExchangeConnector
from connectors.exchanges.alpaca import AlpacaConnector
from connectors.exchanges.binance import BinanceConnector
from connectors.exchanges.coinbase import FUTURES, SPOT, CoinbaseConnector
from connectors.exchanges.ibkr import IBKR_DEFAULT_HOST, IBKR_DEFAULT_PORT, IBKRConnector


logger = logging.getLogger(__name__)


# ============================================================
# EXCHANGE TYPES
# ============================================================

class ExchangeType(str, Enum):
    """Supported provider tags."""

    BINANCE = "binance"
    COINBASE = "coinbase"
    COINBASE_FUTURES = "coinbase-futures"
    ALPACA = "alpaca"
    IBKR = "ibkr"


# ============================================================
# CREDENTIALS
# ============================================================

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class ConnectorCredentials:
    """
    Provider credentials.

    IBKR reads host/port; when they are missing the api_key and
    api_secret fields are used as host and port.
    """

    api_key: str = ""
    api_secret: str = ""
    is_paper: bool = True
    host: Optional[str] = None
    port: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls, tag: Union[str, "ExchangeType"]) -> "ConnectorCredentials":
        """
        Read {TAG}_API_KEY, {TAG}_API_SECRET, {TAG}_PAPER,
        {TAG}_HOST and {TAG}_PORT ("coinbase-futures" ->
        COINBASE_FUTURES_*).
        """
        value = tag.value if isinstance(tag, ExchangeType) else str(tag)
        prefix = value.upper().replace("-", "_")

        port = os.environ.get(f"{prefix}_PORT")
        try:
            parsed_port = int(port) if port else None
        except ValueError:
            raise ConfigurationError(
                f"{prefix}_PORT must be an integer", config_key=f"{prefix}_PORT", actual_value=port
            )

        paper = os.environ.get(f"{prefix}_PAPER")
        return cls(
            api_key=os.environ.get(f"{prefix}_API_KEY", ""),
            api_secret=os.environ.get(f"{prefix}_API_SECRET", ""),
            is_paper=paper.strip().lower() in _TRUE_VALUES if paper else True,
            host=os.environ.get(f"{prefix}_HOST"),
            port=parsed_port,
        )

    def __repr__(self) -> str:
        masked = "***" if self.api_key else ""
        return (
            f"ConnectorCredentials(api_key='{masked}', "
            f"is_paper={self.is_paper}, host={self.host!r}, port={self.port})"
        )


# ============================================================
# BUILDERS
# ============================================================

Builder = Callable[[ConnectorCredentials, Dict[str, Any]], ExchangeConnector]


def _build_binance(creds: ConnectorCredentials, options: Dict[str, Any]) -> ExchangeConnector:
    return BinanceConnector(creds.api_key, creds.api_secret, **options)


def _build_coinbase(creds: ConnectorCredentials, options: Dict[str, Any]) -> ExchangeConnector:
    return CoinbaseConnector(creds.api_key, creds.api_secret, product=SPOT, **options)


def _build_coinbase_futures(
    creds: ConnectorCredentials, options: Dict[str, Any]
) -> ExchangeConnector:
    return CoinbaseConnector(creds.api_key, creds.api_secret, product=FUTURES, **options)


def _build_alpaca(creds: ConnectorCredentials, options: Dict[str, Any]) -> ExchangeConnector:
    return AlpacaConnector(creds.api_key, creds.api_secret, is_paper=creds.is_paper, **options)


def _build_ibkr(creds: ConnectorCredentials, options: Dict[str, Any]) -> ExchangeConnector:
    host = creds.host or creds.api_key or IBKR_DEFAULT_HOST
    port = creds.port
    if port is None and creds.api_secret.isdigit():
        port = int(creds.api_secret)
    return IBKRConnector(host=host, port=port or IBKR_DEFAULT_PORT, **options)


_BUILDERS: Dict[ExchangeType, Builder] = {
    ExchangeType.BINANCE: _build_binance,
    ExchangeType.COINBASE: _build_coinbase,
    ExchangeType.COINBASE_FUTURES: _build_coinbase_futures,
    ExchangeType.ALPACA: _build_alpaca,
    ExchangeType.IBKR: _build_ibkr,
}


def check_builders(builders: Dict[ExchangeType, Builder]) -> None:
    """
    Raise ConfigurationError when a tag has no builder.

    Runs at import time so a new ExchangeType member without a
    builder fails at start-up.
    """
    missing = [tag.value for tag in ExchangeType if tag not in builders]
    if missing:
        raise ConfigurationError(f"No connector builder for: {', '.join(missing)}")


check_builders(_BUILDERS)


# ============================================================
# FACTORY
# ============================================================

_OPTION_NAMES = ("settings", "limiter", "retry_policy", "clock", "breaker", "session")


class ConnectorFactory:
    """Creates connectors by provider tag."""

    @staticmethod
    def parse_tag(tag: Union[str, ExchangeType]) -> ExchangeType:
        if isinstance(tag, ExchangeType):
            return tag
        try:
            return ExchangeType(str(tag).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unsupported exchange type: {tag}", config_key="exchange", actual_value=tag
            )

    @classmethod
    def create(
        cls,
        tag: Union[str, ExchangeType],
        credentials: Optional[ConnectorCredentials] = None,
        **options: Any,
    ) -> ExchangeConnector:
        """
        Build a connector.

        Args:
            tag: Provider tag
            credentials: Credentials (defaults to environment)
            **options: settings, limiter, retry_policy, clock,
                breaker, session

        Raises:
            ConfigurationError: Unknown tag or option
        """
        exchange = cls.parse_tag(tag)
        unknown = set(options) - set(_OPTION_NAMES)
        if unknown:
            raise ConfigurationError(f"Unknown connector options: {sorted(unknown)}")

        credentials = credentials or ConnectorCredentials.from_env(exchange)
        connector = _BUILDERS[exchange](credentials, options)
        logger.info(f"Created {connector.name} connector ({exchange.value})")
        return connector

    @staticmethod
    def list_supported() -> List[str]:
        return [tag.value for tag in ExchangeType]


def create_connector(
    provider_tag: Union[str, ExchangeType],
    credentials: Optional[ConnectorCredentials] = None,
    **options: Any,
) -> ExchangeConnector:
    """Build a connector for `provider_tag`. See ConnectorFactory.create."""
    return ConnectorFactory.create(provider_tag, credentials, **options)


__all__ = [
    "ExchangeType",
    "ConnectorCredentials",
    "ConnectorFactory",
    "check_builders",
    "create_connector",
]
