from .bybit import (
    BybitRestClient,
    from_exchange_side,
    from_exchange_symbol,
    to_exchange_side,
    to_exchange_symbol,
)
from .interfaces import IExchangeAdapter

__all__ = [
    "BybitRestClient",
    "IExchangeAdapter",
    "from_exchange_side",
    "from_exchange_symbol",
    "to_exchange_side",
    "to_exchange_symbol",
]
