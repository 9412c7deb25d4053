from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from ..models import LivePosition


@runtime_checkable
class IExchangeAdapter(Protocol):
    """What the reconciliation and close services need from an exchange."""

    async def list_open_positions(self) -> List[LivePosition]:
        """Live positions with non-zero size; sides already mapped to BUY/SELL."""
        ...

    async def close_position(self, symbol: str, side: str, qty: Optional[float] = None) -> str:
        """Close a BUY/SELL position (whole size when qty is None); returns the order id."""
        ...

    async def current_price(self, symbol: str) -> float:
        ...

    async def realized_pnl(self, order_id: Optional[str], symbol: str) -> Optional[float]:
        ...

    def to_exchange_symbol(self, symbol: str) -> str:
        ...
