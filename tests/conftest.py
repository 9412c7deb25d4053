from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from botdash.db import Database
from botdash.errors import ExchangePositionNotFound, TransportFailure
from botdash.exchange.bybit import to_exchange_symbol
from botdash.models import AlertEvent, LivePosition, NewPosition
from botdash.timeutil import iso_to_ms

# 2024-01-01T01:00:00Z
NOW_MS = iso_to_ms("2024-01-01T01:00:00Z")


class FakeExchange:
    def __init__(self, positions: Optional[List[LivePosition]] = None) -> None:
        self.positions: List[LivePosition] = list(positions or [])
        self.fail_list: Optional[Exception] = None
        self.fail_close: Set[Tuple[str, str]] = set()
        self.price: Optional[float] = 100.0
        self.realized: Optional[float] = None
        self.closed: List[Tuple[str, str, Optional[float]]] = []
        self.list_calls = 0

    def to_exchange_symbol(self, symbol: str) -> str:
        return to_exchange_symbol(symbol)

    async def list_open_positions(self) -> List[LivePosition]:
        self.list_calls += 1
        if self.fail_list is not None:
            raise self.fail_list
        return list(self.positions)

    async def close_position(self, symbol: str, side: str, qty: Optional[float] = None) -> str:
        key = (to_exchange_symbol(symbol), side)
        if key in self.fail_close:
            raise TransportFailure(f"Bybit API error: cannot close {symbol}")
        if not any((p.symbol, p.side) == key for p in self.positions):
            raise ExchangePositionNotFound(symbol, side)
        self.closed.append((symbol, side, qty))
        self.positions = [p for p in self.positions if (p.symbol, p.side) != key]
        return f"order-{len(self.closed)}"

    async def current_price(self, symbol: str) -> float:
        if self.price is None:
            raise TransportFailure("Failed to get market price")
        return self.price

    async def realized_pnl(self, order_id: Optional[str], symbol: str) -> Optional[float]:
        return self.realized


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.init_schema()
    try:
        yield database
    finally:
        await database.close()


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def clock():
    return lambda: NOW_MS


async def add_position(db: Database, **overrides) -> int:
    fields: Dict = dict(
        symbol="BTCUSDT",
        side="BUY",
        entry_price=42000.0,
        quantity=0.01,
        leverage=10,
        initial_margin=42.0,
        opened_at="2024-01-01T00:00:05Z",
        tier="Standard",
        stop_loss=41000.0,
        unrealised_pnl=0.0,
    )
    fields.update(overrides)
    return await db.insert_position(NewPosition(**fields))


async def add_alert(db: Database, **overrides) -> int:
    fields: Dict = dict(
        id=0,
        timestamp=iso_to_ms("2024-01-01T00:00:03Z"),
        symbol="BTCUSDT",
        side="BUY",
        tier="Standard",
        strength=0.62,
        entry_price=42000.0,
        sl=41000.0,
        tp1=42500.0,
        tp2=43000.0,
        tp3=44000.0,
        main_tp=43000.0,
        atr=120.5,
        volume_ratio=1.8,
        session="London",
        regime="trending",
        regime_confidence=0.7,
        mtf_agreement=0.66,
        leverage=10,
        in_ob=True,
        in_fvg=False,
        ob_score=0.4,
        fvg_score=0.0,
        latency=12,
        execution_status="executed",
    )
    fields.update(overrides)
    return await db.insert_alert_event(AlertEvent(**fields), created_at="2024-01-01T00:00:03Z")
