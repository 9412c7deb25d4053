from __future__ import annotations

import json

import pytest

from botdash.errors import TransportFailure
from botdash.models import HistoryRecord, LivePosition
from botdash.services.ledger_ops import duration_minutes, pnl_percent
from botdash.services.reconciler import PositionReconciler

from conftest import NOW_MS, add_position


async def _count(db, table: str) -> int:
    row = await db.fetchone(f"SELECT COUNT(*) AS n FROM {table}")
    return int(row["n"])


async def test_position_missing_on_exchange_is_closed_and_archived(db, exchange, clock):
    pid = await add_position(db, unrealised_pnl=4.2, initial_margin=42.0)

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert result.success is True
    assert (result.checked, result.closed, result.still_open) == (1, 1, 0)
    assert result.errors == []

    pos = await db.get_position(pid)
    assert pos.status == "closed"
    assert pos.close_reason == "auto_sync"
    assert pos.closed_at == "2024-01-01T01:00:00.000Z"

    history = await db.get_history_for_position(pid)
    assert len(history) == 1
    h = history[0]
    assert h.close_reason == "auto_sync"
    assert h.pnl == pytest.approx(4.2)
    assert h.pnl_percent == pytest.approx(10.0)
    assert h.close_price == pytest.approx(42000.0)
    assert h.duration_minutes == 59

    actions = await db.get_bot_actions()
    assert len(actions) == 1
    assert actions[0]["action_type"] == "position_closed"
    assert actions[0]["reason"] == "auto_sync"
    assert json.loads(actions[0]["details"])["positionId"] == pid


async def test_reconcile_twice_does_not_duplicate_history(db, exchange, clock):
    pid = await add_position(db)
    reconciler = PositionReconciler(db, exchange, clock=clock)

    await reconciler.reconcile()
    second = await reconciler.reconcile()

    assert second.checked == 0
    assert len(await db.get_history_for_position(pid)) == 1


async def test_existing_history_row_is_not_duplicated(db, exchange, clock):
    pid = await add_position(db, unrealised_pnl=1.0)
    await db.insert_history(
        HistoryRecord(
            position_id=pid,
            symbol="BTCUSDT",
            side="BUY",
            tier="Standard",
            entry_price=42000.0,
            close_price=42100.0,
            quantity=0.01,
            leverage=10,
            pnl=1.0,
            pnl_percent=2.38,
            close_reason="manual_close",
            opened_at="2024-01-01T00:00:05Z",
            closed_at="2024-01-01T00:30:00Z",
            duration_minutes=29,
        )
    )

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert result.closed == 1
    history = await db.get_history_for_position(pid)
    assert len(history) == 1
    assert history[0].close_reason == "manual_close"
    assert (await db.get_position(pid)).status == "closed"


async def test_duplicate_history_insert_is_ignored_by_store(db):
    pid = await add_position(db)
    rec = HistoryRecord(
        position_id=pid,
        symbol="BTCUSDT",
        side="BUY",
        tier="",
        entry_price=1.0,
        close_price=1.0,
        quantity=1.0,
        leverage=1,
        pnl=0.0,
        pnl_percent=0.0,
        close_reason="auto_sync",
        opened_at="2024-01-01T00:00:00Z",
        closed_at="2024-01-01T00:01:00Z",
        duration_minutes=1,
    )
    assert await db.insert_history(rec) is not None
    assert await db.insert_history(rec) is None
    assert len(await db.get_history_for_position(pid)) == 1


async def test_live_position_refreshes_pnl_above_epsilon(db, exchange, clock):
    pid = await add_position(db, unrealised_pnl=1.0)
    exchange.positions = [LivePosition(symbol="BTCUSDT", side="BUY", size=0.01, unrealised_pnl=1.5)]

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert (result.checked, result.closed, result.still_open) == (1, 0, 1)
    pos = await db.get_position(pid)
    assert pos.status == "open"
    assert pos.unrealised_pnl == pytest.approx(1.5)
    assert pos.last_updated == "2024-01-01T01:00:00.000Z"
    assert pos.closed_at is None and pos.close_reason is None
    assert await _count(db, "position_history") == 0


async def test_live_position_within_epsilon_is_untouched(db, exchange, clock):
    pid = await add_position(db, unrealised_pnl=1.0)
    before = await db.get_position(pid)
    exchange.positions = [LivePosition(symbol="BTCUSDT", side="BUY", size=0.01, unrealised_pnl=1.005)]

    await PositionReconciler(db, exchange, clock=clock).reconcile()

    after = await db.get_position(pid)
    assert after.unrealised_pnl == pytest.approx(1.0)
    assert after.last_updated == before.last_updated


async def test_side_is_part_of_the_match_key(db, exchange, clock):
    pid = await add_position(db, side="SELL")
    exchange.positions = [LivePosition(symbol="BTCUSDT", side="BUY", size=0.01, unrealised_pnl=0.0)]

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert result.closed == 1
    assert (await db.get_position(pid)).status == "closed"


async def test_ledger_symbol_is_translated_to_exchange_spelling(db, exchange, clock):
    pid = await add_position(db, symbol="eth")
    exchange.positions = [LivePosition(symbol="ETHUSDT", side="BUY", size=1.0, unrealised_pnl=0.0)]

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert result.still_open == 1
    assert (await db.get_position(pid)).status == "open"


async def test_partial_close_is_reconciled_and_closed_rows_are_ignored(db, exchange, clock):
    partial = await add_position(db, status="partial_close")
    done = await add_position(db, symbol="SOLUSDT", status="closed")

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert result.checked == 1
    assert (await db.get_position(partial)).status == "closed"
    assert await db.get_history_for_position(done) == []


async def test_zero_margin_gives_zero_percent(db, exchange, clock):
    pid = await add_position(db, initial_margin=0.0, unrealised_pnl=-3.0)

    await PositionReconciler(db, exchange, clock=clock).reconcile()

    h = (await db.get_history_for_position(pid))[0]
    assert h.pnl == pytest.approx(-3.0)
    assert h.pnl_percent == 0.0


async def test_exchange_failure_leaves_ledger_untouched(db, exchange, clock):
    pid = await add_position(db, unrealised_pnl=2.0)
    exchange.fail_list = TransportFailure("Bybit API error: 502 - bad gateway")

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert result.success is False
    assert "Failed to fetch Bybit positions" in result.message
    assert result.checked == 0
    pos = await db.get_position(pid)
    assert pos.status == "open"
    assert pos.unrealised_pnl == pytest.approx(2.0)
    assert await _count(db, "position_history") == 0
    assert await _count(db, "bot_actions") == 0


async def test_one_failing_position_does_not_stop_the_run(db, exchange, clock, monkeypatch):
    bad = await add_position(db, symbol="BTCUSDT")
    good = await add_position(db, symbol="ETHUSDT")

    original = db.insert_history

    async def flaky_insert(rec):
        if rec.position_id == bad:
            raise RuntimeError("disk I/O error")
        return await original(rec)

    monkeypatch.setattr(db, "insert_history", flaky_insert)

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert result.success is True
    assert result.checked == 2
    assert result.closed == 1
    assert result.errors == ["Failed to sync BTCUSDT BUY: disk I/O error"]
    assert (await db.get_position(bad)).status == "open"
    assert (await db.get_position(good)).status == "closed"


async def test_symbol_translation_error_is_isolated_per_position(db, exchange, clock, monkeypatch):
    first = await add_position(db, symbol="BTCUSDT")
    broken = await add_position(db, symbol="???")
    last = await add_position(db, symbol="ETHUSDT")
    translate = exchange.to_exchange_symbol

    def strict_symbol(symbol: str) -> str:
        if symbol == "???":
            raise ValueError("unknown symbol ???")
        return translate(symbol)

    monkeypatch.setattr(exchange, "to_exchange_symbol", strict_symbol)

    result = await PositionReconciler(db, exchange, clock=clock).reconcile()

    assert result.checked == 3
    assert result.closed == 2
    assert result.errors == ["Failed to sync ??? BUY: unknown symbol ???"]
    assert (await db.get_position(first)).status == "closed"
    assert (await db.get_position(broken)).status == "open"
    assert (await db.get_position(last)).status == "closed"


def test_pnl_percent_guards_non_positive_margin():
    assert pnl_percent(5.0, 50.0) == pytest.approx(10.0)
    assert pnl_percent(5.0, 0.0) == 0.0
    assert pnl_percent(5.0, -1.0) == 0.0


def test_duration_minutes_floors():
    assert duration_minutes("2024-01-01T00:00:00Z", NOW_MS) == 60
    assert duration_minutes("2024-01-01T00:59:01Z", NOW_MS) == 0
