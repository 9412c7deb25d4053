from __future__ import annotations

import json

import pytest

from botdash.models import AlertEvent, AlertSnapshot, HistoryRecord
from botdash.services.alert_matcher import UNMATCHED_REASON, AlertMatcher, find_matching_alert
from botdash.timeutil import iso_to_ms

from conftest import add_alert, add_position


async def add_history(db, opened_at="2024-01-01T00:00:05Z", symbol="BTCUSDT", side="BUY", **extra) -> int:
    pid = await add_position(db, symbol=symbol, side=side, opened_at=opened_at, status="closed")
    hid = await db.insert_history(
        HistoryRecord(
            position_id=pid,
            symbol=symbol,
            side=side,
            tier="Standard",
            entry_price=42000.0,
            close_price=42300.0,
            quantity=0.01,
            leverage=10,
            pnl=3.0,
            pnl_percent=7.1,
            close_reason="auto_sync",
            opened_at=opened_at,
            closed_at="2024-01-01T00:45:00Z",
            duration_minutes=44,
            **extra,
        )
    )
    return hid


async def history_row(db, hid: int):
    return await db.fetchone("SELECT * FROM position_history WHERE id=?", (hid,))


async def test_alert_within_window_is_attached(db):
    hid = await add_history(db)
    aid = await add_alert(db)

    result = await AlertMatcher(db).match_history()

    assert (result.matched, result.unmatched, result.total) == (1, 0, 1)
    row = await history_row(db, hid)
    assert row["alert_id"] == aid
    data = json.loads(row["alert_data"])
    assert data["symbol"] == "BTCUSDT"
    assert data["tier"] == "Standard"
    assert data["entryPrice"] == pytest.approx(42000.0)
    assert data["inOb"] is True
    assert data["institutionalFlow"] is None
    detail = result.details[0]
    assert detail.matched is True
    assert detail.position_id == hid
    assert detail.alert_id == aid
    assert detail.time_diff_ms == 2000
    assert detail.alert_timestamp == "2024-01-01T00:00:03.000Z"


async def test_alert_outside_window_is_not_attached(db):
    hid = await add_history(db, opened_at="2024-01-01T00:00:18Z")
    await add_alert(db)  # 15s earlier

    result = await AlertMatcher(db).match_history()

    assert (result.matched, result.unmatched, result.total) == (0, 1, 1)
    row = await history_row(db, hid)
    assert row["alert_id"] is None
    assert row["alert_data"] is None
    assert result.details[0].reason == UNMATCHED_REASON


async def test_window_edge_is_inclusive(db):
    hid = await add_history(db, opened_at="2024-01-01T00:00:13Z")
    aid = await add_alert(db)  # exactly 10s

    await AlertMatcher(db).match_history()

    assert (await history_row(db, hid))["alert_id"] == aid


async def test_symbol_must_match_exactly(db):
    await add_history(db)
    await add_alert(db, symbol="btcusdt")
    await add_alert(db, symbol="ETHUSDT")

    result = await AlertMatcher(db).match_history()

    assert result.matched == 0


async def test_side_compared_case_insensitively(db):
    hid = await add_history(db, side="BUY")
    await add_alert(db, side="SELL")
    aid = await add_alert(db, side="buy")

    await AlertMatcher(db).match_history()

    assert (await history_row(db, hid))["alert_id"] == aid


async def test_missing_side_is_not_a_constraint(db):
    hid = await add_history(db)
    aid = await add_alert(db, side="")

    await AlertMatcher(db).match_history()

    assert (await history_row(db, hid))["alert_id"] == aid


async def test_first_plausible_alert_wins_over_closer_one(db):
    hid = await add_history(db)
    first = await add_alert(db, timestamp=iso_to_ms("2024-01-01T00:00:13Z"))  # 8s
    await add_alert(db, timestamp=iso_to_ms("2024-01-01T00:00:05Z"))  # exact

    result = await AlertMatcher(db).match_history()

    assert (await history_row(db, hid))["alert_id"] == first
    assert result.details[0].time_diff_ms == 8000


async def test_matched_rows_drop_out_of_later_runs(db):
    await add_history(db)
    await add_alert(db)
    matcher = AlertMatcher(db)

    await matcher.match_history()
    second = await matcher.match_history()

    assert second.total == 0
    assert second.matched == 0
    assert second.details == []


async def test_row_with_alert_data_but_no_alert_id_is_a_candidate(db):
    hid = await add_history(db, alert_data='{"symbol": "BTCUSDT"}')
    aid = await add_alert(db)

    result = await AlertMatcher(db).match_history()

    assert result.total == 1
    assert (await history_row(db, hid))["alert_id"] == aid


async def test_open_positions_use_wider_window(db):
    pid = await add_position(db, opened_at="2024-01-01T00:00:28Z")
    aid = await add_alert(db)  # 25s earlier

    history = await AlertMatcher(db).match_history()
    open_result = await AlertMatcher(db).match_open()

    assert history.total == 0
    assert open_result.matched == 1
    pos = await db.get_position(pid)
    assert pos.alert_id == aid
    assert json.loads(pos.alert_data)["side"] == "BUY"


async def test_custom_window(db):
    hid = await add_history(db, opened_at="2024-01-01T00:00:18Z")
    aid = await add_alert(db)

    await AlertMatcher(db, history_window_ms=20_000).match_history()

    assert (await history_row(db, hid))["alert_id"] == aid


def _event(**kw) -> AlertEvent:
    base = dict(id=1, timestamp=1_000_000, symbol="BTCUSDT", side="BUY")
    base.update(kw)
    return AlertEvent(**base)


def test_find_matching_alert_rules():
    events = [
        _event(id=1, symbol="ETHUSDT"),
        _event(id=2, timestamp=1_020_000),
        _event(id=3, side="SELL"),
        _event(id=4, side=None),
        _event(id=5),
    ]

    found = find_matching_alert("BTCUSDT", "BUY", 1_000_500, events, 10_000)
    assert found is not None
    alert, diff = found
    assert alert.id == 4
    assert diff == 500

    assert find_matching_alert("BTCUSDT", "BUY", 2_000_000, events, 10_000) is None
    assert find_matching_alert("BTCUSDT", None, 1_000_000, events, 10_000)[0].id == 3


def test_snapshot_keeps_python_names_and_stores_dashboard_keys():
    snap = AlertSnapshot.from_event(_event(entry_price=42000.0, main_tp=43000.0, volume_ratio=1.8, in_ob=True))

    assert snap.entry_price == pytest.approx(42000.0)
    assert snap.main_tp == pytest.approx(43000.0)
    data = snap.to_dict()
    assert data["entryPrice"] == pytest.approx(42000.0)
    assert data["mainTp"] == pytest.approx(43000.0)
    assert data["volumeRatio"] == pytest.approx(1.8)
    assert data["inOb"] is True
    assert "entry_price" not in data
    assert "execution_status" not in data
