from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import (
    ACTIVE_STATUSES,
    STATUS_CLOSED,
    AlertEvent,
    AlertSnapshot,
    BotAction,
    BotLog,
    HistoryRecord,
    NewPosition,
    Position,
)


logger = logging.getLogger(__name__)

_POSITION_COLUMNS = {
    "alert_id",
    "tier",
    "stop_loss",
    "tp1_price",
    "tp2_price",
    "tp3_price",
    "tp1_hit",
    "tp2_hit",
    "tp3_hit",
    "unrealised_pnl",
    "confirmation_count",
    "last_updated",
    "bybit_order_id",
    "status",
    "alert_data",
}


def _row_to_position(r: aiosqlite.Row) -> Position:
    return Position(
        id=int(r["id"]),
        symbol=r["symbol"],
        side=r["side"],
        entry_price=float(r["entry_price"]),
        quantity=float(r["quantity"]),
        leverage=int(r["leverage"]),
        initial_margin=float(r["initial_margin"]),
        unrealised_pnl=float(r["unrealised_pnl"] or 0.0),
        status=r["status"],
        opened_at=r["opened_at"],
        last_updated=r["last_updated"],
        tier=r["tier"] or "",
        stop_loss=float(r["stop_loss"] or 0.0),
        tp1_price=float(r["tp1_price"]) if r["tp1_price"] is not None else None,
        tp2_price=float(r["tp2_price"]) if r["tp2_price"] is not None else None,
        tp3_price=float(r["tp3_price"]) if r["tp3_price"] is not None else None,
        tp1_hit=bool(r["tp1_hit"]),
        tp2_hit=bool(r["tp2_hit"]),
        tp3_hit=bool(r["tp3_hit"]),
        confirmation_count=int(r["confirmation_count"]),
        closed_at=r["closed_at"],
        close_reason=r["close_reason"],
        alert_id=int(r["alert_id"]) if r["alert_id"] is not None else None,
        alert_data=r["alert_data"],
        bybit_order_id=r["bybit_order_id"],
    )


def _row_to_history(r: aiosqlite.Row) -> HistoryRecord:
    return HistoryRecord(
        id=int(r["id"]),
        position_id=int(r["position_id"]) if r["position_id"] is not None else None,
        symbol=r["symbol"],
        side=r["side"],
        tier=r["tier"] or "",
        entry_price=float(r["entry_price"]),
        close_price=float(r["close_price"]),
        quantity=float(r["quantity"]),
        leverage=int(r["leverage"]),
        pnl=float(r["pnl"]),
        pnl_percent=float(r["pnl_percent"]),
        close_reason=r["close_reason"],
        opened_at=r["opened_at"],
        closed_at=r["closed_at"],
        duration_minutes=int(r["duration_minutes"]) if r["duration_minutes"] is not None else None,
        tp1_hit=bool(r["tp1_hit"]),
        tp2_hit=bool(r["tp2_hit"]),
        tp3_hit=bool(r["tp3_hit"]),
        confirmation_count=int(r["confirmation_count"]),
        alert_id=int(r["alert_id"]) if r["alert_id"] is not None else None,
        alert_data=r["alert_data"],
    )


def _row_to_alert(r: aiosqlite.Row) -> AlertEvent:
    return AlertEvent(
        id=int(r["id"]),
        timestamp=int(r["timestamp"]),
        symbol=r["symbol"],
        side=r["side"],
        tier=r["tier"] or "",
        strength=float(r["strength"]),
        entry_price=float(r["entry_price"]),
        sl=float(r["sl"]),
        tp1=float(r["tp1"]),
        tp2=float(r["tp2"]),
        tp3=float(r["tp3"]),
        main_tp=float(r["main_tp"]),
        atr=float(r["atr"]),
        volume_ratio=float(r["volume_ratio"]),
        session=r["session"],
        regime=r["regime"],
        regime_confidence=float(r["regime_confidence"]),
        mtf_agreement=float(r["mtf_agreement"]),
        leverage=int(r["leverage"]),
        in_ob=bool(r["in_ob"]),
        in_fvg=bool(r["in_fvg"]),
        ob_score=float(r["ob_score"]),
        fvg_score=float(r["fvg_score"]),
        institutional_flow=float(r["institutional_flow"]) if r["institutional_flow"] is not None else None,
        accumulation=float(r["accumulation"]) if r["accumulation"] is not None else None,
        volume_climax=bool(r["volume_climax"]) if r["volume_climax"] is not None else None,
        latency=int(r["latency"]),
        execution_status=r["execution_status"],
    )


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


class Database:
    def __init__(self, sqlite_path: str) -> None:
        self._sqlite_path = sqlite_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        if self._sqlite_path != ":memory:":
            Path(self._sqlite_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._sqlite_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys=ON")
        logger.info("DB connected: %s", self._sqlite_path)

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        logger.info("DB closed")

    async def init_schema(self) -> None:
        await self.connect()
        schema_path = Path(__file__).resolve().parent / "schema.sql"
        sql = schema_path.read_text(encoding="utf-8")
        await self._conn.executescript(sql)
        await self._conn.commit()
        logger.info("DB schema initialized from %s", schema_path)

    async def execute(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> int:
        """Run one statement in its own commit; returns the affected row count."""
        await self.connect()
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor.rowcount

    async def insert(self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()) -> Optional[int]:
        await self.connect()
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        if cursor.rowcount == 0:
            return None
        return int(cursor.lastrowid)

    async def fetchone(
        self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()
    ) -> Optional[aiosqlite.Row]:
        await self.connect()
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetchall(
        self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()
    ) -> List[aiosqlite.Row]:
        await self.connect()
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchall()

    # --- positions -------------------------------------------------------

    async def insert_position(self, p: NewPosition) -> int:
        sql = """
        INSERT INTO bot_positions (
          symbol, side, tier, entry_price, quantity, leverage, stop_loss,
          tp1_price, tp2_price, tp3_price, initial_margin, unrealised_pnl,
          confirmation_count, opened_at, last_updated, bybit_order_id, status
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            p.symbol,
            p.side,
            p.tier,
            p.entry_price,
            p.quantity,
            p.leverage,
            p.stop_loss,
            p.tp1_price,
            p.tp2_price,
            p.tp3_price,
            p.initial_margin,
            p.unrealised_pnl,
            p.confirmation_count,
            p.opened_at,
            p.opened_at,
            p.bybit_order_id,
            p.status,
        )
        return int(await self.insert(sql, params))

    async def get_position(self, position_id: int) -> Optional[Position]:
        row = await self.fetchone("SELECT * FROM bot_positions WHERE id=?", (position_id,))
        return _row_to_position(row) if row is not None else None

    async def get_positions_by_status(self, statuses: Iterable[str]) -> List[Position]:
        statuses = list(statuses)
        if not statuses:
            return []
        marks = ", ".join("?" for _ in statuses)
        rows = await self.fetchall(
            f"SELECT * FROM bot_positions WHERE status IN ({marks}) ORDER BY id ASC",
            statuses,
        )
        return [_row_to_position(r) for r in rows]

    async def get_positions(self, status: Optional[str] = None, limit: int = 100) -> List[aiosqlite.Row]:
        sql = "SELECT * FROM bot_positions"
        params: List[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY opened_at DESC LIMIT ?"
        params.append(limit)
        return await self.fetchall(sql, params)

    async def update_position(self, position_id: int, **fields: Any) -> int:
        unknown = set(fields) - _POSITION_COLUMNS
        if unknown:
            raise ValueError(f"unknown bot_positions columns: {sorted(unknown)}")
        if not fields:
            return 0
        assignments = ", ".join(f"{k}=?" for k in fields)
        params = [int(v) if isinstance(v, bool) else v for v in fields.values()]
        params.append(position_id)
        return await self.execute(f"UPDATE bot_positions SET {assignments} WHERE id=?", params)

    async def close_position(self, position_id: int, closed_at: str, close_reason: str) -> bool:
        """Move an open/partial_close row to closed. False if it was not active."""
        marks = ", ".join("?" for _ in ACTIVE_STATUSES)
        sql = f"""
        UPDATE bot_positions SET status=?, closed_at=?, close_reason=?, last_updated=?
        WHERE id=? AND status IN ({marks})
        """
        params = [STATUS_CLOSED, closed_at, close_reason, closed_at, position_id, *ACTIVE_STATUSES]
        return await self.execute(sql, params) > 0

    async def close_positions_matching(
        self, symbol: str, side: str, closed_at: str, close_reason: str
    ) -> int:
        marks = ", ".join("?" for _ in ACTIVE_STATUSES)
        sql = f"""
        UPDATE bot_positions SET status=?, closed_at=?, close_reason=?, last_updated=?
        WHERE symbol=? AND side=? AND status IN ({marks})
        """
        params = [STATUS_CLOSED, closed_at, close_reason, closed_at, symbol, side, *ACTIVE_STATUSES]
        return await self.execute(sql, params)

    async def get_open_positions_missing_alert(self) -> List[Position]:
        marks = ", ".join("?" for _ in ACTIVE_STATUSES)
        sql = f"""
        SELECT * FROM bot_positions
        WHERE status IN ({marks})
          AND (alert_data IS NULL OR alert_data = '' OR alert_id IS NULL)
        ORDER BY id ASC
        """
        rows = await self.fetchall(sql, ACTIVE_STATUSES)
        return [_row_to_position(r) for r in rows]

    async def set_position_alert(self, position_id: int, alert_id: int, snapshot: AlertSnapshot) -> None:
        await self.execute(
            "UPDATE bot_positions SET alert_data=?, alert_id=? WHERE id=?",
            (json.dumps(snapshot.to_dict()), alert_id, position_id),
        )

    # --- history ---------------------------------------------------------

    async def history_exists(self, position_id: int) -> bool:
        row = await self.fetchone(
            "SELECT 1 FROM position_history WHERE position_id=? LIMIT 1", (position_id,)
        )
        return row is not None

    async def insert_history(self, h: HistoryRecord) -> Optional[int]:
        """Archive a closed position. None when a row for position_id already exists."""
        sql = """
        INSERT OR IGNORE INTO position_history (
          position_id, alert_id, symbol, side, tier, entry_price, close_price,
          quantity, leverage, pnl, pnl_percent, close_reason, tp1_hit, tp2_hit,
          tp3_hit, confirmation_count, opened_at, closed_at, duration_minutes, alert_data
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            h.position_id,
            h.alert_id,
            h.symbol,
            h.side,
            h.tier,
            h.entry_price,
            h.close_price,
            h.quantity,
            h.leverage,
            h.pnl,
            h.pnl_percent,
            h.close_reason,
            1 if h.tp1_hit else 0,
            1 if h.tp2_hit else 0,
            1 if h.tp3_hit else 0,
            h.confirmation_count,
            h.opened_at,
            h.closed_at,
            h.duration_minutes,
            h.alert_data,
        )
        return await self.insert(sql, params)

    async def get_history_for_position(self, position_id: int) -> List[HistoryRecord]:
        rows = await self.fetchall(
            "SELECT * FROM position_history WHERE position_id=? ORDER BY id ASC", (position_id,)
        )
        return [_row_to_history(r) for r in rows]

    async def get_history(self, limit: int = 100) -> List[HistoryRecord]:
        rows = await self.fetchall(
            "SELECT * FROM position_history ORDER BY closed_at DESC, id DESC LIMIT ?", (limit,)
        )
        return [_row_to_history(r) for r in rows]

    async def get_history_missing_alert(self) -> List[HistoryRecord]:
        sql = """
        SELECT * FROM position_history
        WHERE alert_data IS NULL OR alert_data = '' OR alert_id IS NULL
        ORDER BY id ASC
        """
        rows = await self.fetchall(sql)
        return [_row_to_history(r) for r in rows]

    async def set_history_alert(self, history_id: int, alert_id: int, snapshot: AlertSnapshot) -> None:
        await self.execute(
            "UPDATE position_history SET alert_data=?, alert_id=? WHERE id=?",
            (json.dumps(snapshot.to_dict()), alert_id, history_id),
        )

    # --- alerts ----------------------------------------------------------

    async def get_alert_events(self) -> List[AlertEvent]:
        rows = await self.fetchall("SELECT * FROM alerts ORDER BY id ASC")
        return [_row_to_alert(r) for r in rows]

    async def get_alerts(self, limit: int = 100) -> List[aiosqlite.Row]:
        return await self.fetchall("SELECT * FROM alerts ORDER BY timestamp DESC LIMIT ?", (limit,))

    async def insert_alert_event(self, a: AlertEvent, created_at: str) -> int:
        sql = """
        INSERT INTO alerts (
          timestamp, symbol, side, tier, strength, entry_price, sl, tp1, tp2, tp3,
          main_tp, atr, volume_ratio, session, regime, regime_confidence, mtf_agreement,
          leverage, in_ob, in_fvg, ob_score, fvg_score, institutional_flow, accumulation,
          volume_climax, latency, execution_status, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            a.timestamp,
            a.symbol,
            a.side,
            a.tier,
            a.strength,
            a.entry_price,
            a.sl,
            a.tp1,
            a.tp2,
            a.tp3,
            a.main_tp,
            a.atr,
            a.volume_ratio,
            a.session,
            a.regime,
            a.regime_confidence,
            a.mtf_agreement,
            a.leverage,
            1 if a.in_ob else 0,
            1 if a.in_fvg else 0,
            a.ob_score,
            a.fvg_score,
            a.institutional_flow,
            a.accumulation,
            None if a.volume_climax is None else (1 if a.volume_climax else 0),
            a.latency,
            a.execution_status,
            created_at,
        )
        return int(await self.insert(sql, params))

    # --- audit & logs ----------------------------------------------------

    async def insert_bot_action(self, a: BotAction) -> int:
        sql = """
        INSERT INTO bot_actions (
          action_type, symbol, side, position_id, reason, details, success, error_message, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            a.action_type,
            a.symbol,
            a.side,
            a.position_id,
            a.reason,
            _dumps(a.details),
            1 if a.success else 0,
            a.error_message,
            a.created_at,
        )
        return int(await self.insert(sql, params))

    async def get_bot_actions(self, limit: int = 100) -> List[aiosqlite.Row]:
        return await self.fetchall(
            "SELECT * FROM bot_actions ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        )

    async def insert_bot_log(self, l: BotLog) -> int:
        sql = """
        INSERT INTO bot_logs (timestamp, level, action, message, details, position_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            l.timestamp,
            l.level,
            l.action,
            l.message,
            _dumps(l.details),
            l.position_id,
            l.timestamp,
        )
        return int(await self.insert(sql, params))

    async def get_bot_logs(
        self,
        limit: int = 50,
        offset: int = 0,
        level: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Tuple[List[aiosqlite.Row], int]:
        """Newest-first page of bot_logs plus the total count under the same filters."""
        where: List[str] = []
        params: List[Any] = []
        if level is not None:
            where.append("level = ?")
            params.append(level)
        if action is not None:
            where.append("action = ?")
            params.append(action)
        clause = f" WHERE {' AND '.join(where)}" if where else ""
        rows = await self.fetchall(
            f"SELECT * FROM bot_logs{clause} ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        total = await self.fetchone(f"SELECT COUNT(*) AS n FROM bot_logs{clause}", params)
        return rows, int(total["n"])

    # --- settings --------------------------------------------------------

    async def get_bot_settings(self) -> Optional[aiosqlite.Row]:
        return await self.fetchone("SELECT * FROM bot_settings ORDER BY id ASC LIMIT 1")

    async def save_credentials(
        self,
        api_key: str,
        api_secret: str,
        updated_at: str,
        environment: str = "mainnet",
        sms_phone: Optional[str] = None,
    ) -> None:
        row = await self.get_bot_settings()
        if row is None:
            await self.insert(
                """
                INSERT INTO bot_settings (api_key, api_secret, exchange, environment, sms_phone, created_at, updated_at)
                VALUES (?, ?, 'bybit', ?, ?, ?, ?)
                """,
                (api_key, api_secret, environment, sms_phone, updated_at, updated_at),
            )
            return
        await self.execute(
            """
            UPDATE bot_settings SET api_key=?, api_secret=?, environment=?,
              sms_phone=COALESCE(?, sms_phone), updated_at=?
            WHERE id=?
            """,
            (api_key, api_secret, environment, sms_phone, updated_at, row["id"]),
        )
