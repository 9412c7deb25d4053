from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..db import Database
from ..models import BotAction, HistoryRecord, Position
from ..timeutil import iso_to_ms, ms_to_iso


logger = logging.getLogger(__name__)


def pnl_percent(pnl: float, initial_margin: float) -> float:
    if initial_margin <= 0:
        return 0.0
    return pnl / initial_margin * 100


def duration_minutes(opened_at: str, closed_ms: int) -> int:
    return max(0, (closed_ms - iso_to_ms(opened_at)) // 60_000)


async def archive_and_close(
    db: Database,
    pos: Position,
    *,
    pnl: float,
    close_price: float,
    close_reason: str,
    closed_ms: int,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Archive pos to position_history (once per position id), move it to
    closed and write a position_closed audit row.

    Returns False when the row was no longer open/partial_close at the time
    of the transition; the archive row, if inserted, is kept.
    """
    closed_at = ms_to_iso(closed_ms)

    if await db.history_exists(pos.id):
        logger.info("History for position #%d already archived", pos.id)
    else:
        await db.insert_history(
            HistoryRecord(
                position_id=pos.id,
                alert_id=pos.alert_id,
                alert_data=pos.alert_data or None,
                symbol=pos.symbol,
                side=pos.side,
                tier=pos.tier,
                entry_price=pos.entry_price,
                close_price=close_price,
                quantity=pos.quantity,
                leverage=pos.leverage,
                pnl=pnl,
                pnl_percent=pnl_percent(pnl, pos.initial_margin),
                close_reason=close_reason,
                tp1_hit=pos.tp1_hit,
                tp2_hit=pos.tp2_hit,
                tp3_hit=pos.tp3_hit,
                confirmation_count=pos.confirmation_count,
                opened_at=pos.opened_at,
                closed_at=closed_at,
                duration_minutes=duration_minutes(pos.opened_at, closed_ms),
            )
        )

    if not await db.close_position(pos.id, closed_at, close_reason):
        logger.warning("Position #%d was already closed by another writer", pos.id)
        return False

    await db.insert_bot_action(
        BotAction(
            action_type="position_closed",
            symbol=pos.symbol,
            side=pos.side,
            position_id=pos.id,
            reason=close_reason,
            details={"positionId": pos.id, "pnl": pnl, **(details or {})},
            success=True,
            created_at=closed_at,
        )
    )
    return True
