from __future__ import annotations

import logging
from typing import Callable, Dict, Tuple

from ..db import Database
from ..exchange.interfaces import IExchangeAdapter
from ..models import (
    ACTIVE_STATUSES,
    CLOSE_REASON_AUTO_SYNC,
    LivePosition,
    Position,
    SyncResult,
)
from ..timeutil import ms_to_iso, now_ms
from .ledger_ops import archive_and_close


logger = logging.getLogger(__name__)


class PositionReconciler:
    """
    Converge the ledger's open/partial_close positions with the exchange.

    A ledger position the exchange no longer reports is archived and closed
    with reason auto_sync. Positions still live get their unrealised PnL
    refreshed. Runs are not safe against each other; callers serialize them.
    """

    def __init__(
        self,
        db: Database,
        exchange: IExchangeAdapter,
        pnl_epsilon: float = 0.01,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._db = db
        self._exchange = exchange
        self._pnl_epsilon = pnl_epsilon
        self._clock = clock

    async def reconcile(self) -> SyncResult:
        positions = await self._db.get_positions_by_status(ACTIVE_STATUSES)
        logger.info("Sync: %d open/partial positions in ledger", len(positions))

        try:
            live = await self._exchange.list_open_positions()
        except Exception as exc:
            logger.exception("Sync: failed to fetch exchange positions")
            return SyncResult(success=False, message=f"Failed to fetch Bybit positions: {exc}")

        live_by_key: Dict[Tuple[str, str], LivePosition] = {(p.symbol, p.side): p for p in live}
        result = SyncResult(success=True, message="Position sync completed")

        for pos in positions:
            result.checked += 1
            try:
                key = (self._exchange.to_exchange_symbol(pos.symbol), pos.side.upper())
                match = live_by_key.get(key)
                if match is None:
                    if await self._close_synced(pos):
                        result.closed += 1
                else:
                    result.still_open += 1
                    await self._refresh_pnl(pos, match)
            except Exception as exc:
                msg = f"Failed to sync {pos.symbol} {pos.side}: {exc}"
                logger.exception("Sync: %s", msg)
                result.errors.append(msg)

        logger.info(
            "Sync complete: checked=%d closed=%d still_open=%d errors=%d",
            result.checked,
            result.closed,
            result.still_open,
            len(result.errors),
        )
        return result

    async def _close_synced(self, pos: Position) -> bool:
        logger.info("Sync: %s %s (#%d) is closed on exchange", pos.symbol, pos.side, pos.id)
        # Exit fill is unknown here; last marked PnL stands in for the realized one.
        return await archive_and_close(
            self._db,
            pos,
            pnl=pos.unrealised_pnl,
            close_price=pos.entry_price,
            close_reason=CLOSE_REASON_AUTO_SYNC,
            closed_ms=self._clock(),
            details={"message": "Position closed on Bybit, synced to database"},
        )

    async def _refresh_pnl(self, pos: Position, live: LivePosition) -> None:
        if abs(live.unrealised_pnl - pos.unrealised_pnl) <= self._pnl_epsilon:
            return
        await self._db.update_position(
            pos.id,
            unrealised_pnl=live.unrealised_pnl,
            last_updated=ms_to_iso(self._clock()),
        )
        logger.info("Sync: updated PnL for %s: %s", pos.symbol, live.unrealised_pnl)
