from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from ..db import Database
from ..errors import PositionNotOpen, TransportFailure
from ..exchange.interfaces import IExchangeAdapter
from ..models import (
    ACTIVE_STATUSES,
    CLOSE_REASON_MANUAL,
    CLOSE_REASON_MANUAL_ALL,
    CloseAllResult,
    CloseResult,
    Position,
)
from ..notifier import Notifier, emergency_close_failure_message
from ..timeutil import now_ms
from .ledger_ops import archive_and_close, pnl_percent


logger = logging.getLogger(__name__)


class CloseService:
    def __init__(
        self,
        db: Database,
        exchange: IExchangeAdapter,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._db = db
        self._exchange = exchange
        self._notifier = notifier
        self._clock = clock

    async def close_position(self, position_id: int) -> CloseResult:
        pos = await self._db.get_position(position_id)
        if pos is None:
            raise PositionNotOpen(position_id)
        if pos.status not in ACTIVE_STATUSES:
            raise PositionNotOpen(position_id, pos.status)

        close_price = await self._price_or_entry(pos)
        # Exchange errors propagate before anything is written to the ledger.
        order_id = await self._exchange.close_position(pos.symbol, pos.side)

        pnl = await self._realized_or_last(pos, order_id)
        result = CloseResult(
            success=True,
            message=f"Position {pos.symbol} {pos.side} closed",
            position_id=pos.id,
            order_id=order_id,
            pnl=pnl,
            pnl_percent=pnl_percent(pnl, pos.initial_margin),
        )
        try:
            result.archived = await archive_and_close(
                self._db,
                pos,
                pnl=pnl,
                close_price=close_price,
                close_reason=CLOSE_REASON_MANUAL,
                closed_ms=self._clock(),
                details={"orderId": order_id},
            )
        except Exception as exc:
            logger.exception("Ledger update after closing #%d failed", pos.id)
            result.success = False
            result.message = f"Position closed on Bybit but ledger update failed: {exc}"
        return result

    async def close_all_positions(self) -> CloseAllResult:
        live = await self._exchange.list_open_positions()
        ledger = await self._db.get_positions_by_status(ACTIVE_STATUSES)
        by_key: Dict[Tuple[str, str], List[Position]] = defaultdict(list)
        for pos in ledger:
            by_key[(self._exchange.to_exchange_symbol(pos.symbol), pos.side.upper())].append(pos)

        result = CloseAllResult(success=True, message="", total=len(live))
        logger.info("Close all: %d live positions", len(live))

        for lp in live:
            try:
                order_id = await self._exchange.close_position(lp.symbol, lp.side, lp.size)
            except Exception as exc:
                logger.exception("Close all: failed to close %s %s", lp.symbol, lp.side)
                result.errors.append(f"Failed to close {lp.symbol}: {exc}")
                result.details.append(
                    {"symbol": lp.symbol, "side": lp.side, "action": "close_failed", "error": str(exc)}
                )
                continue

            result.positions_closed += 1
            result.details.append(
                {"symbol": lp.symbol, "side": lp.side, "action": "closed", "success": True, "orderId": order_id}
            )

            matches = by_key.get((lp.symbol, lp.side), [])
            for pos in matches:
                pnl = lp.unrealised_pnl if len(matches) == 1 else pos.unrealised_pnl
                try:
                    await archive_and_close(
                        self._db,
                        pos,
                        pnl=pnl,
                        close_price=lp.mark_price or pos.entry_price,
                        close_reason=CLOSE_REASON_MANUAL_ALL,
                        closed_ms=self._clock(),
                        details={"orderId": order_id},
                    )
                except Exception:
                    # The exchange side is closed; the next sync run settles the ledger.
                    logger.exception("Close all: ledger update for #%d failed", pos.id)

        failed = result.total - result.positions_closed
        if failed > 0:
            result.notified = await self._notify_failures(failed, result.total)

        result.message = f"Closed {result.positions_closed} positions"
        return result

    async def _price_or_entry(self, pos: Position) -> float:
        try:
            return await self._exchange.current_price(pos.symbol)
        except TransportFailure as exc:
            logger.warning("Price lookup for %s failed, using entry price: %s", pos.symbol, exc)
            return pos.entry_price

    async def _realized_or_last(self, pos: Position, order_id: str) -> float:
        try:
            realized = await self._exchange.realized_pnl(order_id, pos.symbol)
        except TransportFailure as exc:
            logger.warning("Realized PnL lookup for %s failed: %s", pos.symbol, exc)
            realized = None
        return pos.unrealised_pnl if realized is None else realized

    async def _notify_failures(self, failed: int, total: int) -> bool:
        if self._notifier is None:
            logger.warning("Close all: %d/%d closes failed and no notifier is configured", failed, total)
            return False
        try:
            sent = await self._notifier.notify(
                "critical", "emergency_close_failure", emergency_close_failure_message(failed, total)
            )
        except Exception:
            logger.exception("Close all: failure notification errored")
            return False
        if not sent.success:
            logger.warning("Close all: failure notification not delivered: %s", sent.error)
        return sent.success
