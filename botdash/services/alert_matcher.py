from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from ..db import Database
from ..models import AlertEvent, AlertSnapshot, MatchDetail, MatchResult
from ..timeutil import iso_to_ms, ms_to_iso


logger = logging.getLogger(__name__)

UNMATCHED_REASON = "no matching alert found within window"


def find_matching_alert(
    symbol: str,
    side: Optional[str],
    opened_ms: int,
    alerts: Sequence[AlertEvent],
    window_ms: int,
) -> Optional[Tuple[AlertEvent, int]]:
    """
    First alert, in the order given, with the same symbol, a timestamp within
    window_ms of opened_ms and (when both are known) the same side.

    This is a first-plausible-match scan, not an optimal assignment: two
    records opened close together may both pick the same alert.
    """
    for alert in alerts:
        if alert.symbol != symbol:
            continue
        diff = abs(opened_ms - alert.timestamp)
        if diff > window_ms:
            continue
        if alert.side and side and alert.side.upper() != side.upper():
            continue
        return alert, diff
    return None


class AlertMatcher:
    def __init__(self, db: Database, history_window_ms: int = 10_000, open_window_ms: int = 30_000) -> None:
        self._db = db
        self._history_window_ms = history_window_ms
        self._open_window_ms = open_window_ms

    async def match_history(self) -> MatchResult:
        """Attach alerts to archived trades that have no alert linkage."""
        candidates = await self._db.get_history_missing_alert()
        logger.info("Match alerts: %d history rows without alert data", len(candidates))
        if not candidates:
            return MatchResult(success=True, message="All history positions already have alerts assigned")

        alerts = await self._db.get_alert_events()
        logger.info("Match alerts: %d alerts in database", len(alerts))

        result = MatchResult(success=True, message="", total=len(candidates))
        for rec in candidates:
            found = self._find(rec.id, rec.symbol, rec.side, rec.opened_at, alerts, self._history_window_ms, result)
            if found is None:
                continue
            alert, diff = found
            await self._db.set_history_alert(rec.id, alert.id, AlertSnapshot.from_event(alert))
            self._record_match(result, rec.id, rec.symbol, rec.side, rec.opened_at, alert, diff)

        result.message = f"Matched {result.matched} alerts to history positions"
        logger.info("Match alerts complete: matched=%d unmatched=%d", result.matched, result.unmatched)
        return result

    async def match_open(self) -> MatchResult:
        """Same policy for positions still open, with the wider open-position window."""
        candidates = await self._db.get_open_positions_missing_alert()
        logger.info("Match alerts (open): %d open positions without alert data", len(candidates))
        if not candidates:
            return MatchResult(success=True, message="All open positions already have alerts assigned")

        alerts = await self._db.get_alert_events()
        result = MatchResult(success=True, message="", total=len(candidates))
        for pos in candidates:
            found = self._find(pos.id, pos.symbol, pos.side, pos.opened_at, alerts, self._open_window_ms, result)
            if found is None:
                continue
            alert, diff = found
            await self._db.set_position_alert(pos.id, alert.id, AlertSnapshot.from_event(alert))
            self._record_match(result, pos.id, pos.symbol, pos.side, pos.opened_at, alert, diff)

        result.message = f"Matched {result.matched} alerts to open positions"
        logger.info("Match alerts (open) complete: matched=%d unmatched=%d", result.matched, result.unmatched)
        return result

    def _find(
        self,
        record_id: int,
        symbol: str,
        side: Optional[str],
        opened_at: str,
        alerts: Sequence[AlertEvent],
        window_ms: int,
        result: MatchResult,
    ) -> Optional[Tuple[AlertEvent, int]]:
        try:
            opened_ms = iso_to_ms(opened_at)
        except ValueError:
            logger.warning("Match alerts: #%d has unparseable openedAt %r", record_id, opened_at)
            self._record_miss(result, record_id, symbol, side, opened_at, f"invalid openedAt: {opened_at!r}")
            return None

        found = find_matching_alert(symbol, side, opened_ms, alerts, window_ms)
        if found is None:
            logger.info("Match alerts: no match for #%d (%s @ %s)", record_id, symbol, opened_at)
            self._record_miss(result, record_id, symbol, side, opened_at, UNMATCHED_REASON)
        return found

    @staticmethod
    def _record_match(
        result: MatchResult,
        record_id: int,
        symbol: str,
        side: Optional[str],
        opened_at: str,
        alert: AlertEvent,
        diff: int,
    ) -> None:
        result.matched += 1
        result.details.append(
            MatchDetail(
                position_id=record_id,
                symbol=symbol,
                side=side,
                opened_at=opened_at,
                matched=True,
                alert_id=alert.id,
                alert_timestamp=ms_to_iso(alert.timestamp),
                alert_status=alert.execution_status,
                time_diff_ms=diff,
            )
        )
        logger.info("Match alerts: #%d (%s) -> alert #%d (diff %dms)", record_id, symbol, alert.id, diff)

    @staticmethod
    def _record_miss(
        result: MatchResult,
        record_id: int,
        symbol: str,
        side: Optional[str],
        opened_at: str,
        reason: str,
    ) -> None:
        result.unmatched += 1
        result.details.append(
            MatchDetail(
                position_id=record_id,
                symbol=symbol,
                side=side,
                opened_at=opened_at,
                matched=False,
                reason=reason,
            )
        )
