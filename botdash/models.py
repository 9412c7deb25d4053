from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


STATUS_OPEN = "open"
STATUS_PARTIAL_CLOSE = "partial_close"
STATUS_CLOSED = "closed"
ACTIVE_STATUSES = (STATUS_OPEN, STATUS_PARTIAL_CLOSE)

CLOSE_REASON_AUTO_SYNC = "auto_sync"
CLOSE_REASON_MANUAL = "manual_close"
CLOSE_REASON_MANUAL_ALL = "manual_close_all"

LOG_LEVELS = ("critical", "error", "warning", "info", "success")


@dataclass(frozen=True, slots=True)
class ExchangeCredentials:
    api_key: str
    api_secret: str
    exchange: str = "bybit"
    environment: str = "mainnet"

    @property
    def masked_key(self) -> str:
        return f"{self.api_key[:8]}..." if self.api_key else "N/A"


@dataclass(slots=True)
class Position:
    id: int
    symbol: str
    side: str  # BUY/SELL
    entry_price: float
    quantity: float
    leverage: int
    initial_margin: float
    unrealised_pnl: float
    status: str  # open/partial_close/closed
    opened_at: str
    last_updated: str
    tier: str = ""
    stop_loss: float = 0.0
    tp1_price: Optional[float] = None
    tp2_price: Optional[float] = None
    tp3_price: Optional[float] = None
    tp1_hit: bool = False
    tp2_hit: bool = False
    tp3_hit: bool = False
    confirmation_count: int = 1
    closed_at: Optional[str] = None
    close_reason: Optional[str] = None
    alert_id: Optional[int] = None
    alert_data: Optional[str] = None
    bybit_order_id: Optional[str] = None


@dataclass(slots=True)
class NewPosition:
    symbol: str
    side: str
    entry_price: float
    quantity: float
    leverage: int
    initial_margin: float
    opened_at: str
    tier: str = ""
    stop_loss: float = 0.0
    tp1_price: Optional[float] = None
    tp2_price: Optional[float] = None
    tp3_price: Optional[float] = None
    unrealised_pnl: float = 0.0
    status: str = STATUS_OPEN
    confirmation_count: int = 1
    bybit_order_id: Optional[str] = None


@dataclass(slots=True)
class HistoryRecord:
    position_id: Optional[int]
    symbol: str
    side: str
    tier: str
    entry_price: float
    close_price: float
    quantity: float
    leverage: int
    pnl: float
    pnl_percent: float
    close_reason: str
    opened_at: str
    closed_at: str
    duration_minutes: Optional[int]
    tp1_hit: bool = False
    tp2_hit: bool = False
    tp3_hit: bool = False
    confirmation_count: int = 1
    alert_id: Optional[int] = None
    alert_data: Optional[str] = None
    id: Optional[int] = None


@dataclass(slots=True)
class AlertEvent:
    id: int
    timestamp: int  # epoch ms
    symbol: str
    side: Optional[str]
    tier: str = ""
    strength: float = 0.0
    entry_price: float = 0.0
    sl: float = 0.0
    tp1: float = 0.0
    tp2: float = 0.0
    tp3: float = 0.0
    main_tp: float = 0.0
    atr: float = 0.0
    volume_ratio: float = 0.0
    session: str = ""
    regime: str = ""
    regime_confidence: float = 0.0
    mtf_agreement: float = 0.0
    leverage: int = 0
    in_ob: bool = False
    in_fvg: bool = False
    ob_score: float = 0.0
    fvg_score: float = 0.0
    institutional_flow: Optional[float] = None
    accumulation: Optional[float] = None
    volume_climax: Optional[bool] = None
    latency: int = 0
    execution_status: str = "pending"


# Stored alert_data JSON keys, in the order the dashboard reads them.
_SNAPSHOT_KEYS = (
    ("symbol", "symbol"),
    ("side", "side"),
    ("tier", "tier"),
    ("strength", "strength"),
    ("entry_price", "entryPrice"),
    ("sl", "sl"),
    ("tp1", "tp1"),
    ("tp2", "tp2"),
    ("tp3", "tp3"),
    ("main_tp", "mainTp"),
    ("atr", "atr"),
    ("volume_ratio", "volumeRatio"),
    ("session", "session"),
    ("regime", "regime"),
    ("regime_confidence", "regimeConfidence"),
    ("mtf_agreement", "mtfAgreement"),
    ("leverage", "leverage"),
    ("in_ob", "inOb"),
    ("in_fvg", "inFvg"),
    ("ob_score", "obScore"),
    ("fvg_score", "fvgScore"),
    ("institutional_flow", "institutionalFlow"),
    ("accumulation", "accumulation"),
    ("volume_climax", "volumeClimax"),
    ("latency", "latency"),
)


@dataclass(frozen=True, slots=True)
class AlertSnapshot:
    """Subset of an AlertEvent copied onto a matched position or history row."""

    symbol: str
    side: Optional[str]
    tier: str
    strength: float
    entry_price: float
    sl: float
    tp1: float
    tp2: float
    tp3: float
    main_tp: float
    atr: float
    volume_ratio: float
    session: str
    regime: str
    regime_confidence: float
    mtf_agreement: float
    leverage: int
    in_ob: bool
    in_fvg: bool
    ob_score: float
    fvg_score: float
    institutional_flow: Optional[float]
    accumulation: Optional[float]
    volume_climax: Optional[bool]
    latency: int

    @classmethod
    def from_event(cls, a: AlertEvent) -> "AlertSnapshot":
        return cls(**{name: getattr(a, name) for name, _ in _SNAPSHOT_KEYS})

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, name) for name, key in _SNAPSHOT_KEYS}


@dataclass(slots=True)
class BotAction:
    action_type: str
    reason: str
    success: bool
    created_at: str
    symbol: Optional[str] = None
    side: Optional[str] = None
    position_id: Optional[int] = None
    details: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


@dataclass(slots=True)
class BotLog:
    timestamp: int
    level: str  # one of LOG_LEVELS
    action: str
    message: str
    details: Optional[Dict[str, Any]] = None
    position_id: Optional[int] = None


@dataclass(slots=True)
class LivePosition:
    symbol: str  # exchange spelling
    side: str  # BUY/SELL
    size: float
    unrealised_pnl: float
    mark_price: Optional[float] = None
    avg_price: Optional[float] = None
    leverage: Optional[float] = None


@dataclass(slots=True)
class SyncResult:
    success: bool
    message: str
    checked: int = 0
    closed: int = 0
    still_open: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "results": {
                "checked": self.checked,
                "closed": self.closed,
                "stillOpen": self.still_open,
                "errors": list(self.errors),
            },
        }


@dataclass(slots=True)
class MatchDetail:
    position_id: int
    symbol: str
    side: Optional[str]
    opened_at: str
    matched: bool
    alert_id: Optional[int] = None
    alert_timestamp: Optional[str] = None
    alert_status: Optional[str] = None
    time_diff_ms: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "positionId": self.position_id,
            "symbol": self.symbol,
            "side": self.side,
            "openedAt": self.opened_at,
            "matched": self.matched,
        }
        if self.matched:
            out["alertId"] = self.alert_id
            out["alertTimestamp"] = self.alert_timestamp
            out["alertStatus"] = self.alert_status
            out["timeDiffMs"] = self.time_diff_ms
        else:
            out["reason"] = self.reason
        return out


@dataclass(slots=True)
class MatchResult:
    success: bool
    message: str
    matched: int = 0
    unmatched: int = 0
    total: int = 0
    details: List[MatchDetail] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "total": self.total,
            "details": [d.to_dict() for d in self.details],
        }


@dataclass(slots=True)
class CloseResult:
    success: bool
    message: str
    position_id: int
    order_id: Optional[str] = None
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    archived: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "positionId": self.position_id,
            "orderId": self.order_id,
            "pnl": self.pnl,
            "pnlPercent": self.pnl_percent,
            "archived": self.archived,
        }


@dataclass(slots=True)
class CloseAllResult:
    success: bool
    message: str
    total: int = 0
    positions_closed: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)
    notified: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "results": {
                "total": self.total,
                "positionsClosed": self.positions_closed,
                "errors": list(self.errors),
                "details": list(self.details),
                "notified": self.notified,
            },
        }


@dataclass(slots=True)
class NotifyResult:
    success: bool
    channels_sent: int = 0
    message_id: Optional[str] = None
    error: Optional[str] = None
