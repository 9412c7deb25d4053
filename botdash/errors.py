from __future__ import annotations


class BotdashError(Exception):
    """Base class for errors surfaced to API callers."""


class TransportFailure(BotdashError):
    """Exchange unreachable, non-success HTTP status, or a non-zero retCode."""

    def __init__(self, message: str, status_code: int | None = None, ret_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.ret_code = ret_code


class ConfigurationMissing(BotdashError):
    """Required credentials are absent; the caller has to fix configuration."""


class PositionNotOpen(BotdashError):
    def __init__(self, position_id: int, status: str | None = None) -> None:
        if status is None:
            msg = f"Position {position_id} not found"
        else:
            msg = f"Position {position_id} is {status}, not open"
        super().__init__(msg)
        self.position_id = position_id
        self.status = status


class ExchangePositionNotFound(BotdashError):
    """The exchange reports no live position for the requested symbol/side."""

    def __init__(self, symbol: str, side: str) -> None:
        super().__init__(f"No position found for {symbol} {side}")
        self.symbol = symbol
        self.side = side
