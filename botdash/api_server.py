from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, load_settings
from .db import Database
from .errors import ConfigurationMissing, ExchangePositionNotFound, PositionNotOpen, TransportFailure
from .exchange import BybitRestClient, IExchangeAdapter
from .models import LOG_LEVELS, ExchangeCredentials
from .notifier import Notifier
from .services.alert_matcher import AlertMatcher
from .services.close_service import CloseService
from .services.credentials import resolve_credentials
from .services.reconciler import PositionReconciler
from .timeutil import iso_now


logger = logging.getLogger(__name__)

ExchangeFactory = Callable[[ExchangeCredentials], IExchangeAdapter]

settings = load_settings()
app = FastAPI(title="botdash", root_path=settings.api.base_path or "")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.cors_allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Single-flight guards: one sync and one match run per process at a time.
_locks: Dict[str, asyncio.Lock] = {
    "sync": asyncio.Lock(),
    "match_history": asyncio.Lock(),
    "match_open": asyncio.Lock(),
    "close_all": asyncio.Lock(),
}


class ClosePositionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    position_id: int = Field(alias="positionId")


class CredentialsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(alias="apiKey", min_length=1)
    api_secret: str = Field(alias="apiSecret", min_length=1)
    environment: str = "mainnet"
    sms_phone: Optional[str] = Field(default=None, alias="smsPhone")


def get_settings() -> Settings:
    return settings


async def get_db() -> AsyncIterator[Database]:
    db = Database(settings.storage.sqlite_path)
    await db.connect()
    try:
        yield db
    finally:
        await db.close()


def _bybit_factory(creds: ExchangeCredentials) -> IExchangeAdapter:
    return BybitRestClient(
        creds,
        base_url=settings.bybit.rest_base if creds.environment == "mainnet" else None,
        recv_window=settings.bybit.recv_window,
        timeout=settings.bybit.timeout,
    )


def get_exchange_factory() -> ExchangeFactory:
    return _bybit_factory


def _fail(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "message": message, **extra}, status_code=status_code)


def _busy(name: str) -> JSONResponse:
    return _fail(f"{name} already running", 409)


async def _close_exchange(exchange: IExchangeAdapter) -> None:
    aclose = getattr(exchange, "aclose", None)
    if aclose is not None:
        await aclose()


@app.on_event("startup")
async def _startup() -> None:
    db = Database(settings.storage.sqlite_path)
    try:
        await db.init_schema()
    finally:
        await db.close()


@app.get("/api/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "timestamp": iso_now()}


@app.post("/api/bot/sync-positions")
async def sync_positions(
    db: Database = Depends(get_db),
    cfg: Settings = Depends(get_settings),
    factory: ExchangeFactory = Depends(get_exchange_factory),
):
    lock = _locks["sync"]
    if lock.locked():
        return _busy("Position sync")
    async with lock:
        try:
            creds = await resolve_credentials(db, cfg)
        except ConfigurationMissing as exc:
            return _fail(str(exc), 400)
        exchange = factory(creds)
        try:
            result = await PositionReconciler(db, exchange, pnl_epsilon=cfg.sync.pnl_epsilon).reconcile()
        except Exception as exc:
            logger.exception("Sync failed")
            return _fail(f"Sync failed: {exc}", 500)
        finally:
            await _close_exchange(exchange)
    if not result.success:
        return JSONResponse(result.to_dict(), status_code=500)
    return result.to_dict()


@app.post("/api/bot/match-alerts-to-history")
async def match_alerts_to_history(
    db: Database = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    lock = _locks["match_history"]
    if lock.locked():
        return _busy("Alert matching")
    async with lock:
        matcher = AlertMatcher(db, cfg.matching.history_window_ms, cfg.matching.open_window_ms)
        try:
            result = await matcher.match_history()
        except Exception as exc:
            logger.exception("Match alerts to history failed")
            return _fail(str(exc), 500)
    return result.to_dict()


@app.post("/api/bot/match-alerts-to-open")
async def match_alerts_to_open(
    db: Database = Depends(get_db),
    cfg: Settings = Depends(get_settings),
):
    lock = _locks["match_open"]
    if lock.locked():
        return _busy("Alert matching")
    async with lock:
        matcher = AlertMatcher(db, cfg.matching.history_window_ms, cfg.matching.open_window_ms)
        try:
            result = await matcher.match_open()
        except Exception as exc:
            logger.exception("Match alerts to open positions failed")
            return _fail(str(exc), 500)
    return result.to_dict()


@app.post("/api/exchange/close-position")
async def close_position(
    body: ClosePositionRequest,
    db: Database = Depends(get_db),
    cfg: Settings = Depends(get_settings),
    factory: ExchangeFactory = Depends(get_exchange_factory),
):
    try:
        creds = await resolve_credentials(db, cfg)
    except ConfigurationMissing as exc:
        return _fail(str(exc), 400)
    exchange = factory(creds)
    try:
        result = await CloseService(db, exchange).close_position(body.position_id)
    except PositionNotOpen as exc:
        return _fail(str(exc), 404 if exc.status is None else 409)
    except ExchangePositionNotFound as exc:
        return _fail(str(exc), 404)
    except TransportFailure as exc:
        logger.error("Close position #%d failed: %s", body.position_id, exc)
        return _fail(str(exc), 500)
    finally:
        await _close_exchange(exchange)
    if not result.success:
        return JSONResponse(result.to_dict(), status_code=500)
    return result.to_dict()


@app.post("/api/exchange/close-all-positions")
async def close_all_positions(
    db: Database = Depends(get_db),
    cfg: Settings = Depends(get_settings),
    factory: ExchangeFactory = Depends(get_exchange_factory),
):
    lock = _locks["close_all"]
    if lock.locked():
        return _busy("Close all")
    async with lock:
        try:
            creds = await resolve_credentials(db, cfg)
        except ConfigurationMissing as exc:
            return _fail(str(exc), 400)
        row = await db.get_bot_settings()
        notifier = Notifier(db, cfg.notifier, sms_phone=row["sms_phone"] if row is not None else None)
        exchange = factory(creds)
        try:
            result = await CloseService(db, exchange, notifier).close_all_positions()
        except Exception as exc:
            logger.exception("Close all positions failed")
            return _fail(str(exc) or "Unknown error", 500)
        finally:
            await _close_exchange(exchange)
    return result.to_dict()


@app.get("/api/exchange/positions")
async def exchange_positions(
    db: Database = Depends(get_db),
    cfg: Settings = Depends(get_settings),
    factory: ExchangeFactory = Depends(get_exchange_factory),
):
    try:
        creds = await resolve_credentials(db, cfg)
    except ConfigurationMissing as exc:
        return _fail(str(exc), 400)
    exchange = factory(creds)
    try:
        positions = await exchange.list_open_positions()
    except TransportFailure as exc:
        return _fail(str(exc), 500)
    finally:
        await _close_exchange(exchange)
    return {"success": True, "positions": [asdict(p) for p in positions]}


@app.get("/api/bot/positions")
async def bot_positions(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    rows = await db.get_positions(status=status, limit=limit)
    return {"success": True, "positions": [dict(r) for r in rows]}


@app.get("/api/bot/history")
async def bot_history(
    limit: int = Query(100, ge=1, le=1000),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    records = await db.get_history(limit=limit)
    return {"success": True, "history": [asdict(h) for h in records]}


@app.get("/api/bot/actions")
async def bot_actions(
    limit: int = Query(100, ge=1, le=1000),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    rows = await db.get_bot_actions(limit=limit)
    return {"success": True, "actions": [dict(r) for r in rows]}


@app.get("/api/bot/logs")
async def bot_logs(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    level: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    db: Database = Depends(get_db),
):
    if level is not None and level not in LOG_LEVELS:
        return _fail(f"Level must be one of: {', '.join(LOG_LEVELS)}", 400)
    rows, total = await db.get_bot_logs(limit=limit, offset=offset, level=level, action=action)
    return {"success": True, "logs": [dict(r) for r in rows], "total": total, "limit": limit, "offset": offset}


@app.get("/api/alerts")
async def alerts(
    limit: int = Query(100, ge=1, le=1000),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    rows = await db.get_alerts(limit=limit)
    return {"success": True, "alerts": [dict(r) for r in rows]}


@app.post("/api/bot/credentials")
async def save_credentials(body: CredentialsRequest, db: Database = Depends(get_db)) -> Dict[str, Any]:
    await db.save_credentials(
        body.api_key,
        body.api_secret,
        updated_at=iso_now(),
        environment=body.environment,
        sms_phone=body.sms_phone,
    )
    return {"success": True, "message": "Credentials saved"}
