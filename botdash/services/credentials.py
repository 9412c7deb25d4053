from __future__ import annotations

import logging

from ..config import Settings
from ..db import Database
from ..errors import ConfigurationMissing
from ..models import ExchangeCredentials


logger = logging.getLogger(__name__)


async def resolve_credentials(db: Database, settings: Settings) -> ExchangeCredentials:
    """Credentials saved in bot_settings, falling back to the bybit config section."""
    row = await db.get_bot_settings()
    api_key = (row["api_key"] if row is not None else None) or settings.bybit.api_key
    api_secret = (row["api_secret"] if row is not None else None) or settings.bybit.api_secret
    if not api_key or not api_secret:
        raise ConfigurationMissing("Bybit API credentials not configured in bot settings")
    creds = ExchangeCredentials(
        api_key=api_key,
        api_secret=api_secret,
        exchange=(row["exchange"] if row is not None else None) or "bybit",
        environment=(row["environment"] if row is not None else None) or "mainnet",
    )
    logger.info("Using Bybit %s - API key %s", creds.environment, creds.masked_key)
    return creds
