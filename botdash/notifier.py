from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import httpx

from .config import NotifierConfig
from .db import Database
from .models import BotLog, NotifyResult
from .timeutil import now_ms


logger = logging.getLogger(__name__)

_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


def validate_e164(phone: str) -> bool:
    return bool(_E164.match(phone))


def normalize_phone(phone: str, country_code: str = "48") -> str:
    digits = re.sub(r"\D", "", phone)
    if not digits.startswith(country_code) and len(digits) >= 9:
        if digits.startswith("0"):
            digits = digits[1:]
        digits = country_code + digits
    return "+" + digits


def emergency_close_failure_message(failed: int, total: int) -> str:
    return (
        f"ALERT: Emergency close failed for {failed}/{total} positions! "
        "Manual intervention needed. Check bot logs."
    )


class Notifier:
    def __init__(
        self,
        db: Database,
        config: NotifierConfig,
        sms_phone: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._db = db
        self._config = config
        self._sms_phone = sms_phone or config.sms.to_number
        self._transport = transport

    async def notify(self, level: str, context: str, message: str) -> NotifyResult:
        ts = now_ms()
        if not self._config.enabled:
            await self._log(ts, "info", context, message, {"channel": "disabled"})
            return NotifyResult(success=False, error="notifier disabled")

        result = NotifyResult(success=False)
        if self._config.sms.enabled:
            message_id = await self._send_sms(message)
            if message_id is not None:
                result.channels_sent += 1
                result.message_id = message_id
            await self._log(ts, level, context, message, {"channel": "sms", "sent": message_id is not None})

        if self._config.telegram.enabled:
            ok = await self._send_telegram(message)
            result.channels_sent += 1 if ok else 0
            await self._log(ts, level, context, message, {"channel": "telegram", "sent": ok})

        if result.channels_sent == 0:
            result.error = "no channel delivered the notification"
            await self._log(ts, level, context, message, {"channel": "none"})
        result.success = result.channels_sent > 0
        return result

    async def _log(self, ts: int, level: str, context: str, message: str, details: Dict[str, Any]) -> None:
        try:
            await self._db.insert_bot_log(
                BotLog(timestamp=ts, level=level, action=f"notify_{context}", message=message, details=details)
            )
        except Exception:
            logger.exception("Insert notification log failed")

    async def _send_sms(self, message: str) -> Optional[str]:
        sms = self._config.sms
        if not sms.account_sid or not sms.auth_token or not sms.from_number:
            logger.warning("SMS alert enabled but Twilio credentials missing")
            return None
        if not self._sms_phone:
            logger.warning("SMS alert enabled but no recipient phone configured")
            return None
        to = normalize_phone(self._sms_phone)
        if not validate_e164(to):
            logger.warning("SMS recipient %s is not a valid E.164 number", to)
            return None
        url = f"{sms.api_base.rstrip('/')}/2010-04-01/Accounts/{sms.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                resp = await client.post(
                    url,
                    data={"To": to, "From": sms.from_number, "Body": message},
                    auth=(sms.account_sid, sms.auth_token),
                )
                resp.raise_for_status()
                return str(resp.json().get("sid") or "")
        except Exception:
            logger.exception("Alert send failed (sms)")
            return None

    async def _send_telegram(self, message: str) -> bool:
        token = self._config.telegram.token
        chat_id = self._config.telegram.chat_id
        if not token or not chat_id:
            logger.warning("Telegram alert enabled but token/chat_id missing")
            return False
        url = f"https://api.telegram.org/bot{token}/sendMessage"
        payload = {"chat_id": chat_id, "text": message}
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
            return True
        except Exception:
            logger.exception("Alert send failed (telegram)")
            return False
