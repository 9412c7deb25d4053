from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseModel):
    env: str = "dev"
    log_level: str = "INFO"


class BybitConfig(BaseModel):
    rest_base: str = "https://api.bybit.com"
    recv_window: int = 5000
    timeout: float = 10.0
    # Fallback only; credentials saved in bot_settings take precedence.
    api_key: str = ""
    api_secret: str = ""


class StorageConfig(BaseModel):
    sqlite_path: str = "./db/botdash.db"


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    base_path: str = ""


class SyncConfig(BaseModel):
    pnl_epsilon: float = 0.01


class MatchingConfig(BaseModel):
    history_window_ms: int = 10_000
    open_window_ms: int = 30_000


class SmsConfig(BaseModel):
    enabled: bool = False
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    to_number: str = ""
    api_base: str = "https://api.twilio.com"


class TelegramConfig(BaseModel):
    enabled: bool = False
    token: str = ""
    chat_id: str = ""


class NotifierConfig(BaseModel):
    enabled: bool = True
    sms: SmsConfig = Field(default_factory=SmsConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    app: AppConfig = Field(default_factory=AppConfig)
    bybit: BybitConfig = Field(default_factory=BybitConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)

    @field_validator("sync")
    @classmethod
    def _validate_sync(cls, v: SyncConfig) -> SyncConfig:
        if v.pnl_epsilon < 0:
            raise ValueError("sync.pnl_epsilon must be >= 0")
        return v

    @field_validator("matching")
    @classmethod
    def _validate_matching(cls, v: MatchingConfig) -> MatchingConfig:
        if v.history_window_ms <= 0:
            raise ValueError("matching.history_window_ms must be > 0")
        if v.open_window_ms <= 0:
            raise ValueError("matching.open_window_ms must be > 0")
        return v


def load_settings(config_path: Optional[str] = None) -> Settings:
    path = Path(config_path or os.environ.get("BOTDASH_CONFIG") or "./configs/config.yaml")
    data: Dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded

    def deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
        for k, v in src.items():
            if isinstance(v, dict) and isinstance(dst.get(k), dict):
                deep_update(dst[k], v)
            else:
                dst[k] = v
        return dst

    def env_overrides() -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        valid_roots = set(Settings.model_fields.keys())
        for key, value in os.environ.items():
            if "__" not in key:
                continue
            parts = [p.strip().lower() for p in key.split("__") if p.strip()]
            if not parts or parts[0] not in valid_roots:
                continue
            cur = out
            for part in parts[:-1]:
                nxt = cur.get(part)
                if not isinstance(nxt, dict):
                    nxt = {}
                    cur[part] = nxt
                cur = nxt
            cur[parts[-1]] = value
        return out

    merged = deep_update(data, env_overrides())
    return Settings(**merged)
