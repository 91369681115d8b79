from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _env(name: str, default: str | None = None) -> str | None:
    return os.getenv(name, default)


def _bool(name: str, default: str = "false") -> bool:
    return (_env(name, default) or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    postgres_dsn: str
    db_auto_create: bool
    mp_api_base: str
    mp_access_token: str
    mp_back_url: str
    mp_currency_id: str
    mp_webhook_secret: str
    mp_timeout_seconds: float
    sync_retry_max_attempts: int
    sync_retry_initial_delay_seconds: float
    sync_retry_max_delay_seconds: float
    plan_lock_budget_seconds: float
    max_resync_attempts: int
    orphan_retry_delay_seconds: float
    log_level: str


def get_settings() -> Settings:
    return Settings(
        postgres_dsn=_env("POSTGRES_DSN", ""),
        db_auto_create=_bool("DB_AUTO_CREATE"),
        mp_api_base=_env("MP_API_BASE", "https://api.mercadopago.com"),
        mp_access_token=_env("MP_ACCESS_TOKEN", ""),
        mp_back_url=_env("MP_BACK_URL", ""),
        mp_currency_id=_env("MP_CURRENCY_ID", "ARS"),
        mp_webhook_secret=_env("MP_WEBHOOK_SECRET", ""),
        mp_timeout_seconds=float(_env("MP_TIMEOUT_SECONDS", "5")),
        sync_retry_max_attempts=int(_env("SYNC_RETRY_MAX_ATTEMPTS", "3")),
        sync_retry_initial_delay_seconds=float(_env("SYNC_RETRY_INITIAL_DELAY_SECONDS", "0.25")),
        sync_retry_max_delay_seconds=float(_env("SYNC_RETRY_MAX_DELAY_SECONDS", "2")),
        plan_lock_budget_seconds=float(_env("PLAN_LOCK_BUDGET_SECONDS", "30")),
        max_resync_attempts=int(_env("MAX_RESYNC_ATTEMPTS", "5")),
        orphan_retry_delay_seconds=float(_env("ORPHAN_RETRY_DELAY_SECONDS", "2")),
        log_level=_env("LOG_LEVEL", "INFO"),
    )
