from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]
MpesaEnv = Literal["sandbox", "production"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so type casting lives in one place
    return os.environ.get(name, default).strip()


def _getbool(name: str, default: str = "false") -> bool:
    raw = _getenv(name, default).lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


def _getint(name: str, default: str) -> int:
    raw = _getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None


def _getfloat(name: str, default: str) -> float:
    raw = _getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None

    # M-Pesa Daraja
    mpesa_environment: MpesaEnv = "sandbox"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = "174379"
    mpesa_passkey: str = ""
    mpesa_callback_url: str = ""
    mpesa_account_reference: str = "SkillBoost"
    mpesa_timeout_seconds: float = 30.0
    mpesa_cache_token: bool = False

    # WhatsApp Cloud API
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_verify_token: str = ""
    whatsapp_timeout_seconds: float = 15.0

    # Lesson scheduler
    scheduler_timezone: str = "Africa/Nairobi"
    scheduler_concurrency: int = 4
    scheduler_send_delay_seconds: float = 1.0
    scheduler_interval_seconds: int = 3600

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"

    @property
    def mpesa_base_url(self) -> str:
        if self.mpesa_environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    mpesa_env_raw = _getenv("MPESA_ENVIRONMENT", "sandbox").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if mpesa_env_raw not in ("sandbox", "production"):
        raise ValueError(
            f"MPESA_ENVIRONMENT must be sandbox|production (got {mpesa_env_raw!r})"
        )

    concurrency = _getint("SCHEDULER_CONCURRENCY", "4")
    if concurrency < 1:
        raise ValueError(f"SCHEDULER_CONCURRENCY must be >= 1 (got {concurrency})")

    send_delay = _getfloat("SCHEDULER_SEND_DELAY_SECONDS", "1.0")
    if send_delay < 0:
        raise ValueError(
            f"SCHEDULER_SEND_DELAY_SECONDS must be >= 0 (got {send_delay})"
        )

    public_base_url = _getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    callback_url = _getenv("MPESA_CALLBACK_URL", "") or (
        f"{public_base_url}/v1/payments/mpesa/callback"
    )

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getbool("LOG_JSON"),
        port=_getint("PORT", "8000"),
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        mpesa_environment=mpesa_env_raw,
        mpesa_consumer_key=_getenv("MPESA_CONSUMER_KEY", ""),
        mpesa_consumer_secret=_getenv("MPESA_CONSUMER_SECRET", ""),
        mpesa_shortcode=_getenv("MPESA_SHORTCODE", "174379"),
        mpesa_passkey=_getenv("MPESA_PASSKEY", ""),
        mpesa_callback_url=callback_url,
        mpesa_account_reference=_getenv("MPESA_ACCOUNT_REFERENCE", "SkillBoost"),
        mpesa_timeout_seconds=_getfloat("MPESA_TIMEOUT_SECONDS", "30"),
        mpesa_cache_token=_getbool("MPESA_CACHE_TOKEN"),
        whatsapp_access_token=_getenv("WHATSAPP_ACCESS_TOKEN", ""),
        whatsapp_phone_number_id=_getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_verify_token=_getenv("WHATSAPP_VERIFY_TOKEN", ""),
        whatsapp_timeout_seconds=_getfloat("WHATSAPP_TIMEOUT_SECONDS", "15"),
        scheduler_timezone=_getenv("SCHEDULER_TIMEZONE", "Africa/Nairobi"),
        scheduler_concurrency=concurrency,
        scheduler_send_delay_seconds=send_delay,
        scheduler_interval_seconds=_getint("SCHEDULER_INTERVAL_SECONDS", "3600"),
    )


# Module-level singleton so imports are cheap
SETTINGS = load_settings()
