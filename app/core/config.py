from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

_TRUTHY = ("1", "true", "yes", "on")
_FALSY = ("0", "false", "no", "off", "")


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getenv_bool(name: str, default: str = "false") -> bool:
    raw = _getenv(name, default).lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    payment_webhook_secret: str | None = None
    narrative_url: str | None = None
    narrative_timeout_seconds: float = 5.0
    verification_stale_after_hours: int = 72
    pricing_config_path: str | None = None
    jwt_public_key_path: str | None = None
    cors_origins: tuple[str, ...] = ("http://localhost:5173",)

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")
    timeout_raw = _getenv("NARRATIVE_TIMEOUT_SECONDS", "5")
    stale_raw = _getenv("VERIFICATION_STALE_AFTER_HOURS", "72")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    try:
        narrative_timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"NARRATIVE_TIMEOUT_SECONDS must be a number (got {timeout_raw!r})"
        ) from None
    if narrative_timeout <= 0:
        raise ValueError(
            f"NARRATIVE_TIMEOUT_SECONDS must be positive (got {timeout_raw!r})"
        )

    try:
        stale_after_hours = int(stale_raw)
    except ValueError:
        raise ValueError(
            f"VERIFICATION_STALE_AFTER_HOURS must be an integer (got {stale_raw!r})"
        ) from None
    if stale_after_hours < 1:
        raise ValueError(
            f"VERIFICATION_STALE_AFTER_HOURS must be >= 1 (got {stale_raw!r})"
        )

    # /v1/payments/completions has no other authentication.
    payment_webhook_secret = _getenv("PAYMENT_WEBHOOK_SECRET", "") or None
    if app_env_raw == "prod" and payment_webhook_secret is None:
        raise ValueError("PAYMENT_WEBHOOK_SECRET is required when APP_ENV=prod")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getenv_bool("LOG_JSON"),
        port=port,
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        payment_webhook_secret=payment_webhook_secret,
        narrative_url=_getenv("NARRATIVE_URL", "") or None,
        narrative_timeout_seconds=narrative_timeout,
        verification_stale_after_hours=stale_after_hours,
        pricing_config_path=_getenv("PRICING_CONFIG_PATH", "") or None,
        jwt_public_key_path=_getenv("JWT_PUBLIC_KEY_PATH", "") or None,
        cors_origins=tuple(
            origin.strip()
            for origin in _getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
            if origin.strip()
        ),
    )


# Read once at import; tests patch fields with dataclasses.replace.
SETTINGS = load_settings()
