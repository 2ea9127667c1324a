from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "https://localhost:3000",
    "https://127.0.0.1:3000",
]


def _int_env(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return max(parsed, minimum)


def _list_env(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_timeout_seconds: int = 10
    stripe_webhook_tolerance: int = 300
    frontend_base_url: str = "http://localhost:3000"
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    log_level: str = "INFO"

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def webhook_configured(self) -> bool:
        return bool(self.stripe_webhook_secret)


def load_settings() -> Settings:
    """Read service settings from the environment (``.env`` is loaded on import)."""
    return Settings(
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        stripe_price_id=os.getenv("STRIPE_PRICE_ID") or None,
        stripe_timeout_seconds=_int_env("STRIPE_TIMEOUT_SECONDS", 10, 1),
        stripe_webhook_tolerance=_int_env("STRIPE_WEBHOOK_TOLERANCE", 300, 1),
        frontend_base_url=(os.getenv("FRONTEND_BASE_URL") or "http://localhost:3000").rstrip("/"),
        cors_origins=_list_env("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
