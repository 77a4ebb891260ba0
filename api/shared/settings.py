"""
Environment configuration for the NeuroData Hub backend.

All settings come from environment variables. Several variables accept
the older ``NEXT_PUBLIC_*`` names too, so one ``.env`` file can serve
both the frontend and this API.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any

from api.shared.logger import get_logger

logger = get_logger(__name__)

DEFAULT_DEV_USER_ID = "00000000-0000-0000-0000-000000000001"

DEFAULT_DISCOUNT_CODES: list[dict[str, Any]] = [
    {"code": "WELCOME20", "name": "Welcome Discount", "percentOff": 20, "active": True},
]


def _env(*names: str, default: str | None = None) -> str | None:
    """Return the first non-empty environment variable among ``names``."""
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return default


def _env_bool(*names: str, default: bool = False) -> bool:
    value = _env(*names)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, value)
        return default


def _load_discount_codes() -> list[dict[str, Any]]:
    raw = os.environ.get("CREDIT_DISCOUNT_CODES")
    if not raw:
        return [dict(code) for code in DEFAULT_DISCOUNT_CODES]
    try:
        codes = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("CREDIT_DISCOUNT_CODES is not valid JSON: %s", e)
        return [dict(code) for code in DEFAULT_DISCOUNT_CODES]
    if not isinstance(codes, list):
        logger.error("CREDIT_DISCOUNT_CODES must be a JSON list")
        return [dict(code) for code in DEFAULT_DISCOUNT_CODES]
    return [c for c in codes if isinstance(c, dict) and c.get("code")]


@dataclass
class Settings:
    """Runtime settings resolved from the environment."""

    supabase_url: str | None = None
    supabase_service_key: str | None = None
    supabase_anon_key: str | None = None
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    gemini_api_key: str | None = None
    youtube_api_key: str | None = None
    cron_secret: str | None = None
    app_url: str = "http://localhost:3000"
    dev_mode: bool = False
    dev_user_id: str = DEFAULT_DEV_USER_ID
    environment: str = "development"
    log_level: str = "INFO"
    port: int = 8000
    worker_enabled: bool = False
    worker_poll_seconds: int = 5
    worker_max_jobs: int = 3
    discount_codes: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and (self.supabase_service_key or self.supabase_anon_key))

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def gemini_configured(self) -> bool:
        return bool(self.gemini_api_key)

    @property
    def youtube_configured(self) -> bool:
        return bool(self.youtube_api_key)

    def to_dict(self) -> dict[str, Any]:
        """Serialize without secrets."""
        data = asdict(self)
        for key in (
            "supabase_service_key",
            "supabase_anon_key",
            "stripe_secret_key",
            "stripe_webhook_secret",
            "gemini_api_key",
            "youtube_api_key",
            "cron_secret",
        ):
            data[key] = bool(data[key])
        return data

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            supabase_url=_env("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
            supabase_service_key=_env("SUPABASE_SERVICE_ROLE_KEY"),
            supabase_anon_key=_env("SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY"),
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
            gemini_api_key=_env(
                "GOOGLE_GEMINI_API_KEY",
                "GEMINI_API_KEY",
                "GOOGLE_GENERATIVE_AI_API_KEY",
            ),
            youtube_api_key=_env("YOUTUBE_API_KEY"),
            cron_secret=_env("CRON_SECRET"),
            app_url=_env("APP_URL", "NEXT_PUBLIC_APP_URL", default="http://localhost:3000").rstrip("/"),
            dev_mode=_env_bool("DEV_MODE", "NEXT_PUBLIC_DEV_MODE"),
            dev_user_id=_env("DEV_MODE_USER_ID", default=DEFAULT_DEV_USER_ID),
            environment=_env("NEURODATA_ENV", "NODE_ENV", default="development"),
            log_level=_env("NEURODATA_LOG_LEVEL", default="INFO"),
            port=_env_int("NEURODATA_PORT", 8000),
            worker_enabled=_env_bool("CLOUD_WORKER_ENABLED"),
            worker_poll_seconds=_env_int("CLOUD_WORKER_POLL_SECONDS", 5),
            worker_max_jobs=_env_int("CLOUD_WORKER_MAX_JOBS", 3),
            discount_codes=_load_discount_codes(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (cached; tests call ``cache_clear``)."""
    return Settings.from_env()
