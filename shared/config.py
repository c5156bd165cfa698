from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo

from dotenv import load_dotenv


PLACEHOLDER_API_KEY = "your-gemini-api-key"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./medtracker.db"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash-exp"
    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL
    ai_timeout_s: float = 30.0
    app_timezone: str = "UTC"
    log_level: str = "INFO"

    @property
    def ai_configured(self) -> bool:
        key = self.gemini_api_key.strip()
        return bool(key) and key != PLACEHOLDER_API_KEY

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.app_timezone)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
            gemini_base_url=os.getenv("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL).rstrip("/"),
            ai_timeout_s=float(os.getenv("AI_TIMEOUT_S", "30")),
            app_timezone=os.getenv("APP_TIMEZONE", "UTC"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv(override=False)
    return Settings.from_env()


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
