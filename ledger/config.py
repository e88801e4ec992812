from __future__ import annotations

import logging
import os
from datetime import timedelta
from typing import List


def _csv(name: str, default: List[str] | None = None) -> List[str]:
    raw = os.getenv(name, "")
    items = [x.strip() for x in raw.split(",") if x.strip()]
    return items if items else list(default or [])


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # Telegram membership oracle / notifier
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    ORACLE_TIMEOUT_SECONDS: float = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "5"))

    # Channel whose verification releases referral bonuses
    OFFICIAL_CHANNEL: str = os.getenv("OFFICIAL_CHANNEL", "@channel_rewards_official")

    # Retention audit
    RETENTION_GRACE_HOURS: int = int(os.getenv("RETENTION_GRACE_HOURS", "48"))
    RETENTION_INTERVAL_SECONDS: int = int(os.getenv("RETENTION_INTERVAL_SECONDS", "3600"))
    RETENTION_SCHEDULER_ENABLED: bool = _flag("RETENTION_SCHEDULER_ENABLED", "true")

    # 0 disables the cap on failed verification retries
    MAX_VERIFICATION_ATTEMPTS: int = int(os.getenv("MAX_VERIFICATION_ATTEMPTS", "10"))

    # Admin capability
    ADMIN_TELEGRAM_IDS: List[str] = _csv("ADMIN_TELEGRAM_IDS")
    ADMIN_API_TOKEN: str = os.getenv("ADMIN_API_TOKEN", "")

    CURRENCY: str = os.getenv("CURRENCY", "BDT")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def grace_period(self) -> timedelta:
        return timedelta(hours=self.RETENTION_GRACE_HOURS)


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    lvl = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
