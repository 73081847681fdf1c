"""Environment driven settings for ChoreBlimey."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL_ENV = "CHOREBLIMEY_DATABASE_URL"
LOG_PATH_ENV = "CHOREBLIMEY_LOG_PATH"
STAR_RATE_ENV = "CHOREBLIMEY_DEFAULT_STAR_RATE_PENCE"
BONUS_LOOKBACK_ENV = "CHOREBLIMEY_BONUS_LOOKBACK_DAYS"

DEFAULT_DATABASE_URL = "sqlite:///choreblimey.db"
DEFAULT_BONUS_LOOKBACK_DAYS = 7
COMPLETION_LIST_LIMIT = 50
STAR_PURCHASE_LIST_LIMIT = 100
RIVALRY_FEED_LIMIT = 20
MONTHLY_MILESTONES = (10, 25, 50, 100)


def _int_setting(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = (environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    log_path: Optional[str] = None
    default_star_rate_pence: int = 10
    bonus_lookback_days: int = DEFAULT_BONUS_LOOKBACK_DAYS

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get(DATABASE_URL_ENV, DEFAULT_DATABASE_URL),
            log_path=env.get(LOG_PATH_ENV) or None,
            default_star_rate_pence=_int_setting(env, STAR_RATE_ENV, 10),
            bonus_lookback_days=_int_setting(env, BONUS_LOOKBACK_ENV, DEFAULT_BONUS_LOOKBACK_DAYS),
        )


__all__ = [
    "BONUS_LOOKBACK_ENV",
    "COMPLETION_LIST_LIMIT",
    "DATABASE_URL_ENV",
    "DEFAULT_BONUS_LOOKBACK_DAYS",
    "DEFAULT_DATABASE_URL",
    "LOG_PATH_ENV",
    "MONTHLY_MILESTONES",
    "RIVALRY_FEED_LIMIT",
    "STAR_PURCHASE_LIST_LIMIT",
    "STAR_RATE_ENV",
    "Settings",
]
