"""Configuration constants for the watchtime web service."""
from __future__ import annotations

import os
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv

from ..models import QuotaPolicy

load_dotenv()

SQLITE_FILE_NAME = os.environ.get("WATCHTIME_SQLITE", "watchtime.db")
LOG_PATH: Optional[str] = os.environ.get("WATCHTIME_LOG_PATH") or None
APP_TITLE = "Watch Time Quota"


def _int_setting(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


def load_policy(environ: Optional[Mapping[str, str]] = None) -> QuotaPolicy:
    """Build the quota rules from ``WATCHTIME_*`` environment variables."""

    env = os.environ if environ is None else environ
    return QuotaPolicy(
        default_base_minutes=_int_setting(env, "WATCHTIME_DEFAULT_BASE_MINUTES", 60),
        max_daily_minutes=_int_setting(env, "WATCHTIME_MAX_DAILY_MINUTES", 180),
        reward_minutes=_int_setting(env, "WATCHTIME_REWARD_MINUTES", 15),
        earned_time_ttl=timedelta(hours=_int_setting(env, "WATCHTIME_EARNED_TTL_HOURS", 8)),
        reset_cost_minutes=_int_setting(env, "WATCHTIME_RESET_COST_MINUTES", 60),
    )


__all__ = [
    "APP_TITLE",
    "LOG_PATH",
    "SQLITE_FILE_NAME",
    "load_policy",
]
