"""Configuration constants for the FamilyBank engine."""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


DATABASE_URL = os.environ.get("FAMILYBANK_DATABASE_URL", "sqlite:///familybank.db")
DB_TIMEOUT_SECONDS = _int_env("FAMILYBANK_DB_TIMEOUT", 5)
RETRY_ATTEMPTS = _int_env("FAMILYBANK_RETRY_ATTEMPTS", 5)
RETRY_BACKOFF_MS = _int_env("FAMILYBANK_RETRY_BACKOFF_MS", 50)
STAR_CONVERSION_RATE_PENCE = _int_env("FAMILYBANK_STAR_RATE_PENCE", 10)
TRANSACTION_PAGE_SIZE = _int_env("FAMILYBANK_TRANSACTION_PAGE_SIZE", 50)
LOG_PATH = os.environ.get("FAMILYBANK_LOG_PATH") or None

DEFAULT_BONUS_INTERVAL_DAYS = 7
ONE_TIME_PERIOD_KEY = "ONCE"

__all__ = [
    "DATABASE_URL",
    "DB_TIMEOUT_SECONDS",
    "RETRY_ATTEMPTS",
    "RETRY_BACKOFF_MS",
    "STAR_CONVERSION_RATE_PENCE",
    "TRANSACTION_PAGE_SIZE",
    "LOG_PATH",
    "DEFAULT_BONUS_INTERVAL_DAYS",
    "ONE_TIME_PERIOD_KEY",
]
