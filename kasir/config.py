# kasir/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional_int(name: str, default: int | None) -> int | None:
    value = os.environ.get(name)
    if value is None:
        return default
    value = value.strip()
    if not value:
        return None
    return int(value)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in instance/kasir.sqlite3 unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///kasir.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Calendar day used for daily sequence numbers and the nightly lock
    BUSINESS_TIMEZONE = os.environ.get("BUSINESS_TIMEZONE", "Asia/Jakarta")

    # Completed sales older than this many business days cannot be returned.
    # Empty value disables the window.
    RETURN_WINDOW_DAYS = _env_optional_int("RETURN_WINDOW_DAYS", 3)

    DEAD_STOCK_DAYS = int(os.environ.get("DEAD_STOCK_DAYS", "90"))

    # Lets OUT movements drive on-hand below zero (backorder selling)
    ALLOW_BACKORDER = _env_bool("ALLOW_BACKORDER", False)

    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("CONCURRENCY_RETRY_ATTEMPTS", "3"))
    CONCURRENCY_RETRY_BACKOFF = float(os.environ.get("CONCURRENCY_RETRY_BACKOFF", "0.1"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
