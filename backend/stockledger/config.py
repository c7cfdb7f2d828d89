# backend/stockledger/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite file for local work; point DATABASE_URL at PostgreSQL in production
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Upper bound on waiting for a contended stock row (or the SQLite write lock).
    # Exceeding it surfaces ConcurrencyTimeoutError instead of blocking forever.
    STOCK_LOCK_TIMEOUT_MS = _env_int("STOCK_LOCK_TIMEOUT_MS", 5000)

    # Applied when an item has no low_stock_threshold of its own; None disables alerts
    DEFAULT_LOW_STOCK_THRESHOLD = _env_int("DEFAULT_LOW_STOCK_THRESHOLD", None)

    HISTORY_DEFAULT_PER_PAGE = 50
    HISTORY_MAX_PER_PAGE = _env_int("HISTORY_MAX_PER_PAGE", 200)

    INVOICE_PREFIX = "INV"
