# backend/topup/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/topup.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///topup.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Fernet key for PIN / eSIM payloads. No default: the app refuses to start without it.
    STOCK_ENCRYPTION_KEY = os.environ.get("STOCK_ENCRYPTION_KEY")
    # Comma separated keys that are still accepted for decryption (rotation window)
    STOCK_ENCRYPTION_PREVIOUS_KEYS = os.environ.get("STOCK_ENCRYPTION_PREVIOUS_KEYS", "")

    # Optimistic-concurrency retry limits for claims and ledger mutations
    DB_RETRY_ATTEMPTS = _int_env("DB_RETRY_ATTEMPTS", 3)
    DB_RETRY_BACKOFF = float(os.environ.get("DB_RETRY_BACKOFF", "0.05"))

    LOW_STOCK_THRESHOLD = _int_env("LOW_STOCK_THRESHOLD", 10)
    DEFAULT_PAYMENT_TERMS_DAYS = _int_env("DEFAULT_PAYMENT_TERMS_DAYS", 30)
    OVERDUE_GRACE_DAYS = _int_env("OVERDUE_GRACE_DAYS", 30)

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
