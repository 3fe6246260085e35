# backend/topup/routes/system.py
"""
System health and version endpoints.
"""

import sys
import time

from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import LedgerAccount, StockPool
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Database connectivity plus a cheap count on both halves of the schema."""
    start_time = time.time()
    try:
        pool_count = db.session.query(StockPool).count()
        account_count = db.session.query(LedgerAccount).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stock_pools": pool_count,
                "ledger_accounts": account_count,
            },
        }
    except SQLAlchemyError:
        elapsed_ms = (time.time() - start_time) * 1000
        db.session.rollback()
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_codec_health() -> dict:
    codec = current_app.extensions.get("secret_codec")
    if codec is None:
        return {"status": "unhealthy", "error": "Secret codec not configured"}
    previous = current_app.config.get("STOCK_ENCRYPTION_PREVIOUS_KEYS") or ""
    return {
        "status": "healthy",
        "details": {"previous_keys": len([k for k in previous.split(",") if k.strip()])},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: all checks healthy
    - 503: one or more checks unhealthy
    """
    start_time = time.time()
    checks = {
        "database": check_database_health(),
        "secret_codec": check_codec_health(),
    }
    healthy = all(check["status"] == "healthy" for check in checks.values())

    return {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, 200 if healthy else 503


@system_bp.get("/version")
def version():
    """Non-sensitive deployment info; never exposes keys or connection strings."""
    return {
        "api_version": "1.0.0",
        "environment": "development" if current_app.debug else "production",
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
