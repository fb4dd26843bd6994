# backend/pharmapos/routes/system.py
"""
System health endpoint.

Reports the local database, the hosted backend and the offline outbox so
the till UI can show a connectivity banner.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..services import offline_sync_service
from ..services.till_service import build_client, get_connectivity
from pharmapos.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Local SQLite (cache, held carts, outbox)."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        pending = offline_sync_service.pending_count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"outbox_pending": pending},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_backend_health() -> dict:
    """
    Hosted backend reachability. Unreachable is "degraded", not unhealthy:
    the till keeps selling in offline mode.
    """
    start_time = time.time()
    with build_client() as client:
        reachable = client.ping()
    elapsed_ms = (time.time() - start_time) * 1000
    return {
        "status": "healthy" if reachable else "degraded",
        "latency_ms": round(elapsed_ms, 2),
        "details": {"reachable": reachable},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (backend unreachable)
    - 503: local database unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    backend_health = check_backend_health()

    all_checks = [database_health, backend_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "offline_mode": get_connectivity().offline,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "backend": backend_health,
        },
    }
    return response, http_status
