# backend/app/routes/system.py
"""
System health and version endpoints.

Health covers the database and whether the mobile-money provider is
configured; version information is for deployment debugging.
"""

import os
import time
from flask import Blueprint, current_app, jsonify
from ..extensions import db
from ..models import Product, Sale
from ..services import mpesa_service
from app.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        sale_count = db.session.query(Sale).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "sales": sale_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_mpesa_health() -> dict:
    """Configuration only; the provider is never called from a health probe."""
    client = mpesa_service.get_client()
    return {
        "status": "configured" if client.is_configured else "not_configured",
        "base_url": client.base_url,
    }


@system_bp.get("/api/health")
def health():
    database = check_database_health()
    status = "healthy" if database["status"] == "healthy" else "unhealthy"
    body = {
        "status": status,
        "timestamp": to_utc_z(utcnow()),
        "checks": {
            "database": database,
            "mpesa": check_mpesa_health(),
        },
    }
    return jsonify(body), 200 if status == "healthy" else 503


@system_bp.get("/api/version")
def version():
    return jsonify({
        "name": "ledgerpos",
        "version": os.environ.get("APP_VERSION", "dev"),
        "git_sha": os.environ.get("GIT_SHA"),
    }), 200
