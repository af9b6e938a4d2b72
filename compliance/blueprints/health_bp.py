"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready   simple 200 for load balancers
    GET /api/v1/health/live    database check plus scheduler job status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from compliance.models import db
from compliance.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Scheduler tick ───────────────────────────────────────────────
    if overall:
        job = ScheduledJob.query.filter_by(job_name="compliance_tick").first()
        checks["scheduler"] = {
            "status": (job.last_run_status or "never_run") if job else "not_registered",
            "last_run_at": job.to_dict()["last_run_at"] if job else None,
            "interval_minutes": current_app.config.get("TICK_INTERVAL_MINUTES"),
        }

    checks["app"] = {
        "name": "Compliance Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), status_code
