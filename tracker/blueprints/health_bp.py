"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — 200 while the process serves requests
    GET /api/v1/health/live   — database round-trip, engine schema and apply backlog

``live`` reports 503 when the database is unreachable or one of the
variation engine tables is missing.  Approved variations that were never
applied (an auto-apply that failed) are reported as backlog but do not
degrade the status; ``flask apply-variation <id>`` clears them.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, inspect, select
from sqlalchemy.exc import SQLAlchemyError

from tracker.models import db
from tracker.models.variation import STATUS_APPROVED, Variation

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

ENGINE_TABLES = (
    "projects",
    "milestones",
    "variations",
    "variation_milestones",
    "variation_deliverables",
    "milestone_baseline_versions",
    "reference_counters",
)


def _check_database() -> dict:
    t0 = time.perf_counter()
    db.session.execute(db.text("SELECT 1"))
    return {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}


def _check_schema() -> dict:
    present = set(inspect(db.engine).get_table_names())
    missing = [name for name in ENGINE_TABLES if name not in present]
    if missing:
        return {"status": "error", "missing_tables": missing}
    return {"status": "ok", "tables": len(ENGINE_TABLES)}


def _apply_backlog() -> dict:
    pending = db.session.execute(
        select(func.count(Variation.id)).where(Variation.status == STATUS_APPROVED)
    ).scalar() or 0
    return {"status": "ok" if pending == 0 else "pending", "approved_not_applied": pending}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {}
    try:
        checks["database"] = _check_database()
        checks["schema"] = _check_schema()
        if checks["schema"]["status"] == "ok":
            checks["apply_backlog"] = _apply_backlog()
    except SQLAlchemyError as exc:
        db.session.rollback()
        failed = "database" if "database" not in checks else "schema"
        checks[failed] = {"status": "error", "detail": str(exc)}
        logger.error("Health check failed: %s", exc)

    overall = all(checks[name]["status"] == "ok" for name in ("database", "schema") if name in checks)
    overall = overall and "schema" in checks

    checks["app"] = {
        "name": "Contract Tracker",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), 200 if overall else 503
