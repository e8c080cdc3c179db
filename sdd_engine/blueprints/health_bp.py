"""
Health probes.

    GET /api/v1/health/ready   process is up (no dependencies touched)
    GET /api/v1/health/live    state store round-trip, schema presence,
                               scheduler registry and unresolved alert count
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, inspect, select
from sqlalchemy.exc import SQLAlchemyError

from sdd_engine.models import db
from sdd_engine.models.evals import EvalAlert

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")

# Tables the engine cannot run without
_CORE_TABLES = ("features", "phase_transitions", "blockers", "agent_invocations", "learnings")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {}
    healthy = True

    try:
        started = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        checks["state_store"] = {
            "status": "ok",
            "latency_ms": round((time.perf_counter() - started) * 1000, 1),
        }
        existing = set(inspect(db.engine).get_table_names())
        missing = [t for t in _CORE_TABLES if t not in existing]
        checks["schema"] = {"status": "ok" if not missing else "error", "missing_tables": missing}
        healthy = not missing
        if not missing:
            checks["alerts"] = {
                "unresolved": db.session.execute(
                    select(func.count(EvalAlert.id)).where(EvalAlert.is_resolved.is_(False))
                ).scalar(),
            }
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["state_store"] = {"status": "error", "detail": str(exc)}
        healthy = False
        logger.error("Liveness probe: state store unreachable: %s", exc)

    scheduler = current_app.extensions.get("scheduler")
    checks["scheduler"] = {
        "status": "ok" if scheduler else "not_initialized",
        "jobs": [j["job_name"] for j in scheduler.list_jobs()] if scheduler else [],
    }

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
