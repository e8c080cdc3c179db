"""Eval blueprint: feature scores, system health, alerts.

Endpoint groups:
  Feature evals    POST /api/v1/features/<id>/evals
                   GET  /api/v1/features/<id>/evals[/latest]
  System health    POST /api/v1/system-health
                   GET  /api/v1/system-health[/latest]
  Alerts           GET  /api/v1/alerts
                   GET  /api/v1/alerts/<id>
                   POST /api/v1/alerts/<id>/{acknowledge,resolve}
  Jobs             GET  /api/v1/jobs
                   POST /api/v1/jobs/<name>/run
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from sdd_engine.services import eval_service
from sdd_engine.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

eval_bp = Blueprint("eval_bp", __name__, url_prefix="/api/v1")
register_error_handlers(eval_bp)


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ── Feature evals ─────────────────────────────────────────────────────────────


@eval_bp.route("/features/<feature_id>/evals", methods=["POST"])
def compute_feature_eval(feature_id):
    data = _body()
    return jsonify(eval_service.compute_feature_eval(feature_id, evaluated_by=data.get("evaluated_by") or "system")), 201


@eval_bp.route("/features/<feature_id>/evals", methods=["GET"])
def feature_eval_history(feature_id):
    limit = request.args.get("limit", default=20, type=int)
    return jsonify({"items": eval_service.feature_eval_history(feature_id, limit=limit)}), 200


@eval_bp.route("/features/<feature_id>/evals/latest", methods=["GET"])
def latest_feature_eval(feature_id):
    return jsonify(eval_service.latest_feature_eval(feature_id)), 200


# ── System health ─────────────────────────────────────────────────────────────


@eval_bp.route("/system-health", methods=["POST"])
def compute_system_health():
    """Body: {period_days: 7|30|90, evaluated_by?}"""
    data = _body()
    period_days = data.get("period_days", 7)
    if isinstance(period_days, bool) or not isinstance(period_days, int):
        return api_error(E.VALIDATION_INVALID, "period_days must be an integer")
    snapshot = eval_service.compute_system_health(period_days, evaluated_by=data.get("evaluated_by") or "system")
    return jsonify(snapshot), 201


@eval_bp.route("/system-health", methods=["GET"])
def system_health_history():
    items = eval_service.system_health_history(
        period_days=request.args.get("period_days", type=int),
        limit=request.args.get("limit", default=30, type=int),
    )
    return jsonify({"items": items}), 200


@eval_bp.route("/system-health/latest", methods=["GET"])
def latest_system_health():
    period_days = request.args.get("period_days", default=7, type=int)
    return jsonify(eval_service.latest_system_health(period_days)), 200


# ── Alerts ────────────────────────────────────────────────────────────────────


@eval_bp.route("/alerts", methods=["GET"])
def active_alerts():
    items = eval_service.active_alerts(
        feature_id=request.args.get("feature_id"),
        severity=request.args.get("severity"),
    )
    return jsonify({"items": items}), 200


@eval_bp.route("/alerts/<int:alert_id>", methods=["GET"])
def get_alert(alert_id):
    return jsonify(eval_service.get_alert(alert_id)), 200


@eval_bp.route("/alerts/<int:alert_id>/acknowledge", methods=["POST"])
def acknowledge_alert(alert_id):
    actor = _body().get("actor")
    if not actor:
        return api_error(E.VALIDATION_REQUIRED, "actor is required")
    return jsonify(eval_service.acknowledge_alert(alert_id, actor)), 200


@eval_bp.route("/alerts/<int:alert_id>/resolve", methods=["POST"])
def resolve_alert(alert_id):
    data = _body()
    if not data.get("actor"):
        return api_error(E.VALIDATION_REQUIRED, "actor is required")
    return jsonify(eval_service.resolve_alert(alert_id, data["actor"], data.get("notes"))), 200


# ── Scheduled jobs ────────────────────────────────────────────────────────────


@eval_bp.route("/jobs", methods=["GET"])
def list_jobs():
    scheduler = current_app.extensions["scheduler"]
    return jsonify({"items": scheduler.list_jobs()}), 200


@eval_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Trigger a registered job now; the result reports failures instead of raising."""
    scheduler = current_app.extensions["scheduler"]
    outcome = scheduler.run_job(job_name)
    if outcome["status"] == "error":
        return api_error(E.NOT_FOUND, outcome["error"])
    return jsonify(outcome), 200


@eval_bp.route("/jobs/run-due", methods=["POST"])
def run_due_jobs():
    scheduler = current_app.extensions["scheduler"]
    return jsonify({"items": scheduler.run_due()}), 200
