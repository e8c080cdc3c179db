"""Workflow blueprint: features, phases, gates, blockers, telemetry.

Endpoint groups:
  Features            GET/POST  /api/v1/features
                      GET       /api/v1/features/<id>[/status|/history|/durations]
  Phase transitions   POST      /api/v1/features/<id>/transitions
                      POST      /api/v1/features/<id>/complete
                      POST      /api/v1/features/<id>/cancel
  Gates               GET/POST  /api/v1/features/<id>/gates
                      GET       /api/v1/features/<id>/gates/pending
  Blockers            GET/POST  /api/v1/features/<id>/blockers
                      GET       /api/v1/blockers/<id>
                      POST      /api/v1/blockers/<id>/{start,resolve,escalate}
  Telemetry           GET/POST  /api/v1/features/<id>/invocations
                      POST      /api/v1/features/<id>/invocations/backfill
                      GET       /api/v1/invocations/<id>
                      POST      /api/v1/invocations/<id>/end
                      GET       /api/v1/features/<id>/coverage
  Git facts           POST      /api/v1/features/<id>/{commits,pr,merge}
  Phase outputs       GET/PUT   /api/v1/features/<id>/phases/<n>/tasks
                      PUT       /api/v1/features/<id>/phases/<n>/outputs/<type>
                      GET       /api/v1/features/<id>/outputs

Malformed bodies are answered with 400 here; everything else is validated
by the service layer, which owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from sdd_engine.services import (
    feature_service,
    gate_service,
    phase_service,
    telemetry_service,
)
from sdd_engine.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

feature_bp = Blueprint("feature_bp", __name__, url_prefix="/api/v1")
register_error_handlers(feature_bp)


# ── Request helpers ───────────────────────────────────────────────────────────


def _body() -> dict | None:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _missing(data: dict, *fields: str):
    """400 response for the first absent field, or None."""
    for field in fields:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            return api_error(E.VALIDATION_REQUIRED, f"{field} is required")
    return None


def _bad_body():
    return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")


# ═════════════════════════════════════════════════════════════════════════
# Features
# ═════════════════════════════════════════════════════════════════════════


@feature_bp.route("/features", methods=["POST"])
def create_feature():
    """Register a feature at phase 0 (Planning).

    Body: {id, name, complexity_level, severity, created_by,
           description?, dev_initials?, base_branch?}
    """
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "id", "name", "complexity_level", "created_by")
    if err:
        return err
    feature = feature_service.create_feature(
        feature_id=data["id"],
        name=data["name"],
        complexity_level=data["complexity_level"],
        severity=data.get("severity") or "ROUTINE",
        created_by=data["created_by"],
        description=data.get("description"),
        dev_initials=data.get("dev_initials"),
        base_branch=data.get("base_branch") or "main",
    )
    return jsonify(feature), 201


@feature_bp.route("/features", methods=["GET"])
def list_features():
    return jsonify({"items": feature_service.list_features(status=request.args.get("status"))}), 200


@feature_bp.route("/features/<feature_id>", methods=["GET"])
def get_feature(feature_id):
    return jsonify(feature_service.get_feature(feature_id)), 200


@feature_bp.route("/features/<feature_id>/status", methods=["GET"])
def get_feature_status(feature_id):
    """Feature plus open blockers, pending gates and invocation coverage."""
    return jsonify(feature_service.get_feature_status(feature_id)), 200


@feature_bp.route("/features/<feature_id>/history", methods=["GET"])
def get_feature_history(feature_id):
    return jsonify(feature_service.get_feature_history(feature_id)), 200


@feature_bp.route("/features/<feature_id>/durations", methods=["GET"])
def get_durations(feature_id):
    return jsonify({
        "feature_id": feature_id,
        "phases": telemetry_service.phase_durations(feature_id),
        "agents": telemetry_service.agent_durations(feature_id),
    }), 200


# ═════════════════════════════════════════════════════════════════════════
# Phase transitions
# ═════════════════════════════════════════════════════════════════════════


@feature_bp.route("/features/<feature_id>/transitions", methods=["POST"])
def transition(feature_id):
    """Body: {to_phase, actor, note?}. Forward by exactly one, or backward to any earlier phase."""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "to_phase", "actor")
    if err:
        return err
    row = phase_service.transition(feature_id, data["to_phase"], data["actor"], data.get("note"))
    return jsonify(row), 201


@feature_bp.route("/features/<feature_id>/complete", methods=["POST"])
def complete(feature_id):
    """Body: {actor}. 412 with missing coverage pairs when the gate fails."""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "actor")
    if err:
        return err
    return jsonify(phase_service.complete(feature_id, data["actor"])), 200


@feature_bp.route("/features/<feature_id>/cancel", methods=["POST"])
def cancel(feature_id):
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "actor")
    if err:
        return err
    return jsonify(phase_service.cancel(feature_id, data["actor"], data.get("reason"))), 200


# ═════════════════════════════════════════════════════════════════════════
# Gates
# ═════════════════════════════════════════════════════════════════════════


@feature_bp.route("/features/<feature_id>/gates", methods=["POST"])
def record_gate(feature_id):
    """Body: {gate_name, status, phase?, approver?, note?, decision_log?}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "gate_name", "status")
    if err:
        return err
    gate = gate_service.record_gate(
        feature_id,
        data["gate_name"],
        data.get("phase"),
        data["status"],
        approver=data.get("approver"),
        note=data.get("note"),
        decision_log=data.get("decision_log"),
    )
    return jsonify(gate), 201


@feature_bp.route("/features/<feature_id>/gates", methods=["GET"])
def list_gates(feature_id):
    if request.args.get("latest") in ("1", "true"):
        return jsonify({"items": gate_service.latest_gates(feature_id)}), 200
    return jsonify({"items": gate_service.list_gates(feature_id)}), 200


@feature_bp.route("/features/<feature_id>/gates/pending", methods=["GET"])
def pending_gates(feature_id):
    return jsonify({"items": gate_service.pending_gates(feature_id)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Blockers
# ═════════════════════════════════════════════════════════════════════════


@feature_bp.route("/features/<feature_id>/blockers", methods=["POST"])
def open_blocker(feature_id):
    """Body: {blocker_type, severity, title, phase?, description?, created_by?, context?}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "blocker_type", "title")
    if err:
        return err
    if data.get("context") is not None and not isinstance(data["context"], dict):
        return api_error(E.VALIDATION_INVALID, "context must be an object")
    blocker = gate_service.open_blocker(
        feature_id,
        data["blocker_type"],
        data.get("phase"),
        data.get("severity") or "MEDIUM",
        data["title"],
        description=data.get("description"),
        created_by=data.get("created_by") or "system",
        context=data.get("context"),
    )
    return jsonify(blocker), 201


@feature_bp.route("/features/<feature_id>/blockers", methods=["GET"])
def list_blockers(feature_id):
    return jsonify({"items": gate_service.list_blockers(feature_id, status=request.args.get("status"))}), 200


@feature_bp.route("/blockers/<int:blocker_id>", methods=["GET"])
def get_blocker(blocker_id):
    return jsonify(gate_service.get_blocker(blocker_id)), 200


@feature_bp.route("/blockers/<int:blocker_id>/start", methods=["POST"])
def start_blocker(blocker_id):
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "actor")
    if err:
        return err
    return jsonify(gate_service.start_blocker(blocker_id, data["actor"])), 200


@feature_bp.route("/blockers/<int:blocker_id>/resolve", methods=["POST"])
def resolve_blocker(blocker_id):
    """Body: {resolved_by, notes?}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "resolved_by")
    if err:
        return err
    return jsonify(gate_service.resolve_blocker(blocker_id, data["resolved_by"], data.get("notes"))), 200


@feature_bp.route("/blockers/<int:blocker_id>/escalate", methods=["POST"])
def escalate_blocker(blocker_id):
    data = _body() or {}
    blocker = gate_service.escalate_blocker(blocker_id, notes=data.get("notes"), actor=data.get("actor") or "system")
    return jsonify(blocker), 200


# ═════════════════════════════════════════════════════════════════════════
# Invocation telemetry & coverage
# ═════════════════════════════════════════════════════════════════════════


@feature_bp.route("/features/<feature_id>/invocations", methods=["POST"])
def start_invocation(feature_id):
    """Body: {phase, agent_name, operation?, skills?}. Returns {id}."""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "phase", "agent_name")
    if err:
        return err
    if data.get("skills") is not None and not isinstance(data["skills"], list):
        return api_error(E.VALIDATION_INVALID, "skills must be a list")
    invocation_id = telemetry_service.start_invocation(
        feature_id,
        data["phase"],
        data["agent_name"],
        operation=data.get("operation"),
        skills=data.get("skills"),
    )
    return jsonify({"id": invocation_id}), 201


@feature_bp.route("/features/<feature_id>/invocations", methods=["GET"])
def list_invocations(feature_id):
    phase = request.args.get("phase", type=int)
    return jsonify({"items": telemetry_service.list_invocations(feature_id, phase=phase)}), 200


@feature_bp.route("/features/<feature_id>/invocations/backfill", methods=["POST"])
def backfill_invocations(feature_id):
    """Body: {actor, note}. Reconstructs missing invocations from the transition log."""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "actor", "note")
    if err:
        return err
    return jsonify(telemetry_service.backfill_invocations(feature_id, data["actor"], data["note"])), 200


@feature_bp.route("/invocations/<invocation_id>", methods=["GET"])
def get_invocation(invocation_id):
    return jsonify(telemetry_service.get_invocation(invocation_id)), 200


@feature_bp.route("/invocations/<invocation_id>/end", methods=["POST"])
def end_invocation(invocation_id):
    data = _body() or {}
    return jsonify(telemetry_service.end_invocation(invocation_id, notes=data.get("notes"))), 200


@feature_bp.route("/features/<feature_id>/coverage", methods=["GET"])
def check_coverage(feature_id):
    through_phase = request.args.get("through_phase", default=7, type=int)
    return jsonify(telemetry_service.check_coverage(feature_id, through_phase=through_phase)), 200


# ═════════════════════════════════════════════════════════════════════════
# Version-control facts
# ═════════════════════════════════════════════════════════════════════════


@feature_bp.route("/features/<feature_id>/commits", methods=["POST"])
def record_commit(feature_id):
    """Body: {commit_hash, commit_message, phase, agent_name, files_changed?}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "commit_hash", "commit_message", "phase", "agent_name")
    if err:
        return err
    commit = feature_service.record_commit(
        feature_id,
        data["commit_hash"],
        data["commit_message"],
        data["phase"],
        data["agent_name"],
        files_changed=data.get("files_changed"),
    )
    return jsonify(commit), 201


@feature_bp.route("/features/<feature_id>/pr", methods=["POST"])
def record_pr(feature_id):
    """Body: {pr_url, pr_number, actor}. Gated on invocation coverage through phase 6."""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "pr_url", "pr_number", "actor")
    if err:
        return err
    return jsonify(feature_service.record_pr(feature_id, data["pr_url"], data["pr_number"], data["actor"])), 200


@feature_bp.route("/features/<feature_id>/merge", methods=["POST"])
def record_merge(feature_id):
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "merged_by")
    if err:
        return err
    return jsonify(feature_service.record_merge(feature_id, data["merged_by"])), 200


# ═════════════════════════════════════════════════════════════════════════
# Phase outputs
# ═════════════════════════════════════════════════════════════════════════


@feature_bp.route("/features/<feature_id>/phases/<int:phase>/tasks", methods=["PUT"])
def submit_task_list(feature_id, phase):
    """Body: {tasks: [{id, title, status, ...}], submitted_by}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _missing(data, "tasks", "submitted_by")
    if err:
        return err
    if not isinstance(data["tasks"], list):
        return api_error(E.VALIDATION_INVALID, "tasks must be a list")
    return jsonify(feature_service.submit_task_list(feature_id, phase, data["tasks"], data["submitted_by"])), 200


@feature_bp.route("/features/<feature_id>/phases/<int:phase>/tasks", methods=["GET"])
def get_task_list(feature_id, phase):
    return jsonify({"items": feature_service.get_task_list(feature_id, phase)}), 200


@feature_bp.route("/features/<feature_id>/phases/<int:phase>/outputs/<output_type>", methods=["PUT"])
def record_phase_output(feature_id, phase, output_type):
    data = _body()
    if data is None:
        return _bad_body()
    if "content" not in data:
        return api_error(E.VALIDATION_REQUIRED, "content is required")
    output = feature_service.record_phase_output(
        feature_id, phase, output_type, data["content"], created_by=data.get("created_by"),
    )
    return jsonify(output), 200


@feature_bp.route("/features/<feature_id>/outputs", methods=["GET"])
def get_phase_outputs(feature_id):
    phase = request.args.get("phase", type=int)
    return jsonify({"items": feature_service.get_phase_outputs(feature_id, phase=phase)}), 200
