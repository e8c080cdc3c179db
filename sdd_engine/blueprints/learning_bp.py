"""Knowledge-base blueprint: learnings, conflicts, propagation.

Endpoint groups:
  Learnings       GET/POST  /api/v1/learnings
                  GET       /api/v1/learnings/<id>[/chain]
                  POST      /api/v1/learnings/<id>/{evolve,validate,reference}
                  GET       /api/v1/features/<id>/learnings/summary
  Conflicts       GET/POST  /api/v1/conflicts
                  GET       /api/v1/conflicts/<id>
                  POST      /api/v1/conflicts/<id>/{investigate,resolve,defer}
                  GET       /api/v1/learnings/<id>/conflict-candidates
                  POST      /api/v1/learnings/<id>/scan
  Propagation     GET/POST  /api/v1/learnings/<id>/targets
                  POST      /api/v1/learnings/<id>/targets/compute
                  POST      /api/v1/learnings/<id>/propagations
                  GET       /api/v1/learnings/<id>/propagation-status
                  GET       /api/v1/learnings/<id>/formatted
                  GET       /api/v1/propagation/{ready,queue,evolution-syncs,records}
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from sdd_engine.services import conflict_service, learning_service, propagation_service
from sdd_engine.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

learning_bp = Blueprint("learning_bp", __name__, url_prefix="/api/v1")
register_error_handlers(learning_bp)


def _body() -> dict | None:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _bad_body():
    return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")


def _require(data: dict, *fields: str):
    for field in fields:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            return api_error(E.VALIDATION_REQUIRED, f"{field} is required")
    return None


# ═════════════════════════════════════════════════════════════════════════
# Learnings
# ═════════════════════════════════════════════════════════════════════════


@learning_bp.route("/learnings", methods=["POST"])
def create_learning():
    """Body: {category, title, content, confidence_score?, importance?, tags?, feature_id?, ...}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _require(data, "category", "title", "content")
    if err:
        return err
    return jsonify(learning_service.create_learning(data)), 201


@learning_bp.route("/learnings", methods=["GET"])
def list_learnings():
    """Query params: category, feature_id, tag, min_confidence, include_superseded."""
    items = learning_service.list_learnings(
        category=request.args.get("category"),
        feature_id=request.args.get("feature_id"),
        include_superseded=request.args.get("include_superseded") in ("1", "true"),
        min_confidence=request.args.get("min_confidence", type=float),
        tag=request.args.get("tag"),
    )
    return jsonify({"items": items}), 200


@learning_bp.route("/learnings/<learning_id>", methods=["GET"])
def get_learning(learning_id):
    return jsonify(learning_service.get_learning(learning_id)), 200


@learning_bp.route("/learnings/<learning_id>/chain", methods=["GET"])
def get_learning_chain(learning_id):
    return jsonify({
        "summary": learning_service.chain_summary(learning_id),
        "chain": learning_service.get_learning_chain(learning_id),
    }), 200


@learning_bp.route("/learnings/<learning_id>/evolve", methods=["POST"])
def evolve_learning(learning_id):
    """Body: {content, delta_summary?, title?, ...}. 409 if already superseded."""
    data = _body()
    if data is None:
        return _bad_body()
    err = _require(data, "content")
    if err:
        return err
    return jsonify(learning_service.evolve_learning(learning_id, data)), 201


@learning_bp.route("/learnings/<learning_id>/validate", methods=["POST"])
def validate_learning(learning_id):
    data = _body()
    if data is None:
        return _bad_body()
    err = _require(data, "validated_by")
    if err:
        return err
    return jsonify(learning_service.validate_learning(learning_id, data["validated_by"])), 200


@learning_bp.route("/learnings/<learning_id>/reference", methods=["POST"])
def reference_learning(learning_id):
    return jsonify(learning_service.reference_learning(learning_id)), 200


@learning_bp.route("/features/<feature_id>/learnings/summary", methods=["GET"])
def feature_learning_summary(feature_id):
    return jsonify(learning_service.feature_learning_summary(feature_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Conflicts
# ═════════════════════════════════════════════════════════════════════════


@learning_bp.route("/conflicts", methods=["POST"])
def detect_conflict():
    """Body: {learning_a_id, learning_b_id, conflict_type, description, detected_by}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _require(data, "learning_a_id", "learning_b_id", "conflict_type", "description", "detected_by")
    if err:
        return err
    conflict = conflict_service.detect_conflict(
        data["learning_a_id"],
        data["learning_b_id"],
        data["conflict_type"],
        data["description"],
        data["detected_by"],
    )
    return jsonify(conflict), 201


@learning_bp.route("/conflicts", methods=["GET"])
def list_conflicts():
    items = conflict_service.list_conflicts(
        status=request.args.get("status"),
        learning_id=request.args.get("learning_id"),
    )
    return jsonify({"items": items}), 200


@learning_bp.route("/conflicts/<conflict_id>", methods=["GET"])
def get_conflict(conflict_id):
    return jsonify(conflict_service.get_conflict(conflict_id)), 200


@learning_bp.route("/conflicts/<conflict_id>/investigate", methods=["POST"])
def investigate_conflict(conflict_id):
    data = _body() or {}
    return jsonify(conflict_service.investigate_conflict(conflict_id, data.get("actor") or "system")), 200


@learning_bp.route("/conflicts/<conflict_id>/resolve", methods=["POST"])
def resolve_conflict(conflict_id):
    """Body: {resolution, resolved_by, winning_learning_id?, loser_confidence?}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _require(data, "resolution", "resolved_by")
    if err:
        return err
    conflict = conflict_service.resolve_conflict(
        conflict_id,
        data["resolution"],
        winning_learning_id=data.get("winning_learning_id"),
        resolved_by=data["resolved_by"],
        loser_confidence=data.get("loser_confidence"),
    )
    return jsonify(conflict), 200


@learning_bp.route("/conflicts/<conflict_id>/defer", methods=["POST"])
def defer_conflict(conflict_id):
    data = _body() or {}
    conflict = conflict_service.defer_conflict(conflict_id, actor=data.get("actor") or "system",
                                               notes=data.get("notes"))
    return jsonify(conflict), 200


@learning_bp.route("/learnings/<learning_id>/conflict-candidates", methods=["GET"])
def conflict_candidates(learning_id):
    return jsonify({"items": conflict_service.find_conflict_candidates(learning_id)}), 200


@learning_bp.route("/learnings/<learning_id>/scan", methods=["POST"])
def scan_learning(learning_id):
    data = _body() or {}
    created = conflict_service.scan_learning(learning_id, detected_by=data.get("detected_by") or "conflict-detector")
    return jsonify({"created": created}), 200


# ═════════════════════════════════════════════════════════════════════════
# Propagation
# ═════════════════════════════════════════════════════════════════════════


@learning_bp.route("/learnings/<learning_id>/targets", methods=["GET"])
def list_targets(learning_id):
    return jsonify({"items": propagation_service.list_targets(learning_id)}), 200


@learning_bp.route("/learnings/<learning_id>/targets", methods=["POST"])
def declare_target(learning_id):
    """Body: {target_type, target_path?, relevance?}"""
    data = _body()
    if data is None:
        return _bad_body()
    err = _require(data, "target_type")
    if err:
        return err
    target = propagation_service.declare_target(
        learning_id, data["target_type"], data.get("target_path"), data.get("relevance", 0.8),
    )
    return jsonify(target), 201


@learning_bp.route("/learnings/<learning_id>/targets/compute", methods=["POST"])
def compute_targets(learning_id):
    return jsonify({"items": propagation_service.compute_targets(learning_id)}), 200


@learning_bp.route("/learnings/<learning_id>/propagations", methods=["POST"])
def record_propagation(learning_id):
    """Body: {target_type, target_path?, actor, section?}. 409 when the learning is not ready."""
    data = _body()
    if data is None:
        return _bad_body()
    err = _require(data, "target_type", "actor")
    if err:
        return err
    record = propagation_service.record_propagation(
        learning_id, data["target_type"], data.get("target_path"), data["actor"], section=data.get("section"),
    )
    return jsonify(record), 200


@learning_bp.route("/learnings/<learning_id>/propagation-status", methods=["GET"])
def propagation_status(learning_id):
    return jsonify(propagation_service.propagation_status(learning_id)), 200


@learning_bp.route("/learnings/<learning_id>/formatted", methods=["GET"])
def format_learning(learning_id):
    return jsonify(propagation_service.format_for_propagation(learning_id)), 200


@learning_bp.route("/propagation/ready", methods=["GET"])
def ready_learnings():
    return jsonify({"items": learning_service.propagation_ready_learnings()}), 200


@learning_bp.route("/propagation/queue", methods=["GET"])
def ready_queue():
    return jsonify({"items": propagation_service.ready_queue()}), 200


@learning_bp.route("/propagation/evolution-syncs", methods=["GET"])
def pending_evolution_syncs():
    return jsonify({"items": propagation_service.pending_evolution_syncs()}), 200


@learning_bp.route("/propagation/records", methods=["GET"])
def propagations_for_path():
    """Query params: target_type (required), target_path."""
    target_type = request.args.get("target_type")
    if not target_type:
        return api_error(E.VALIDATION_REQUIRED, "target_type is required")
    items = propagation_service.propagations_for_path(target_type, request.args.get("target_path"))
    return jsonify({"items": items}), 200
