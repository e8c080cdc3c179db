"""Quality Gate & Blocker Ledger.

Gates are append-only: every evaluation is a new row, so a rejection
followed by a re-approval leaves both decisions in the history. Blockers
move through OPEN → IN_PROGRESS → RESOLVED / ESCALATED and are never
deleted. Opening or resolving a blocker re-derives the feature's
BLOCKED / IN_PROGRESS status through the phase service.

The only automatic gate ↔ blocker link is the invocation coverage gate,
which opens a VALIDATION_FAILED blocker carrying ``context.gate =
"invocation_coverage"``.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from sdd_engine.core.exceptions import StateError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import write_audit
from sdd_engine.models.workflow import (
    BLOCKER_SEVERITIES,
    BLOCKER_STATUSES,
    BLOCKER_TYPES,
    GATE_STATUSES,
    Blocker,
    Feature,
    QualityGate,
    validate_blocker_transition,
)
from sdd_engine.services import phase_service
from sdd_engine.services.helpers.store import atomic, get_or_raise, utcnow

logger = logging.getLogger(__name__)

COVERAGE_GATE = "invocation_coverage"


# ── Quality gates ─────────────────────────────────────────────────────────────


def record_gate(
    feature_id: str,
    gate_name: str,
    phase: int | None,
    status: str,
    approver: str | None = None,
    note: str | None = None,
    decision_log: dict | list | None = None,
) -> dict:
    """Append a gate evaluation. ``phase`` defaults to the feature's current phase."""
    gate_name = (gate_name or "").strip()
    if not gate_name:
        raise ValidationError("gate_name is required")
    status = (status or "").upper()
    if status not in GATE_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(sorted(GATE_STATUSES))}",
            details={"status": status},
        )

    with atomic():
        feature = get_or_raise(Feature, feature_id)
        phase = feature.current_phase if phase is None else phase_service.coerce_phase(phase)
        gate = QualityGate(
            feature_id=feature_id,
            gate_name=gate_name,
            phase=phase,
            status=status,
            approver=approver,
            approval_notes=note,
            decision_log=decision_log,
            evaluated_at=utcnow(),
        )
        db.session.add(gate)
        db.session.flush()
        write_audit(
            entity_type="gate",
            entity_id=gate.id,
            feature_id=feature_id,
            action="gate.record",
            actor=approver or "system",
            diff={"gate_name": gate_name, "phase": phase, "status": status},
        )
        result = gate.to_dict()

    logger.info(
        "Gate %s@%d for %s: %s (approver=%s)", gate_name, phase, feature_id, status, approver,
        extra={"feature_id": feature_id, "event_type": "gate.record"},
    )
    return result


def list_gates(feature_id: str) -> list[dict]:
    """Every gate row for a feature, oldest first."""
    get_or_raise(Feature, feature_id)
    rows = db.session.execute(
        select(QualityGate)
        .where(QualityGate.feature_id == feature_id)
        .order_by(QualityGate.evaluated_at, QualityGate.id)
    ).scalars().all()
    return [g.to_dict() for g in rows]


def latest_gates(feature_id: str) -> list[dict]:
    """The most recent row per (gate_name, phase)."""
    latest: dict[tuple, dict] = {}
    for gate in list_gates(feature_id):
        latest[(gate["gate_name"], gate["phase"])] = gate
    return list(latest.values())


def pending_gates(feature_id: str) -> list[dict]:
    """Gates whose latest decision is still PENDING."""
    return [g for g in latest_gates(feature_id) if g["status"] == "PENDING"]


# ── Blockers ──────────────────────────────────────────────────────────────────


def _validate_blocker_fields(blocker_type: str, severity: str, title: str) -> None:
    errors = {}
    if blocker_type not in BLOCKER_TYPES:
        errors["blocker_type"] = f"must be one of: {', '.join(sorted(BLOCKER_TYPES))}"
    if severity not in BLOCKER_SEVERITIES:
        errors["severity"] = f"must be one of: {', '.join(sorted(BLOCKER_SEVERITIES))}"
    if not (title or "").strip():
        errors["title"] = "required"
    if errors:
        raise ValidationError("Invalid blocker", details=errors)


def open_blocker(
    feature_id: str,
    blocker_type: str,
    phase: int | None,
    severity: str,
    title: str,
    description: str | None = None,
    created_by: str = "system",
    context: dict | None = None,
) -> dict:
    """Create an OPEN blocker and mark the feature BLOCKED.

    Args:
        feature_id:   Owning feature.
        blocker_type: One of BLOCKER_TYPES (e.g. VALIDATION_FAILED).
        phase:        Phase the blocker applies to; defaults to the current phase.
        severity:     LOW | MEDIUM | HIGH | CRITICAL.
        title:        Short summary.
        description:  Free text.
        created_by:   Agent, reviewer or "system".
        context:      Structured detail stored as-is.

    Returns:
        Serialized Blocker dict.
    """
    blocker_type = (blocker_type or "").upper()
    severity = (severity or "MEDIUM").upper()
    _validate_blocker_fields(blocker_type, severity, title)

    with atomic():
        feature = get_or_raise(Feature, feature_id, lock=True)
        phase = feature.current_phase if phase is None else phase_service.coerce_phase(phase)
        blocker = Blocker(
            feature_id=feature_id,
            blocker_type=blocker_type,
            phase=phase,
            severity=severity,
            status="OPEN",
            title=title.strip(),
            description=description,
            context=context,
            created_by=created_by or "system",
            created_at=utcnow(),
        )
        db.session.add(blocker)
        db.session.flush()
        phase_service.sync_blocked_status(feature)
        write_audit(
            entity_type="blocker",
            entity_id=blocker.id,
            feature_id=feature_id,
            action="blocker.open",
            actor=blocker.created_by,
            diff={"blocker_type": blocker_type, "severity": severity, "phase": phase},
        )
        result = blocker.to_dict()

    logger.warning(
        "Blocker %s opened on %s: %s [%s/%s]", result["id"], feature_id, title, blocker_type, severity,
        extra={"feature_id": feature_id, "event_type": "blocker.open"},
    )
    return result


def _transition_blocker(blocker: Blocker, new_status: str) -> str:
    old_status = blocker.status
    if not validate_blocker_transition(old_status, new_status):
        raise StateError(
            f"blocker cannot move {old_status} → {new_status}",
            resource="Blocker", resource_id=blocker.id, current=old_status,
        )
    blocker.status = new_status
    return old_status


def start_blocker(blocker_id: int, actor: str) -> dict:
    """OPEN → IN_PROGRESS: someone is working the blocker."""
    with atomic():
        blocker = get_or_raise(Blocker, blocker_id, lock=True)
        feature = get_or_raise(Feature, blocker.feature_id, lock=True)
        old = _transition_blocker(blocker, "IN_PROGRESS")
        phase_service.sync_blocked_status(feature)
        write_audit(
            entity_type="blocker",
            entity_id=blocker.id,
            feature_id=blocker.feature_id,
            action="blocker.start",
            actor=actor,
            diff={"status": {"old": old, "new": "IN_PROGRESS"}},
        )
        result = blocker.to_dict()
    logger.info("Blocker %s in progress (%s)", blocker_id, actor)
    return result


def resolve_blocker(blocker_id: int, resolved_by: str, notes: str | None = None) -> dict:
    """Resolve a blocker; the feature returns to IN_PROGRESS once no OPEN blockers remain.

    Raises:
        NotFoundError: Unknown blocker.
        StateError:    Blocker is already RESOLVED.
    """
    if not resolved_by:
        raise ValidationError("resolved_by is required")

    with atomic():
        blocker = get_or_raise(Blocker, blocker_id, lock=True)
        feature = get_or_raise(Feature, blocker.feature_id, lock=True)
        old = _apply_resolution(blocker, resolved_by, notes)
        phase_service.sync_blocked_status(feature)
        result = blocker.to_dict()

    logger.info(
        "Blocker %s resolved by %s (was %s)", blocker_id, resolved_by, old,
        extra={"feature_id": result["feature_id"], "event_type": "blocker.resolve"},
    )
    return result


def _apply_resolution(blocker: Blocker, resolved_by: str, notes: str | None) -> str:
    old = _transition_blocker(blocker, "RESOLVED")
    blocker.resolved_at = utcnow()
    blocker.resolved_by = resolved_by
    blocker.resolution_notes = notes
    write_audit(
        entity_type="blocker",
        entity_id=blocker.id,
        feature_id=blocker.feature_id,
        action="blocker.resolve",
        actor=resolved_by,
        diff={"status": {"old": old, "new": "RESOLVED"}, "notes": notes},
    )
    return old


def escalate_blocker(blocker_id: int, notes: str | None = None, actor: str = "system") -> dict:
    """Escalate a blocker for human attention.

    Also appends an ESCALATION entry to the feature's phase history at its
    current phase, so escalations show up in the transition timeline.

    Raises:
        StateError: Blocker is RESOLVED or already ESCALATED.
    """
    with atomic():
        blocker = get_or_raise(Blocker, blocker_id, lock=True)
        feature = get_or_raise(Feature, blocker.feature_id, lock=True)
        old = _transition_blocker(blocker, "ESCALATED")
        blocker.escalated_at = utcnow()
        if notes:
            blocker.context = {**(blocker.context or {}), "escalation_notes": notes}
        phase_service.sync_blocked_status(feature)
        phase_service.record_transition_row(
            feature.id, feature.current_phase, feature.current_phase, "ESCALATION",
            actor, f"Blocker {blocker.id} escalated: {notes or blocker.title}",
        )
        write_audit(
            entity_type="blocker",
            entity_id=blocker.id,
            feature_id=blocker.feature_id,
            action="blocker.escalate",
            actor=actor,
            diff={"status": {"old": old, "new": "ESCALATED"}, "notes": notes},
        )
        result = blocker.to_dict()

    logger.warning(
        "Blocker %s escalated on %s", blocker_id, result["feature_id"],
        extra={"feature_id": result["feature_id"], "event_type": "blocker.escalate"},
    )
    return result


def get_blocker(blocker_id: int) -> dict:
    return get_or_raise(Blocker, blocker_id).to_dict()


def list_blockers(feature_id: str, status: str | None = None) -> list[dict]:
    get_or_raise(Feature, feature_id)
    stmt = select(Blocker).where(Blocker.feature_id == feature_id)
    if status:
        status = status.upper()
        if status not in BLOCKER_STATUSES:
            raise ValidationError(f"Unknown blocker status {status!r}")
        stmt = stmt.where(Blocker.status == status)
    rows = db.session.execute(stmt.order_by(Blocker.created_at, Blocker.id)).scalars().all()
    return [b.to_dict() for b in rows]


def resolve_satisfied_coverage_blockers(feature: Feature, actor: str, coverage: dict) -> int:
    """Resolve OPEN coverage-gate blockers whose missing pairs are all present now.

    ``coverage`` is the passing report from telemetry_service.enforce_coverage.
    A blocker listing a pair outside that report (e.g. phase 7 when only
    phases 1-6 were checked) stays open. Runs inside the caller's transaction
    (complete() / record_pr()); never called from the coverage check itself.
    """
    present = {(p["phase"], p["agent"]) for p in coverage["present"]}
    rows = db.session.execute(
        select(Blocker).where(
            Blocker.feature_id == feature.id,
            Blocker.blocker_type == "VALIDATION_FAILED",
            Blocker.status.in_(("OPEN", "IN_PROGRESS")),
        )
    ).scalars().all()
    resolved = 0
    for blocker in rows:
        context = blocker.context or {}
        if context.get("gate") != COVERAGE_GATE:
            continue
        if any((m["phase"], m["agent"]) not in present for m in context.get("missing", [])):
            continue
        _apply_resolution(blocker, actor, "Invocation coverage gate passed")
        resolved += 1
    if resolved:
        phase_service.sync_blocked_status(feature)
        logger.info("Resolved %d satisfied coverage blocker(s) on %s", resolved, feature.id)
    return resolved
