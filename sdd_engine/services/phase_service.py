"""Phase transition guard: the only writer of Feature.current_phase and Feature.status.

State machine:
    0 Planning → 1 Discovery → … → 7 Release → 8 Complete

Rules:
  - Forward moves advance exactly one phase; anything larger is a forward skip.
  - Backward moves may target any earlier phase and are recorded as rework.
  - Phase 8 is reachable only through complete(), which runs the invocation
    coverage gate for phases 1–7 first.
  - Every accepted move updates the feature and appends its PhaseTransition
    in one transaction, guarded by a compare-and-set on the expected phase.
  - db.session.commit() happens only via helpers.store.atomic().
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from sdd_engine.core.exceptions import StateError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import write_audit
from sdd_engine.models.workflow import (
    COMPLETE_PHASE,
    PHASE_NAMES,
    RELEASE_PHASE,
    Blocker,
    Feature,
    PhaseTransition,
    classify_transition,
)
from sdd_engine.services.helpers.store import atomic, compare_and_set, get_or_raise, utcnow

logger = logging.getLogger(__name__)


def coerce_phase(value, field: str = "phase") -> int:
    """Return ``value`` as a phase number, or raise ValidationError."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer 0-8", details={field: repr(value)})
    if value < 0 or value > COMPLETE_PHASE:
        raise ValidationError(f"{field} must be between 0 and 8", details={field: value})
    return value


def _assert_active(feature: Feature) -> None:
    if feature.is_terminal:
        raise StateError(
            f"feature is {feature.status}",
            resource="Feature",
            resource_id=feature.id,
            current=feature.status,
        )


def _open_blocker_count(feature_id: str) -> int:
    return db.session.execute(
        select(func.count(Blocker.id)).where(
            Blocker.feature_id == feature_id,
            Blocker.status == "OPEN",
        )
    ).scalar_one()


def sync_blocked_status(feature: Feature) -> str:
    """Derive IN_PROGRESS / BLOCKED from the feature's OPEN blockers.

    Called by the blocker ledger inside its transaction. Terminal features
    keep their status.
    """
    if feature.is_terminal:
        return feature.status
    db.session.flush()
    status = "BLOCKED" if _open_blocker_count(feature.id) else "IN_PROGRESS"
    if status != feature.status:
        logger.info(
            "Feature %s status %s → %s", feature.id, feature.status, status,
            extra={"feature_id": feature.id, "event_type": "feature.status"},
        )
        feature.status = status
        feature.updated_at = utcnow()
    return feature.status


def record_transition_row(
    feature_id: str,
    from_phase: int,
    to_phase: int,
    kind: str,
    actor: str,
    note: str | None,
) -> PhaseTransition:
    """Append a PhaseTransition inside the caller's transaction."""
    row = PhaseTransition(
        feature_id=feature_id,
        from_phase=from_phase,
        to_phase=to_phase,
        transition_type=kind,
        transitioned_by=actor,
        notes=note,
        transitioned_at=utcnow(),
    )
    db.session.add(row)
    db.session.flush()
    return row


def transition(feature_id: str, to_phase: int, actor: str, note: str | None = None) -> dict:
    """Move a feature to ``to_phase``.

    Args:
        feature_id: Feature to move.
        to_phase:   Target phase (0–7; 8 only via complete()).
        actor:      Agent or human performing the move.
        note:       Free-text reason, stored on the transition row.

    Returns:
        Serialized PhaseTransition dict.

    Raises:
        ValidationError: ``to_phase`` is not an int in 0–8, or actor is empty.
        NotFoundError:   Feature does not exist.
        StateError:      Forward skip, no-op, phase 8 requested, terminal
                         feature, or a concurrent phase change won the race.
    """
    to_phase = coerce_phase(to_phase, "to_phase")
    if not actor:
        raise ValidationError("actor is required")

    with atomic():
        feature = get_or_raise(Feature, feature_id, lock=True)
        _assert_active(feature)
        current = feature.current_phase

        if to_phase == COMPLETE_PHASE:
            raise StateError(
                "phase 8 is reachable only through complete()",
                resource="Feature", resource_id=feature_id, current=current,
            )
        kind = classify_transition(current, to_phase)
        if kind is None:
            reason = "already in phase" if to_phase == current else "forward skip"
            logger.warning(
                "Rejected transition %s: %s (%d → %d)", feature_id, reason, current, to_phase,
                extra={"feature_id": feature_id, "event_type": "feature.transition_rejected"},
            )
            raise StateError(
                f"{reason}: phase {current} → {to_phase}",
                resource="Feature", resource_id=feature_id, current=current,
            )

        if not compare_and_set(
            Feature, feature_id,
            expected={"current_phase": current},
            values={"current_phase": to_phase, "updated_at": utcnow()},
        ):
            raise StateError(
                "phase changed concurrently",
                resource="Feature", resource_id=feature_id, current=current,
            )

        row = record_transition_row(feature_id, current, to_phase, kind, actor, note)
        write_audit(
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            action="feature.transition",
            actor=actor,
            diff={
                "current_phase": {"old": current, "new": to_phase},
                "transition_type": kind,
                "notes": note,
            },
        )
        result = row.to_dict()

    logger.info(
        "Feature %s %s %d (%s) → %d (%s) by %s",
        feature_id, kind, current, PHASE_NAMES[current], to_phase, PHASE_NAMES[to_phase], actor,
        extra={"feature_id": feature_id, "event_type": "feature.transition"},
    )
    return result


def complete(feature_id: str, actor: str) -> dict:
    """Complete a feature in phase 7: coverage gate, then phase 8 / COMPLETED.

    On a coverage failure the gate opens a VALIDATION_FAILED blocker (committed
    on its own so it stays visible) and GateFailure propagates; the feature is
    left untouched. On success, coverage blockers from earlier failed attempts
    are resolved, a 7 → 8 transition is appended and an eval snapshot is taken.

    Returns:
        Feature dict with the completion eval under ``"eval"``.

    Raises:
        NotFoundError: Feature does not exist.
        StateError:    Feature not in phase 7, already terminal, has other
                       OPEN blockers, or was completed concurrently.
        GateFailure:   Invocation coverage for phases 1–7 is incomplete.
    """
    from sdd_engine.services import eval_service, gate_service, telemetry_service

    if not actor:
        raise ValidationError("actor is required")

    feature = get_or_raise(Feature, feature_id)
    _assert_active(feature)
    if feature.current_phase != RELEASE_PHASE:
        raise StateError(
            f"complete() requires phase {RELEASE_PHASE}, feature is in phase {feature.current_phase}",
            resource="Feature", resource_id=feature_id, current=feature.current_phase,
        )

    coverage = telemetry_service.enforce_coverage(feature_id, actor, action="complete", through_phase=RELEASE_PHASE)

    with atomic():
        feature = get_or_raise(Feature, feature_id, lock=True)
        _assert_active(feature)
        gate_service.resolve_satisfied_coverage_blockers(feature, actor, coverage)
        remaining = _open_blocker_count(feature_id)
        if remaining:
            raise StateError(
                f"{remaining} open blocker(s) must be resolved before completion",
                resource="Feature", resource_id=feature_id, current=feature.status,
            )

        now = utcnow()
        if not compare_and_set(
            Feature, feature_id,
            expected={"current_phase": RELEASE_PHASE, "completed_at": None},
            values={
                "current_phase": COMPLETE_PHASE,
                "status": "COMPLETED",
                "completed_at": now,
                "updated_at": now,
            },
        ):
            raise StateError(
                "feature changed concurrently",
                resource="Feature", resource_id=feature_id, current=feature.current_phase,
            )
        record_transition_row(
            feature_id, RELEASE_PHASE, COMPLETE_PHASE, "FORWARD", actor, "Feature completed",
        )
        write_audit(
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            action="feature.complete",
            actor=actor,
            diff={"status": {"old": "IN_PROGRESS", "new": "COMPLETED"}},
        )
        result = feature.to_dict()

    logger.info(
        "Feature %s completed by %s", feature_id, actor,
        extra={"feature_id": feature_id, "event_type": "feature.complete"},
    )
    result["eval"] = eval_service.compute_feature_eval(feature_id, evaluated_by=actor)
    return result


def cancel(feature_id: str, actor: str, reason: str | None = None) -> dict:
    """Terminate a non-completed feature with status CANCELLED."""
    if not actor:
        raise ValidationError("actor is required")

    with atomic():
        feature = get_or_raise(Feature, feature_id, lock=True)
        _assert_active(feature)
        previous = feature.status
        if not compare_and_set(
            Feature, feature_id,
            expected={"status": previous},
            values={"status": "CANCELLED", "updated_at": utcnow()},
        ):
            raise StateError(
                "feature changed concurrently",
                resource="Feature", resource_id=feature_id, current=previous,
            )
        write_audit(
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            action="feature.cancel",
            actor=actor,
            diff={"status": {"old": previous, "new": "CANCELLED"}, "reason": reason},
        )
        result = feature.to_dict()

    logger.info("Feature %s cancelled by %s", feature_id, actor, extra={"feature_id": feature_id})
    return result
