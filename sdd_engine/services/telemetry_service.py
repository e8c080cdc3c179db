"""Invocation Telemetry & Coverage Gate.

Agents bracket their work with start_invocation / end_invocation; the
engine derives the duration. Before a release action (record_pr) or
complete(), the coverage gate checks that every expected (phase, agent)
pair left at least one closed invocation:

    1 discovery · 2 architect · 3 guardian · 4 builder
    5 integrator · 6 documenter · 7 release

Agent names match case-insensitively with an optional "-agent" suffix,
so "Release-Agent" satisfies phase 7.

A failed gate opens a VALIDATION_FAILED blocker listing the missing pairs
and raises GateFailure. The check never repairs anything itself; missing
telemetry is remediated only through backfill_invocations(), which needs
an explicit provenance note.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select

from sdd_engine.core.exceptions import ConflictError, GateFailure, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import write_audit
from sdd_engine.models.workflow import (
    COMPLETE_PHASE,
    EXPECTED_PHASE_AGENTS,
    PHASE_NAMES,
    RELEASE_PHASE,
    AgentInvocation,
    Feature,
    PhaseTransition,
)
from sdd_engine.services import gate_service, phase_service
from sdd_engine.services.helpers.store import as_utc, atomic, compare_and_set, get_or_raise, utcnow

logger = logging.getLogger(__name__)

BACKFILL_PREFIX = "BACKFILL:"


def normalize_agent_name(name: str | None) -> str:
    """'Guardian-Agent' → 'guardian'."""
    value = (name or "").strip().lower()
    for suffix in ("-agent", "_agent", " agent"):
        if value.endswith(suffix):
            value = value[: -len(suffix)]
    return value


def _duration_ms(started, ended) -> int:
    return max(0, int((as_utc(ended) - as_utc(started)).total_seconds() * 1000))


# ── Invocation lifecycle ──────────────────────────────────────────────────────


def start_invocation(
    feature_id: str,
    phase: int,
    agent_name: str,
    operation: str | None = None,
    skills: list[str] | None = None,
) -> str:
    """Open an invocation window and return its id.

    When ``skills`` is non-empty a SKILLS_LOADED audit entry records which
    capabilities the agent loaded for this run.
    """
    phase = phase_service.coerce_phase(phase)
    agent_name = (agent_name or "").strip()
    if not agent_name:
        raise ValidationError("agent_name is required")
    if skills is not None and (
        not isinstance(skills, list) or not all(isinstance(s, str) and s.strip() for s in skills)
    ):
        raise ValidationError("skills must be a list of non-empty strings", details={"skills": skills})

    with atomic():
        get_or_raise(Feature, feature_id)
        invocation = AgentInvocation(
            id=str(uuid.uuid4()),
            feature_id=feature_id,
            phase=phase,
            agent_name=agent_name,
            operation=operation,
            skills_used=[s.strip() for s in skills] if skills else [],
            started_at=utcnow(),
        )
        db.session.add(invocation)
        db.session.flush()
        if skills:
            write_audit(
                entity_type="invocation",
                entity_id=invocation.id,
                feature_id=feature_id,
                action="invocation.skills_loaded",
                actor=agent_name,
                diff={"phase": phase, "skills": invocation.skills_used},
            )
        invocation_id = invocation.id

    logger.debug(
        "Invocation %s started: %s@%d on %s", invocation_id, agent_name, phase, feature_id,
        extra={"feature_id": feature_id, "event_type": "invocation.start"},
    )
    return invocation_id


def end_invocation(invocation_id: str, notes: str | None = None) -> dict:
    """Close an invocation and compute its duration.

    Raises:
        NotFoundError: Unknown invocation id.
        ConflictError: The invocation was already ended (by this or a
                       concurrent caller).
    """
    with atomic():
        invocation = get_or_raise(AgentInvocation, invocation_id, lock=True)
        if invocation.ended_at is not None:
            raise ConflictError(
                "AgentInvocation", "ended_at", invocation_id,
                message=f"invocation {invocation_id} already ended",
            )
        ended_at = utcnow()
        values = {"ended_at": ended_at, "duration_ms": _duration_ms(invocation.started_at, ended_at)}
        if notes is not None:
            values["notes"] = notes
        if not compare_and_set(AgentInvocation, invocation_id, expected={"ended_at": None}, values=values):
            raise ConflictError(
                "AgentInvocation", "ended_at", invocation_id,
                message=f"invocation {invocation_id} was ended concurrently",
            )
        result = invocation.to_dict()

    logger.info(
        "Invocation %s ended: %s@%d %dms", invocation_id, result["agent_name"], result["phase"],
        result["duration_ms"],
        extra={"feature_id": result["feature_id"], "event_type": "invocation.end"},
    )
    return result


def get_invocation(invocation_id: str) -> dict:
    return get_or_raise(AgentInvocation, invocation_id).to_dict()


def list_invocations(feature_id: str, phase: int | None = None) -> list[dict]:
    get_or_raise(Feature, feature_id)
    stmt = select(AgentInvocation).where(AgentInvocation.feature_id == feature_id)
    if phase is not None:
        stmt = stmt.where(AgentInvocation.phase == phase)
    rows = db.session.execute(
        stmt.order_by(AgentInvocation.started_at, AgentInvocation.id)
    ).scalars().all()
    return [i.to_dict() for i in rows]


# ── Coverage gate ─────────────────────────────────────────────────────────────


def _expected_pairs(through_phase: int) -> list[tuple[int, str]]:
    return [(p, a) for p, a in sorted(EXPECTED_PHASE_AGENTS.items()) if p <= through_phase]


def _pair_dict(phase: int, agent: str) -> dict:
    return {"phase": phase, "phase_name": PHASE_NAMES[phase], "agent": agent}


def check_coverage(feature_id: str, through_phase: int = RELEASE_PHASE) -> dict:
    """Report which expected (phase, agent) pairs have a closed invocation.

    Read-only: never writes, never backfills.

    Returns:
        {"feature_id", "through_phase", "passed", "expected", "present", "missing"}
        where the three lists hold {"phase", "phase_name", "agent"} dicts.
    """
    get_or_raise(Feature, feature_id)
    rows = db.session.execute(
        select(AgentInvocation.phase, AgentInvocation.agent_name)
        .where(
            AgentInvocation.feature_id == feature_id,
            AgentInvocation.ended_at.is_not(None),
            AgentInvocation.duration_ms.is_not(None),
        )
        .distinct()
    ).all()
    closed = {(phase, normalize_agent_name(agent)) for phase, agent in rows}

    expected = _expected_pairs(through_phase)
    present = [_pair_dict(p, a) for p, a in expected if (p, a) in closed]
    missing = [_pair_dict(p, a) for p, a in expected if (p, a) not in closed]
    return {
        "feature_id": feature_id,
        "through_phase": through_phase,
        "passed": not missing,
        "expected": [_pair_dict(p, a) for p, a in expected],
        "present": present,
        "missing": missing,
    }


def enforce_coverage(
    feature_id: str,
    actor: str,
    action: str,
    through_phase: int = RELEASE_PHASE,
) -> dict:
    """Run the coverage gate before ``action``; halt progression on failure.

    On failure a VALIDATION_FAILED blocker enumerating every missing pair is
    opened and committed in its own transaction, then GateFailure is raised
    so the caller's action never starts.

    Returns:
        The coverage report when the gate passes.
    """
    report = check_coverage(feature_id, through_phase)
    if report["passed"]:
        return report

    missing = report["missing"]
    listing = ", ".join(f"phase {m['phase']} ({m['agent']})" for m in missing)
    blocker = gate_service.open_blocker(
        feature_id,
        "VALIDATION_FAILED",
        phase=None,
        severity="HIGH",
        title=f"Invocation coverage gate failed before {action}",
        description=f"Missing closed invocations: {listing}",
        created_by=actor or "system",
        context={"gate": gate_service.COVERAGE_GATE, "action": action, "missing": missing},
    )
    logger.warning(
        "Coverage gate failed for %s before %s: %s", feature_id, action, listing,
        extra={"feature_id": feature_id, "event_type": "gate.coverage_failed"},
    )
    raise GateFailure(gate_service.COVERAGE_GATE, feature_id, missing, blocker["id"])


def _phase_window(transitions: list[PhaseTransition], phase: int):
    """(entry, exit) transition rows for the most recent visit to ``phase``."""
    moves = [t for t in transitions if t.transition_type != "ESCALATION"]
    entry_index = None
    for index, move in enumerate(moves):
        if move.to_phase == phase and move.from_phase != phase:
            entry_index = index
    if entry_index is None:
        return None, None
    exit_row = next(
        (m for m in moves[entry_index + 1:] if m.from_phase == phase and m.to_phase != phase),
        None,
    )
    return moves[entry_index], exit_row


def backfill_invocations(feature_id: str, actor: str, note: str) -> dict:
    """Derive closed invocations for missing coverage pairs from the transition log.

    Explicit remediation only. Each derived row spans the latest visit to the
    phase (entry transition → next transition out, or now while the feature is
    still there), carries ``is_backfill=True`` and a "BACKFILL:" note, and is
    audited. Pairs whose phase was never entered are skipped. The coverage
    check is re-run afterwards.

    Args:
        feature_id: Feature to remediate.
        actor:      Who authorised the backfill.
        note:       Mandatory provenance explanation.

    Returns:
        {"created": [invocation dicts], "skipped": [pair dicts], "coverage": report}
    """
    note = (note or "").strip()
    if not note:
        raise ValidationError("A provenance note is required for backfill", details={"note": "required"})
    if not actor:
        raise ValidationError("actor is required")

    report = check_coverage(feature_id)
    created, skipped = [], []

    with atomic():
        feature = get_or_raise(Feature, feature_id, lock=True)
        transitions = db.session.execute(
            select(PhaseTransition)
            .where(PhaseTransition.feature_id == feature_id)
            .order_by(PhaseTransition.transitioned_at, PhaseTransition.id)
        ).scalars().all()

        for pair in report["missing"]:
            entry, exit_row = _phase_window(transitions, pair["phase"])
            if entry is None:
                skipped.append({**pair, "reason": "phase never entered"})
                continue
            ended_at = exit_row.transitioned_at if exit_row else (feature.completed_at or utcnow())
            invocation = AgentInvocation(
                id=str(uuid.uuid4()),
                feature_id=feature_id,
                phase=pair["phase"],
                agent_name=pair["agent"],
                operation="backfill",
                skills_used=[],
                started_at=entry.transitioned_at,
                ended_at=ended_at,
                duration_ms=_duration_ms(entry.transitioned_at, ended_at),
                notes=f"{BACKFILL_PREFIX} {note} (derived from transition {entry.id})",
                is_backfill=True,
            )
            db.session.add(invocation)
            db.session.flush()
            created.append(invocation.to_dict())

        if created:
            write_audit(
                entity_type="invocation",
                entity_id=feature_id,
                feature_id=feature_id,
                action="invocation.backfill",
                actor=actor,
                diff={
                    "note": note,
                    "pairs": [{"phase": c["phase"], "agent": c["agent_name"]} for c in created],
                },
            )

    logger.warning(
        "Backfilled %d invocation(s) on %s by %s (%d skipped)", len(created), feature_id, actor, len(skipped),
        extra={"feature_id": feature_id, "event_type": "invocation.backfill"},
    )
    return {"created": created, "skipped": skipped, "coverage": check_coverage(feature_id)}


# ── Duration analytics ────────────────────────────────────────────────────────


def phase_durations(feature_id: str) -> list[dict]:
    """Time spent per phase, derived from the transition timeline.

    A visit runs from the transition into a phase to the next transition
    out; the open visit of an active feature runs until now.
    """
    feature = get_or_raise(Feature, feature_id)
    moves = db.session.execute(
        select(PhaseTransition)
        .where(
            PhaseTransition.feature_id == feature_id,
            PhaseTransition.transition_type != "ESCALATION",
        )
        .order_by(PhaseTransition.transitioned_at, PhaseTransition.id)
    ).scalars().all()

    totals: dict[int, dict] = {}
    for index, move in enumerate(moves):
        phase = move.to_phase
        if phase == COMPLETE_PHASE:
            continue
        if index + 1 < len(moves):
            ended = moves[index + 1].transitioned_at
        else:
            ended = feature.completed_at or utcnow()
        bucket = totals.setdefault(phase, {"visits": 0, "total_ms": 0})
        bucket["visits"] += 1
        bucket["total_ms"] += _duration_ms(move.transitioned_at, ended)

    return [
        {
            "phase": phase,
            "phase_name": PHASE_NAMES[phase],
            "visits": data["visits"],
            "total_ms": data["total_ms"],
            "is_current": phase == feature.current_phase,
        }
        for phase, data in sorted(totals.items())
    ]


def agent_durations(feature_id: str) -> list[dict]:
    """Count / total / avg / min / max of closed invocation durations per (phase, agent)."""
    get_or_raise(Feature, feature_id)
    rows = db.session.execute(
        select(
            AgentInvocation.phase,
            AgentInvocation.agent_name,
            func.count(AgentInvocation.id),
            func.sum(AgentInvocation.duration_ms),
            func.avg(AgentInvocation.duration_ms),
            func.min(AgentInvocation.duration_ms),
            func.max(AgentInvocation.duration_ms),
        )
        .where(
            AgentInvocation.feature_id == feature_id,
            AgentInvocation.duration_ms.is_not(None),
        )
        .group_by(AgentInvocation.phase, AgentInvocation.agent_name)
        .order_by(AgentInvocation.phase, AgentInvocation.agent_name)
    ).all()
    return [
        {
            "phase": phase,
            "phase_name": PHASE_NAMES.get(phase),
            "agent_name": agent,
            "invocations": count,
            "total_ms": int(total or 0),
            "avg_ms": round(float(avg or 0), 1),
            "min_ms": minimum,
            "max_ms": maximum,
        }
        for phase, agent, count, total, avg, minimum, maximum in rows
    ]
