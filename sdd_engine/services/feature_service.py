"""Feature registry, version-control facts and phase outputs.

Features are created once and never deleted. Branch, PR and merge data
are facts reported by the orchestrator; the engine records them and never
touches a repository itself. Recording a PR is the release action and is
gated on invocation coverage for the pre-release phases 1–6 (the release
agent's own invocation brackets the PR step).

Task lists from agents are validated at the boundary ({id, title, status})
and stored as opaque JSON; re-submitting for the same feature/phase
replaces the whole list.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import func, select

from sdd_engine.core.exceptions import ConflictError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import AuditLog, write_audit
from sdd_engine.models.workflow import (
    FEATURE_SEVERITIES,
    FEATURE_STATUSES,
    TASK_STATUS_ALIASES,
    TASK_STATUSES,
    AgentInvocation,
    Blocker,
    Feature,
    FeatureCommit,
    PhaseOutput,
    PhaseTransition,
    QualityGate,
)
from sdd_engine.services import gate_service, phase_service, telemetry_service
from sdd_engine.services.helpers.store import atomic, get_or_raise, utcnow

logger = logging.getLogger(__name__)

_FEATURE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$")

TASKS_OUTPUT = "tasks"

# Phases whose coverage must be complete before a PR may be recorded
PRE_RELEASE_PHASE = 6


# ── Creation & lookup ─────────────────────────────────────────────────────────


def create_feature(
    feature_id: str,
    name: str,
    complexity_level: int,
    severity: str,
    created_by: str,
    description: str | None = None,
    dev_initials: str | None = None,
    base_branch: str = "main",
) -> dict:
    """Register a new feature at phase 0 (Planning).

    Writes the initial 0 → 0 "Feature created" transition so the phase
    timeline starts at creation.

    Raises:
        ValidationError: Malformed id, empty name, complexity outside 1–3,
                         unknown severity.
        ConflictError:   A feature with this id already exists.
    """
    errors = {}
    feature_id = (feature_id or "").strip()
    if not _FEATURE_ID_RE.match(feature_id):
        errors["id"] = "1-100 chars: letters, digits, '.', '_' or '-'"
    name = (name or "").strip()
    if not name:
        errors["name"] = "required"
    if isinstance(complexity_level, bool) or complexity_level not in (1, 2, 3):
        errors["complexity_level"] = "must be 1, 2 or 3"
    severity = (severity or "ROUTINE").upper()
    if severity not in FEATURE_SEVERITIES:
        errors["severity"] = f"must be one of: {', '.join(sorted(FEATURE_SEVERITIES))}"
    if errors:
        raise ValidationError("Invalid feature", details=errors)

    initials = (dev_initials or "").strip().lower() or None
    branch_name = f"{initials}/feature/{feature_id}" if initials else f"feature/{feature_id}"

    with atomic(resource="Feature"):
        if db.session.get(Feature, feature_id) is not None:
            raise ConflictError("Feature", "id", feature_id)
        now = utcnow()
        feature = Feature(
            id=feature_id,
            name=name,
            description=description,
            complexity_level=complexity_level,
            severity=severity,
            current_phase=0,
            status="IN_PROGRESS",
            branch_name=branch_name,
            base_branch=(base_branch or "main").strip(),
            created_by=created_by,
            dev_initials=initials,
            created_at=now,
            updated_at=now,
        )
        db.session.add(feature)
        db.session.flush()
        phase_service.record_transition_row(feature_id, 0, 0, "FORWARD", created_by or "system", "Feature created")
        write_audit(
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            action="feature.create",
            actor=created_by or "system",
            diff={
                "name": name,
                "complexity_level": complexity_level,
                "severity": severity,
                "branch_name": branch_name,
            },
        )
        result = feature.to_dict()

    logger.info(
        "Feature %s created (L%d %s) by %s", feature_id, complexity_level, severity, created_by,
        extra={"feature_id": feature_id, "event_type": "feature.create"},
    )
    return result


def get_feature(feature_id: str) -> dict:
    return get_or_raise(Feature, feature_id).to_dict()


def list_features(status: str | None = None) -> list[dict]:
    stmt = select(Feature)
    if status:
        status = status.upper()
        if status not in FEATURE_STATUSES:
            raise ValidationError(f"Unknown feature status {status!r}")
        stmt = stmt.where(Feature.status == status)
    rows = db.session.execute(stmt.order_by(Feature.updated_at.desc())).scalars().all()
    return [f.to_dict() for f in rows]


def get_feature_status(feature_id: str) -> dict:
    """Current snapshot: feature, open blockers, pending gates, coverage so far."""
    feature = get_or_raise(Feature, feature_id)
    open_blockers = db.session.execute(
        select(func.count(Blocker.id)).where(
            Blocker.feature_id == feature_id,
            Blocker.status == "OPEN",
        )
    ).scalar_one()
    return {
        "feature": feature.to_dict(),
        "open_blockers": open_blockers,
        "pending_gates": gate_service.pending_gates(feature_id),
        "coverage": telemetry_service.check_coverage(feature_id),
    }


def get_feature_history(feature_id: str) -> dict:
    """Full history: transitions, gates, blockers, invocations, commits, audit."""
    get_or_raise(Feature, feature_id)

    def _rows(model, *order_by):
        return [
            row.to_dict()
            for row in db.session.execute(
                select(model).where(model.feature_id == feature_id).order_by(*order_by)
            ).scalars()
        ]

    return {
        "feature_id": feature_id,
        "transitions": _rows(PhaseTransition, PhaseTransition.transitioned_at, PhaseTransition.id),
        "gates": _rows(QualityGate, QualityGate.evaluated_at, QualityGate.id),
        "blockers": _rows(Blocker, Blocker.created_at, Blocker.id),
        "invocations": _rows(AgentInvocation, AgentInvocation.started_at, AgentInvocation.id),
        "commits": _rows(FeatureCommit, FeatureCommit.committed_at, FeatureCommit.id),
        "audit": _rows(AuditLog, AuditLog.timestamp, AuditLog.id),
    }


# ── Version-control facts ─────────────────────────────────────────────────────


def record_commit(
    feature_id: str,
    commit_hash: str,
    commit_message: str,
    phase: int,
    agent_name: str,
    files_changed: list[str] | None = None,
) -> dict:
    """Record a commit made by an agent. Duplicate hashes per feature are rejected."""
    commit_hash = (commit_hash or "").strip()
    if not re.fullmatch(r"[0-9a-fA-F]{7,64}", commit_hash):
        raise ValidationError("commit_hash must be 7-64 hex characters")
    if not (commit_message or "").strip():
        raise ValidationError("commit_message is required")
    if not (agent_name or "").strip():
        raise ValidationError("agent_name is required")
    phase = phase_service.coerce_phase(phase)

    with atomic(resource="FeatureCommit"):
        get_or_raise(Feature, feature_id)
        exists = db.session.execute(
            select(FeatureCommit.id).where(
                FeatureCommit.feature_id == feature_id,
                FeatureCommit.commit_hash == commit_hash,
            )
        ).scalar_one_or_none()
        if exists is not None:
            raise ConflictError("FeatureCommit", "commit_hash", commit_hash)
        commit = FeatureCommit(
            feature_id=feature_id,
            commit_hash=commit_hash,
            commit_message=commit_message.strip(),
            phase=phase,
            agent_name=agent_name.strip(),
            files_changed=list(files_changed or []),
            committed_at=utcnow(),
        )
        db.session.add(commit)
        db.session.flush()
        result = commit.to_dict()

    logger.info("Commit %s recorded on %s (phase %d)", commit_hash[:8], feature_id, phase,
                extra={"feature_id": feature_id})
    return result


def record_pr(feature_id: str, pr_url: str, pr_number: int, actor: str) -> dict:
    """Record the pull request fact for a feature (the release action).

    Runs the coverage gate for phases 1–6 first; on failure a blocker is
    opened, GateFailure propagates and no PR fact is stored.
    """
    pr_url = (pr_url or "").strip()
    if not pr_url.startswith(("http://", "https://")):
        raise ValidationError("pr_url must be an http(s) URL", details={"pr_url": pr_url})
    if isinstance(pr_number, bool) or not isinstance(pr_number, int) or pr_number < 1:
        raise ValidationError("pr_number must be a positive integer")

    get_or_raise(Feature, feature_id)
    coverage = telemetry_service.enforce_coverage(
        feature_id, actor, action="record_pr", through_phase=PRE_RELEASE_PHASE,
    )

    with atomic():
        feature = get_or_raise(Feature, feature_id, lock=True)
        gate_service.resolve_satisfied_coverage_blockers(feature, actor, coverage)
        old = {"pr_url": feature.pr_url, "pr_number": feature.pr_number}
        feature.pr_url = pr_url
        feature.pr_number = pr_number
        feature.updated_at = utcnow()
        write_audit(
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            action="feature.pr_recorded",
            actor=actor,
            diff={"pr_url": {"old": old["pr_url"], "new": pr_url}, "pr_number": {"old": old["pr_number"], "new": pr_number}},
        )
        result = feature.to_dict()

    logger.info("PR #%d recorded for %s", pr_number, feature_id, extra={"feature_id": feature_id})
    return result


def record_merge(feature_id: str, merged_by: str) -> dict:
    """Record that the feature's PR was merged. Requires a recorded PR."""
    if not (merged_by or "").strip():
        raise ValidationError("merged_by is required")

    with atomic():
        feature = get_or_raise(Feature, feature_id, lock=True)
        if not feature.pr_url:
            raise ValidationError("No PR recorded for this feature", details={"pr_url": None})
        feature.merged_at = utcnow()
        feature.merged_by = merged_by.strip()
        feature.updated_at = feature.merged_at
        write_audit(
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            action="feature.merged",
            actor=merged_by,
            diff={"pr_number": feature.pr_number},
        )
        result = feature.to_dict()

    logger.info("Feature %s merged by %s", feature_id, merged_by, extra={"feature_id": feature_id})
    return result


# ── Phase outputs & task lists ────────────────────────────────────────────────


def _normalize_tasks(tasks) -> list[dict]:
    if not isinstance(tasks, list):
        raise ValidationError("tasks must be a list")
    normalized, errors = [], {}
    for index, task in enumerate(tasks):
        if not isinstance(task, dict):
            errors[str(index)] = "task must be an object"
            continue
        missing = [key for key in ("id", "title", "status") if task.get(key) in (None, "")]
        if missing:
            errors[str(index)] = f"missing required field(s): {', '.join(missing)}"
            continue
        status = str(task["status"]).strip().lower()
        status = TASK_STATUS_ALIASES.get(status, status)
        if status not in TASK_STATUSES:
            errors[str(index)] = f"status must be one of: {', '.join(sorted(TASK_STATUSES))}"
            continue
        normalized.append({**task, "status": status})
    if errors:
        raise ValidationError("Invalid task list", details=errors)
    return normalized


def _upsert_output(feature_id: str, phase: int, output_type: str, content, created_by: str | None) -> PhaseOutput:
    output = db.session.execute(
        select(PhaseOutput).where(
            PhaseOutput.feature_id == feature_id,
            PhaseOutput.phase == phase,
            PhaseOutput.output_type == output_type,
        ).with_for_update()
    ).scalar_one_or_none()
    if output is None:
        output = PhaseOutput(feature_id=feature_id, phase=phase, output_type=output_type)
        db.session.add(output)
    output.content = content
    output.created_by = created_by
    output.updated_at = utcnow()
    db.session.flush()
    return output


def submit_task_list(feature_id: str, phase: int, tasks: list[dict], submitted_by: str) -> dict:
    """Replace the task list for (feature, phase) wholesale.

    Each task needs ``id``, ``title`` and ``status`` in {pending, in-progress,
    completed}; "done" is stored as completed. Other keys are kept verbatim.
    """
    phase = phase_service.coerce_phase(phase)
    normalized = _normalize_tasks(tasks)

    with atomic(resource="PhaseOutput"):
        get_or_raise(Feature, feature_id)
        output = _upsert_output(feature_id, phase, TASKS_OUTPUT, normalized, submitted_by)
        write_audit(
            entity_type="feature",
            entity_id=feature_id,
            feature_id=feature_id,
            action="feature.tasks_submitted",
            actor=submitted_by or "system",
            diff={"phase": phase, "task_count": len(normalized)},
        )
        result = output.to_dict()

    logger.info("Task list for %s phase %d replaced (%d tasks)", feature_id, phase, len(normalized),
                extra={"feature_id": feature_id})
    return result


def get_task_list(feature_id: str, phase: int) -> list[dict]:
    get_or_raise(Feature, feature_id)
    output = db.session.execute(
        select(PhaseOutput).where(
            PhaseOutput.feature_id == feature_id,
            PhaseOutput.phase == phase,
            PhaseOutput.output_type == TASKS_OUTPUT,
        )
    ).scalar_one_or_none()
    return list(output.content) if output else []


def record_phase_output(feature_id: str, phase: int, output_type: str, content, created_by: str | None = None) -> dict:
    """Upsert a phase output. Output type ``tasks`` goes through task validation."""
    output_type = (output_type or "").strip().lower()
    if not output_type:
        raise ValidationError("output_type is required")
    if output_type == TASKS_OUTPUT:
        return submit_task_list(feature_id, phase, content, created_by)
    if content is None:
        raise ValidationError("content is required")
    phase = phase_service.coerce_phase(phase)

    with atomic(resource="PhaseOutput"):
        get_or_raise(Feature, feature_id)
        result = _upsert_output(feature_id, phase, output_type, content, created_by).to_dict()
    return result


def get_phase_outputs(feature_id: str, phase: int | None = None) -> list[dict]:
    get_or_raise(Feature, feature_id)
    stmt = select(PhaseOutput).where(PhaseOutput.feature_id == feature_id)
    if phase is not None:
        stmt = stmt.where(PhaseOutput.phase == phase)
    rows = db.session.execute(stmt.order_by(PhaseOutput.phase, PhaseOutput.output_type)).scalars().all()
    return [o.to_dict() for o in rows]
