"""
Workflow & Knowledge State Engine
Feature workflow domain models.

Models:
    - Feature:          unit of work moving through phases 0 (Planning) … 8 (Complete)
    - PhaseTransition:  immutable phase-change event; ordering defines phase history
    - QualityGate:      append-only gate evaluation (one row per decision)
    - Blocker:          recorded obstruction with severity and resolution lifecycle
    - AgentInvocation:  one bracketed unit of agent work within a phase
    - FeatureCommit:    version-control commit fact reported by an agent
    - PhaseOutput:      structured output per (feature, phase, output_type), e.g. task lists

Architecture:
    Feature ──1:N──▶ PhaseTransition
    Feature ──1:N──▶ QualityGate
    Feature ──1:N──▶ Blocker
    Feature ──1:N──▶ AgentInvocation
    Feature ──1:N──▶ FeatureCommit
    Feature ──1:N──▶ PhaseOutput

Lifecycle states:
    Feature.status:   IN_PROGRESS ⇄ BLOCKED → COMPLETED | CANCELLED
    Blocker.status:   OPEN → IN_PROGRESS → RESOLVED  |  OPEN/IN_PROGRESS → ESCALATED → RESOLVED
"""

from datetime import datetime, timezone

from sdd_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PHASE_NAMES = {
    0: "Planning",
    1: "Discovery",
    2: "Architect",
    3: "Guardian",
    4: "Builder",
    5: "Integrator",
    6: "Documenter",
    7: "Release",
    8: "Complete",
}

RELEASE_PHASE = 7
COMPLETE_PHASE = 8

# Phase → agent that must leave a closed invocation before release/completion
EXPECTED_PHASE_AGENTS = {
    1: "discovery",
    2: "architect",
    3: "guardian",
    4: "builder",
    5: "integrator",
    6: "documenter",
    7: "release",
}

FEATURE_SEVERITIES = {"ROUTINE", "EXPEDITED", "CRITICAL"}
FEATURE_STATUSES = {"IN_PROGRESS", "BLOCKED", "COMPLETED", "CANCELLED"}
TERMINAL_FEATURE_STATUSES = {"COMPLETED", "CANCELLED"}

TRANSITION_TYPES = {"FORWARD", "BACKWARD", "ESCALATION"}

GATE_STATUSES = {"PENDING", "APPROVED", "REJECTED"}

BLOCKER_TYPES = {
    "SPEC_THRASHING",
    "MAX_ITERATIONS_REACHED",
    "TOKEN_BUDGET_EXCEEDED",
    "VALIDATION_FAILED",
    "IMPLEMENTATION_IMPOSSIBLE",
    "TECHNICAL_IMPOSSIBILITY",
    "BREAKING_CHANGE_DETECTED",
    "HUMAN_DECISION_REQUIRED",
}
BLOCKER_SEVERITIES = {"LOW", "MEDIUM", "HIGH", "CRITICAL"}
BLOCKER_STATUSES = {"OPEN", "IN_PROGRESS", "RESOLVED", "ESCALATED"}

BLOCKER_TRANSITIONS = {
    "OPEN":        ["IN_PROGRESS", "RESOLVED", "ESCALATED"],
    "IN_PROGRESS": ["RESOLVED", "ESCALATED"],
    "ESCALATED":   ["RESOLVED"],
    "RESOLVED":    [],
}

TASK_STATUSES = {"pending", "in-progress", "completed"}
TASK_STATUS_ALIASES = {"done": "completed"}


def validate_blocker_transition(old_status, new_status):
    """Return True if Blocker status transition is valid."""
    return new_status in BLOCKER_TRANSITIONS.get(old_status, [])


def classify_transition(current_phase, to_phase):
    """Return the transition kind for a move, or None when it is illegal.

    Forward moves are legal only one phase at a time; backward moves to any
    earlier phase. Staying put is not a transition.
    """
    if to_phase == current_phase + 1:
        return "FORWARD"
    if to_phase < current_phase:
        return "BACKWARD"
    return None


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Feature
# ═════════════════════════════════════════════════════════════════════════════


class Feature(db.Model):
    """
    A unit of work tracked through the phase state machine.

    ``current_phase`` and ``status`` change only through the phase service;
    features are never deleted, only terminated via status.
    """

    __tablename__ = "features"

    id = db.Column(db.String(100), primary_key=True, comment="Caller-chosen slug, e.g. 'auth-flow'")
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    complexity_level = db.Column(db.Integer, nullable=False, default=2, comment="1 | 2 | 3")
    severity = db.Column(
        db.String(20), nullable=False, default="ROUTINE",
        comment="ROUTINE | EXPEDITED | CRITICAL",
    )
    current_phase = db.Column(db.Integer, nullable=False, default=0, comment="0 Planning … 8 Complete")
    status = db.Column(
        db.String(20), nullable=False, default="IN_PROGRESS",
        comment="IN_PROGRESS | BLOCKED | COMPLETED | CANCELLED",
    )

    # Version-control facts (recorded, never acted upon)
    branch_name = db.Column(db.String(255), nullable=True)
    base_branch = db.Column(db.String(100), nullable=False, default="main")
    pr_url = db.Column(db.String(500), nullable=True)
    pr_number = db.Column(db.Integer, nullable=True)
    merged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    merged_by = db.Column(db.String(100), nullable=True)

    created_by = db.Column(db.String(100), nullable=True, comment="Author / orchestrator identity")
    dev_initials = db.Column(db.String(10), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.CheckConstraint("complexity_level BETWEEN 1 AND 3", name="ck_feature_complexity"),
        db.CheckConstraint("current_phase BETWEEN 0 AND 8", name="ck_feature_phase"),
        db.CheckConstraint(
            "severity IN ('ROUTINE','EXPEDITED','CRITICAL')",
            name="ck_feature_severity",
        ),
        db.CheckConstraint(
            "status IN ('IN_PROGRESS','BLOCKED','COMPLETED','CANCELLED')",
            name="ck_feature_status",
        ),
        db.Index("idx_feature_status", "status"),
        db.Index("idx_feature_updated", "updated_at"),
    )

    @property
    def phase_name(self):
        return PHASE_NAMES.get(self.current_phase, "Unknown")

    @property
    def is_terminal(self):
        return self.status in TERMINAL_FEATURE_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "complexity_level": self.complexity_level,
            "severity": self.severity,
            "current_phase": self.current_phase,
            "phase_name": self.phase_name,
            "status": self.status,
            "branch_name": self.branch_name,
            "base_branch": self.base_branch,
            "pr_url": self.pr_url,
            "pr_number": self.pr_number,
            "merged_at": self.merged_at.isoformat() if self.merged_at else None,
            "merged_by": self.merged_by,
            "created_by": self.created_by,
            "dev_initials": self.dev_initials,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<Feature {self.id} phase={self.current_phase} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. PhaseTransition
# ═════════════════════════════════════════════════════════════════════════════


class PhaseTransition(db.Model):
    """Immutable phase-change event. One row per accepted transition."""

    __tablename__ = "phase_transitions"

    id = db.Column(db.Integer, primary_key=True)
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_phase = db.Column(db.Integer, nullable=False)
    to_phase = db.Column(db.Integer, nullable=False)
    transition_type = db.Column(
        db.String(20), nullable=False, default="FORWARD",
        comment="FORWARD | BACKWARD | ESCALATION",
    )
    transitioned_by = db.Column(db.String(100), nullable=False, comment="Agent or human actor")
    notes = db.Column(db.Text, nullable=True)
    transitioned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("from_phase BETWEEN 0 AND 8", name="ck_transition_from"),
        db.CheckConstraint("to_phase BETWEEN 0 AND 8", name="ck_transition_to"),
        db.CheckConstraint(
            "transition_type IN ('FORWARD','BACKWARD','ESCALATION')",
            name="ck_transition_type",
        ),
        db.Index("idx_transition_feature_ts", "feature_id", "transitioned_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "from_phase": self.from_phase,
            "to_phase": self.to_phase,
            "from_phase_name": PHASE_NAMES.get(self.from_phase),
            "to_phase_name": PHASE_NAMES.get(self.to_phase),
            "transition_type": self.transition_type,
            "transitioned_by": self.transitioned_by,
            "notes": self.notes,
            "transitioned_at": self.transitioned_at.isoformat() if self.transitioned_at else None,
        }

    def __repr__(self):
        return f"<PhaseTransition {self.feature_id} {self.from_phase}→{self.to_phase} {self.transition_type}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. QualityGate
# ═════════════════════════════════════════════════════════════════════════════


class QualityGate(db.Model):
    """
    One gate evaluation. Re-approval after a rejection appends a new row;
    the history of a gate is every row with the same (feature, gate_name, phase).
    """

    __tablename__ = "quality_gates"

    id = db.Column(db.Integer, primary_key=True)
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    gate_name = db.Column(db.String(100), nullable=False)
    phase = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING", comment="PENDING | APPROVED | REJECTED")
    approver = db.Column(db.String(100), nullable=True)
    approval_notes = db.Column(db.Text, nullable=True)
    decision_log = db.Column(db.JSON, nullable=True, comment="Opaque agent-supplied decision payload")
    evaluated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("phase BETWEEN 0 AND 8", name="ck_gate_phase"),
        db.CheckConstraint("status IN ('PENDING','APPROVED','REJECTED')", name="ck_gate_status"),
        db.Index("idx_gate_feature_name", "feature_id", "gate_name", "phase"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "gate_name": self.gate_name,
            "phase": self.phase,
            "status": self.status,
            "approver": self.approver,
            "approval_notes": self.approval_notes,
            "decision_log": self.decision_log,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }

    def __repr__(self):
        return f"<QualityGate {self.feature_id}:{self.gate_name}@{self.phase} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. Blocker
# ═════════════════════════════════════════════════════════════════════════════


class Blocker(db.Model):
    """Obstruction to progress. Mutated only through status transitions; never deleted."""

    __tablename__ = "blockers"

    id = db.Column(db.Integer, primary_key=True)
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    blocker_type = db.Column(db.String(40), nullable=False, comment="SPEC_THRASHING | VALIDATION_FAILED | …")
    phase = db.Column(db.Integer, nullable=False)
    severity = db.Column(db.String(20), nullable=False, default="MEDIUM", comment="LOW | MEDIUM | HIGH | CRITICAL")
    status = db.Column(db.String(20), nullable=False, default="OPEN", comment="OPEN | IN_PROGRESS | RESOLVED | ESCALATED")
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    context = db.Column(db.JSON, nullable=True, comment="Structured detail, e.g. missing coverage pairs")
    created_by = db.Column(db.String(100), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.String(100), nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)

    __table_args__ = (
        db.CheckConstraint("phase BETWEEN 0 AND 8", name="ck_blocker_phase"),
        db.CheckConstraint(
            "severity IN ('LOW','MEDIUM','HIGH','CRITICAL')",
            name="ck_blocker_severity",
        ),
        db.CheckConstraint(
            "status IN ('OPEN','IN_PROGRESS','RESOLVED','ESCALATED')",
            name="ck_blocker_status",
        ),
        db.Index("idx_blocker_feature_status", "feature_id", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "blocker_type": self.blocker_type,
            "phase": self.phase,
            "severity": self.severity,
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "context": self.context,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
        }

    def __repr__(self):
        return f"<Blocker {self.id} {self.blocker_type} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. AgentInvocation
# ═════════════════════════════════════════════════════════════════════════════


class AgentInvocation(db.Model):
    """
    One agent work window. Opened by start, closed exactly once by end;
    ``duration_ms`` is derived from the window, never supplied.
    """

    __tablename__ = "agent_invocations"

    id = db.Column(db.String(36), primary_key=True, comment="uuid4 hex string")
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    phase = db.Column(db.Integer, nullable=False)
    agent_name = db.Column(db.String(100), nullable=False)
    operation = db.Column(db.String(255), nullable=True)
    skills_used = db.Column(db.JSON, nullable=True, comment="List of skill identifiers loaded for the run")
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    is_backfill = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="True when derived retroactively from the transition log",
    )

    __table_args__ = (
        db.CheckConstraint("phase BETWEEN 0 AND 8", name="ck_invocation_phase"),
        db.CheckConstraint("duration_ms IS NULL OR duration_ms >= 0", name="ck_invocation_duration"),
        db.Index("idx_invocation_feature_phase", "feature_id", "phase", "agent_name"),
    )

    @property
    def is_closed(self):
        return self.ended_at is not None and self.duration_ms is not None

    def to_dict(self):
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "phase": self.phase,
            "agent_name": self.agent_name,
            "operation": self.operation,
            "skills_used": self.skills_used or [],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "notes": self.notes,
            "is_backfill": self.is_backfill,
        }

    def __repr__(self):
        return f"<AgentInvocation {self.id[:8]} {self.agent_name}@{self.phase}>"


# ═════════════════════════════════════════════════════════════════════════════
# 6. FeatureCommit
# ═════════════════════════════════════════════════════════════════════════════


class FeatureCommit(db.Model):
    """Commit fact reported by an agent. The engine never runs git itself."""

    __tablename__ = "feature_commits"

    id = db.Column(db.Integer, primary_key=True)
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    commit_hash = db.Column(db.String(64), nullable=False)
    commit_message = db.Column(db.Text, nullable=False)
    phase = db.Column(db.Integer, nullable=False)
    agent_name = db.Column(db.String(100), nullable=False)
    files_changed = db.Column(db.JSON, nullable=True)
    committed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("feature_id", "commit_hash", name="uq_feature_commit"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "commit_hash": self.commit_hash,
            "commit_message": self.commit_message,
            "phase": self.phase,
            "agent_name": self.agent_name,
            "files_changed": self.files_changed or [],
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 7. PhaseOutput
# ═════════════════════════════════════════════════════════════════════════════


class PhaseOutput(db.Model):
    """
    Structured output attached to a phase. One row per output type;
    re-submission replaces ``content`` wholesale.
    """

    __tablename__ = "phase_outputs"

    id = db.Column(db.Integer, primary_key=True)
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    phase = db.Column(db.Integer, nullable=False)
    output_type = db.Column(db.String(50), nullable=False, comment="tasks | spec | design | …")
    content = db.Column(db.JSON, nullable=False)
    created_by = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("feature_id", "phase", "output_type", name="uq_phase_output"),
        db.CheckConstraint("phase BETWEEN 0 AND 8", name="ck_output_phase"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "phase": self.phase,
            "output_type": self.output_type,
            "content": self.content,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
