"""
Workflow & Knowledge State Engine
Knowledge-base domain models.

Models:
    - Learning:           captured, versionable unit of knowledge with a confidence score
    - LearningConflict:   flagged contradiction or overlap between two learnings
    - PropagationTarget:  candidate destination document for a learning
    - PropagationRecord:  evidence that a target document was actually updated

Architecture:
    Learning ──0:1──▶ Learning            (previous_version_id, evolution chain)
    Learning ──N:M──▶ Learning            (via LearningConflict)
    Learning ──1:N──▶ PropagationTarget
    Learning ──1:N──▶ PropagationRecord

Lifecycle states:
    Learning:          active → superseded (terminal; content is never mutated)
    LearningConflict:  OPEN → INVESTIGATING → RESOLVED | DEFERRED
"""

import uuid
from datetime import datetime, timezone

from sdd_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

LEARNING_CATEGORIES = {
    "DECISION", "PATTERN", "GOTCHA", "CONVENTION",
    "ARCHITECTURE", "RATIONALE", "OPTIMIZATION", "INTEGRATION",
}

IMPORTANCE_LEVELS = {"HIGH", "MEDIUM", "LOW"}

CONFLICT_TYPES = {"CONTRADICTION", "SCOPE_OVERLAP", "VERSION_DRIFT"}
CONFLICT_STATUSES = {"OPEN", "INVESTIGATING", "RESOLVED", "DEFERRED"}

# Conflicts in these states keep both learnings out of propagation
BLOCKING_CONFLICT_STATUSES = ("OPEN", "INVESTIGATING")

CONFLICT_TRANSITIONS = {
    "OPEN":          ["INVESTIGATING", "RESOLVED", "DEFERRED"],
    "INVESTIGATING": ["RESOLVED", "DEFERRED"],
    "DEFERRED":      ["INVESTIGATING", "RESOLVED"],
    "RESOLVED":      [],
}

PROPAGATION_TARGET_TYPES = {"agents_md", "skill", "agent_definition"}
TARGET_ORIGINS = {"computed", "declared"}


def validate_conflict_transition(old_status, new_status):
    """Return True if LearningConflict status transition is valid."""
    return new_status in CONFLICT_TRANSITIONS.get(old_status, [])


def target_key(target_type, target_path):
    """Non-null identity for a (type, path) pair; agents_md has no path."""
    return f"{target_type}:{target_path or ''}"


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return str(uuid.uuid4())


# ═════════════════════════════════════════════════════════════════════════════
# 1. Learning
# ═════════════════════════════════════════════════════════════════════════════


class Learning(db.Model):
    """
    Immutable knowledge record. Evolution appends a successor row and flips
    only the predecessor's supersession fields; ``title``/``content`` never
    change after insert.
    """

    __tablename__ = "learnings"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    previous_version_id = db.Column(
        db.String(36), db.ForeignKey("learnings.id", ondelete="SET NULL"),
        nullable=True, index=True,
        comment="Predecessor in the evolution chain; NULL for a chain root",
    )
    iteration = db.Column(db.Integer, nullable=False, default=1, comment="1 for a root; predecessor + 1 otherwise")

    category = db.Column(db.String(20), nullable=False, comment="DECISION | PATTERN | GOTCHA | …")
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    delta_summary = db.Column(db.Text, nullable=True, comment="What changed relative to the predecessor")

    confidence_score = db.Column(db.Float, nullable=False, default=0.5, comment="0.00 – 1.00, two decimals")
    validation_count = db.Column(db.Integer, nullable=False, default=0)
    validated_by = db.Column(db.JSON, nullable=True, comment="List of validator identities in order")
    last_validated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    importance = db.Column(db.String(10), nullable=False, default="MEDIUM", comment="HIGH | MEDIUM | LOW")
    tags = db.Column(db.JSON, nullable=True)

    # Origin (all optional)
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    task_id = db.Column(db.String(100), nullable=True)
    phase = db.Column(db.Integer, nullable=True)
    agent_name = db.Column(db.String(100), nullable=True)
    created_by = db.Column(db.String(100), nullable=True)

    is_superseded = db.Column(db.Boolean, nullable=False, default=False)
    superseded_by = db.Column(db.String(36), nullable=True)
    superseded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint("confidence_score BETWEEN 0 AND 1", name="ck_learning_confidence"),
        db.CheckConstraint("iteration >= 1", name="ck_learning_iteration"),
        db.CheckConstraint("importance IN ('HIGH','MEDIUM','LOW')", name="ck_learning_importance"),
        db.CheckConstraint(
            "category IN ('DECISION','PATTERN','GOTCHA','CONVENTION',"
            "'ARCHITECTURE','RATIONALE','OPTIMIZATION','INTEGRATION')",
            name="ck_learning_category",
        ),
        db.CheckConstraint(
            "is_superseded OR superseded_by IS NULL",
            name="ck_learning_superseded",
        ),
        db.Index("idx_learning_category_active", "category", "is_superseded"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "previous_version_id": self.previous_version_id,
            "iteration": self.iteration,
            "category": self.category,
            "title": self.title,
            "content": self.content,
            "delta_summary": self.delta_summary,
            "confidence_score": self.confidence_score,
            "validation_count": self.validation_count,
            "validated_by": self.validated_by or [],
            "last_validated_at": self.last_validated_at.isoformat() if self.last_validated_at else None,
            "importance": self.importance,
            "tags": self.tags or [],
            "feature_id": self.feature_id,
            "task_id": self.task_id,
            "phase": self.phase,
            "agent_name": self.agent_name,
            "created_by": self.created_by,
            "is_superseded": self.is_superseded,
            "superseded_by": self.superseded_by,
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Learning {self.id[:8]} v{self.iteration} {self.category}: {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. LearningConflict
# ═════════════════════════════════════════════════════════════════════════════


class LearningConflict(db.Model):
    """Relation between two distinct learnings. One row per unordered pair, smaller id first."""

    __tablename__ = "learning_conflicts"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    learning_a_id = db.Column(
        db.String(36), db.ForeignKey("learnings.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    learning_b_id = db.Column(
        db.String(36), db.ForeignKey("learnings.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    conflict_type = db.Column(db.String(20), nullable=False, comment="CONTRADICTION | SCOPE_OVERLAP | VERSION_DRIFT")
    description = db.Column(db.Text, nullable=False)
    detected_by = db.Column(db.String(100), nullable=False)
    detected_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    status = db.Column(db.String(20), nullable=False, default="OPEN", comment="OPEN | INVESTIGATING | RESOLVED | DEFERRED")
    resolution = db.Column(db.Text, nullable=True)
    winning_learning_id = db.Column(
        db.String(36), db.ForeignKey("learnings.id", ondelete="SET NULL"),
        nullable=True,
    )
    resolved_by = db.Column(db.String(100), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("learning_a_id", "learning_b_id", name="uq_conflict_pair"),
        db.CheckConstraint("learning_a_id < learning_b_id", name="ck_conflict_pair_order"),
        db.CheckConstraint(
            "status IN ('OPEN','INVESTIGATING','RESOLVED','DEFERRED')",
            name="ck_conflict_status",
        ),
        db.Index("idx_conflict_status", "status"),
    )

    def hours_open(self, now=None):
        """Hours since detection; derived on read, never stored."""
        now = now or _utcnow()
        detected = self.detected_at
        if detected.tzinfo is None:
            detected = detected.replace(tzinfo=timezone.utc)
        return round((now - detected).total_seconds() / 3600, 2)

    def involves(self, learning_id):
        return learning_id in (self.learning_a_id, self.learning_b_id)

    def other(self, learning_id):
        return self.learning_b_id if learning_id == self.learning_a_id else self.learning_a_id

    def to_dict(self):
        return {
            "id": self.id,
            "learning_a_id": self.learning_a_id,
            "learning_b_id": self.learning_b_id,
            "conflict_type": self.conflict_type,
            "description": self.description,
            "detected_by": self.detected_by,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "status": self.status,
            "resolution": self.resolution,
            "winning_learning_id": self.winning_learning_id,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "hours_open": self.hours_open() if self.detected_at else None,
        }

    def __repr__(self):
        return f"<LearningConflict {self.id[:8]} {self.conflict_type} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. PropagationTarget
# ═════════════════════════════════════════════════════════════════════════════


class PropagationTarget(db.Model):
    """Candidate destination for a learning, with a relevance score."""

    __tablename__ = "propagation_targets"

    id = db.Column(db.Integer, primary_key=True)
    learning_id = db.Column(
        db.String(36), db.ForeignKey("learnings.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    target_type = db.Column(db.String(30), nullable=False, comment="agents_md | skill | agent_definition")
    target_path = db.Column(db.String(500), nullable=True, comment="NULL for agents_md")
    target_key = db.Column(db.String(540), nullable=False, comment="type:path, unique per learning")
    relevance_score = db.Column(db.Float, nullable=False, default=0.8)
    origin = db.Column(db.String(20), nullable=False, default="computed", comment="computed | declared")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("learning_id", "target_key", name="uq_propagation_target"),
        db.CheckConstraint("relevance_score BETWEEN 0 AND 1", name="ck_target_relevance"),
        db.CheckConstraint(
            "(target_type = 'agents_md' AND target_path IS NULL) OR "
            "(target_type IN ('skill','agent_definition') AND target_path IS NOT NULL)",
            name="ck_target_path",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "learning_id": self.learning_id,
            "target_type": self.target_type,
            "target_path": self.target_path,
            "relevance_score": self.relevance_score,
            "origin": self.origin,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<PropagationTarget {self.learning_id[:8]} {self.target_key} {self.relevance_score}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. PropagationRecord
# ═════════════════════════════════════════════════════════════════════════════


class PropagationRecord(db.Model):
    """
    Evidence that a learning was written into a target document.

    At most one row per (learning, target); learnings never change content
    in place, so the learning id doubles as the content version.
    """

    __tablename__ = "propagation_records"

    id = db.Column(db.Integer, primary_key=True)
    learning_id = db.Column(
        db.String(36), db.ForeignKey("learnings.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    target_type = db.Column(db.String(30), nullable=False)
    target_path = db.Column(db.String(500), nullable=True)
    target_key = db.Column(db.String(540), nullable=False)
    section_name = db.Column(db.String(200), nullable=True)
    propagated_by = db.Column(db.String(100), nullable=False)
    propagated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("learning_id", "target_key", name="uq_propagation_record"),
        db.Index("idx_propagation_record_target", "target_type", "target_path"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "learning_id": self.learning_id,
            "target_type": self.target_type,
            "target_path": self.target_path,
            "section_name": self.section_name,
            "propagated_by": self.propagated_by,
            "propagated_at": self.propagated_at.isoformat() if self.propagated_at else None,
        }
