"""
Workflow & Knowledge State Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for engine events.
"""

import json
from datetime import datetime, timezone

from sdd_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "feature", "blocker", "gate", "invocation",
    "learning", "conflict", "propagation", "alert",
}

AUDIT_ACTIONS = {
    # Feature lifecycle
    "feature.create",
    "feature.transition",
    "feature.complete",
    "feature.cancel",
    "feature.pr_recorded",
    "feature.merged",
    "feature.tasks_submitted",
    # Gates & blockers
    "gate.record",
    "blocker.open",
    "blocker.start",
    "blocker.resolve",
    "blocker.escalate",
    # Telemetry
    "invocation.skills_loaded",
    "invocation.backfill",
    # Knowledge base
    "learning.create",
    "learning.evolve",
    "learning.validate",
    "conflict.detect",
    "conflict.investigate",
    "conflict.resolve",
    "conflict.defer",
    "propagation.record",
    # Alerts
    "alert.acknowledge",
    "alert.resolve",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every engine event.

    One row per action. ``diff_json`` carries the before/after snapshot or
    the event payload (skills loaded, missing pairs, …).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_feature", "feature_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    feature_id = db.Column(
        db.String(100), nullable=True,
        comment="Owning feature, when the audited entity belongs to one",
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="feature | blocker | learning | conflict | alert | …",
    )
    entity_id = db.Column(
        db.String(100), nullable=False,
        comment="PK of the referenced entity (UUID, slug or int-as-string)",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="feature.transition | blocker.resolve | learning.evolve | …",
    )
    actor = db.Column(
        db.String(150), nullable=False, default="system",
        comment="Agent name, human reviewer or 'system'",
    )

    # Change payload
    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}} for lifecycle changes, free payload otherwise",
    )

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────


def write_audit(
    *,
    entity_type: str,
    entity_id: str | int,
    action: str,
    actor: str = "system",
    feature_id: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        feature_id=feature_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
