"""
Workflow & Knowledge State Engine
Health & eval snapshot models.

Models:
    - FeatureEval:       per-feature efficiency/quality snapshot
    - SystemHealthEval:  system-wide snapshot over a 7/30/90-day window
    - EvalAlert:         threshold breach raised by a snapshot; acknowledged and
                         resolved only by explicit actor-attributed calls

Snapshots are append-only: recomputation inserts a new row so earlier
scores stay available for trend analysis.
"""

from datetime import datetime, timezone

from sdd_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

HEALTH_STATUSES = {"HEALTHY", "CONCERNING", "CRITICAL"}
SYSTEM_HEALTH_PERIODS = {7, 30, 90}

ALERT_SOURCE_TYPES = {"feature", "system", "agent"}
ALERT_SEVERITIES = {"INFO", "WARNING", "CRITICAL"}

# Display / sort order for active alerts
SEVERITY_RANK = {"CRITICAL": 0, "WARNING": 1, "INFO": 2}


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. FeatureEval
# ═════════════════════════════════════════════════════════════════════════════


class FeatureEval(db.Model):
    """Score snapshot for one feature."""

    __tablename__ = "feature_evals"

    id = db.Column(db.Integer, primary_key=True)
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    efficiency_score = db.Column(db.Float, nullable=False)
    quality_score = db.Column(db.Float, nullable=False)
    overall_score = db.Column(db.Float, nullable=False)
    health_status = db.Column(db.String(20), nullable=False, comment="HEALTHY | CONCERNING | CRITICAL")

    actual_minutes = db.Column(db.Float, nullable=True)
    expected_minutes = db.Column(db.Float, nullable=True)
    iterations = db.Column(db.Integer, nullable=True, comment="1 + BACKWARD transitions")
    thrashing_count = db.Column(db.Integer, nullable=True)
    gate_approval_rate = db.Column(db.Float, nullable=True, comment="NULL when no gates were recorded")
    open_blockers = db.Column(db.Integer, nullable=True)

    breakdown = db.Column(db.JSON, nullable=True)
    alerts = db.Column(db.JSON, nullable=True, comment="Breaches detected by this snapshot")
    evaluated_by = db.Column(db.String(100), nullable=False, default="system")
    evaluated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("overall_score BETWEEN 0 AND 100", name="ck_feature_eval_overall"),
        db.CheckConstraint(
            "health_status IN ('HEALTHY','CONCERNING','CRITICAL')",
            name="ck_feature_eval_health",
        ),
        db.Index("idx_feature_eval_feature_ts", "feature_id", "evaluated_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "feature_id": self.feature_id,
            "efficiency_score": self.efficiency_score,
            "quality_score": self.quality_score,
            "overall_score": self.overall_score,
            "health_status": self.health_status,
            "actual_minutes": self.actual_minutes,
            "expected_minutes": self.expected_minutes,
            "iterations": self.iterations,
            "thrashing_count": self.thrashing_count,
            "gate_approval_rate": self.gate_approval_rate,
            "open_blockers": self.open_blockers,
            "breakdown": self.breakdown or {},
            "alerts": self.alerts or [],
            "evaluated_by": self.evaluated_by,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 2. SystemHealthEval
# ═════════════════════════════════════════════════════════════════════════════


class SystemHealthEval(db.Model):
    """System-wide snapshot over a trailing window."""

    __tablename__ = "system_health_evals"

    id = db.Column(db.Integer, primary_key=True)
    period_days = db.Column(db.Integer, nullable=False, comment="7 | 30 | 90")
    period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    period_end = db.Column(db.DateTime(timezone=True), nullable=False)

    overall_health_score = db.Column(db.Float, nullable=False)
    health_status = db.Column(db.String(20), nullable=False)

    features_active = db.Column(db.Integer, nullable=False, default=0)
    features_completed = db.Column(db.Integer, nullable=False, default=0)
    features_in_progress = db.Column(db.Integer, nullable=False, default=0)
    features_blocked = db.Column(db.Integer, nullable=False, default=0)
    avg_iterations = db.Column(db.Float, nullable=True)
    thrashing_rate = db.Column(db.Float, nullable=True, comment="Percent of active features with thrashing")

    total_learnings = db.Column(db.Integer, nullable=False, default=0)
    high_confidence_learnings = db.Column(db.Integer, nullable=False, default=0)
    open_conflicts = db.Column(db.Integer, nullable=False, default=0)

    workflow_metrics = db.Column(db.JSON, nullable=True)
    learning_metrics = db.Column(db.JSON, nullable=True)
    breakdown = db.Column(db.JSON, nullable=True)
    alerts = db.Column(db.JSON, nullable=True)
    evaluated_by = db.Column(db.String(100), nullable=False, default="system")
    evaluated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("period_days IN (7, 30, 90)", name="ck_system_health_period"),
        db.CheckConstraint(
            "overall_health_score BETWEEN 0 AND 100",
            name="ck_system_health_score",
        ),
        db.Index("idx_system_health_period_ts", "period_days", "evaluated_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "period_days": self.period_days,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "overall_health_score": self.overall_health_score,
            "health_status": self.health_status,
            "features_active": self.features_active,
            "features_completed": self.features_completed,
            "features_in_progress": self.features_in_progress,
            "features_blocked": self.features_blocked,
            "avg_iterations": self.avg_iterations,
            "thrashing_rate": self.thrashing_rate,
            "total_learnings": self.total_learnings,
            "high_confidence_learnings": self.high_confidence_learnings,
            "open_conflicts": self.open_conflicts,
            "workflow_metrics": self.workflow_metrics or {},
            "learning_metrics": self.learning_metrics or {},
            "breakdown": self.breakdown or {},
            "alerts": self.alerts or [],
            "evaluated_by": self.evaluated_by,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. EvalAlert
# ═════════════════════════════════════════════════════════════════════════════


class EvalAlert(db.Model):
    """
    Threshold breach. Deduplicated on (dimension, source) while unresolved;
    never auto-resolved by later recomputation.
    """

    __tablename__ = "eval_alerts"

    id = db.Column(db.Integer, primary_key=True)
    source_type = db.Column(db.String(20), nullable=False, comment="feature | system | agent")
    source_id = db.Column(db.String(100), nullable=True, comment="Eval snapshot id that raised the alert")
    feature_id = db.Column(
        db.String(100), db.ForeignKey("features.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    alert_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(20), nullable=False, comment="INFO | WARNING | CRITICAL")
    dimension = db.Column(db.String(50), nullable=False, comment="overall_score | duration | thrashing | …")
    message = db.Column(db.Text, nullable=False)
    current_value = db.Column(db.Float, nullable=True)
    threshold_value = db.Column(db.Float, nullable=True)

    is_acknowledged = db.Column(db.Boolean, nullable=False, default=False)
    acknowledged_by = db.Column(db.String(100), nullable=True)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_by = db.Column(db.String(100), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("source_type IN ('feature','system','agent')", name="ck_alert_source"),
        db.CheckConstraint("severity IN ('INFO','WARNING','CRITICAL')", name="ck_alert_severity"),
        db.Index("idx_alert_active", "is_resolved", "severity"),
        db.Index("idx_alert_dedupe", "dimension", "source_type", "feature_id"),
    )

    def hours_active(self, now=None):
        now = now or _utcnow()
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return round((now - created).total_seconds() / 3600, 2)

    def to_dict(self):
        return {
            "id": self.id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "feature_id": self.feature_id,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "dimension": self.dimension,
            "message": self.message,
            "current_value": self.current_value,
            "threshold_value": self.threshold_value,
            "is_acknowledged": self.is_acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "is_resolved": self.is_resolved,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_notes": self.resolution_notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "hours_active": self.hours_active() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EvalAlert {self.id} {self.severity} {self.dimension} ({self.source_type})>"
