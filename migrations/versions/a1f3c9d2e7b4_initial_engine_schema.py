"""initial_engine_schema

Creates every engine table:
  - features, phase_transitions, quality_gates, blockers,
    agent_invocations, feature_commits, phase_outputs  (workflow)
  - learnings, learning_conflicts, propagation_targets,
    propagation_records                                 (knowledge base)
  - feature_evals, system_health_evals, eval_alerts     (health)
  - audit_logs

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via
db.create_all() in a development environment.

Revision ID: a1f3c9d2e7b4
Revises:
Create Date: 2026-10-18 09:12:44.318204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1f3c9d2e7b4'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _feature_fk(nullable=False, ondelete="CASCADE"):
    return sa.Column(
        "feature_id", sa.String(length=100),
        sa.ForeignKey("features.id", ondelete=ondelete), nullable=nullable,
    )


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Feature ───────────────────────────────────────────────────────────
    if "features" not in existing:
        op.create_table(
            "features",
            sa.Column("id", sa.String(length=100), nullable=False, comment="Caller-chosen slug, e.g. 'auth-flow'"),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("complexity_level", sa.Integer(), nullable=False, comment="1 | 2 | 3"),
            sa.Column("severity", sa.String(length=20), nullable=False, comment="ROUTINE | EXPEDITED | CRITICAL"),
            sa.Column("current_phase", sa.Integer(), nullable=False, comment="0 Planning … 8 Complete"),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="IN_PROGRESS | BLOCKED | COMPLETED | CANCELLED"),
            sa.Column("branch_name", sa.String(length=255), nullable=True),
            sa.Column("base_branch", sa.String(length=100), nullable=False),
            sa.Column("pr_url", sa.String(length=500), nullable=True),
            sa.Column("pr_number", sa.Integer(), nullable=True),
            _ts("merged_at", nullable=True),
            sa.Column("merged_by", sa.String(length=100), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            sa.Column("dev_initials", sa.String(length=10), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("completed_at", nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("complexity_level BETWEEN 1 AND 3", name="ck_feature_complexity"),
            sa.CheckConstraint("current_phase BETWEEN 0 AND 8", name="ck_feature_phase"),
            sa.CheckConstraint("severity IN ('ROUTINE','EXPEDITED','CRITICAL')", name="ck_feature_severity"),
            sa.CheckConstraint("status IN ('IN_PROGRESS','BLOCKED','COMPLETED','CANCELLED')",
                               name="ck_feature_status"),
        )
        op.create_index("idx_feature_status", "features", ["status"])
        op.create_index("idx_feature_updated", "features", ["updated_at"])

    # ── PhaseTransition ───────────────────────────────────────────────────
    if "phase_transitions" not in existing:
        op.create_table(
            "phase_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            _feature_fk(),
            sa.Column("from_phase", sa.Integer(), nullable=False),
            sa.Column("to_phase", sa.Integer(), nullable=False),
            sa.Column("transition_type", sa.String(length=20), nullable=False,
                      comment="FORWARD | BACKWARD | ESCALATION"),
            sa.Column("transitioned_by", sa.String(length=100), nullable=False, comment="Agent or human actor"),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("transitioned_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("from_phase BETWEEN 0 AND 8", name="ck_transition_from"),
            sa.CheckConstraint("to_phase BETWEEN 0 AND 8", name="ck_transition_to"),
            sa.CheckConstraint("transition_type IN ('FORWARD','BACKWARD','ESCALATION')",
                               name="ck_transition_type"),
        )
        op.create_index("ix_phase_transitions_feature_id", "phase_transitions", ["feature_id"])
        op.create_index("idx_transition_feature_ts", "phase_transitions", ["feature_id", "transitioned_at"])

    # ── QualityGate ───────────────────────────────────────────────────────
    if "quality_gates" not in existing:
        op.create_table(
            "quality_gates",
            sa.Column("id", sa.Integer(), nullable=False),
            _feature_fk(),
            sa.Column("gate_name", sa.String(length=100), nullable=False),
            sa.Column("phase", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, comment="PENDING | APPROVED | REJECTED"),
            sa.Column("approver", sa.String(length=100), nullable=True),
            sa.Column("approval_notes", sa.Text(), nullable=True),
            sa.Column("decision_log", sa.JSON(), nullable=True, comment="Opaque agent-supplied decision payload"),
            _ts("evaluated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("phase BETWEEN 0 AND 8", name="ck_gate_phase"),
            sa.CheckConstraint("status IN ('PENDING','APPROVED','REJECTED')", name="ck_gate_status"),
        )
        op.create_index("ix_quality_gates_feature_id", "quality_gates", ["feature_id"])
        op.create_index("idx_gate_feature_name", "quality_gates", ["feature_id", "gate_name", "phase"])

    # ── Blocker ───────────────────────────────────────────────────────────
    if "blockers" not in existing:
        op.create_table(
            "blockers",
            sa.Column("id", sa.Integer(), nullable=False),
            _feature_fk(),
            sa.Column("blocker_type", sa.String(length=40), nullable=False,
                      comment="SPEC_THRASHING | VALIDATION_FAILED | …"),
            sa.Column("phase", sa.Integer(), nullable=False),
            sa.Column("severity", sa.String(length=20), nullable=False, comment="LOW | MEDIUM | HIGH | CRITICAL"),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="OPEN | IN_PROGRESS | RESOLVED | ESCALATED"),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("context", sa.JSON(), nullable=True, comment="Structured detail, e.g. missing coverage pairs"),
            sa.Column("created_by", sa.String(length=100), nullable=False),
            _ts("created_at"),
            _ts("escalated_at", nullable=True),
            _ts("resolved_at", nullable=True),
            sa.Column("resolved_by", sa.String(length=100), nullable=True),
            sa.Column("resolution_notes", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("phase BETWEEN 0 AND 8", name="ck_blocker_phase"),
            sa.CheckConstraint("severity IN ('LOW','MEDIUM','HIGH','CRITICAL')", name="ck_blocker_severity"),
            sa.CheckConstraint("status IN ('OPEN','IN_PROGRESS','RESOLVED','ESCALATED')",
                               name="ck_blocker_status"),
        )
        op.create_index("ix_blockers_feature_id", "blockers", ["feature_id"])
        op.create_index("idx_blocker_feature_status", "blockers", ["feature_id", "status"])

    # ── AgentInvocation ───────────────────────────────────────────────────
    if "agent_invocations" not in existing:
        op.create_table(
            "agent_invocations",
            sa.Column("id", sa.String(length=36), nullable=False, comment="uuid4 hex string"),
            _feature_fk(),
            sa.Column("phase", sa.Integer(), nullable=False),
            sa.Column("agent_name", sa.String(length=100), nullable=False),
            sa.Column("operation", sa.String(length=255), nullable=True),
            sa.Column("skills_used", sa.JSON(), nullable=True,
                      comment="List of skill identifiers loaded for the run"),
            _ts("started_at"),
            _ts("ended_at", nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("is_backfill", sa.Boolean(), nullable=False, server_default=sa.false(),
                      comment="True when derived retroactively from the transition log"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("phase BETWEEN 0 AND 8", name="ck_invocation_phase"),
            sa.CheckConstraint("duration_ms IS NULL OR duration_ms >= 0", name="ck_invocation_duration"),
        )
        op.create_index("ix_agent_invocations_feature_id", "agent_invocations", ["feature_id"])
        op.create_index("idx_invocation_feature_phase", "agent_invocations", ["feature_id", "phase", "agent_name"])

    # ── FeatureCommit ─────────────────────────────────────────────────────
    if "feature_commits" not in existing:
        op.create_table(
            "feature_commits",
            sa.Column("id", sa.Integer(), nullable=False),
            _feature_fk(),
            sa.Column("commit_hash", sa.String(length=64), nullable=False),
            sa.Column("commit_message", sa.Text(), nullable=False),
            sa.Column("phase", sa.Integer(), nullable=False),
            sa.Column("agent_name", sa.String(length=100), nullable=False),
            sa.Column("files_changed", sa.JSON(), nullable=True),
            _ts("committed_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("feature_id", "commit_hash", name="uq_feature_commit"),
        )
        op.create_index("ix_feature_commits_feature_id", "feature_commits", ["feature_id"])

    # ── PhaseOutput ───────────────────────────────────────────────────────
    if "phase_outputs" not in existing:
        op.create_table(
            "phase_outputs",
            sa.Column("id", sa.Integer(), nullable=False),
            _feature_fk(),
            sa.Column("phase", sa.Integer(), nullable=False),
            sa.Column("output_type", sa.String(length=50), nullable=False, comment="tasks | spec | design | …"),
            sa.Column("content", sa.JSON(), nullable=False),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("feature_id", "phase", "output_type", name="uq_phase_output"),
            sa.CheckConstraint("phase BETWEEN 0 AND 8", name="ck_output_phase"),
        )
        op.create_index("ix_phase_outputs_feature_id", "phase_outputs", ["feature_id"])

    # ── Learning ──────────────────────────────────────────────────────────
    if "learnings" not in existing:
        op.create_table(
            "learnings",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("previous_version_id", sa.String(length=36),
                      sa.ForeignKey("learnings.id", ondelete="SET NULL"), nullable=True,
                      comment="Predecessor in the evolution chain; NULL for a chain root"),
            sa.Column("iteration", sa.Integer(), nullable=False, comment="1 for a root; predecessor + 1 otherwise"),
            sa.Column("category", sa.String(length=20), nullable=False, comment="DECISION | PATTERN | GOTCHA | …"),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("delta_summary", sa.Text(), nullable=True,
                      comment="What changed relative to the predecessor"),
            sa.Column("confidence_score", sa.Float(), nullable=False, comment="0.00 – 1.00, two decimals"),
            sa.Column("validation_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("validated_by", sa.JSON(), nullable=True, comment="List of validator identities in order"),
            _ts("last_validated_at", nullable=True),
            sa.Column("importance", sa.String(length=10), nullable=False, comment="HIGH | MEDIUM | LOW"),
            sa.Column("tags", sa.JSON(), nullable=True),
            _feature_fk(nullable=True, ondelete="SET NULL"),
            sa.Column("task_id", sa.String(length=100), nullable=True),
            sa.Column("phase", sa.Integer(), nullable=True),
            sa.Column("agent_name", sa.String(length=100), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            sa.Column("is_superseded", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("superseded_by", sa.String(length=36), nullable=True),
            _ts("superseded_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("confidence_score BETWEEN 0 AND 1", name="ck_learning_confidence"),
            sa.CheckConstraint("iteration >= 1", name="ck_learning_iteration"),
            sa.CheckConstraint("importance IN ('HIGH','MEDIUM','LOW')", name="ck_learning_importance"),
            sa.CheckConstraint(
                "category IN ('DECISION','PATTERN','GOTCHA','CONVENTION',"
                "'ARCHITECTURE','RATIONALE','OPTIMIZATION','INTEGRATION')",
                name="ck_learning_category",
            ),
            sa.CheckConstraint("is_superseded OR superseded_by IS NULL", name="ck_learning_superseded"),
        )
        op.create_index("ix_learnings_previous_version_id", "learnings", ["previous_version_id"])
        op.create_index("ix_learnings_feature_id", "learnings", ["feature_id"])
        op.create_index("idx_learning_category_active", "learnings", ["category", "is_superseded"])

    # ── LearningConflict ──────────────────────────────────────────────────
    if "learning_conflicts" not in existing:
        op.create_table(
            "learning_conflicts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("learning_a_id", sa.String(length=36),
                      sa.ForeignKey("learnings.id", ondelete="CASCADE"), nullable=False),
            sa.Column("learning_b_id", sa.String(length=36),
                      sa.ForeignKey("learnings.id", ondelete="CASCADE"), nullable=False),
            sa.Column("conflict_type", sa.String(length=20), nullable=False,
                      comment="CONTRADICTION | SCOPE_OVERLAP | VERSION_DRIFT"),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("detected_by", sa.String(length=100), nullable=False),
            _ts("detected_at"),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="OPEN | INVESTIGATING | RESOLVED | DEFERRED"),
            sa.Column("resolution", sa.Text(), nullable=True),
            sa.Column("winning_learning_id", sa.String(length=36),
                      sa.ForeignKey("learnings.id", ondelete="SET NULL"), nullable=True),
            sa.Column("resolved_by", sa.String(length=100), nullable=True),
            _ts("resolved_at", nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("learning_a_id", "learning_b_id", name="uq_conflict_pair"),
            sa.CheckConstraint("learning_a_id < learning_b_id", name="ck_conflict_pair_order"),
            sa.CheckConstraint("status IN ('OPEN','INVESTIGATING','RESOLVED','DEFERRED')",
                               name="ck_conflict_status"),
        )
        op.create_index("ix_learning_conflicts_learning_a_id", "learning_conflicts", ["learning_a_id"])
        op.create_index("ix_learning_conflicts_learning_b_id", "learning_conflicts", ["learning_b_id"])
        op.create_index("idx_conflict_status", "learning_conflicts", ["status"])

    # ── PropagationTarget ─────────────────────────────────────────────────
    if "propagation_targets" not in existing:
        op.create_table(
            "propagation_targets",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("learning_id", sa.String(length=36),
                      sa.ForeignKey("learnings.id", ondelete="CASCADE"), nullable=False),
            sa.Column("target_type", sa.String(length=30), nullable=False,
                      comment="agents_md | skill | agent_definition"),
            sa.Column("target_path", sa.String(length=500), nullable=True, comment="NULL for agents_md"),
            sa.Column("target_key", sa.String(length=540), nullable=False, comment="type:path, unique per learning"),
            sa.Column("relevance_score", sa.Float(), nullable=False),
            sa.Column("origin", sa.String(length=20), nullable=False, comment="computed | declared"),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("learning_id", "target_key", name="uq_propagation_target"),
            sa.CheckConstraint("relevance_score BETWEEN 0 AND 1", name="ck_target_relevance"),
            sa.CheckConstraint(
                "(target_type = 'agents_md' AND target_path IS NULL) OR "
                "(target_type IN ('skill','agent_definition') AND target_path IS NOT NULL)",
                name="ck_target_path",
            ),
        )
        op.create_index("ix_propagation_targets_learning_id", "propagation_targets", ["learning_id"])

    # ── PropagationRecord ─────────────────────────────────────────────────
    if "propagation_records" not in existing:
        op.create_table(
            "propagation_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("learning_id", sa.String(length=36),
                      sa.ForeignKey("learnings.id", ondelete="CASCADE"), nullable=False),
            sa.Column("target_type", sa.String(length=30), nullable=False),
            sa.Column("target_path", sa.String(length=500), nullable=True),
            sa.Column("target_key", sa.String(length=540), nullable=False),
            sa.Column("section_name", sa.String(length=200), nullable=True),
            sa.Column("propagated_by", sa.String(length=100), nullable=False),
            _ts("propagated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("learning_id", "target_key", name="uq_propagation_record"),
        )
        op.create_index("ix_propagation_records_learning_id", "propagation_records", ["learning_id"])
        op.create_index("idx_propagation_record_target", "propagation_records", ["target_type", "target_path"])

    # ── FeatureEval ───────────────────────────────────────────────────────
    if "feature_evals" not in existing:
        op.create_table(
            "feature_evals",
            sa.Column("id", sa.Integer(), nullable=False),
            _feature_fk(),
            sa.Column("efficiency_score", sa.Float(), nullable=False),
            sa.Column("quality_score", sa.Float(), nullable=False),
            sa.Column("overall_score", sa.Float(), nullable=False),
            sa.Column("health_status", sa.String(length=20), nullable=False,
                      comment="HEALTHY | CONCERNING | CRITICAL"),
            sa.Column("actual_minutes", sa.Float(), nullable=True),
            sa.Column("expected_minutes", sa.Float(), nullable=True),
            sa.Column("iterations", sa.Integer(), nullable=True, comment="1 + BACKWARD transitions"),
            sa.Column("thrashing_count", sa.Integer(), nullable=True),
            sa.Column("gate_approval_rate", sa.Float(), nullable=True, comment="NULL when no gates were recorded"),
            sa.Column("open_blockers", sa.Integer(), nullable=True),
            sa.Column("breakdown", sa.JSON(), nullable=True),
            sa.Column("alerts", sa.JSON(), nullable=True, comment="Breaches detected by this snapshot"),
            sa.Column("evaluated_by", sa.String(length=100), nullable=False),
            _ts("evaluated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("overall_score BETWEEN 0 AND 100", name="ck_feature_eval_overall"),
            sa.CheckConstraint("health_status IN ('HEALTHY','CONCERNING','CRITICAL')",
                               name="ck_feature_eval_health"),
        )
        op.create_index("ix_feature_evals_feature_id", "feature_evals", ["feature_id"])
        op.create_index("idx_feature_eval_feature_ts", "feature_evals", ["feature_id", "evaluated_at"])

    # ── SystemHealthEval ──────────────────────────────────────────────────
    if "system_health_evals" not in existing:
        op.create_table(
            "system_health_evals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("period_days", sa.Integer(), nullable=False, comment="7 | 30 | 90"),
            _ts("period_start"),
            _ts("period_end"),
            sa.Column("overall_health_score", sa.Float(), nullable=False),
            sa.Column("health_status", sa.String(length=20), nullable=False),
            sa.Column("features_active", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("features_completed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("features_in_progress", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("features_blocked", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("avg_iterations", sa.Float(), nullable=True),
            sa.Column("thrashing_rate", sa.Float(), nullable=True,
                      comment="Percent of active features with thrashing"),
            sa.Column("total_learnings", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("high_confidence_learnings", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("open_conflicts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("workflow_metrics", sa.JSON(), nullable=True),
            sa.Column("learning_metrics", sa.JSON(), nullable=True),
            sa.Column("breakdown", sa.JSON(), nullable=True),
            sa.Column("alerts", sa.JSON(), nullable=True),
            sa.Column("evaluated_by", sa.String(length=100), nullable=False),
            _ts("evaluated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("period_days IN (7, 30, 90)", name="ck_system_health_period"),
            sa.CheckConstraint("overall_health_score BETWEEN 0 AND 100", name="ck_system_health_score"),
        )
        op.create_index("idx_system_health_period_ts", "system_health_evals", ["period_days", "evaluated_at"])

    # ── EvalAlert ─────────────────────────────────────────────────────────
    if "eval_alerts" not in existing:
        op.create_table(
            "eval_alerts",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("source_type", sa.String(length=20), nullable=False, comment="feature | system | agent"),
            sa.Column("source_id", sa.String(length=100), nullable=True,
                      comment="Eval snapshot id that raised the alert"),
            _feature_fk(nullable=True),
            sa.Column("alert_type", sa.String(length=50), nullable=False),
            sa.Column("severity", sa.String(length=20), nullable=False, comment="INFO | WARNING | CRITICAL"),
            sa.Column("dimension", sa.String(length=50), nullable=False,
                      comment="overall_score | duration | thrashing | …"),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("current_value", sa.Float(), nullable=True),
            sa.Column("threshold_value", sa.Float(), nullable=True),
            sa.Column("is_acknowledged", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("acknowledged_by", sa.String(length=100), nullable=True),
            _ts("acknowledged_at", nullable=True),
            sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("resolved_by", sa.String(length=100), nullable=True),
            _ts("resolved_at", nullable=True),
            sa.Column("resolution_notes", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("source_type IN ('feature','system','agent')", name="ck_alert_source"),
            sa.CheckConstraint("severity IN ('INFO','WARNING','CRITICAL')", name="ck_alert_severity"),
        )
        op.create_index("ix_eval_alerts_feature_id", "eval_alerts", ["feature_id"])
        op.create_index("idx_alert_active", "eval_alerts", ["is_resolved", "severity"])
        op.create_index("idx_alert_dedupe", "eval_alerts", ["dimension", "source_type", "feature_id"])

    # ── AuditLog ──────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("feature_id", sa.String(length=100), nullable=True,
                      comment="Owning feature, when the audited entity belongs to one"),
            sa.Column("entity_type", sa.String(length=30), nullable=False,
                      comment="feature | blocker | learning | conflict | alert | …"),
            sa.Column("entity_id", sa.String(length=100), nullable=False,
                      comment="PK of the referenced entity (UUID, slug or int-as-string)"),
            sa.Column("action", sa.String(length=60), nullable=False,
                      comment="feature.transition | blocker.resolve | learning.evolve | …"),
            sa.Column("actor", sa.String(length=150), nullable=False,
                      comment="Agent name, human reviewer or 'system'"),
            sa.Column("diff_json", sa.Text(), nullable=True,
                      comment="JSON: {field: {old, new}} for lifecycle changes, free payload otherwise"),
            _ts("timestamp"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_feature", "audit_logs", ["feature_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    for table in (
        "audit_logs", "eval_alerts", "system_health_evals", "feature_evals",
        "propagation_records", "propagation_targets", "learning_conflicts", "learnings",
        "phase_outputs", "feature_commits", "agent_invocations", "blockers",
        "quality_gates", "phase_transitions", "features",
    ):
        op.drop_table(table)
