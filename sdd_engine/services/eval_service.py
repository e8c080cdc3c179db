"""Health & Eval Scorer.

Pure aggregation over recorded facts; nothing here changes workflow or
knowledge state. Each computation appends a snapshot row (FeatureEval or
SystemHealthEval) and raises EvalAlert rows for threshold breaches.

Feature score (0–100):
    efficiency = duration band (70/55/35/15) + iteration band (30/25/15/5)
    quality    = gate approval rate × 50 (50 with no gates)
               + open-blocker band (30/20/10/0) + thrashing term (20/0)
    overall    = 0.4 × efficiency + 0.6 × quality

Health status: ≥ 70 HEALTHY, ≥ 50 CONCERNING, otherwise CRITICAL.

Alerts are deduplicated per (dimension, source): while an unresolved alert
exists for the same dimension and source no new one is raised. Recomputing
never resolves an alert; only resolve_alert() does.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import func, or_, select

from sdd_engine.core.exceptions import NotFoundError, StateError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import write_audit
from sdd_engine.models.evals import (
    SEVERITY_RANK,
    SYSTEM_HEALTH_PERIODS,
    EvalAlert,
    FeatureEval,
    SystemHealthEval,
)
from sdd_engine.models.learning import Learning, LearningConflict
from sdd_engine.models.workflow import (
    TERMINAL_FEATURE_STATUSES,
    AgentInvocation,
    Blocker,
    Feature,
    PhaseTransition,
    QualityGate,
)
from sdd_engine.services.helpers.settings import setting
from sdd_engine.services.helpers.store import as_utc, atomic, get_or_raise, utcnow

logger = logging.getLogger(__name__)

DEFAULT_EXPECTED_MINUTES = 180


def health_status(score: float) -> str:
    """Map a 0–100 score to HEALTHY / CONCERNING / CRITICAL."""
    if score >= setting("HEALTHY_THRESHOLD"):
        return "HEALTHY"
    if score >= setting("CONCERNING_THRESHOLD"):
        return "CONCERNING"
    return "CRITICAL"


# ── Score bands ───────────────────────────────────────────────────────────────


def duration_band(actual_minutes: float, expected_minutes: float) -> int:
    if actual_minutes <= expected_minutes:
        return 70
    if actual_minutes <= expected_minutes * 1.5:
        return 55
    if actual_minutes <= expected_minutes * 2:
        return 35
    return 15


def iteration_band(iterations: float) -> int:
    if iterations <= 2:
        return 30
    if iterations <= 3:
        return 25
    if iterations <= 4:
        return 15
    return 5


def blocker_band(open_blockers: int) -> int:
    if open_blockers == 0:
        return 30
    if open_blockers == 1:
        return 20
    if open_blockers <= 3:
        return 10
    return 0


# ── Transition analysis ───────────────────────────────────────────────────────


def count_thrashing(transitions: list[PhaseTransition], terminal: bool = False) -> int:
    """Count BACKWARD transitions that bought no net forward progress.

    After a BACKWARD move the feature has until the second following
    BACKWARD move (the same or the next iteration) to reach a phase above
    its previous high-water mark. A window still open on an active feature
    is undecided and not counted; on a terminal feature it is closed.
    """
    moves = [t for t in transitions if t.transition_type in ("FORWARD", "BACKWARD")]
    backward_idx = [i for i, t in enumerate(moves) if t.transition_type == "BACKWARD"]

    thrashing = 0
    for n, idx in enumerate(backward_idx):
        high_water = max(max(t.from_phase, t.to_phase) for t in moves[: idx + 1])
        window_closed = n + 2 < len(backward_idx)
        end = backward_idx[n + 2] if window_closed else len(moves)
        recovered = any(t.to_phase > high_water for t in moves[idx + 1 : end])
        if recovered:
            continue
        if window_closed or terminal:
            thrashing += 1
    return thrashing


def _transitions(feature_id: str) -> list[PhaseTransition]:
    return db.session.execute(
        select(PhaseTransition)
        .where(PhaseTransition.feature_id == feature_id)
        .order_by(PhaseTransition.transitioned_at, PhaseTransition.id)
    ).scalars().all()


def _iterations(transitions: list[PhaseTransition]) -> int:
    return 1 + sum(1 for t in transitions if t.transition_type == "BACKWARD")


# ── Alerts ────────────────────────────────────────────────────────────────────


def _raise_alert(
    *,
    source_type: str,
    source_id,
    feature_id: str | None,
    alert_type: str,
    severity: str,
    dimension: str,
    message: str,
    current_value: float | None,
    threshold_value: float | None,
) -> EvalAlert | None:
    """Insert an alert unless an unresolved one already covers this dimension and source."""
    feature_clause = EvalAlert.feature_id.is_(None) if feature_id is None else EvalAlert.feature_id == feature_id
    existing = db.session.execute(
        select(EvalAlert.id).where(
            EvalAlert.dimension == dimension,
            EvalAlert.source_type == source_type,
            feature_clause,
            EvalAlert.is_resolved.is_(False),
        ).limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        logger.debug("Alert %s/%s suppressed; #%s still unresolved", source_type, dimension, existing)
        return None

    alert = EvalAlert(
        source_type=source_type,
        source_id=str(source_id) if source_id is not None else None,
        feature_id=feature_id,
        alert_type=alert_type,
        severity=severity,
        dimension=dimension,
        message=message,
        current_value=current_value,
        threshold_value=threshold_value,
        created_at=utcnow(),
    )
    db.session.add(alert)
    db.session.flush()
    logger.warning(
        "%s alert on %s %s: %s (%.2f vs %.2f)", severity, source_type, feature_id or "system", message,
        current_value or 0, threshold_value or 0,
        extra={"feature_id": feature_id, "event_type": "alert.raise"},
    )
    return alert


def _emit_alerts(breaches: list[dict], *, source_type: str, source_id, feature_id: str | None) -> list[dict]:
    """Raise deduplicated alerts; returns the breach list annotated with alert ids."""
    annotated = []
    for breach in breaches:
        alert = _raise_alert(source_type=source_type, source_id=source_id, feature_id=feature_id, **breach)
        annotated.append({**breach, "alert_id": alert.id if alert else None, "deduplicated": alert is None})
    return annotated


# ── Feature eval ──────────────────────────────────────────────────────────────


def _actual_minutes(feature: Feature, now) -> tuple[float, str]:
    total_ms = db.session.execute(
        select(func.coalesce(func.sum(AgentInvocation.duration_ms), 0)).where(
            AgentInvocation.feature_id == feature.id,
            AgentInvocation.ended_at.is_not(None),
        )
    ).scalar()
    if total_ms and total_ms > 0:
        return round(total_ms / 60000.0, 2), "agent_invocations"
    end = as_utc(feature.completed_at) or now
    return round(max(0.0, (end - as_utc(feature.created_at)).total_seconds() / 60), 2), "wall_clock"


def compute_feature_eval(feature_id: str, evaluated_by: str = "system") -> dict:
    """Score a feature and append a FeatureEval snapshot.

    Returns:
        Serialized FeatureEval; ``alerts`` lists every breach found, with
        ``alert_id`` None where an unresolved alert already existed.
    """
    now = utcnow()
    with atomic():
        feature = get_or_raise(Feature, feature_id)
        transitions = _transitions(feature_id)

        expected = float(setting("EXPECTED_MINUTES_BY_COMPLEXITY").get(
            feature.complexity_level, DEFAULT_EXPECTED_MINUTES))
        actual, duration_source = _actual_minutes(feature, now)
        iterations = _iterations(transitions)
        thrashing = count_thrashing(transitions, terminal=feature.status in TERMINAL_FEATURE_STATUSES)

        gate_statuses = db.session.execute(
            select(QualityGate.status).where(QualityGate.feature_id == feature_id)
        ).scalars().all()
        approvals = sum(1 for s in gate_statuses if s == "APPROVED")
        approval_rate = approvals / len(gate_statuses) if gate_statuses else None
        open_blockers = db.session.execute(
            select(func.count(Blocker.id)).where(Blocker.feature_id == feature_id, Blocker.status == "OPEN")
        ).scalar()

        d_band = duration_band(actual, expected)
        i_band = iteration_band(iterations)
        efficiency = float(d_band + i_band)
        gate_term = 50.0 if approval_rate is None else round(approval_rate * 50, 2)
        b_band = blocker_band(open_blockers)
        t_term = 20 if thrashing == 0 else 0
        quality = round(gate_term + b_band + t_term, 2)
        overall = round(0.4 * efficiency + 0.6 * quality, 2)
        status = health_status(overall)

        healthy, concerning = setting("HEALTHY_THRESHOLD"), setting("CONCERNING_THRESHOLD")
        overrun = setting("DURATION_OVERRUN_FACTOR")
        breaches = []
        if overall < concerning:
            breaches.append(dict(alert_type="feature_health", severity="CRITICAL", dimension="overall_score",
                                 message="Feature health is critical",
                                 current_value=overall, threshold_value=concerning))
        elif overall < healthy:
            breaches.append(dict(alert_type="feature_health", severity="WARNING", dimension="overall_score",
                                 message="Feature health is concerning",
                                 current_value=overall, threshold_value=healthy))
        if actual > expected * overrun:
            breaches.append(dict(alert_type="duration_overrun", severity="WARNING", dimension="duration",
                                 message="Feature duration significantly exceeds expectation",
                                 current_value=actual, threshold_value=expected * overrun))
        if thrashing > 0:
            breaches.append(dict(alert_type="spec_thrashing", severity="WARNING", dimension="thrashing",
                                 message="Spec thrashing detected",
                                 current_value=float(thrashing), threshold_value=0.0))

        snapshot = FeatureEval(
            feature_id=feature_id,
            efficiency_score=efficiency,
            quality_score=quality,
            overall_score=overall,
            health_status=status,
            actual_minutes=actual,
            expected_minutes=expected,
            iterations=iterations,
            thrashing_count=thrashing,
            gate_approval_rate=round(approval_rate, 4) if approval_rate is not None else None,
            open_blockers=open_blockers,
            breakdown={
                "efficiency": {
                    "duration_band": d_band,
                    "iteration_band": i_band,
                    "duration_ratio": round(actual / expected, 2) if expected else None,
                    "duration_source": duration_source,
                },
                "quality": {
                    "gate_term": gate_term,
                    "approvals": approvals,
                    "total_gates": len(gate_statuses),
                    "blocker_band": b_band,
                    "thrashing_term": t_term,
                },
                "feature_status": feature.status,
                "feature_phase": feature.current_phase,
            },
            evaluated_by=evaluated_by or "system",
            evaluated_at=now,
        )
        db.session.add(snapshot)
        db.session.flush()
        snapshot.alerts = _emit_alerts(breaches, source_type="feature", source_id=snapshot.id, feature_id=feature_id)
        db.session.flush()
        result = snapshot.to_dict()

    logger.info(
        "Feature %s eval: overall %.2f (%s), efficiency %.1f, quality %.1f",
        feature_id, overall, status, efficiency, quality,
        extra={"feature_id": feature_id, "event_type": "eval.feature"},
    )
    return result


# ── System health ─────────────────────────────────────────────────────────────


def _activity_band(completed: int, in_progress: int) -> int:
    if completed > 0:
        return 30
    if in_progress > 0:
        return 20
    return 15


def _system_iteration_band(avg_iterations: float) -> int:
    if avg_iterations <= 2:
        return 25
    if avg_iterations <= 3:
        return 20
    if avg_iterations <= 4:
        return 10
    return 5


def _thrashing_band(rate: float) -> int:
    if rate <= 5:
        return 20
    if rate <= 15:
        return 10
    return 0


def _blocked_band(blocked: int, in_progress: int) -> int:
    in_flight = blocked + in_progress
    if in_flight == 0:
        return 25
    ratio = blocked / in_flight * 100
    if ratio <= 10:
        return 25
    if ratio <= 25:
        return 15
    return 5


def _active_features(start, end) -> list[Feature]:
    return db.session.execute(
        select(Feature).where(
            or_(
                Feature.created_at.between(start, end),
                Feature.updated_at.between(start, end),
                Feature.completed_at.between(start, end),
            )
        ).order_by(Feature.created_at)
    ).scalars().all()


def _latest_eval_scores(feature_ids: list[str]) -> list[FeatureEval]:
    if not feature_ids:
        return []
    latest = (
        select(FeatureEval.feature_id, func.max(FeatureEval.id).label("eval_id"))
        .where(FeatureEval.feature_id.in_(feature_ids))
        .group_by(FeatureEval.feature_id)
        .subquery()
    )
    return db.session.execute(
        select(FeatureEval).join(latest, FeatureEval.id == latest.c.eval_id)
    ).scalars().all()


def compute_system_health(period_days: int = 7, evaluated_by: str = "system") -> dict:
    """Aggregate features active in the trailing window plus learning-base metrics.

    Raises:
        ValidationError: ``period_days`` not in 7 / 30 / 90.
    """
    if isinstance(period_days, bool) or period_days not in SYSTEM_HEALTH_PERIODS:
        raise ValidationError(
            f"period_days must be one of: {', '.join(str(p) for p in sorted(SYSTEM_HEALTH_PERIODS))}",
            details={"period_days": period_days},
        )

    end = utcnow()
    start = end - timedelta(days=period_days)
    with atomic():
        features = _active_features(start, end)
        completed = [f for f in features if f.status == "COMPLETED" and f.completed_at
                     and as_utc(f.completed_at) >= start]
        in_progress = sum(1 for f in features if f.status == "IN_PROGRESS")
        blocked = sum(1 for f in features if f.status == "BLOCKED")

        iteration_counts, thrashing_features = [], 0
        for feature in features:
            transitions = _transitions(feature.id)
            iteration_counts.append(_iterations(transitions))
            if count_thrashing(transitions, terminal=feature.status in TERMINAL_FEATURE_STATUSES):
                thrashing_features += 1
        avg_iterations = round(sum(iteration_counts) / len(iteration_counts), 2) if iteration_counts else None
        thrashing_rate = round(thrashing_features / len(features) * 100, 2) if features else 0.0
        cycle_hours = [
            (as_utc(f.completed_at) - as_utc(f.created_at)).total_seconds() / 3600 for f in completed
        ]
        evals = _latest_eval_scores([f.id for f in features])

        high = setting("HIGH_CONFIDENCE_THRESHOLD")
        total_learnings = db.session.execute(
            select(func.count(Learning.id)).where(Learning.is_superseded.is_(False))
        ).scalar()
        high_confidence = db.session.execute(
            select(func.count(Learning.id)).where(
                Learning.is_superseded.is_(False), Learning.confidence_score >= high,
            )
        ).scalar()
        open_conflicts = db.session.execute(
            select(func.count(LearningConflict.id)).where(LearningConflict.status == "OPEN")
        ).scalar()

        breakdown = {
            "workflow_activity": _activity_band(len(completed), in_progress),
            "iterations": _system_iteration_band(avg_iterations if avg_iterations is not None else 1),
            "thrashing": _thrashing_band(thrashing_rate),
            "blocked_ratio": _blocked_band(blocked, in_progress),
        }
        overall = float(min(100, max(0, sum(breakdown.values()))))
        status = health_status(overall)

        concerning = setting("CONCERNING_THRESHOLD")
        thrash_limit = setting("THRASHING_RATE_CRITICAL")
        breaches = []
        if overall < concerning:
            breaches.append(dict(alert_type="system_health", severity="CRITICAL", dimension="overall_health",
                                 message="System health is critical",
                                 current_value=overall, threshold_value=concerning))
        if thrashing_rate > thrash_limit:
            breaches.append(dict(alert_type="spec_thrashing", severity="CRITICAL", dimension="thrashing_rate",
                                 message="High thrashing rate detected",
                                 current_value=thrashing_rate, threshold_value=thrash_limit))
        if open_conflicts > 0:
            breaches.append(dict(alert_type="learning_conflicts", severity="WARNING", dimension="learning_conflicts",
                                 message="Open learning conflicts require attention",
                                 current_value=float(open_conflicts), threshold_value=0.0))

        snapshot = SystemHealthEval(
            period_days=period_days,
            period_start=start,
            period_end=end,
            overall_health_score=overall,
            health_status=status,
            features_active=len(features),
            features_completed=len(completed),
            features_in_progress=in_progress,
            features_blocked=blocked,
            avg_iterations=avg_iterations,
            thrashing_rate=thrashing_rate,
            total_learnings=total_learnings,
            high_confidence_learnings=high_confidence,
            open_conflicts=open_conflicts,
            workflow_metrics={
                "features_completed": len(completed),
                "features_in_progress": in_progress,
                "features_blocked": blocked,
                "avg_cycle_time_hours": round(sum(cycle_hours) / len(cycle_hours), 1) if cycle_hours else None,
                "avg_iterations": avg_iterations,
                "thrashing_rate": thrashing_rate,
                "avg_efficiency_score": (
                    round(sum(e.efficiency_score for e in evals) / len(evals), 2) if evals else None
                ),
                "avg_quality_score": round(sum(e.quality_score for e in evals) / len(evals), 2) if evals else None,
            },
            learning_metrics={
                "total_learnings": total_learnings,
                "high_confidence_learnings": high_confidence,
                "open_conflicts": open_conflicts,
            },
            breakdown=breakdown,
            evaluated_by=evaluated_by or "system",
            evaluated_at=end,
        )
        db.session.add(snapshot)
        db.session.flush()
        snapshot.alerts = _emit_alerts(breaches, source_type="system", source_id=snapshot.id, feature_id=None)
        db.session.flush()
        result = snapshot.to_dict()

    logger.info(
        "System health (%dd): %.1f (%s) over %d active feature(s)", period_days, overall, status, len(features),
        extra={"event_type": "eval.system"},
    )
    return result


# ── Alert lifecycle ───────────────────────────────────────────────────────────


def acknowledge_alert(alert_id: int, actor: str) -> dict:
    if not (actor or "").strip():
        raise ValidationError("actor is required")
    with atomic():
        alert = get_or_raise(EvalAlert, alert_id, lock=True)
        if alert.is_acknowledged:
            raise StateError("alert already acknowledged", resource="EvalAlert", resource_id=alert_id,
                             current=alert.acknowledged_by)
        alert.is_acknowledged = True
        alert.acknowledged_by = actor
        alert.acknowledged_at = utcnow()
        write_audit(entity_type="alert", entity_id=alert_id, feature_id=alert.feature_id,
                    action="alert.acknowledge", actor=actor, diff={"dimension": alert.dimension})
        result = alert.to_dict()
    logger.info("Alert %s acknowledged by %s", alert_id, actor)
    return result


def resolve_alert(alert_id: int, actor: str, notes: str | None = None) -> dict:
    """Resolve an alert; an unacknowledged alert is acknowledged at the same time."""
    if not (actor or "").strip():
        raise ValidationError("actor is required")
    with atomic():
        alert = get_or_raise(EvalAlert, alert_id, lock=True)
        if alert.is_resolved:
            raise StateError("alert already resolved", resource="EvalAlert", resource_id=alert_id,
                             current=alert.resolved_by)
        now = utcnow()
        if not alert.is_acknowledged:
            alert.is_acknowledged = True
            alert.acknowledged_by = actor
            alert.acknowledged_at = now
        alert.is_resolved = True
        alert.resolved_by = actor
        alert.resolved_at = now
        alert.resolution_notes = notes
        write_audit(entity_type="alert", entity_id=alert_id, feature_id=alert.feature_id,
                    action="alert.resolve", actor=actor, diff={"dimension": alert.dimension, "notes": notes})
        result = alert.to_dict()
    logger.info("Alert %s resolved by %s", alert_id, actor)
    return result


def get_alert(alert_id: int) -> dict:
    return get_or_raise(EvalAlert, alert_id).to_dict()


def active_alerts(feature_id: str | None = None, severity: str | None = None) -> list[dict]:
    """Unresolved alerts, CRITICAL first, then oldest first."""
    stmt = select(EvalAlert).where(EvalAlert.is_resolved.is_(False))
    if feature_id:
        stmt = stmt.where(EvalAlert.feature_id == feature_id)
    if severity:
        stmt = stmt.where(EvalAlert.severity == severity.upper())
    rows = db.session.execute(stmt.order_by(EvalAlert.created_at, EvalAlert.id)).scalars().all()
    rows = sorted(rows, key=lambda a: SEVERITY_RANK.get(a.severity, len(SEVERITY_RANK)))
    return [a.to_dict() for a in rows]


# ── Snapshot queries ──────────────────────────────────────────────────────────


def feature_eval_history(feature_id: str, limit: int = 20) -> list[dict]:
    get_or_raise(Feature, feature_id)
    rows = db.session.execute(
        select(FeatureEval)
        .where(FeatureEval.feature_id == feature_id)
        .order_by(FeatureEval.evaluated_at.desc(), FeatureEval.id.desc())
        .limit(limit)
    ).scalars().all()
    return [e.to_dict() for e in rows]


def latest_feature_eval(feature_id: str) -> dict:
    history = feature_eval_history(feature_id, limit=1)
    if not history:
        raise NotFoundError(resource="FeatureEval", resource_id=feature_id)
    return history[0]


def system_health_history(period_days: int | None = None, limit: int = 30) -> list[dict]:
    stmt = select(SystemHealthEval)
    if period_days is not None:
        stmt = stmt.where(SystemHealthEval.period_days == period_days)
    rows = db.session.execute(
        stmt.order_by(SystemHealthEval.evaluated_at.desc(), SystemHealthEval.id.desc()).limit(limit)
    ).scalars().all()
    return [e.to_dict() for e in rows]


def latest_system_health(period_days: int = 7) -> dict:
    history = system_health_history(period_days, limit=1)
    if not history:
        raise NotFoundError(resource="SystemHealthEval", resource_id=period_days)
    return history[0]
