"""
Health & eval scorer tests (eval_service).

Covers:
    - Health status boundaries (70 / 50)
    - Duration, iteration and blocker bands
    - Thrashing window rule on synthetic transition lists
    - Feature eval scoring, alerts and per-(dimension, source) deduplication
    - Alert acknowledge / resolve lifecycle and active ordering
    - System health over 7 / 30 / 90 day windows
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from sdd_engine.core.exceptions import NotFoundError, StateError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.evals import EvalAlert
from sdd_engine.models.workflow import Feature
from sdd_engine.services import conflict_service, eval_service, gate_service, phase_service
from sdd_engine.services.helpers.store import utcnow


def _moves(*pairs):
    """Build FORWARD/BACKWARD rows from (from, to) pairs."""
    return [
        SimpleNamespace(from_phase=a, to_phase=b, transition_type="FORWARD" if b > a else "BACKWARD")
        for a, b in pairs
    ]


def _thrash(feature_id, backs=3):
    """Walk to phase 3, then bounce between 1 and 2 ``backs`` times."""
    for phase in (1, 2, 3):
        phase_service.transition(feature_id, phase, "orchestrator")
    phase_service.transition(feature_id, 1, "guardian")
    for _ in range(backs - 1):
        phase_service.transition(feature_id, 2, "architect")
        phase_service.transition(feature_id, 1, "guardian")


def _blockers(feature_id, count):
    for i in range(count):
        gate_service.open_blocker(feature_id, "VALIDATION_FAILED", None, "HIGH", f"Failure {i}")


def _backdate(feature_id, **delta):
    row = db.session.get(Feature, feature_id)
    row.created_at = utcnow() - timedelta(**delta)
    db.session.commit()


class TestHealthStatus:
    @pytest.mark.parametrize("score,expected", [
        (100, "HEALTHY"),
        (70.0, "HEALTHY"),
        (69.99, "CONCERNING"),
        (50.0, "CONCERNING"),
        (49.99, "CRITICAL"),
        (0, "CRITICAL"),
    ])
    def test_boundaries(self, score, expected):
        assert eval_service.health_status(score) == expected


class TestBands:
    @pytest.mark.parametrize("actual,expected", [(60, 70), (180, 70), (270, 55), (360, 35), (361, 15)])
    def test_duration_band(self, actual, expected):
        assert eval_service.duration_band(actual, 180) == expected

    @pytest.mark.parametrize("iterations,expected", [(1, 30), (2, 30), (3, 25), (4, 15), (5, 5)])
    def test_iteration_band(self, iterations, expected):
        assert eval_service.iteration_band(iterations) == expected

    @pytest.mark.parametrize("blockers,expected", [(0, 30), (1, 20), (2, 10), (3, 10), (4, 0)])
    def test_blocker_band(self, blockers, expected):
        assert eval_service.blocker_band(blockers) == expected


class TestThrashing:
    def test_no_backward_moves(self):
        assert eval_service.count_thrashing(_moves((0, 1), (1, 2), (2, 3))) == 0

    def test_recovery_above_high_water_is_not_thrashing(self):
        moves = _moves((0, 1), (1, 2), (2, 3), (3, 1), (1, 2), (2, 3), (3, 4))
        assert eval_service.count_thrashing(moves, terminal=True) == 0

    def test_open_window_undecided_on_active_feature(self):
        moves = _moves((0, 1), (1, 2), (2, 3), (3, 1))
        assert eval_service.count_thrashing(moves) == 0
        assert eval_service.count_thrashing(moves, terminal=True) == 1

    def test_window_closes_at_second_following_backward(self):
        moves = _moves((0, 1), (1, 2), (2, 3), (3, 1), (1, 2), (2, 1), (1, 2), (2, 1))
        # Only the first backward move has a closed window
        assert eval_service.count_thrashing(moves) == 1
        assert eval_service.count_thrashing(moves, terminal=True) == 3

    def test_other_transition_types_ignored(self):
        moves = _moves((0, 1), (1, 2), (2, 1)) + [
            SimpleNamespace(from_phase=1, to_phase=1, transition_type="ESCALATION"),
        ]
        assert eval_service.count_thrashing(moves) == 0


class TestFeatureEval:
    def test_clean_feature_scores_full_marks(self, feature):
        result = eval_service.compute_feature_eval(feature["id"])

        assert result["efficiency_score"] == 100
        assert result["quality_score"] == 100
        assert result["overall_score"] == 100
        assert result["health_status"] == "HEALTHY"
        assert result["expected_minutes"] == 180
        assert result["iterations"] == 1
        assert result["breakdown"]["quality"]["gate_term"] == 50
        assert result["alerts"] == []

    def test_gate_rate_and_open_blocker(self, feature):
        gate_service.record_gate(feature["id"], "spec", 1, "APPROVED")
        gate_service.record_gate(feature["id"], "design", 2, "REJECTED")
        _blockers(feature["id"], 1)

        result = eval_service.compute_feature_eval(feature["id"])

        # quality = 0.5 × 50 + 20 + 20
        assert result["quality_score"] == 65
        assert result["overall_score"] == 79
        assert result["gate_approval_rate"] == 0.5
        assert result["open_blockers"] == 1

    def test_duration_overrun_alert(self, feature):
        _backdate(feature["id"], hours=7)

        result = eval_service.compute_feature_eval(feature["id"])

        assert result["breakdown"]["efficiency"]["duration_band"] == 15
        assert result["breakdown"]["efficiency"]["duration_source"] == "wall_clock"
        assert result["overall_score"] == 78
        assert [a["dimension"] for a in result["alerts"]] == ["duration"]
        assert result["alerts"][0]["threshold_value"] == 360

    def test_concerning_feature_raises_warning(self, feature):
        gate_service.record_gate(feature["id"], "spec", 1, "REJECTED")
        _blockers(feature["id"], 4)

        result = eval_service.compute_feature_eval(feature["id"])

        assert result["overall_score"] == 52
        assert result["health_status"] == "CONCERNING"
        [alert] = result["alerts"]
        assert (alert["dimension"], alert["severity"]) == ("overall_score", "WARNING")

    def test_thrashing_feature_goes_critical(self, feature):
        _thrash(feature["id"])
        gate_service.record_gate(feature["id"], "spec", 1, "REJECTED")
        _blockers(feature["id"], 4)

        result = eval_service.compute_feature_eval(feature["id"])

        assert result["iterations"] == 4
        assert result["thrashing_count"] == 1
        assert result["overall_score"] == 34
        assert result["health_status"] == "CRITICAL"
        assert {(a["dimension"], a["severity"]) for a in result["alerts"]} == {
            ("overall_score", "CRITICAL"),
            ("thrashing", "WARNING"),
        }

    def test_alerts_deduplicated_until_resolved(self, feature):
        _backdate(feature["id"], hours=7)
        first = eval_service.compute_feature_eval(feature["id"])
        second = eval_service.compute_feature_eval(feature["id"])

        assert second["alerts"][0]["deduplicated"] is True
        assert second["alerts"][0]["alert_id"] is None
        assert EvalAlert.query.count() == 1

        eval_service.resolve_alert(first["alerts"][0]["alert_id"], "human")
        third = eval_service.compute_feature_eval(feature["id"])

        assert third["alerts"][0]["deduplicated"] is False
        assert EvalAlert.query.count() == 2

    def test_recompute_never_resolves(self, feature):
        _blockers(feature["id"], 4)
        gate_service.record_gate(feature["id"], "spec", 1, "REJECTED")
        eval_service.compute_feature_eval(feature["id"])

        for blocker in gate_service.list_blockers(feature["id"]):
            gate_service.resolve_blocker(blocker["id"], "builder")
        healthy = eval_service.compute_feature_eval(feature["id"])

        assert healthy["alerts"] == []
        assert len(eval_service.active_alerts(feature_id=feature["id"])) == 1

    def test_history_and_latest(self, feature):
        eval_service.compute_feature_eval(feature["id"], evaluated_by="ci")
        latest = eval_service.compute_feature_eval(feature["id"], evaluated_by="nightly")

        history = eval_service.feature_eval_history(feature["id"])

        assert [h["id"] for h in history][0] == latest["id"]
        assert len(history) == 2
        assert eval_service.latest_feature_eval(feature["id"])["evaluated_by"] == "nightly"

    def test_latest_without_evals(self, feature):
        with pytest.raises(NotFoundError):
            eval_service.latest_feature_eval(feature["id"])

    def test_unknown_feature(self):
        with pytest.raises(NotFoundError):
            eval_service.compute_feature_eval("ghost")


class TestAlertLifecycle:
    @pytest.fixture()
    def alert_id(self, feature):
        _backdate(feature["id"], hours=7)
        return eval_service.compute_feature_eval(feature["id"])["alerts"][0]["alert_id"]

    def test_acknowledge_once(self, alert_id):
        acked = eval_service.acknowledge_alert(alert_id, "oncall")

        assert acked["is_acknowledged"] is True
        assert acked["acknowledged_by"] == "oncall"
        with pytest.raises(StateError):
            eval_service.acknowledge_alert(alert_id, "oncall")

    def test_resolve_acknowledges_implicitly(self, alert_id):
        resolved = eval_service.resolve_alert(alert_id, "oncall", notes="expected for spike")

        assert resolved["is_resolved"] is True
        assert resolved["is_acknowledged"] is True
        assert resolved["resolution_notes"] == "expected for spike"
        assert eval_service.active_alerts() == []
        with pytest.raises(StateError):
            eval_service.resolve_alert(alert_id, "oncall")

    def test_actor_required(self, alert_id):
        with pytest.raises(ValidationError):
            eval_service.acknowledge_alert(alert_id, "")

    def test_unknown_alert(self):
        with pytest.raises(NotFoundError):
            eval_service.get_alert(999)

    def test_active_alerts_critical_first(self, feature, make_feature):
        _backdate(feature["id"], hours=7)
        eval_service.compute_feature_eval(feature["id"])
        other = make_feature("search")
        _thrash(other["id"])
        gate_service.record_gate(other["id"], "spec", 1, "REJECTED")
        _blockers(other["id"], 4)
        eval_service.compute_feature_eval(other["id"])

        alerts = eval_service.active_alerts()

        assert alerts[0]["severity"] == "CRITICAL"
        assert {a["severity"] for a in alerts[1:]} == {"WARNING"}
        assert len(eval_service.active_alerts(severity="critical")) == 1


class TestSystemHealth:
    def test_empty_system(self):
        result = eval_service.compute_system_health()

        assert result["breakdown"] == {
            "workflow_activity": 15, "iterations": 25, "thrashing": 20, "blocked_ratio": 25,
        }
        assert result["overall_health_score"] == 85
        assert result["health_status"] == "HEALTHY"
        assert result["features_active"] == 0
        assert result["alerts"] == []

    def test_blocked_ratio_on_boundary(self, feature, make_feature):
        blocked = make_feature("search")
        _blockers(blocked["id"], 1)

        result = eval_service.compute_system_health(period_days=30)

        assert result["features_in_progress"] == 1
        assert result["features_blocked"] == 1
        assert result["breakdown"]["blocked_ratio"] == 5
        assert result["overall_health_score"] == 70
        assert result["health_status"] == "HEALTHY"

    def test_thrashing_rate_alert(self, feature):
        _thrash(feature["id"])

        result = eval_service.compute_system_health()

        assert result["thrashing_rate"] == 100
        assert result["avg_iterations"] == 4
        assert result["overall_health_score"] == 55
        assert result["health_status"] == "CONCERNING"
        assert [(a["dimension"], a["severity"]) for a in result["alerts"]] == [("thrashing_rate", "CRITICAL")]

    def test_learning_metrics_and_conflict_alert(self, make_learning):
        a = make_learning(confidence_score=0.9)
        b = make_learning(title="Other", confidence_score=0.4)
        conflict_service.detect_conflict(a["id"], b["id"], "CONTRADICTION", "clash", "guardian")

        result = eval_service.compute_system_health()

        assert result["learning_metrics"] == {
            "total_learnings": 2, "high_confidence_learnings": 1, "open_conflicts": 1,
        }
        assert [(a["dimension"], a["severity"]) for a in result["alerts"]] == [("learning_conflicts", "WARNING")]

    def test_old_features_fall_outside_window(self, feature):
        row = db.session.get(Feature, feature["id"])
        row.created_at = row.updated_at = utcnow() - timedelta(days=20)
        db.session.commit()

        assert eval_service.compute_system_health(period_days=7)["features_active"] == 0
        assert eval_service.compute_system_health(period_days=30)["features_active"] == 1

    @pytest.mark.parametrize("period", [14, 0, "7", True])
    def test_invalid_period(self, period):
        with pytest.raises(ValidationError):
            eval_service.compute_system_health(period_days=period)

    def test_history_by_period(self):
        eval_service.compute_system_health(7)
        eval_service.compute_system_health(30)
        latest = eval_service.compute_system_health(7, evaluated_by="scheduler")

        assert len(eval_service.system_health_history()) == 3
        assert len(eval_service.system_health_history(period_days=7)) == 2
        assert eval_service.latest_system_health(7)["id"] == latest["id"]
        with pytest.raises(NotFoundError):
            eval_service.latest_system_health(90)
