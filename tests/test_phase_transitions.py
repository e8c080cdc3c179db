"""
Phase state machine tests (phase_service).

Covers:
    - Forward moves: exactly one phase at a time; skips rejected with StateError
    - Backward moves: any earlier phase, recorded as BACKWARD
    - Phase 8 reachable only through complete()
    - complete(): coverage gate, open-blocker guard, COMPLETED status, eval snapshot
    - cancel(): terminal status, further moves rejected
    - Validation of to_phase / actor and unknown features
    - compare_and_set guard used by every phase write
"""

import pytest

from sdd_engine.core.exceptions import GateFailure, NotFoundError, StateError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import AuditLog
from sdd_engine.models.workflow import Blocker, Feature, PhaseTransition
from sdd_engine.services import feature_service, gate_service, phase_service
from sdd_engine.services.helpers.store import compare_and_set


def _transitions(feature_id):
    return (
        PhaseTransition.query.filter_by(feature_id=feature_id)
        .order_by(PhaseTransition.transitioned_at, PhaseTransition.id)
        .all()
    )


def _cover_all(feature_id, close_invocation):
    for phase in range(1, 8):
        close_invocation(feature_id, phase)


class TestForwardOnly:
    @pytest.mark.parametrize("start", range(0, 6))
    def test_forward_skip_rejected(self, feature, walk_to_phase, start):
        walk_to_phase(feature["id"], start)

        with pytest.raises(StateError, match="forward skip"):
            phase_service.transition(feature["id"], start + 2, "architect")

        assert feature_service.get_feature(feature["id"])["current_phase"] == start

    @pytest.mark.parametrize("start", range(0, 7))
    def test_single_step_forward_succeeds(self, feature, walk_to_phase, start):
        walk_to_phase(feature["id"], start)

        row = phase_service.transition(feature["id"], start + 1, "orchestrator", note="next")

        assert row["transition_type"] == "FORWARD"
        assert row["from_phase"] == start
        assert row["to_phase"] == start + 1
        assert row["notes"] == "next"
        assert feature_service.get_feature(feature["id"])["current_phase"] == start + 1

    def test_rejected_skip_writes_nothing(self, feature):
        before = len(_transitions(feature["id"]))

        with pytest.raises(StateError):
            phase_service.transition(feature["id"], 3, "builder")

        assert len(_transitions(feature["id"])) == before
        assert AuditLog.query.filter_by(action="feature.transition").count() == 0

    def test_same_phase_is_not_a_transition(self, feature, walk_to_phase):
        walk_to_phase(feature["id"], 2)
        with pytest.raises(StateError, match="already in phase"):
            phase_service.transition(feature["id"], 2, "architect")

    def test_phase_8_only_via_complete(self, feature, walk_to_phase):
        walk_to_phase(feature["id"], 7)
        with pytest.raises(StateError, match="complete"):
            phase_service.transition(feature["id"], 8, "release")


class TestBackwardFreedom:
    @pytest.mark.parametrize("target", range(0, 5))
    def test_backward_to_any_earlier_phase(self, feature, walk_to_phase, target):
        walk_to_phase(feature["id"], 5)

        row = phase_service.transition(feature["id"], target, "guardian", note="spec gap")

        assert row["transition_type"] == "BACKWARD"
        assert row["from_phase"] == 5
        assert row["to_phase"] == target
        assert feature_service.get_feature(feature["id"])["current_phase"] == target

    def test_rework_cycle_is_recorded_in_order(self, feature, walk_to_phase):
        walk_to_phase(feature["id"], 4)
        phase_service.transition(feature["id"], 2, "builder", note="design flaw")
        phase_service.transition(feature["id"], 3, "architect")

        kinds = [(t.from_phase, t.to_phase, t.transition_type) for t in _transitions(feature["id"])]

        assert kinds == [
            (0, 0, "FORWARD"),
            (0, 1, "FORWARD"),
            (1, 2, "FORWARD"),
            (2, 3, "FORWARD"),
            (3, 4, "FORWARD"),
            (4, 2, "BACKWARD"),
            (2, 3, "FORWARD"),
        ]

    def test_transition_is_audited(self, feature):
        phase_service.transition(feature["id"], 1, "discovery")

        log = AuditLog.query.filter_by(action="feature.transition").one()
        assert log.feature_id == feature["id"]
        assert log.actor == "discovery"
        assert log.diff["current_phase"] == {"old": 0, "new": 1}


class TestTransitionValidation:
    @pytest.mark.parametrize("bad", [-1, 9, "3", 2.0, None, True])
    def test_bad_to_phase(self, feature, bad):
        with pytest.raises(ValidationError):
            phase_service.transition(feature["id"], bad, "orchestrator")

    def test_actor_required(self, feature):
        with pytest.raises(ValidationError):
            phase_service.transition(feature["id"], 1, "")

    def test_unknown_feature(self):
        with pytest.raises(NotFoundError):
            phase_service.transition("nope", 1, "orchestrator")


class TestComplete:
    def test_complete_requires_release_phase(self, feature, walk_to_phase):
        walk_to_phase(feature["id"], 6)
        with pytest.raises(StateError, match="requires phase 7"):
            phase_service.complete(feature["id"], "release")

    def test_complete_with_full_coverage(self, feature, walk_to_phase, close_invocation):
        walk_to_phase(feature["id"], 7)
        _cover_all(feature["id"], close_invocation)

        result = phase_service.complete(feature["id"], "release")

        assert result["current_phase"] == 8
        assert result["status"] == "COMPLETED"
        assert result["completed_at"] is not None
        assert result["eval"]["feature_id"] == feature["id"]
        assert Blocker.query.filter_by(feature_id=feature["id"]).count() == 0
        last = _transitions(feature["id"])[-1]
        assert (last.from_phase, last.to_phase, last.transition_type) == (7, 8, "FORWARD")

    @pytest.mark.parametrize("missing_phase", range(1, 8))
    def test_complete_fails_for_each_missing_pair(self, feature, walk_to_phase, close_invocation, missing_phase):
        walk_to_phase(feature["id"], 7)
        for phase in range(1, 8):
            if phase != missing_phase:
                close_invocation(feature["id"], phase)

        with pytest.raises(GateFailure) as exc_info:
            phase_service.complete(feature["id"], "release")

        assert [m["phase"] for m in exc_info.value.missing] == [missing_phase]
        blocker = db.session.get(Blocker, exc_info.value.blocker_id)
        assert blocker.blocker_type == "VALIDATION_FAILED"
        assert blocker.status == "OPEN"
        assert [m["phase"] for m in blocker.context["missing"]] == [missing_phase]

        refreshed = db.session.get(Feature, feature["id"])
        assert refreshed.current_phase == 7
        assert refreshed.status == "BLOCKED"

    def test_retry_after_remediation_resolves_coverage_blocker(self, feature, walk_to_phase, close_invocation):
        walk_to_phase(feature["id"], 7)
        for phase in range(1, 7):
            close_invocation(feature["id"], phase)
        with pytest.raises(GateFailure) as exc_info:
            phase_service.complete(feature["id"], "release")

        close_invocation(feature["id"], 7)
        result = phase_service.complete(feature["id"], "release")

        assert result["status"] == "COMPLETED"
        blocker = db.session.get(Blocker, exc_info.value.blocker_id)
        assert blocker.status == "RESOLVED"
        assert blocker.resolved_by == "release"

    def test_other_open_blocker_prevents_completion(self, feature, walk_to_phase, close_invocation):
        walk_to_phase(feature["id"], 7)
        _cover_all(feature["id"], close_invocation)
        gate_service.open_blocker(feature["id"], "HUMAN_DECISION_REQUIRED", None, "HIGH", "Need sign-off")

        with pytest.raises(StateError, match="open blocker"):
            phase_service.complete(feature["id"], "release")

        assert db.session.get(Feature, feature["id"]).current_phase == 7

    def test_complete_twice_rejected(self, feature, walk_to_phase, close_invocation):
        walk_to_phase(feature["id"], 7)
        _cover_all(feature["id"], close_invocation)
        phase_service.complete(feature["id"], "release")

        with pytest.raises(StateError):
            phase_service.complete(feature["id"], "release")


class TestCancel:
    def test_cancel_is_terminal(self, feature, walk_to_phase):
        walk_to_phase(feature["id"], 3)

        result = phase_service.cancel(feature["id"], "human", reason="descoped")

        assert result["status"] == "CANCELLED"
        assert result["current_phase"] == 3
        with pytest.raises(StateError):
            phase_service.transition(feature["id"], 4, "builder")
        with pytest.raises(StateError):
            phase_service.cancel(feature["id"], "human")

    def test_cancel_audit_carries_reason(self, feature):
        phase_service.cancel(feature["id"], "human", reason="descoped")

        log = AuditLog.query.filter_by(action="feature.cancel").one()
        assert log.diff["reason"] == "descoped"
        assert log.diff["status"] == {"old": "IN_PROGRESS", "new": "CANCELLED"}


class TestCompareAndSet:
    def test_stale_expectation_updates_nothing(self, feature):
        assert compare_and_set(Feature, feature["id"], expected={"current_phase": 3},
                               values={"current_phase": 4}) is False
        assert db.session.get(Feature, feature["id"]).current_phase == 0

    def test_matching_expectation_updates_row(self, feature):
        assert compare_and_set(Feature, feature["id"], expected={"current_phase": 0},
                               values={"current_phase": 1}) is True
        db.session.rollback()
