"""
Invocation telemetry & coverage gate tests (telemetry_service).

Covers:
    - start/end bracket, derived duration, double-end ConflictError
    - skills-loaded audit entries
    - Coverage report: expected / present / missing pairs, agent-name normalisation
    - Open (unclosed) invocations do not count
    - Gate failure opens a VALIDATION_FAILED blocker listing the missing pairs
    - Backfill: provenance required, derived windows, skipped phases
    - Phase and agent duration analytics
"""

import pytest

from sdd_engine.core.exceptions import ConflictError, GateFailure, NotFoundError, ValidationError
from sdd_engine.models.audit import AuditLog
from sdd_engine.models.workflow import Blocker
from sdd_engine.services import telemetry_service


class TestInvocationLifecycle:
    def test_start_and_end(self, feature):
        invocation_id = telemetry_service.start_invocation(feature["id"], 1, "discovery", operation="scan repo")

        opened = telemetry_service.get_invocation(invocation_id)
        assert opened["ended_at"] is None
        assert opened["duration_ms"] is None

        closed = telemetry_service.end_invocation(invocation_id, notes="done")
        assert closed["ended_at"] is not None
        assert closed["duration_ms"] >= 0
        assert closed["notes"] == "done"
        assert closed["operation"] == "scan repo"

    def test_double_end_is_conflict(self, feature):
        invocation_id = telemetry_service.start_invocation(feature["id"], 1, "discovery")
        first = telemetry_service.end_invocation(invocation_id)

        with pytest.raises(ConflictError):
            telemetry_service.end_invocation(invocation_id)

        assert telemetry_service.get_invocation(invocation_id)["duration_ms"] == first["duration_ms"]

    def test_end_unknown_invocation(self):
        with pytest.raises(NotFoundError):
            telemetry_service.end_invocation("00000000-0000-0000-0000-000000000000")

    def test_skills_loaded_audited(self, feature):
        invocation_id = telemetry_service.start_invocation(
            feature["id"], 4, "builder", skills=["python-testing", " flask "],
        )

        assert telemetry_service.get_invocation(invocation_id)["skills_used"] == ["python-testing", "flask"]
        log = AuditLog.query.filter_by(action="invocation.skills_loaded").one()
        assert log.entity_id == invocation_id
        assert log.diff["skills"] == ["python-testing", "flask"]

    def test_no_audit_without_skills(self, feature):
        telemetry_service.start_invocation(feature["id"], 4, "builder")
        assert AuditLog.query.filter_by(action="invocation.skills_loaded").count() == 0

    @pytest.mark.parametrize("phase,agent,skills", [
        (9, "builder", None),
        (4, "  ", None),
        (4, "builder", "flask"),
        (4, "builder", ["ok", ""]),
    ])
    def test_invalid_start(self, feature, phase, agent, skills):
        with pytest.raises(ValidationError):
            telemetry_service.start_invocation(feature["id"], phase, agent, skills=skills)

    def test_list_filters_by_phase(self, feature, close_invocation):
        close_invocation(feature["id"], 1)
        close_invocation(feature["id"], 2)
        close_invocation(feature["id"], 2, agent="architect")

        assert len(telemetry_service.list_invocations(feature["id"])) == 3
        assert len(telemetry_service.list_invocations(feature["id"], phase=2)) == 2


class TestNormalizeAgentName:
    @pytest.mark.parametrize("raw,expected", [
        ("guardian", "guardian"),
        ("Guardian-Agent", "guardian"),
        ("release_agent", "release"),
        ("  Builder Agent ", "builder"),
        (None, ""),
    ])
    def test_normalize(self, raw, expected):
        assert telemetry_service.normalize_agent_name(raw) == expected


class TestCoverage:
    def test_empty_feature_misses_every_pair(self, feature):
        report = telemetry_service.check_coverage(feature["id"])

        assert report["passed"] is False
        assert [m["phase"] for m in report["missing"]] == [1, 2, 3, 4, 5, 6, 7]
        assert report["present"] == []

    def test_full_coverage_passes(self, feature, close_invocation):
        for phase in range(1, 8):
            close_invocation(feature["id"], phase)

        report = telemetry_service.check_coverage(feature["id"])

        assert report["passed"] is True
        assert report["missing"] == []
        assert len(report["present"]) == 7

    def test_agent_name_variants_count(self, feature, close_invocation):
        close_invocation(feature["id"], 7, agent="Release-Agent")

        report = telemetry_service.check_coverage(feature["id"])

        assert {"phase": 7, "phase_name": "Release", "agent": "release"} in report["present"]

    def test_wrong_agent_or_phase_does_not_count(self, feature, close_invocation):
        close_invocation(feature["id"], 3, agent="builder")
        close_invocation(feature["id"], 4, agent="guardian")

        missing = {m["phase"] for m in telemetry_service.check_coverage(feature["id"])["missing"]}

        assert {3, 4} <= missing

    def test_open_invocation_does_not_count(self, feature):
        telemetry_service.start_invocation(feature["id"], 1, "discovery")

        report = telemetry_service.check_coverage(feature["id"], through_phase=1)

        assert report["missing"] == [{"phase": 1, "phase_name": "Discovery", "agent": "discovery"}]

    def test_through_phase_limits_expectation(self, feature, close_invocation):
        for phase in range(1, 7):
            close_invocation(feature["id"], phase)

        assert telemetry_service.check_coverage(feature["id"], through_phase=6)["passed"] is True
        assert telemetry_service.check_coverage(feature["id"], through_phase=7)["passed"] is False

    def test_check_never_writes(self, feature):
        telemetry_service.check_coverage(feature["id"])
        assert Blocker.query.count() == 0

    def test_enforce_opens_blocker_listing_missing_pairs(self, feature, close_invocation):
        for phase in (1, 2, 4, 5, 6, 7):
            close_invocation(feature["id"], phase)

        with pytest.raises(GateFailure) as exc_info:
            telemetry_service.enforce_coverage(feature["id"], "release", action="complete")

        err = exc_info.value
        assert err.gate == "invocation_coverage"
        assert err.missing == [{"phase": 3, "phase_name": "Guardian", "agent": "guardian"}]
        blocker = Blocker.query.one()
        assert blocker.id == err.blocker_id
        assert blocker.blocker_type == "VALIDATION_FAILED"
        assert blocker.context["gate"] == "invocation_coverage"
        assert blocker.context["action"] == "complete"
        assert "phase 3 (guardian)" in blocker.description

    def test_each_failure_opens_its_own_blocker(self, feature):
        for _ in range(2):
            with pytest.raises(GateFailure):
                telemetry_service.enforce_coverage(feature["id"], "release", action="complete")
        assert Blocker.query.filter_by(status="OPEN").count() == 2


class TestBackfill:
    def test_note_required(self, feature):
        with pytest.raises(ValidationError):
            telemetry_service.backfill_invocations(feature["id"], "human", "  ")

    def test_backfill_derives_from_transitions(self, feature, walk_to_phase, close_invocation):
        walk_to_phase(feature["id"], 7)
        for phase in (1, 2, 4, 5, 6, 7):
            close_invocation(feature["id"], phase)

        result = telemetry_service.backfill_invocations(
            feature["id"], "human", "guardian ran before telemetry was wired",
        )

        assert len(result["created"]) == 1
        created = result["created"][0]
        assert created["phase"] == 3
        assert created["agent_name"] == "guardian"
        assert created["is_backfill"] is True
        assert created["notes"].startswith("BACKFILL:")
        assert created["duration_ms"] >= 0
        assert result["skipped"] == []
        assert result["coverage"]["passed"] is True
        log = AuditLog.query.filter_by(action="invocation.backfill").one()
        assert log.diff["pairs"] == [{"phase": 3, "agent": "guardian"}]

    def test_never_entered_phases_are_skipped(self, feature, walk_to_phase):
        walk_to_phase(feature["id"], 2)

        result = telemetry_service.backfill_invocations(feature["id"], "human", "catch-up")

        assert [c["phase"] for c in result["created"]] == [1, 2]
        assert [s["phase"] for s in result["skipped"]] == [3, 4, 5, 6, 7]
        assert all(s["reason"] == "phase never entered" for s in result["skipped"])


class TestDurations:
    def test_phase_durations_count_visits(self, feature, walk_to_phase):
        from sdd_engine.services import phase_service

        walk_to_phase(feature["id"], 3)
        phase_service.transition(feature["id"], 1, "guardian")

        durations = {d["phase"]: d for d in telemetry_service.phase_durations(feature["id"])}

        assert durations[1]["visits"] == 2
        assert durations[2]["visits"] == 1
        assert durations[1]["is_current"] is True
        assert all(d["total_ms"] >= 0 for d in durations.values())

    def test_agent_durations_group_by_pair(self, feature, close_invocation):
        close_invocation(feature["id"], 4)
        close_invocation(feature["id"], 4)
        telemetry_service.start_invocation(feature["id"], 4, "builder")

        [row] = telemetry_service.agent_durations(feature["id"])

        assert row["agent_name"] == "builder"
        assert row["invocations"] == 2
        assert row["min_ms"] <= row["max_ms"]
