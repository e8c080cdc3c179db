"""
Conflict detector tests (conflict_service).

Covers:
    - detect_conflict validation and unordered-pair uniqueness
    - OPEN → INVESTIGATING → RESOLVED / DEFERRED lifecycle and invalid moves
    - Resolution with a winner and an explicit loser confidence
    - Candidate suggestions (shared tags, similar titles) and scan
"""

import pytest

from sdd_engine.core.exceptions import ConflictError, NotFoundError, StateError, ValidationError
from sdd_engine.models.audit import AuditLog
from sdd_engine.models.learning import LearningConflict
from sdd_engine.services import conflict_service, learning_service


@pytest.fixture()
def pair(make_learning):
    a = make_learning(title="Use server-side sessions", category="DECISION", confidence_score=0.9)
    b = make_learning(title="Use JWT tokens", category="DECISION", confidence_score=0.8)
    return a, b


def _conflict(a, b, conflict_type="CONTRADICTION"):
    return conflict_service.detect_conflict(a["id"], b["id"], conflict_type, "Incompatible auth advice", "guardian")


class TestDetect:
    def test_detect_opens_conflict(self, pair):
        a, b = pair

        conflict = _conflict(a, b)

        assert conflict["status"] == "OPEN"
        assert (conflict["learning_a_id"], conflict["learning_b_id"]) == tuple(sorted((a["id"], b["id"])))
        assert AuditLog.query.filter_by(action="conflict.detect").count() == 1

    def test_pair_recorded_once_in_either_order(self, pair):
        a, b = pair
        _conflict(a, b)

        with pytest.raises(ConflictError):
            _conflict(a, b, "SCOPE_OVERLAP")
        with pytest.raises(ConflictError):
            _conflict(b, a)

    def test_reversed_pair_rejected_by_unique_key(self, pair, monkeypatch):
        a, b = pair
        _conflict(a, b)
        # Simulate a concurrent writer that missed the pre-insert lookup
        monkeypatch.setattr(conflict_service, "_existing_pair", lambda *ids: None)

        with pytest.raises(ConflictError):
            _conflict(b, a)
        assert LearningConflict.query.count() == 1

    def test_self_conflict_rejected(self, pair):
        a, _ = pair
        with pytest.raises(ValidationError):
            _conflict(a, a)

    @pytest.mark.parametrize("conflict_type,description,detected_by", [
        ("DISAGREEMENT", "x", "guardian"),
        ("CONTRADICTION", " ", "guardian"),
        ("CONTRADICTION", "x", ""),
    ])
    def test_invalid_conflict(self, pair, conflict_type, description, detected_by):
        a, b = pair
        with pytest.raises(ValidationError):
            conflict_service.detect_conflict(a["id"], b["id"], conflict_type, description, detected_by)

    def test_unknown_learning(self, pair):
        a, _ = pair
        with pytest.raises(NotFoundError):
            conflict_service.detect_conflict(a["id"], "missing", "CONTRADICTION", "x", "guardian")


class TestLifecycle:
    def test_investigate_then_resolve(self, pair):
        a, b = pair
        conflict = _conflict(a, b)

        investigating = conflict_service.investigate_conflict(conflict["id"], "human")
        resolved = conflict_service.resolve_conflict(
            conflict["id"], "Sessions win for the web app", winning_learning_id=a["id"], resolved_by="human",
        )

        assert investigating["status"] == "INVESTIGATING"
        assert resolved["status"] == "RESOLVED"
        assert resolved["winning_learning_id"] == a["id"]
        assert resolved["resolved_by"] == "human"
        assert resolved["resolved_at"] is not None

    def test_resolved_is_terminal(self, pair):
        a, b = pair
        conflict = _conflict(a, b)
        conflict_service.resolve_conflict(conflict["id"], "done")

        with pytest.raises(StateError):
            conflict_service.resolve_conflict(conflict["id"], "again")
        with pytest.raises(StateError):
            conflict_service.investigate_conflict(conflict["id"], "human")
        with pytest.raises(StateError):
            conflict_service.defer_conflict(conflict["id"])

    def test_deferred_can_be_reopened_for_investigation(self, pair):
        a, b = pair
        conflict = _conflict(a, b)

        deferred = conflict_service.defer_conflict(conflict["id"], notes="revisit next quarter")
        assert deferred["status"] == "DEFERRED"
        assert deferred["resolution"] == "revisit next quarter"

        assert conflict_service.investigate_conflict(conflict["id"], "human")["status"] == "INVESTIGATING"

    def test_loser_confidence_lowered(self, pair):
        a, b = pair
        conflict = _conflict(a, b)

        conflict_service.resolve_conflict(
            conflict["id"], "JWT advice was wrong", winning_learning_id=a["id"],
            resolved_by="human", loser_confidence=0.3,
        )

        assert learning_service.get_learning(b["id"])["confidence_score"] == 0.3
        assert learning_service.get_learning(a["id"])["confidence_score"] == 0.9
        log = AuditLog.query.filter_by(action="conflict.resolve").one()
        assert log.diff["loser_confidence"] == {"learning_id": b["id"], "old": 0.8, "new": 0.3}

    def test_loser_confidence_requires_winner(self, pair):
        a, b = pair
        conflict = _conflict(a, b)
        with pytest.raises(ValidationError):
            conflict_service.resolve_conflict(conflict["id"], "x", loser_confidence=0.2)

    def test_winner_must_be_in_pair(self, pair, make_learning):
        a, b = pair
        outsider = make_learning(title="Unrelated")
        conflict = _conflict(a, b)

        with pytest.raises(ValidationError):
            conflict_service.resolve_conflict(conflict["id"], "x", winning_learning_id=outsider["id"])
        assert conflict_service.get_conflict(conflict["id"])["status"] == "OPEN"

    def test_invalid_loser_confidence_rolls_back(self, pair):
        a, b = pair
        conflict = _conflict(a, b)

        with pytest.raises(ValidationError):
            conflict_service.resolve_conflict(conflict["id"], "x", winning_learning_id=a["id"], loser_confidence=2)

        assert conflict_service.get_conflict(conflict["id"])["status"] == "OPEN"

    def test_list_by_status_and_learning(self, pair, make_learning):
        a, b = pair
        c = make_learning(title="Third", category="DECISION")
        first = _conflict(a, b)
        _conflict(a, c)
        conflict_service.resolve_conflict(first["id"], "done")

        assert len(conflict_service.list_conflicts()) == 2
        assert len(conflict_service.list_conflicts(status="open")) == 1
        assert len(conflict_service.list_conflicts(learning_id=b["id"])) == 1
        with pytest.raises(ValidationError):
            conflict_service.list_conflicts(status="CLOSED")


class TestCandidates:
    def test_shared_tag_same_category(self, make_learning):
        base = make_learning(title="Pin dependency versions", category="CONVENTION", tags=["deps", "ci"])
        tagged = make_learning(title="Lockfiles in CI", category="CONVENTION", tags=["ci"])
        make_learning(title="Lockfiles everywhere", category="GOTCHA", tags=["ci"])
        make_learning(title="Unrelated", category="CONVENTION", tags=["docs"])

        candidates = conflict_service.find_conflict_candidates(base["id"])

        assert [c["learning_id"] for c in candidates] == [tagged["id"]]
        assert candidates[0]["shared_tags"] == ["ci"]
        assert candidates[0]["suggested_type"] == "SCOPE_OVERLAP"

    def test_similar_titles(self, make_learning):
        base = make_learning(title="Retry flaky database migrations", category="GOTCHA")
        similar = make_learning(title="Retry database migrations", category="GOTCHA")
        make_learning(title="Cache template rendering", category="GOTCHA")

        candidates = conflict_service.find_conflict_candidates(base["id"])

        assert [c["learning_id"] for c in candidates] == [similar["id"]]
        assert candidates[0]["title_similarity"] == 0.75

    def test_existing_pairs_and_superseded_excluded(self, make_learning):
        base = make_learning(title="A", category="PATTERN", tags=["x"])
        paired = make_learning(title="B", category="PATTERN", tags=["x"])
        old = make_learning(title="C", category="PATTERN", tags=["x"])
        conflict_service.detect_conflict(base["id"], paired["id"], "SCOPE_OVERLAP", "known", "human")
        successor = learning_service.evolve_learning(old["id"], {"content": "v2"})

        candidates = conflict_service.find_conflict_candidates(base["id"])

        assert [c["learning_id"] for c in candidates] == [successor["id"]]

    def test_scan_records_candidates(self, make_learning):
        base = make_learning(title="Pin dependency versions", category="CONVENTION", tags=["ci"])
        peer = make_learning(title="Lockfiles in CI", category="CONVENTION", tags=["ci"])

        created = conflict_service.scan_learning(base["id"])

        assert len(created) == 1
        assert created[0]["conflict_type"] == "SCOPE_OVERLAP"
        assert {created[0]["learning_a_id"], created[0]["learning_b_id"]} == {base["id"], peer["id"]}
        assert created[0]["detected_by"] == "conflict-detector"
        assert "shared tags: ci" in created[0]["description"]
        assert conflict_service.scan_learning(base["id"]) == []
