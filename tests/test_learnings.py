"""
Learning evolution & confidence tests (learning_service).

Covers:
    - create_learning: defaults, validation, origin feature check
    - Confidence monotonicity: validate +0.15, reference +0.10, both capped at 1.00
    - Evolution chain integrity: supersession fields, iteration, double-evolve StateError
    - Chain traversal from any member
    - Propagation readiness: threshold and blocking conflicts
    - Listing filters and per-feature summary
"""

import pytest

from sdd_engine.core.exceptions import NotFoundError, StateError, ValidationError
from sdd_engine.models.audit import AuditLog
from sdd_engine.services import conflict_service, learning_service


class TestCreateLearning:
    def test_defaults(self, make_learning):
        learning = make_learning()

        assert learning["iteration"] == 1
        assert learning["previous_version_id"] is None
        assert learning["confidence_score"] == 0.5
        assert learning["importance"] == "MEDIUM"
        assert learning["validation_count"] == 0
        assert learning["is_superseded"] is False
        assert learning["tags"] == []

    def test_tags_deduplicated(self, make_learning):
        learning = make_learning(tags=["sqlite", " sqlite", "db", ""])
        assert learning["tags"] == ["sqlite", "db"]

    def test_origin_feature_must_exist(self, make_learning, feature):
        assert make_learning(feature_id=feature["id"], phase=4)["feature_id"] == feature["id"]
        with pytest.raises(NotFoundError):
            make_learning(feature_id="ghost")

    @pytest.mark.parametrize("overrides", [
        {"category": "OPINION"},
        {"title": ""},
        {"content": "   "},
        {"confidence_score": 1.3},
        {"confidence_score": -0.1},
        {"confidence_score": "high"},
        {"importance": "CRITICAL"},
        {"tags": "sqlite"},
        {"phase": 12},
    ])
    def test_invalid_learning(self, make_learning, overrides):
        with pytest.raises(ValidationError):
            make_learning(**overrides)

    def test_confidence_rounded(self, make_learning):
        assert make_learning(confidence_score=0.456)["confidence_score"] == 0.46


class TestConfidence:
    @pytest.mark.parametrize("start,expected", [(0.5, 0.65), (0.7, 0.85), (0.9, 1.0), (1.0, 1.0)])
    def test_validate_adds_015_with_cap(self, make_learning, start, expected):
        learning = make_learning(confidence_score=start)

        result = learning_service.validate_learning(learning["id"], "guardian")

        assert result["confidence_score"] == expected
        assert result["validation_count"] == 1
        assert result["validated_by"] == ["guardian"]
        assert result["last_validated_at"] is not None

    @pytest.mark.parametrize("start,expected", [(0.5, 0.6), (0.85, 0.95), (0.95, 1.0)])
    def test_reference_adds_010_with_cap(self, make_learning, start, expected):
        learning = make_learning(confidence_score=start)

        result = learning_service.reference_learning(learning["id"])

        assert result["confidence_score"] == expected
        assert result["validation_count"] == 0

    def test_repeated_validation_is_monotonic(self, make_learning):
        learning = make_learning(confidence_score=0.2)
        scores = [
            learning_service.validate_learning(learning["id"], f"agent-{i}")["confidence_score"]
            for i in range(7)
        ]

        assert scores == [0.35, 0.5, 0.65, 0.8, 0.95, 1.0, 1.0]
        assert learning_service.get_learning(learning["id"])["validation_count"] == 7

    def test_validation_requires_validator(self, make_learning):
        learning = make_learning()
        with pytest.raises(ValidationError):
            learning_service.validate_learning(learning["id"], " ")

    def test_superseded_learning_cannot_gain_confidence(self, make_learning):
        learning = make_learning()
        learning_service.evolve_learning(learning["id"], {"content": "Updated advice"})

        with pytest.raises(StateError):
            learning_service.validate_learning(learning["id"], "guardian")
        with pytest.raises(StateError):
            learning_service.reference_learning(learning["id"])

    def test_validation_audited(self, make_learning):
        learning = make_learning()
        learning_service.validate_learning(learning["id"], "guardian")

        log = AuditLog.query.filter_by(action="learning.validate").one()
        assert log.actor == "guardian"
        assert log.diff["confidence_score"] == 0.65


class TestEvolution:
    def test_chain_integrity(self, make_learning):
        a = make_learning(tags=["sqlite"], importance="HIGH", confidence_score=0.7)

        b = learning_service.evolve_learning(a["id"], {"content": "Also set journal_mode=WAL", "delta_summary": "WAL"})
        a_after = learning_service.get_learning(a["id"])

        assert a_after["is_superseded"] is True
        assert a_after["superseded_by"] == b["id"]
        assert a_after["superseded_at"] is not None
        assert a_after["content"] == a["content"]
        assert b["previous_version_id"] == a["id"]
        assert b["iteration"] == a["iteration"] + 1
        assert b["delta_summary"] == "WAL"
        # Inherited from the predecessor
        assert b["title"] == a["title"]
        assert b["category"] == a["category"]
        assert b["tags"] == ["sqlite"]
        assert b["importance"] == "HIGH"
        assert b["confidence_score"] == 0.7

    def test_evolve_twice_rejected(self, make_learning):
        a = make_learning()
        learning_service.evolve_learning(a["id"], {"content": "v2"})

        with pytest.raises(StateError):
            learning_service.evolve_learning(a["id"], {"content": "v2 again"})

    def test_overrides_apply_to_successor(self, make_learning):
        a = make_learning()
        b = learning_service.evolve_learning(a["id"], {"content": "v2", "title": "New title", "category": "pattern"})

        assert b["title"] == "New title"
        assert b["category"] == "PATTERN"

    def test_content_required(self, make_learning):
        a = make_learning()
        with pytest.raises(ValidationError):
            learning_service.evolve_learning(a["id"], {"delta_summary": "no content"})
        assert learning_service.get_learning(a["id"])["is_superseded"] is False

    def test_chain_from_any_member(self, make_learning):
        a = make_learning()
        b = learning_service.evolve_learning(a["id"], {"content": "v2"})
        c = learning_service.evolve_learning(b["id"], {"content": "v3"})

        for member in (a, b, c):
            chain = learning_service.get_learning_chain(member["id"])
            assert [n["id"] for n in chain] == [a["id"], b["id"], c["id"]]
            assert [n["iteration"] for n in chain] == [1, 2, 3]

        summary = learning_service.chain_summary(a["id"])
        assert summary["root_id"] == a["id"]
        assert summary["chain_length"] == 3
        assert summary["current"]["id"] == c["id"]

    def test_evolve_unknown(self):
        with pytest.raises(NotFoundError):
            learning_service.evolve_learning("missing", {"content": "x"})


class TestReadiness:
    def test_below_threshold_never_ready(self, make_learning):
        low = make_learning(confidence_score=0.79)

        assert learning_service.get_learning(low["id"])["propagation_ready"] is False
        assert learning_service.propagation_ready_learnings() == []

    def test_open_conflict_excludes_until_resolved(self, make_learning):
        ready = make_learning(confidence_score=0.85)
        other = make_learning(title="Different", confidence_score=0.5)
        conflict = conflict_service.detect_conflict(
            ready["id"], other["id"], "CONTRADICTION", "Opposite advice", "guardian",
        )

        assert learning_service.propagation_ready_learnings() == []
        assert learning_service.is_propagation_ready(ready["id"]) is False

        conflict_service.investigate_conflict(conflict["id"], "human")
        assert learning_service.propagation_ready_learnings() == []

        conflict_service.resolve_conflict(conflict["id"], "Both valid in scope", resolved_by="human")
        assert [r["id"] for r in learning_service.propagation_ready_learnings()] == [ready["id"]]

    def test_deferred_conflict_releases(self, make_learning):
        ready = make_learning(confidence_score=0.9)
        other = make_learning(title="Other")
        conflict = conflict_service.detect_conflict(ready["id"], other["id"], "SCOPE_OVERLAP", "Overlap", "x")

        conflict_service.defer_conflict(conflict["id"])

        assert learning_service.is_propagation_ready(ready["id"]) is True

    def test_superseded_learnings_not_listed(self, make_learning):
        a = make_learning(confidence_score=0.9)
        b = learning_service.evolve_learning(a["id"], {"content": "v2"})

        assert [r["id"] for r in learning_service.propagation_ready_learnings()] == [b["id"]]

    def test_ready_ordered_by_confidence(self, make_learning):
        mid = make_learning(title="Mid", confidence_score=0.85)
        top = make_learning(title="Top", confidence_score=0.95)

        ids = [r["id"] for r in learning_service.propagation_ready_learnings()]

        assert ids == [top["id"], mid["id"]]


class TestQueries:
    def test_list_filters(self, make_learning, feature):
        make_learning(category="PATTERN", tags=["flask"], confidence_score=0.9, feature_id=feature["id"])
        make_learning(category="GOTCHA", tags=["sqlite"], confidence_score=0.4)
        old = make_learning(category="PATTERN", title="Old pattern")
        learning_service.evolve_learning(old["id"], {"content": "new"})

        assert len(learning_service.list_learnings()) == 3
        assert len(learning_service.list_learnings(include_superseded=True)) == 4
        assert len(learning_service.list_learnings(category="pattern")) == 2
        assert len(learning_service.list_learnings(tag="flask")) == 1
        assert len(learning_service.list_learnings(min_confidence=0.8)) == 1
        assert len(learning_service.list_learnings(feature_id=feature["id"])) == 1

    def test_feature_summary(self, make_learning, feature):
        make_learning(feature_id=feature["id"], category="PATTERN", confidence_score=0.9)
        make_learning(feature_id=feature["id"], category="GOTCHA", confidence_score=0.6)
        old = make_learning(feature_id=feature["id"], category="GOTCHA", confidence_score=0.3)
        learning_service.evolve_learning(old["id"], {"content": "v2"})

        summary = learning_service.feature_learning_summary(feature["id"])

        assert summary["total"] == 4
        assert summary["active"] == 3
        assert summary["superseded"] == 1
        assert summary["by_category"] == {"PATTERN": 1, "GOTCHA": 2}
        assert summary["by_confidence"] == {"high": 1, "medium": 1, "low": 1}
