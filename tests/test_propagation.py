"""
Propagation targeter tests (propagation_service).

Covers:
    - Computed targets from importance, category, agent, skill tags and feature skills
    - Declared targets survive recomputation
    - Records: readiness gate, superseded learnings, upsert refresh, default sections
    - Status derivation: no_targets / pending / partial / complete
    - Ready queue, pending evolution syncs, per-document lookups, markdown rendering
"""

import pytest

from sdd_engine.core.exceptions import NotFoundError, StateError, ValidationError
from sdd_engine.models.learning import PropagationRecord
from sdd_engine.services import conflict_service, learning_service, propagation_service


def _shape(targets):
    return [(t["target_type"], t["target_path"], t["relevance_score"]) for t in targets]


class TestComputeTargets:
    def test_targets_from_every_source(self, feature, close_invocation, make_learning):
        close_invocation(feature["id"], 4, skills=["sqlalchemy"])
        close_invocation(feature["id"], 2, skills=["design-docs"])
        learning = make_learning(
            feature_id=feature["id"], phase=4, agent_name="builder",
            importance="HIGH", tags=["skill:flask-testing"],
        )

        targets = propagation_service.compute_targets(learning["id"])

        assert _shape(targets) == [
            ("agents_md", None, 0.9),
            ("skill", "skills/flask-testing/SKILL.md", 0.9),
            ("agent_definition", "agents/builder.md", 0.85),
            ("skill", "skills/sqlalchemy/SKILL.md", 0.8),
            ("skill", "skills/design-docs/SKILL.md", 0.65),
        ]
        assert all(t["origin"] == "computed" for t in targets)

    @pytest.mark.parametrize("importance,expected", [("HIGH", 0.9), ("MEDIUM", 0.75), ("LOW", 0.5)])
    def test_agents_md_relevance_follows_importance(self, make_learning, importance, expected):
        learning = make_learning(importance=importance)
        assert _shape(propagation_service.compute_targets(learning["id"])) == [("agents_md", None, expected)]

    def test_non_behavioural_category_scores_lower_for_agents(self, make_learning):
        learning = make_learning(category="DECISION", agent_name="architect")

        targets = {t["target_type"]: t for t in propagation_service.compute_targets(learning["id"])}

        assert targets["agent_definition"]["relevance_score"] == 0.7

    def test_recompute_replaces_computed_keeps_declared(self, make_learning):
        learning = make_learning(agent_name="builder")
        propagation_service.declare_target(learning["id"], "skill", "skills/custom/SKILL.md", relevance=0.95)
        propagation_service.declare_target(learning["id"], "agents_md", None, relevance=0.4)

        propagation_service.compute_targets(learning["id"])
        targets = propagation_service.compute_targets(learning["id"])

        assert _shape(targets) == [
            ("skill", "skills/custom/SKILL.md", 0.95),
            ("agent_definition", "agents/builder.md", 0.85),
            ("agents_md", None, 0.4),
        ]
        assert [t["origin"] for t in targets] == ["declared", "computed", "declared"]

    @pytest.mark.parametrize("target_type,target_path,relevance", [
        ("agents_md", "AGENTS.md", 0.8),
        ("skill", None, 0.8),
        ("agent_definition", " ", 0.8),
        ("wiki", "x", 0.8),
        ("skill", "skills/x/SKILL.md", 1.5),
        ("skill", "skills/x/SKILL.md", True),
    ])
    def test_invalid_declared_target(self, make_learning, target_type, target_path, relevance):
        learning = make_learning()
        with pytest.raises(ValidationError):
            propagation_service.declare_target(learning["id"], target_type, target_path, relevance)

    def test_unknown_learning(self):
        with pytest.raises(NotFoundError):
            propagation_service.compute_targets("missing")


class TestRecords:
    def test_record_requires_readiness(self, make_learning):
        learning = make_learning(confidence_score=0.7)

        with pytest.raises(StateError):
            propagation_service.record_propagation(learning["id"], "agents_md", None, "release")
        assert PropagationRecord.query.count() == 0

    def test_blocking_conflict_prevents_record(self, make_learning):
        learning = make_learning(confidence_score=0.9)
        other = make_learning(title="Opposite")
        conflict_service.detect_conflict(learning["id"], other["id"], "CONTRADICTION", "clash", "guardian")

        with pytest.raises(StateError):
            propagation_service.record_propagation(learning["id"], "agents_md", None, "release")

    def test_superseded_learning_not_recorded(self, make_learning):
        learning = make_learning(confidence_score=0.9)
        learning_service.evolve_learning(learning["id"], {"content": "v2"})

        with pytest.raises(StateError):
            propagation_service.record_propagation(learning["id"], "agents_md", None, "release")

    @pytest.mark.parametrize("target_type,target_path,section", [
        ("agents_md", None, "Session Learnings"),
        ("skill", "skills/flask/SKILL.md", "Session Learnings"),
        ("agent_definition", "agents/builder.md", "Learnings"),
    ])
    def test_default_sections(self, make_learning, target_type, target_path, section):
        learning = make_learning(confidence_score=0.9)

        record = propagation_service.record_propagation(learning["id"], target_type, target_path, "release")

        assert record["section_name"] == section

    def test_rerecord_refreshes_single_row(self, make_learning):
        learning = make_learning(confidence_score=0.9)
        first = propagation_service.record_propagation(learning["id"], "agents_md", None, "release")
        second = propagation_service.record_propagation(learning["id"], "agents_md", None, "release")

        assert first["id"] == second["id"]
        assert second["propagated_at"] >= first["propagated_at"]
        assert PropagationRecord.query.count() == 1

    def test_record_requires_actor(self, make_learning):
        learning = make_learning(confidence_score=0.9)
        with pytest.raises(ValidationError):
            propagation_service.record_propagation(learning["id"], "agents_md", None, " ")


class TestStatus:
    def test_no_targets(self, make_learning):
        learning = make_learning()
        assert propagation_service.propagation_status(learning["id"])["status"] == "no_targets"

    def test_status_follows_records(self, feature, close_invocation, make_learning):
        close_invocation(feature["id"], 4, skills=["sqlalchemy"])
        learning = make_learning(feature_id=feature["id"], phase=4, agent_name="builder", confidence_score=0.9)
        propagation_service.compute_targets(learning["id"])

        status = propagation_service.propagation_status(learning["id"])
        assert (status["status"], status["targets"], status["propagated"]) == ("pending", 3, 0)

        propagation_service.record_propagation(learning["id"], "agents_md", None, "release")
        propagation_service.record_propagation(learning["id"], "agent_definition", "agents/builder.md", "release")
        status = propagation_service.propagation_status(learning["id"])
        assert (status["status"], status["propagated"], status["remaining"]) == ("partial", 2, 1)

        propagation_service.record_propagation(learning["id"], "skill", "skills/sqlalchemy/SKILL.md", "release")
        assert propagation_service.propagation_status(learning["id"])["status"] == "complete"

    def test_untargeted_records_counted_separately(self, make_learning):
        learning = make_learning(confidence_score=0.9)
        propagation_service.compute_targets(learning["id"])
        propagation_service.record_propagation(learning["id"], "skill", "skills/extra/SKILL.md", "release")

        status = propagation_service.propagation_status(learning["id"])

        assert status["status"] == "pending"
        assert status["untargeted_records"] == 1


class TestQueues:
    def test_ready_queue_applies_thresholds(self, make_learning):
        ready = make_learning(title="Ready", confidence_score=0.9, importance="LOW", agent_name="builder")
        not_ready = make_learning(title="Not ready", confidence_score=0.6)
        propagation_service.compute_targets(ready["id"])
        propagation_service.compute_targets(not_ready["id"])

        queue = propagation_service.ready_queue()

        # agents_md at 0.5 falls below the relevance threshold
        assert [(q["learning_id"], q["target_type"]) for q in queue] == [(ready["id"], "agent_definition")]
        assert queue[0]["section_name"] == "Learnings"

        propagation_service.record_propagation(ready["id"], "agent_definition", "agents/builder.md", "release")
        assert propagation_service.ready_queue() == []

    def test_pending_evolution_syncs(self, make_learning):
        old = make_learning(confidence_score=0.9, agent_name="builder")
        propagation_service.record_propagation(old["id"], "agents_md", None, "release")
        propagation_service.record_propagation(old["id"], "agent_definition", "agents/builder.md", "release")
        new = learning_service.evolve_learning(old["id"], {"content": "v2"})
        propagation_service.record_propagation(new["id"], "agents_md", None, "release")

        [sync] = propagation_service.pending_evolution_syncs()

        assert sync["learning_id"] == old["id"]
        assert sync["successor_id"] == new["id"]
        assert sync["successor_iteration"] == 2
        assert sync["successor_ready"] is True
        assert [t["target_path"] for t in sync["targets"]] == ["agents/builder.md"]

    def test_propagations_for_path(self, make_learning):
        a = make_learning(title="A", confidence_score=0.9)
        b = make_learning(title="B", confidence_score=0.95)
        propagation_service.record_propagation(a["id"], "agents_md", None, "release")
        propagation_service.record_propagation(b["id"], "agents_md", None, "release")
        propagation_service.record_propagation(b["id"], "skill", "skills/x/SKILL.md", "release")

        assert len(propagation_service.propagations_for_path("agents_md")) == 2
        assert len(propagation_service.propagations_for_path("skill", "skills/x/SKILL.md")) == 1


class TestFormat:
    def test_markdown_block(self, feature, make_learning):
        learning = make_learning(feature_id=feature["id"], confidence_score=0.8, content="x" * 350)
        learning_service.validate_learning(learning["id"], "guardian")

        block = propagation_service.format_for_propagation(learning["id"])
        date = learning["created_at"][:10]

        assert block["markdown"].startswith(f"### GOTCHA: SQLite ignores foreign keys by default ({date})\n\n")
        assert "x" * 300 + "...\n\n" in block["markdown"]
        assert block["markdown"].endswith(
            "**Confidence**: 0.95 | **Validated by**: guardian | **Source**: auth-flow"
        )
        assert block["propagation_ready"] is True

    def test_general_source_and_no_validators(self, make_learning):
        learning = make_learning(content="short")

        markdown = propagation_service.format_for_propagation(learning["id"])["markdown"]

        assert "\n\nshort\n\n" in markdown
        assert markdown.endswith("**Validated by**: none | **Source**: general")
