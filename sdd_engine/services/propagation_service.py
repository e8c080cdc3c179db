"""Propagation Targeter.

Decides where a learning should be written (AGENTS.md, a skill file or an
agent definition) and records when it actually was. Computed targets are
derived from the learning's importance, category, agent, ``skill:<name>``
tags and the skills loaded by its originating feature; declared targets are
added by hand and survive recomputation.

Only propagation-ready learnings (see learning_service) may be recorded as
propagated. A (learning, target) pair is recorded at most once; recording it
again refreshes ``propagated_at``.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select

from sdd_engine.core.exceptions import StateError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import write_audit
from sdd_engine.models.learning import (
    PROPAGATION_TARGET_TYPES,
    Learning,
    PropagationRecord,
    PropagationTarget,
    target_key,
)
from sdd_engine.models.workflow import AgentInvocation
from sdd_engine.services import learning_service
from sdd_engine.services.helpers.settings import setting
from sdd_engine.services.helpers.store import atomic, get_or_raise, utcnow

logger = logging.getLogger(__name__)

AGENTS_MD_RELEVANCE = {"HIGH": 0.90, "MEDIUM": 0.75, "LOW": 0.50}

# Categories that change how an agent works rather than what it knows
BEHAVIOURAL_CATEGORIES = {"CONVENTION", "GOTCHA", "PATTERN"}

SKILL_TAG_PREFIX = "skill:"
CONTENT_PREVIEW_CHARS = 300


def agent_definition_path(agent_name: str) -> str:
    return f"agents/{agent_name}.md"


def skill_path(skill_name: str) -> str:
    return f"skills/{skill_name}/SKILL.md"


def default_section(target_type: str) -> str:
    return "Learnings" if target_type == "agent_definition" else "Session Learnings"


def _validate_target(target_type: str, target_path: str | None) -> tuple[str, str | None]:
    target_type = (target_type or "").strip()
    if target_type not in PROPAGATION_TARGET_TYPES:
        raise ValidationError(
            f"target_type must be one of: {', '.join(sorted(PROPAGATION_TARGET_TYPES))}",
            details={"target_type": target_type},
        )
    target_path = (target_path or "").strip() or None
    if target_type == "agents_md":
        if target_path is not None:
            raise ValidationError("agents_md targets take no target_path")
    elif target_path is None:
        raise ValidationError(f"target_path is required for {target_type}")
    return target_type, target_path


# ── Targets ───────────────────────────────────────────────────────────────────


def _feature_skills(learning: Learning) -> dict[str, float]:
    """Skills loaded by the originating feature: 0.80 in the learning's phase, else 0.65."""
    if not learning.feature_id:
        return {}
    scores: dict[str, float] = {}
    invocations = db.session.execute(
        select(AgentInvocation).where(AgentInvocation.feature_id == learning.feature_id)
    ).scalars()
    for inv in invocations:
        same_phase = learning.phase is not None and inv.phase == learning.phase
        score = 0.80 if same_phase else 0.65
        for skill in inv.skills_used or []:
            scores[skill] = max(scores.get(skill, 0.0), score)
    return scores


def candidate_targets(learning: Learning) -> list[dict]:
    """Deterministic target candidates for ``learning``; no writes."""
    candidates = [{
        "target_type": "agents_md",
        "target_path": None,
        "relevance_score": AGENTS_MD_RELEVANCE.get(learning.importance, 0.75),
    }]

    if learning.agent_name:
        candidates.append({
            "target_type": "agent_definition",
            "target_path": agent_definition_path(learning.agent_name),
            "relevance_score": 0.85 if learning.category in BEHAVIOURAL_CATEGORIES else 0.70,
        })

    skills = _feature_skills(learning)
    for tag in learning.tags or []:
        if tag.startswith(SKILL_TAG_PREFIX) and tag[len(SKILL_TAG_PREFIX):].strip():
            skills[tag[len(SKILL_TAG_PREFIX):].strip()] = 0.90
    for skill in sorted(skills):
        candidates.append({
            "target_type": "skill",
            "target_path": skill_path(skill),
            "relevance_score": skills[skill],
        })
    return candidates


def compute_targets(learning_id: str) -> list[dict]:
    """Replace the learning's computed targets; declared targets are kept.

    A computed candidate whose key matches a declared target is skipped so
    the declared relevance wins.
    """
    with atomic(resource="PropagationTarget"):
        learning = get_or_raise(Learning, learning_id)
        db.session.execute(
            delete(PropagationTarget).where(
                PropagationTarget.learning_id == learning_id,
                PropagationTarget.origin == "computed",
            )
        )
        declared = set(db.session.execute(
            select(PropagationTarget.target_key).where(PropagationTarget.learning_id == learning_id)
        ).scalars())
        now = utcnow()
        for candidate in candidate_targets(learning):
            key = target_key(candidate["target_type"], candidate["target_path"])
            if key in declared:
                continue
            db.session.add(PropagationTarget(
                learning_id=learning_id,
                target_key=key,
                origin="computed",
                created_at=now,
                **candidate,
            ))
        db.session.flush()
        result = _targets_for(learning_id)

    logger.info("Computed %d propagation target(s) for learning %s", len(result), learning_id,
                extra={"learning_id": learning_id, "event_type": "propagation.targets"})
    return result


def declare_target(learning_id: str, target_type: str, target_path: str | None, relevance: float = 0.8) -> dict:
    """Add (or re-score) a manual target for a learning."""
    target_type, target_path = _validate_target(target_type, target_path)
    if isinstance(relevance, bool) or not isinstance(relevance, (int, float)) or not 0 <= relevance <= 1:
        raise ValidationError("relevance must be a number between 0 and 1", details={"relevance": relevance})

    key = target_key(target_type, target_path)
    with atomic(resource="PropagationTarget"):
        get_or_raise(Learning, learning_id)
        target = db.session.execute(
            select(PropagationTarget).where(
                PropagationTarget.learning_id == learning_id,
                PropagationTarget.target_key == key,
            )
        ).scalar_one_or_none()
        if target is None:
            target = PropagationTarget(
                learning_id=learning_id,
                target_type=target_type,
                target_path=target_path,
                target_key=key,
                created_at=utcnow(),
            )
            db.session.add(target)
        target.relevance_score = round(float(relevance), 2)
        target.origin = "declared"
        db.session.flush()
        result = target.to_dict()

    logger.info("Declared target %s for learning %s", key, learning_id)
    return result


def _targets_for(learning_id: str) -> list[dict]:
    rows = db.session.execute(
        select(PropagationTarget)
        .where(PropagationTarget.learning_id == learning_id)
        .order_by(PropagationTarget.relevance_score.desc(), PropagationTarget.target_key)
    ).scalars().all()
    return [t.to_dict() for t in rows]


def list_targets(learning_id: str) -> list[dict]:
    get_or_raise(Learning, learning_id)
    return _targets_for(learning_id)


# ── Records ───────────────────────────────────────────────────────────────────


def record_propagation(
    learning_id: str,
    target_type: str,
    target_path: str | None,
    actor: str,
    section: str | None = None,
) -> dict:
    """Record that ``learning_id`` was written into a target document.

    Raises:
        ValidationError: Bad target type/path or missing actor.
        NotFoundError:   Unknown learning.
        StateError:      Learning is not propagation-ready (low confidence,
                         blocking conflict) or superseded.
    """
    target_type, target_path = _validate_target(target_type, target_path)
    if not (actor or "").strip():
        raise ValidationError("actor is required")
    key = target_key(target_type, target_path)

    with atomic(resource="PropagationRecord"):
        learning = get_or_raise(Learning, learning_id)
        if learning.is_superseded:
            raise StateError(
                "superseded learnings are not propagated; propagate the successor",
                resource="Learning", resource_id=learning_id, current=learning.superseded_by,
            )
        if not learning_service.is_propagation_ready(learning):
            raise StateError(
                "learning is not ready for propagation",
                resource="Learning", resource_id=learning_id, current=learning.confidence_score,
            )

        now = utcnow()
        record = db.session.execute(
            select(PropagationRecord).where(
                PropagationRecord.learning_id == learning_id,
                PropagationRecord.target_key == key,
            )
        ).scalar_one_or_none()
        created = record is None
        if created:
            record = PropagationRecord(
                learning_id=learning_id,
                target_type=target_type,
                target_path=target_path,
                target_key=key,
                section_name=section or default_section(target_type),
                propagated_by=actor,
            )
            db.session.add(record)
        record.propagated_at = now
        db.session.flush()
        write_audit(
            entity_type="propagation",
            entity_id=record.id,
            feature_id=learning.feature_id,
            action="propagation.record",
            actor=actor,
            diff={"learning_id": learning_id, "target": key, "section": record.section_name,
                  "refreshed": not created},
        )
        result = record.to_dict()

    logger.info(
        "Learning %s propagated to %s by %s%s", learning_id, key, actor, "" if created else " (refresh)",
        extra={"learning_id": learning_id, "event_type": "propagation.record"},
    )
    return result


def propagation_status(learning_id: str) -> dict:
    """no_targets | pending | partial | complete, with counts."""
    get_or_raise(Learning, learning_id)
    targets = set(db.session.execute(
        select(PropagationTarget.target_key).where(PropagationTarget.learning_id == learning_id)
    ).scalars())
    records = set(db.session.execute(
        select(PropagationRecord.target_key).where(PropagationRecord.learning_id == learning_id)
    ).scalars())

    done = len(targets & records)
    if not targets:
        status = "no_targets"
    elif done == 0:
        status = "pending"
    elif done < len(targets):
        status = "partial"
    else:
        status = "complete"
    return {
        "learning_id": learning_id,
        "status": status,
        "targets": len(targets),
        "propagated": done,
        "remaining": len(targets) - done,
        "untargeted_records": len(records - targets),
    }


def ready_queue() -> list[dict]:
    """Targets eligible for propagation now.

    A target qualifies when its relevance is ≥ the relevance threshold, its
    learning is active and ready, and no record exists for the pair yet.
    """
    ready = {r["id"]: r for r in learning_service.propagation_ready_learnings()}
    if not ready:
        return []
    done = {
        (row.learning_id, row.target_key)
        for row in db.session.execute(
            select(PropagationRecord.learning_id, PropagationRecord.target_key)
            .where(PropagationRecord.learning_id.in_(list(ready)))
        )
    }
    targets = db.session.execute(
        select(PropagationTarget)
        .where(
            PropagationTarget.learning_id.in_(list(ready)),
            PropagationTarget.relevance_score >= setting("PROPAGATION_RELEVANCE_THRESHOLD"),
        )
        .order_by(PropagationTarget.relevance_score.desc(), PropagationTarget.learning_id, PropagationTarget.target_key)
    ).scalars().all()

    queue = []
    for target in targets:
        if (target.learning_id, target.target_key) in done:
            continue
        learning = ready[target.learning_id]
        queue.append({
            **target.to_dict(),
            "title": learning["title"],
            "category": learning["category"],
            "confidence_score": learning["confidence_score"],
            "section_name": default_section(target.target_type),
        })
    return queue


def pending_evolution_syncs() -> list[dict]:
    """Superseded learnings propagated somewhere their successor has not been.

    Each entry names the stale learning, the current chain head and the
    target keys that still carry the old text.
    """
    rows = db.session.execute(
        select(PropagationRecord, Learning)
        .join(Learning, Learning.id == PropagationRecord.learning_id)
        .where(Learning.is_superseded.is_(True))
        .order_by(PropagationRecord.propagated_at)
    ).all()

    stale: dict[str, dict] = {}
    for record, learning in rows:
        head = _chain_head(learning)
        covered = set(db.session.execute(
            select(PropagationRecord.target_key).where(PropagationRecord.learning_id == head.id)
        ).scalars())
        if record.target_key in covered:
            continue
        entry = stale.setdefault(learning.id, {
            "learning_id": learning.id,
            "successor_id": head.id,
            "successor_iteration": head.iteration,
            "successor_ready": learning_service.is_propagation_ready(head),
            "targets": [],
        })
        entry["targets"].append({
            "target_type": record.target_type,
            "target_path": record.target_path,
            "section_name": record.section_name,
            "propagated_at": record.propagated_at.isoformat() if record.propagated_at else None,
        })
    return list(stale.values())


def _chain_head(learning: Learning) -> Learning:
    node, seen = learning, {learning.id}
    while node.superseded_by and node.superseded_by not in seen:
        nxt = db.session.get(Learning, node.superseded_by)
        if nxt is None:
            break
        seen.add(nxt.id)
        node = nxt
    return node


def propagations_for_path(target_type: str, target_path: str | None = None) -> list[dict]:
    """Every record written into one target document, newest first."""
    target_type, target_path = _validate_target(target_type, target_path)
    rows = db.session.execute(
        select(PropagationRecord)
        .where(PropagationRecord.target_key == target_key(target_type, target_path))
        .order_by(PropagationRecord.propagated_at.desc())
    ).scalars().all()
    return [r.to_dict() for r in rows]


def format_for_propagation(learning_id: str) -> dict:
    """Render a learning as the markdown block written into target documents."""
    learning = get_or_raise(Learning, learning_id)
    content = learning.content
    if len(content) > CONTENT_PREVIEW_CHARS:
        content = content[:CONTENT_PREVIEW_CHARS] + "..."
    validators = ", ".join(learning.validated_by or []) or "none"
    created = learning.created_at.strftime("%Y-%m-%d") if learning.created_at else ""
    markdown = (
        f"### {learning.category}: {learning.title} ({created})\n\n"
        f"{content}\n\n"
        f"**Confidence**: {learning.confidence_score:.2f} | **Validated by**: {validators}"
        f" | **Source**: {learning.feature_id or 'general'}"
    )
    return {
        "learning_id": learning.id,
        "title": learning.title,
        "category": learning.category,
        "confidence_score": learning.confidence_score,
        "propagation_ready": learning_service.is_propagation_ready(learning),
        "markdown": markdown,
    }
