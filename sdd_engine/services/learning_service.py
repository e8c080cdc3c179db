"""Learning Evolution Manager.

Learnings form evolution chains: a chain root has iteration 1 and each
successor points back at its predecessor with iteration + 1. Content is
never edited in place; evolving creates a new row and flips only the
predecessor's supersession fields, guarded by a compare-and-set on
``is_superseded = false`` so two concurrent evolutions cannot both win.

Confidence:
  - validate  → +0.15 and validation_count + 1
  - reference → +0.10
  - both capped at 1.00 and rounded to two decimals
  - never lowered automatically; only an explicit conflict resolution
    may set it directly

A learning is propagation-ready when confidence ≥ 0.80 and no OPEN or
INVESTIGATING conflict references it. Increments and thresholds come from
app config (see sdd_engine.config).
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter

from sqlalchemy import exists, or_, select

from sdd_engine.core.exceptions import ConflictError, StateError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import write_audit
from sdd_engine.models.learning import (
    BLOCKING_CONFLICT_STATUSES,
    IMPORTANCE_LEVELS,
    LEARNING_CATEGORIES,
    Learning,
    LearningConflict,
)
from sdd_engine.models.workflow import Feature
from sdd_engine.services import phase_service
from sdd_engine.services.helpers.settings import setting
from sdd_engine.services.helpers.store import atomic, compare_and_set, get_or_raise, utcnow

logger = logging.getLogger(__name__)

# Fields a successor inherits from its predecessor unless the caller overrides them
_INHERITED_FIELDS = (
    "category", "title", "confidence_score", "importance", "tags",
    "feature_id", "task_id", "phase", "agent_name",
)


# ── Validation helpers ────────────────────────────────────────────────────────


def _coerce_confidence(value, field: str = "confidence_score") -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number between 0 and 1", details={field: repr(value)})
    if value < 0 or value > 1:
        raise ValidationError(f"{field} must be between 0.00 and 1.00", details={field: value})
    return round(float(value), 2)


def _coerce_tags(tags) -> list[str]:
    if tags is None:
        return []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ValidationError("tags must be a list of strings", details={"tags": tags})
    seen, result = set(), []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


def _clean_fields(data: dict, *, require_all: bool) -> dict:
    """Validate a learning payload. ``require_all`` is False for evolutions."""
    errors, fields = {}, {}

    if "category" in data or require_all:
        category = str(data.get("category") or "").upper()
        if category not in LEARNING_CATEGORIES:
            errors["category"] = f"must be one of: {', '.join(sorted(LEARNING_CATEGORIES))}"
        fields["category"] = category
    if "title" in data or require_all:
        title = str(data.get("title") or "").strip()
        if not title:
            errors["title"] = "required"
        elif len(title) > 255:
            errors["title"] = "must be ≤ 255 characters"
        fields["title"] = title
    content = str(data.get("content") or "").strip()
    if not content:
        errors["content"] = "required"
    fields["content"] = content
    if "importance" in data:
        importance = str(data.get("importance") or "").upper()
        if importance not in IMPORTANCE_LEVELS:
            errors["importance"] = f"must be one of: {', '.join(sorted(IMPORTANCE_LEVELS))}"
        fields["importance"] = importance
    if errors:
        raise ValidationError("Invalid learning", details=errors)

    if data.get("confidence_score") is not None:
        fields["confidence_score"] = _coerce_confidence(data["confidence_score"])
    if "tags" in data:
        fields["tags"] = _coerce_tags(data["tags"])
    if data.get("phase") is not None:
        fields["phase"] = phase_service.coerce_phase(data["phase"])
    for key in ("delta_summary", "feature_id", "task_id", "agent_name", "created_by"):
        if data.get(key) is not None:
            fields[key] = data[key]
    if fields.get("feature_id") is not None:
        get_or_raise(Feature, fields["feature_id"])
    return fields


def _bump(value: float, increment: float) -> float:
    return min(setting("LEARNING_CONFIDENCE_CAP"), round(value + increment, 2))


def _blocking_conflict_exists(learning_id):
    return exists().where(
        LearningConflict.status.in_(BLOCKING_CONFLICT_STATUSES),
        or_(
            LearningConflict.learning_a_id == learning_id,
            LearningConflict.learning_b_id == learning_id,
        ),
    )


def _with_readiness(learning: Learning) -> dict:
    result = learning.to_dict()
    result["propagation_ready"] = is_propagation_ready(learning)
    return result


# ── Create / evolve ───────────────────────────────────────────────────────────


def create_learning(data: dict) -> dict:
    """Create a chain root (iteration 1).

    Args:
        data: category, title, content required; confidence_score (default
              0.50), importance (default MEDIUM), tags, delta_summary,
              feature_id, task_id, phase, agent_name, created_by optional.

    Raises:
        ValidationError: Missing/invalid fields or confidence outside 0–1.
        NotFoundError:   ``feature_id`` given but unknown.
    """
    fields = _clean_fields(data or {}, require_all=True)
    fields.setdefault("confidence_score", round(setting("LEARNING_DEFAULT_CONFIDENCE"), 2))
    fields.setdefault("importance", "MEDIUM")
    fields.setdefault("tags", [])

    with atomic():
        learning = Learning(
            id=str(uuid.uuid4()),
            iteration=1,
            validation_count=0,
            validated_by=[],
            is_superseded=False,
            created_at=utcnow(),
            **fields,
        )
        db.session.add(learning)
        db.session.flush()
        write_audit(
            entity_type="learning",
            entity_id=learning.id,
            feature_id=learning.feature_id,
            action="learning.create",
            actor=learning.created_by or learning.agent_name or "system",
            diff={"category": learning.category, "title": learning.title,
                  "confidence_score": learning.confidence_score},
        )
        result = learning.to_dict()

    logger.info(
        "Learning %s created: %s %r (confidence %.2f)",
        result["id"], result["category"], result["title"], result["confidence_score"],
        extra={"learning_id": result["id"], "feature_id": result["feature_id"], "event_type": "learning.create"},
    )
    return result


def evolve_learning(predecessor_id: str, data: dict) -> dict:
    """Create the successor of ``predecessor_id`` and supersede the predecessor.

    The successor gets iteration = predecessor.iteration + 1 and inherits
    category, title, confidence, importance, tags and origin unless ``data``
    overrides them. ``content`` is always required.

    Raises:
        NotFoundError: Predecessor does not exist.
        StateError:    Predecessor is already superseded (including by a
                       concurrent evolution that committed first).
    """
    with atomic():
        predecessor = get_or_raise(Learning, predecessor_id, lock=True)
        if predecessor.is_superseded:
            raise StateError(
                "learning already superseded",
                resource="Learning", resource_id=predecessor_id, current=predecessor.superseded_by,
            )
        fields = _clean_fields(data or {}, require_all=False)
        for name in _INHERITED_FIELDS:
            if name not in fields:
                value = getattr(predecessor, name)
                fields[name] = list(value) if isinstance(value, list) else value

        now = utcnow()
        successor = Learning(
            id=str(uuid.uuid4()),
            previous_version_id=predecessor.id,
            iteration=predecessor.iteration + 1,
            validation_count=0,
            validated_by=[],
            is_superseded=False,
            created_at=now,
            **fields,
        )
        db.session.add(successor)
        db.session.flush()

        if not compare_and_set(
            Learning, predecessor.id,
            expected={"is_superseded": False},
            values={"is_superseded": True, "superseded_by": successor.id, "superseded_at": now, "updated_at": now},
        ):
            raise StateError(
                "learning superseded concurrently",
                resource="Learning", resource_id=predecessor_id,
            )
        write_audit(
            entity_type="learning",
            entity_id=successor.id,
            feature_id=successor.feature_id,
            action="learning.evolve",
            actor=successor.created_by or successor.agent_name or "system",
            diff={
                "previous_version_id": predecessor.id,
                "iteration": successor.iteration,
                "delta_summary": successor.delta_summary,
            },
        )
        result = successor.to_dict()

    logger.info(
        "Learning %s evolved → %s (iteration %d)", predecessor_id, result["id"], result["iteration"],
        extra={"learning_id": result["id"], "event_type": "learning.evolve"},
    )
    return result


# ── Confidence ────────────────────────────────────────────────────────────────


def _raise_confidence(learning_id: str, increment: float, *, validated_by: str | None) -> Learning:
    learning = get_or_raise(Learning, learning_id, lock=True)
    if learning.is_superseded:
        raise StateError(
            "superseded learnings cannot gain confidence",
            resource="Learning", resource_id=learning_id, current=learning.superseded_by,
        )
    now = utcnow()
    values = {"confidence_score": _bump(learning.confidence_score, increment), "updated_at": now}
    if validated_by is not None:
        values.update(
            validation_count=learning.validation_count + 1,
            validated_by=[*(learning.validated_by or []), validated_by],
            last_validated_at=now,
        )
    if not compare_and_set(
        Learning, learning_id,
        expected={
            "confidence_score": learning.confidence_score,
            "validation_count": learning.validation_count,
            "is_superseded": False,
        },
        values=values,
    ):
        raise ConflictError(
            "Learning", "confidence_score", learning_id,
            message=f"learning {learning_id} changed concurrently; retry",
        )
    return learning


def validate_learning(learning_id: str, validated_by: str) -> dict:
    """Record an independent validation: confidence +0.15 (cap 1.00), count + 1."""
    validated_by = (validated_by or "").strip()
    if not validated_by:
        raise ValidationError("validated_by is required")

    with atomic():
        learning = _raise_confidence(
            learning_id, setting("LEARNING_VALIDATION_INCREMENT"), validated_by=validated_by,
        )
        write_audit(
            entity_type="learning",
            entity_id=learning_id,
            feature_id=learning.feature_id,
            action="learning.validate",
            actor=validated_by,
            diff={"confidence_score": learning.confidence_score, "validation_count": learning.validation_count},
        )
        result = _with_readiness(learning)

    logger.info(
        "Learning %s validated by %s → confidence %.2f", learning_id, validated_by, result["confidence_score"],
        extra={"learning_id": learning_id, "event_type": "learning.validate"},
    )
    return result


def reference_learning(learning_id: str) -> dict:
    """Record that an agent relied on the learning: confidence +0.10 (cap 1.00)."""
    with atomic():
        learning = _raise_confidence(learning_id, setting("LEARNING_REFERENCE_INCREMENT"), validated_by=None)
        result = _with_readiness(learning)
    logger.debug("Learning %s referenced → confidence %.2f", learning_id, result["confidence_score"])
    return result


def set_confidence(learning: Learning, value: float) -> None:
    """Set confidence explicitly; only conflict resolution calls this, inside its transaction."""
    learning.confidence_score = _coerce_confidence(value, "loser_confidence")
    learning.updated_at = utcnow()


# ── Readiness ─────────────────────────────────────────────────────────────────


def is_propagation_ready(learning: Learning | str) -> bool:
    """confidence ≥ threshold and no OPEN / INVESTIGATING conflict."""
    if isinstance(learning, str):
        learning = get_or_raise(Learning, learning)
    if learning.confidence_score < setting("PROPAGATION_CONFIDENCE_THRESHOLD"):
        return False
    return not db.session.execute(select(_blocking_conflict_exists(learning.id))).scalar()


def propagation_ready_learnings() -> list[dict]:
    """Active learnings that may be propagated, highest confidence first."""
    rows = db.session.execute(
        select(Learning)
        .where(
            Learning.is_superseded.is_(False),
            Learning.confidence_score >= setting("PROPAGATION_CONFIDENCE_THRESHOLD"),
            ~_blocking_conflict_exists(Learning.id),
        )
        .order_by(Learning.confidence_score.desc(), Learning.created_at)
    ).scalars().all()
    return [{**r.to_dict(), "propagation_ready": True} for r in rows]


# ── Queries ───────────────────────────────────────────────────────────────────


def get_learning(learning_id: str) -> dict:
    return _with_readiness(get_or_raise(Learning, learning_id))


def list_learnings(
    category: str | None = None,
    feature_id: str | None = None,
    include_superseded: bool = False,
    min_confidence: float | None = None,
    tag: str | None = None,
) -> list[dict]:
    stmt = select(Learning)
    if category:
        stmt = stmt.where(Learning.category == category.upper())
    if feature_id:
        stmt = stmt.where(Learning.feature_id == feature_id)
    if not include_superseded:
        stmt = stmt.where(Learning.is_superseded.is_(False))
    if min_confidence is not None:
        stmt = stmt.where(Learning.confidence_score >= _coerce_confidence(min_confidence, "min_confidence"))
    rows = db.session.execute(
        stmt.order_by(Learning.confidence_score.desc(), Learning.created_at.desc())
    ).scalars().all()
    if tag:
        rows = [r for r in rows if tag in (r.tags or [])]
    return [_with_readiness(r) for r in rows]


def get_learning_chain(learning_id: str) -> list[dict]:
    """Whole evolution chain containing ``learning_id``, root first."""
    start = get_or_raise(Learning, learning_id)
    seen = {start.id}

    root = start
    while root.previous_version_id and root.previous_version_id not in seen:
        parent = db.session.get(Learning, root.previous_version_id)
        if parent is None:
            break
        seen.add(parent.id)
        root = parent

    chain = [root]
    node = root
    while node.superseded_by:
        child = db.session.get(Learning, node.superseded_by)
        if child is None or child.id in {c.id for c in chain}:
            break
        chain.append(child)
        node = child
    return [c.to_dict() for c in sorted(chain, key=lambda c: c.iteration)]


def chain_summary(learning_id: str) -> dict:
    chain = get_learning_chain(learning_id)
    return {
        "root_id": chain[0]["id"],
        "chain_length": len(chain),
        "latest_iteration": chain[-1]["iteration"],
        "current": chain[-1],
    }


def feature_learning_summary(feature_id: str) -> dict:
    """Counts of a feature's learnings by category and confidence band."""
    get_or_raise(Feature, feature_id)
    rows = db.session.execute(select(Learning).where(Learning.feature_id == feature_id)).scalars().all()
    active = [r for r in rows if not r.is_superseded]
    high = setting("HIGH_CONFIDENCE_THRESHOLD")
    return {
        "feature_id": feature_id,
        "total": len(rows),
        "active": len(active),
        "superseded": len(rows) - len(active),
        "by_category": dict(Counter(r.category for r in active)),
        "by_confidence": {
            "high": sum(1 for r in active if r.confidence_score >= high),
            "medium": sum(1 for r in active if 0.5 <= r.confidence_score < high),
            "low": sum(1 for r in active if r.confidence_score < 0.5),
        },
    }
