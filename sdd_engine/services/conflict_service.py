"""Conflict Detector.

A conflict relates two distinct learnings; each unordered pair can be
recorded once. While a conflict is OPEN or INVESTIGATING both learnings are
excluded from propagation; RESOLVED and DEFERRED release them.

find_conflict_candidates() suggests SCOPE_OVERLAP pairs among active
learnings of the same category that share a tag or have similar titles;
scan_learning() records those suggestions as OPEN conflicts.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import or_, select

from sdd_engine.core.exceptions import ConflictError, StateError, ValidationError
from sdd_engine.models import db
from sdd_engine.models.audit import write_audit
from sdd_engine.models.learning import (
    CONFLICT_STATUSES,
    CONFLICT_TYPES,
    Learning,
    LearningConflict,
    validate_conflict_transition,
)
from sdd_engine.services import learning_service
from sdd_engine.services.helpers.store import atomic, get_or_raise, utcnow

logger = logging.getLogger(__name__)

# Minimum Jaccard overlap of significant title words for a "similar title"
TITLE_SIMILARITY = 0.5

_STOPWORDS = frozenset({"a", "an", "the", "and", "or", "for", "of", "to", "in", "on", "with", "use", "is"})
_WORD_RE = re.compile(r"[a-z0-9]+")


def _title_words(title: str) -> set[str]:
    return {w for w in _WORD_RE.findall((title or "").lower()) if w not in _STOPWORDS and len(w) > 2}


def _title_similarity(a: str, b: str) -> float:
    wa, wb = _title_words(a), _title_words(b)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / len(wa | wb)


def _ordered(a_id: str, b_id: str) -> tuple[str, str]:
    # Rows store the smaller id first so uq_conflict_pair covers both orders
    return (a_id, b_id) if a_id < b_id else (b_id, a_id)


def _existing_pair(a_id: str, b_id: str) -> LearningConflict | None:
    a_id, b_id = _ordered(a_id, b_id)
    return db.session.execute(
        select(LearningConflict).where(
            LearningConflict.learning_a_id == a_id,
            LearningConflict.learning_b_id == b_id,
        )
    ).scalar_one_or_none()


def _insert_conflict(a_id, b_id, conflict_type, description, detected_by) -> LearningConflict:
    a_id, b_id = _ordered(a_id, b_id)
    conflict = LearningConflict(
        learning_a_id=a_id,
        learning_b_id=b_id,
        conflict_type=conflict_type,
        description=description,
        detected_by=detected_by,
        status="OPEN",
        detected_at=utcnow(),
    )
    db.session.add(conflict)
    db.session.flush()
    write_audit(
        entity_type="conflict",
        entity_id=conflict.id,
        action="conflict.detect",
        actor=detected_by,
        diff={"learning_a_id": a_id, "learning_b_id": b_id, "conflict_type": conflict_type},
    )
    return conflict


# ── Detection ─────────────────────────────────────────────────────────────────


def detect_conflict(
    learning_a_id: str,
    learning_b_id: str,
    conflict_type: str,
    description: str,
    detected_by: str,
) -> dict:
    """Record an OPEN conflict between two learnings.

    The row stores the pair smaller id first, whichever order it was reported in.

    Raises:
        ValidationError: Same learning twice, unknown type, empty description.
        NotFoundError:   Either learning is unknown.
        ConflictError:   The pair (in either order) already has a conflict.
    """
    conflict_type = (conflict_type or "").upper()
    errors = {}
    if learning_a_id == learning_b_id:
        errors["learning_b_id"] = "a learning cannot conflict with itself"
    if conflict_type not in CONFLICT_TYPES:
        errors["conflict_type"] = f"must be one of: {', '.join(sorted(CONFLICT_TYPES))}"
    if not (description or "").strip():
        errors["description"] = "required"
    if not (detected_by or "").strip():
        errors["detected_by"] = "required"
    if errors:
        raise ValidationError("Invalid conflict", details=errors)

    with atomic(resource="LearningConflict"):
        get_or_raise(Learning, learning_a_id)
        get_or_raise(Learning, learning_b_id)
        if _existing_pair(learning_a_id, learning_b_id) is not None:
            raise ConflictError(
                "LearningConflict", "pair", f"{learning_a_id}/{learning_b_id}",
                message="a conflict between these learnings is already recorded",
            )
        result = _insert_conflict(
            learning_a_id, learning_b_id, conflict_type, description.strip(), detected_by.strip(),
        ).to_dict()

    logger.warning(
        "Conflict %s detected (%s) between %s and %s by %s",
        result["id"], conflict_type, learning_a_id, learning_b_id, detected_by,
        extra={"learning_id": learning_a_id, "event_type": "conflict.detect"},
    )
    return result


def find_conflict_candidates(learning_id: str) -> list[dict]:
    """Suggest SCOPE_OVERLAP conflicts for an active learning.

    Candidates: other active learnings in the same category that share at
    least one tag or whose titles overlap by ≥ TITLE_SIMILARITY, excluding
    pairs that already have a conflict of any status.
    """
    learning = get_or_raise(Learning, learning_id)
    if learning.is_superseded:
        return []
    tags = set(learning.tags or [])

    peers = db.session.execute(
        select(Learning).where(
            Learning.id != learning.id,
            Learning.category == learning.category,
            Learning.is_superseded.is_(False),
        )
    ).scalars().all()

    paired = set()
    for conflict in db.session.execute(
        select(LearningConflict).where(
            or_(LearningConflict.learning_a_id == learning.id, LearningConflict.learning_b_id == learning.id)
        )
    ).scalars():
        paired.add(conflict.other(learning.id))

    candidates = []
    for peer in peers:
        if peer.id in paired:
            continue
        shared = sorted(tags & set(peer.tags or []))
        similarity = _title_similarity(learning.title, peer.title)
        if not shared and similarity < TITLE_SIMILARITY:
            continue
        candidates.append({
            "learning_id": peer.id,
            "title": peer.title,
            "shared_tags": shared,
            "title_similarity": round(similarity, 2),
            "suggested_type": "SCOPE_OVERLAP",
        })
    candidates.sort(key=lambda c: (-len(c["shared_tags"]), -c["title_similarity"], c["learning_id"]))
    return candidates


def scan_learning(learning_id: str, detected_by: str = "conflict-detector") -> list[dict]:
    """Record every candidate from find_conflict_candidates as an OPEN SCOPE_OVERLAP conflict."""
    candidates = find_conflict_candidates(learning_id)
    if not candidates:
        return []

    created = []
    with atomic(resource="LearningConflict"):
        for candidate in candidates:
            if _existing_pair(learning_id, candidate["learning_id"]) is not None:
                continue
            reasons = []
            if candidate["shared_tags"]:
                reasons.append(f"shared tags: {', '.join(candidate['shared_tags'])}")
            if candidate["title_similarity"] >= TITLE_SIMILARITY:
                reasons.append(f"similar titles ({candidate['title_similarity']:.2f})")
            created.append(
                _insert_conflict(
                    learning_id, candidate["learning_id"], "SCOPE_OVERLAP",
                    "Possible scope overlap: " + "; ".join(reasons), detected_by,
                ).to_dict()
            )

    logger.info("Scan of learning %s recorded %d conflict(s)", learning_id, len(created),
                extra={"learning_id": learning_id, "event_type": "conflict.scan"})
    return created


# ── Status transitions ────────────────────────────────────────────────────────


def _move(conflict: LearningConflict, new_status: str) -> str:
    old = conflict.status
    if not validate_conflict_transition(old, new_status):
        raise StateError(
            f"conflict cannot move {old} → {new_status}",
            resource="LearningConflict", resource_id=conflict.id, current=old,
        )
    conflict.status = new_status
    return old


def investigate_conflict(conflict_id: str, actor: str) -> dict:
    with atomic():
        conflict = get_or_raise(LearningConflict, conflict_id, lock=True)
        old = _move(conflict, "INVESTIGATING")
        write_audit(
            entity_type="conflict", entity_id=conflict_id, action="conflict.investigate",
            actor=actor, diff={"status": {"old": old, "new": "INVESTIGATING"}},
        )
        result = conflict.to_dict()
    logger.info("Conflict %s under investigation by %s", conflict_id, actor)
    return result


def resolve_conflict(
    conflict_id: str,
    resolution: str,
    winning_learning_id: str | None = None,
    resolved_by: str = "system",
    loser_confidence: float | None = None,
) -> dict:
    """Resolve a conflict, optionally naming the winner.

    ``loser_confidence`` sets the losing learning's confidence directly (the
    one sanctioned way confidence can go down). It requires a winner.

    Raises:
        ValidationError: Empty resolution, winner not part of the pair,
                         loser_confidence without a winner or outside 0–1.
        StateError:      Conflict already RESOLVED.
    """
    if not (resolution or "").strip():
        raise ValidationError("resolution is required")
    if loser_confidence is not None and winning_learning_id is None:
        raise ValidationError("loser_confidence requires winning_learning_id")

    with atomic():
        conflict = get_or_raise(LearningConflict, conflict_id, lock=True)
        if winning_learning_id is not None and not conflict.involves(winning_learning_id):
            raise ValidationError(
                "winning_learning_id must be one of the conflicting learnings",
                details={"winning_learning_id": winning_learning_id},
            )
        old = _move(conflict, "RESOLVED")
        conflict.resolution = resolution.strip()
        conflict.winning_learning_id = winning_learning_id
        conflict.resolved_by = resolved_by
        conflict.resolved_at = utcnow()

        diff = {"status": {"old": old, "new": "RESOLVED"}, "winning_learning_id": winning_learning_id}
        if loser_confidence is not None:
            loser = get_or_raise(Learning, conflict.other(winning_learning_id), lock=True)
            previous = loser.confidence_score
            learning_service.set_confidence(loser, loser_confidence)
            diff["loser_confidence"] = {"learning_id": loser.id, "old": previous, "new": loser.confidence_score}
        write_audit(
            entity_type="conflict", entity_id=conflict_id, action="conflict.resolve",
            actor=resolved_by, diff=diff,
        )
        result = conflict.to_dict()

    logger.info("Conflict %s resolved by %s (winner=%s)", conflict_id, resolved_by, winning_learning_id,
                extra={"event_type": "conflict.resolve"})
    return result


def defer_conflict(conflict_id: str, actor: str = "system", notes: str | None = None) -> dict:
    with atomic():
        conflict = get_or_raise(LearningConflict, conflict_id, lock=True)
        old = _move(conflict, "DEFERRED")
        if notes:
            conflict.resolution = notes
        write_audit(
            entity_type="conflict", entity_id=conflict_id, action="conflict.defer",
            actor=actor, diff={"status": {"old": old, "new": "DEFERRED"}, "notes": notes},
        )
        result = conflict.to_dict()
    logger.info("Conflict %s deferred by %s", conflict_id, actor)
    return result


# ── Queries ───────────────────────────────────────────────────────────────────


def get_conflict(conflict_id: str) -> dict:
    return get_or_raise(LearningConflict, conflict_id).to_dict()


def list_conflicts(status: str | None = None, learning_id: str | None = None) -> list[dict]:
    """Conflicts with derived ``hours_open``; longest-open first."""
    stmt = select(LearningConflict)
    if status:
        status = status.upper()
        if status not in CONFLICT_STATUSES:
            raise ValidationError(f"Unknown conflict status {status!r}")
        stmt = stmt.where(LearningConflict.status == status)
    if learning_id:
        stmt = stmt.where(
            or_(LearningConflict.learning_a_id == learning_id, LearningConflict.learning_b_id == learning_id)
        )
    rows = db.session.execute(stmt.order_by(LearningConflict.detected_at, LearningConflict.id)).scalars().all()
    return [c.to_dict() for c in rows]
