"""
State-store helpers shared by every service.

Every mutating service call runs inside ``atomic()``: read current state,
validate, write, commit. A domain error raised inside the block rolls the
whole unit back, so no partial write is ever visible.

Guarded writes use ``compare_and_set``: an ``UPDATE ... WHERE <expected
state>`` whose row count tells whether another caller got there first. This
keeps two concurrent agents from both succeeding at contradictory changes
(double forward-skip, double supersession, double end) without any
cross-feature locking.

Usage:
    with atomic():
        feature = get_or_raise(Feature, feature_id, lock=True)
        if not compare_and_set(Feature, feature_id,
                               expected={"current_phase": 3},
                               values={"current_phase": 4}):
            raise StateError("phase changed concurrently", ...)
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sdd_engine.core.exceptions import ConflictError, InfrastructureError, NotFoundError
from sdd_engine.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def atomic(resource: str | None = None):
    """Run the enclosed block as one transaction on the request session.

    Commits on clean exit. On any exception the session is rolled back:

    * IntegrityError → ConflictError when ``resource`` is given (a unique key
      collided), otherwise InfrastructureError
    * other SQLAlchemyError → InfrastructureError
    * domain errors (ValidationError, StateError, …) → re-raised unchanged

    Args:
        resource: Entity name used in the ConflictError raised for a
                  uniqueness collision at commit time.
    """
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        if resource:
            logger.warning("Integrity error on %s commit: %s", resource, exc.orig)
            raise ConflictError(resource, "key", message=f"{resource} violates a uniqueness rule") from exc
        logger.exception("Integrity error on commit")
        raise InfrastructureError("State store rejected the write") from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("State store failure; transaction rolled back")
        raise InfrastructureError("State store unavailable") from exc
    except Exception:
        db.session.rollback()
        raise


def get_or_raise(model, pk, *, label: str | None = None, lock: bool = False):
    """Fetch a row by primary key or raise NotFoundError.

    Args:
        model: SQLAlchemy model class with an ``id`` PK column.
        pk: Primary key value.
        label: Resource name for the error; defaults to the class name.
        lock: Take a row lock (``SELECT ... FOR UPDATE``) where the dialect
              supports it and refresh the in-session instance. SQLite skips
              the lock clause.
    """
    if pk is None or pk == "":
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    stmt = select(model).where(model.id == pk)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        logger.debug("get_or_raise: %s id=%s not found", model.__name__, pk)
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj


def compare_and_set(model, pk, *, expected: dict, values: dict) -> bool:
    """Apply ``values`` to row ``pk`` only if it still matches ``expected``.

    ``None`` in ``expected`` means ``IS NULL``. Returns True when exactly one
    row was updated; False means another transaction changed the row first
    (or it never matched), and the caller decides which error that is.
    In-session instances are synchronised with the new values.
    """
    criteria = [model.id == pk]
    for field, value in expected.items():
        column = getattr(model, field)
        criteria.append(column.is_(None) if value is None else column == value)
    result = db.session.execute(
        update(model).where(*criteria).values(**values),
        execution_options={"synchronize_session": "fetch"},
    )
    return result.rowcount == 1
