"""Standardised API error responses.

Usage
-----
    from sdd_engine.utils.errors import api_error, E

    return api_error(E.VALIDATION_REQUIRED, "to_phase is required")
    return api_error(E.GATE_FAILED, str(exc), details=exc.to_dict())
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from sdd_engine.core.exceptions import (
    ConflictError,
    GateFailure,
    InfrastructureError,
    NotFoundError,
    StateError,
    ValidationError,
)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for every engine error
    """

    # Malformed request – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Well-formed input that breaks a business rule – HTTP 422
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate / state machine – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Gate – HTTP 412
    GATE_FAILED = "ERR_GATE_FAILED"

    # Server – HTTP 500 / 503
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.GATE_FAILED: 412,
    E.DATABASE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (missing coverage pairs, blocker id, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


# ── Domain exception → HTTP ───────────────────────────────────────────
def register_error_handlers(bp) -> None:
    """Attach the engine's exception handlers to a blueprint.

    Services raise ``sdd_engine.core.exceptions`` types only; this keeps the
    status mapping identical on every blueprint.
    """
    logger = logging.getLogger(bp.import_name)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(StateError)
    def _handle_state(error: StateError):
        logger.warning("State rule rejected %s: %s", request.endpoint, error)
        return api_error(E.CONFLICT_STATE, str(error), details=error.to_dict())

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"resource": error.resource, "field": error.field})

    @bp.errorhandler(GateFailure)
    def _handle_gate(error: GateFailure):
        return api_error(E.GATE_FAILED, str(error), details=error.to_dict())

    @bp.errorhandler(InfrastructureError)
    def _handle_infrastructure(error: InfrastructureError):
        return api_error(E.DATABASE, "State store unavailable")

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
