"""
Engine-wide exception hierarchy.

Services raise only these types. Blueprints register handlers against them
once and get consistent HTTP status codes everywhere; callers embedding the
engine in-process catch them directly.

Usage:
    from sdd_engine.core.exceptions import NotFoundError, StateError

    raise NotFoundError(resource="Feature", resource_id="auth-flow")
    raise StateError("forward skip", resource="Feature", resource_id="auth-flow", current=2)

None of these are retried by the engine. Retry policy belongs to the
orchestrator.
"""


class NotFoundError(Exception):
    """Raised when a referenced feature, learning, invocation, conflict or alert does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Feature", "Learning").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or out of range.

    Examples: a task without ``status``, a confidence of 1.3, an unknown
    blocker type. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StateError(Exception):
    """Raised when an operation violates an entity's state machine.

    Forward skips, double supersession and re-resolving a resolved blocker
    all land here. Maps to HTTP 409.

    Args:
        message: Short reason (e.g. "forward skip").
        resource: Entity name.
        resource_id: Entity key.
        current: The state that made the operation illegal.
    """

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        resource_id: int | str | None = None,
        current: object | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current = current
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "resource": self.resource,
            "resource_id": self.resource_id,
            "current": self.current,
        }


class ConflictError(Exception):
    """Raised on a uniqueness collision or a lost concurrent mutation.

    A duplicate feature id and ending an already-ended invocation both
    raise this. Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose value collided.
        value: The conflicting value.
        message: Overrides the default "already exists" wording.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class GateFailure(Exception):
    """Raised when a precondition gate does not pass.

    The coverage gate opens a Blocker before raising, so ``blocker_id``
    points at the durable record of the failure. Maps to HTTP 412.

    Args:
        gate: Gate name (e.g. "invocation_coverage").
        feature_id: Feature the gate ran against.
        missing: The unmet items, e.g. [{"phase": 3, "agent": "guardian"}].
        blocker_id: Id of the blocker opened for this failure.
    """

    def __init__(
        self,
        gate: str,
        feature_id: str,
        missing: list[dict] | None = None,
        blocker_id: int | None = None,
    ) -> None:
        self.gate = gate
        self.feature_id = feature_id
        self.missing = missing or []
        self.blocker_id = blocker_id
        super().__init__(
            f"{gate} gate failed for feature {feature_id}: "
            f"{len(self.missing)} requirement(s) missing"
        )

    def to_dict(self) -> dict:
        return {
            "gate": self.gate,
            "feature_id": self.feature_id,
            "missing": self.missing,
            "blocker_id": self.blocker_id,
        }


class InfrastructureError(Exception):
    """Raised when the state store fails (connectivity, lock timeout, corruption).

    The transaction has already been rolled back when this surfaces.
    Maps to HTTP 503.
    """
