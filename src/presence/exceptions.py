"""Error taxonomy for status graph and provisioning operations."""

from __future__ import annotations

from typing import Any

from .serialization import json_encode


class PresenceError(Exception):
    """Base error type.

    ``status`` is the HTTP status class a transport layer should map the
    error to; ``field`` and ``entity`` name what the error is about.
    """

    kind = "error"
    status = 500

    def __init__(self, message: str, *, field: str | None = None, entity: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.entity = entity

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "status": self.status, "message": self.message}
        if self.field is not None:
            payload["field"] = self.field
        if self.entity is not None:
            payload["entity"] = self.entity
        return payload

    def to_response_body(self) -> bytes:
        return json_encode({"error": self.to_dict()})


class NotFound(PresenceError):
    """Referenced status, channel or tenant does not exist."""

    kind = "not_found"
    status = 404


class InvariantViolation(PresenceError):
    """Requested change would break a status graph invariant."""

    kind = "invariant_violation"
    status = 400


class UnknownTransitionTarget(InvariantViolation):
    """Timer transition target is not a status of the same channel."""

    kind = "unknown_transition_target"


class PersistFailure(PresenceError):
    """Underlying store rejected a read or write."""

    kind = "persist_failure"
    status = 500

    def __init__(self, operation: str, model: str, cause: BaseException) -> None:
        super().__init__(f"failed {operation} {model}: {cause}", entity=model)
        self.operation = operation
        self.cause = cause


class ProvisioningFailure(PresenceError):
    """A seeding stage failed; wraps the underlying error."""

    kind = "provisioning_failure"
    status = 500

    def __init__(self, stage: str, cause: BaseException, *, tenant: str | None = None) -> None:
        detail = cause.message if isinstance(cause, PresenceError) else str(cause)
        super().__init__(
            f"provisioning stage '{stage}' failed: {detail}",
            field=getattr(cause, "field", None),
            entity=getattr(cause, "entity", None),
        )
        self.stage = stage
        self.cause = cause
        self.tenant = tenant

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["stage"] = self.stage
        if isinstance(self.cause, PresenceError):
            payload["cause"] = self.cause.to_dict()
        return payload


__all__ = [
    "InvariantViolation",
    "NotFound",
    "PersistFailure",
    "PresenceError",
    "ProvisioningFailure",
    "UnknownTransitionTarget",
]
