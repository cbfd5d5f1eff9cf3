from __future__ import annotations

import msgspec

from presence.exceptions import (
    InvariantViolation,
    NotFound,
    PersistFailure,
    ProvisioningFailure,
    UnknownTransitionTarget,
)


def test_not_found_serialises_field_and_entity() -> None:
    error = NotFound("status s1 not found", field="id", entity="status")

    assert error.to_dict() == {
        "kind": "not_found",
        "status": 404,
        "message": "status s1 not found",
        "field": "id",
        "entity": "status",
    }
    assert msgspec.json.decode(error.to_response_body()) == {"error": error.to_dict()}


def test_invariant_violation_omits_missing_details() -> None:
    error = InvariantViolation("system statuses cannot be renamed")

    assert error.to_dict() == {
        "kind": "invariant_violation",
        "status": 400,
        "message": "system statuses cannot be renamed",
    }
    assert UnknownTransitionTarget("unknown", field="timer_transition_id").status == 400


def test_persist_failure_keeps_cause() -> None:
    cause = RuntimeError("duplicate key")
    error = PersistFailure("persisting", "channel", cause)

    assert error.cause is cause
    assert error.operation == "persisting"
    assert error.message == "failed persisting channel: duplicate key"
    assert error.to_dict()["entity"] == "channel"


def test_provisioning_failure_nests_cause_payload() -> None:
    cause = NotFound("status ringing not found", field="status_name", entity="status")
    error = ProvisioningFailure("signals", cause, tenant="acme")

    payload = error.to_dict()
    assert payload["stage"] == "signals"
    assert payload["field"] == "status_name"
    assert payload["cause"]["kind"] == "not_found"
    assert error.tenant == "acme"
    assert "status ringing not found" in error.message


def test_provisioning_failure_wraps_plain_exceptions() -> None:
    error = ProvisioningFailure("channels", ValueError("bad template"))

    assert error.message == "provisioning stage 'channels' failed: bad template"
    assert "cause" not in error.to_dict()
    assert "field" not in error.to_dict()
