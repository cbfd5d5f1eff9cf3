"""Persisted models for tenants, channels and the agent status graph."""

from __future__ import annotations

from .orm import DatabaseModel, Model, ModelScope, TenantModel, model

TENANT_MODEL = "tenant"
CHANNEL_MODEL = "channel"
STATUS_MODEL = "status"
GLOBAL_STATUS_MODEL = "global_status"
SIGNAL_MODEL = "signal"
ACTIVITY_STATUS_MODEL = "activity_status"
PONDER_MODEL = "ponder"


@model(scope=ModelScope.GLOBAL, table="tenants", natural_key=("name",))
class Tenant(DatabaseModel):
    name: str


@model(scope=ModelScope.TENANT, table="channels", natural_key=("tenant_id", "name"))
class Channel(TenantModel):
    name: str
    label: str = ""
    realtime: bool = False
    skill_group_ids: tuple[str, ...] = ()


@model(
    scope=ModelScope.TENANT,
    table="statuses",
    virtual_fields=("transition_ids",),
    natural_key=("tenant_id", "channel_id", "name"),
    references={"timer_transition_id": "statuses"},
)
class Status(TenantModel):
    """A channel scoped agent status.

    ``timer_transition_id`` and ``transition_ids`` are edges to other
    statuses of the same channel, stored as ids and resolved on read.
    """

    channel_id: str
    name: str
    label: str = ""
    reason: str = ""
    blocked: bool = False
    system: bool = False
    starting_status: bool = False
    on_reject: bool = False
    on_timeout: bool = False
    default_blocked: bool = False
    default_unblocked: bool = False
    timer: int = 0
    timer_transition_id: str | None = None
    transition_ids: tuple[str, ...] = ()


@model(
    scope=ModelScope.TENANT,
    table="global_statuses",
    virtual_fields=("transition_ids",),
    natural_key=("tenant_id", "name"),
    references={"timer_transition_id": "global_statuses"},
)
class GlobalStatus(TenantModel):
    name: str
    label: str = ""
    reason: str = ""
    blocked: bool = False
    system: bool = False
    starting_status: bool = False
    timer: int = 0
    timer_transition_id: str | None = None
    transition_ids: tuple[str, ...] = ()


@model(
    scope=ModelScope.TENANT,
    table="status_transitions",
    identity=("status_id", "target_id"),
    references={"status_id": "statuses", "target_id": "statuses"},
)
class StatusTransition(Model, kw_only=True):
    tenant_id: str = ""
    status_id: str
    target_id: str


@model(
    scope=ModelScope.TENANT,
    table="global_status_transitions",
    identity=("status_id", "target_id"),
    references={"status_id": "global_statuses", "target_id": "global_statuses"},
)
class GlobalStatusTransition(Model, kw_only=True):
    tenant_id: str = ""
    status_id: str
    target_id: str


@model(
    scope=ModelScope.TENANT,
    table="signals",
    natural_key=("tenant_id", "channel_id", "service", "model_name", "action"),
    references={"status_id": "statuses"},
)
class Signal(TenantModel):
    channel_id: str
    service: str
    model_name: str
    action: str
    signal_name: str = ""
    status_id: str | None = None
    url: str | None = None
    enabled: bool = True


@model(scope=ModelScope.TENANT, table="activity_statuses", natural_key=("tenant_id", "name"))
class ActivityStatus(TenantModel):
    name: str
    label: str = ""
    description: str = ""


@model(
    scope=ModelScope.TENANT,
    table="ponders",
    natural_key=("tenant_id", "channel_id", "skill_group_id", "name"),
)
class Ponder(TenantModel):
    channel_id: str
    object: str
    name: str
    skill_group_id: str | None = None
    label: str = ""
    value: float = 0.0
    enabled: bool = True


__all__ = [
    "ACTIVITY_STATUS_MODEL",
    "CHANNEL_MODEL",
    "GLOBAL_STATUS_MODEL",
    "PONDER_MODEL",
    "SIGNAL_MODEL",
    "STATUS_MODEL",
    "TENANT_MODEL",
    "ActivityStatus",
    "Channel",
    "GlobalStatus",
    "GlobalStatusTransition",
    "Ponder",
    "Signal",
    "Status",
    "StatusTransition",
    "Tenant",
]
