"""Status graph operations with selector demotion and sibling synchronisation."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from msgspec import UNSET, Struct, UnsetType, structs

from .exceptions import InvariantViolation, NotFound
from .graph import (
    Selector,
    apply_blocked_defaults,
    compute_sibling_resets,
    validate_rename,
    validate_timer_target,
    validate_transition_targets,
)
from .models import GLOBAL_STATUS_MODEL, STATUS_MODEL, GlobalStatus, Status
from .observability import ContextLogger, bind
from .repositories import Repositories
from .tenancy import RequestContext, require_tenant

logger = logging.getLogger(__name__)


class StatusCreate(Struct, frozen=True, kw_only=True):
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


class StatusPatch(Struct, frozen=True, kw_only=True):
    """Partial update; unset fields keep their stored value.

    ``system`` and ``channel_id`` are fixed at creation and cannot be patched.
    """

    name: str | UnsetType = UNSET
    label: str | UnsetType = UNSET
    reason: str | UnsetType = UNSET
    blocked: bool | UnsetType = UNSET
    starting_status: bool | UnsetType = UNSET
    on_reject: bool | UnsetType = UNSET
    on_timeout: bool | UnsetType = UNSET
    default_blocked: bool | UnsetType = UNSET
    default_unblocked: bool | UnsetType = UNSET
    timer: int | UnsetType = UNSET
    timer_transition_id: str | None | UnsetType = UNSET
    transition_ids: tuple[str, ...] | UnsetType = UNSET


class GlobalStatusCreate(Struct, frozen=True, kw_only=True):
    name: str
    label: str = ""
    reason: str = ""
    blocked: bool = False
    system: bool = False
    starting_status: bool = False
    timer: int = 0
    timer_transition_id: str | None = None
    transition_ids: tuple[str, ...] = ()


class GlobalStatusPatch(Struct, frozen=True, kw_only=True):
    name: str | UnsetType = UNSET
    label: str | UnsetType = UNSET
    reason: str | UnsetType = UNSET
    blocked: bool | UnsetType = UNSET
    starting_status: bool | UnsetType = UNSET
    timer: int | UnsetType = UNSET
    timer_transition_id: str | None | UnsetType = UNSET
    transition_ids: tuple[str, ...] | UnsetType = UNSET


class StatusEdges(Struct, frozen=True):
    """A status with its outgoing edges resolved to the current records."""

    status: Status
    transitions: tuple[Status, ...]
    timer_transition: Status | None


def _patched(record: Any, patch: Struct) -> Any:
    changes: dict[str, Any] = {}
    for name in patch.__struct_fields__:
        value = getattr(patch, name)
        if value is UNSET:
            continue
        changes[name] = tuple(value) if name == "transition_ids" else value
    return structs.replace(record, **changes)


def _without_idle_timer(record: Any) -> Any:
    if record.timer == 0 and record.timer_transition_id is not None:
        return structs.replace(record, timer_transition_id=None)
    return record


class StatusService:
    """Create, update and delete channel statuses.

    Selector flags behave as channel wide singletons: whenever a status takes
    one, the previous holder is demoted in the same transaction. Every write
    ends with :meth:`sync_siblings`.
    """

    _DEMOTED_SELECTORS = (Selector.STARTING, Selector.ON_REJECT, Selector.ON_TIMEOUT)

    def __init__(self, repositories: Repositories) -> None:
        self.repositories = repositories
        self.statuses = repositories.statuses

    async def create(self, ctx: RequestContext, data: StatusCreate) -> Status:
        tenant_id = require_tenant(ctx)
        log = bind(logger, ctx, "status.create", channel_id=data.channel_id, status_name=data.name)
        candidate = Status(
            tenant_id=tenant_id,
            channel_id=data.channel_id,
            name=data.name,
            label=data.label,
            reason=data.reason,
            blocked=data.blocked,
            system=data.system,
            starting_status=data.starting_status,
            on_reject=data.on_reject,
            on_timeout=data.on_timeout,
            timer=data.timer,
            timer_transition_id=data.timer_transition_id,
            transition_ids=tuple(data.transition_ids),
        )
        candidate = apply_blocked_defaults(
            _without_idle_timer(candidate),
            default_blocked=data.default_blocked,
            default_unblocked=data.default_unblocked,
        )
        async with self.repositories.unit_of_work.transaction():
            if candidate.timer_transition_id is not None:
                await self._check_timer_target(tenant_id, candidate)
            await self._check_transition_targets(tenant_id, candidate)
            await self._demote_holders(tenant_id, candidate, log)
            created = await self.statuses.persist(tenant_id, candidate)
            await self._sync(tenant_id, created, log)
        log.info("status created", extra={"status_id": created.id})
        return created

    async def update(self, ctx: RequestContext, status_id: str, patch: StatusPatch) -> Status:
        tenant_id = require_tenant(ctx)
        log = bind(logger, ctx, "status.update", status_id=status_id)
        async with self.repositories.unit_of_work.transaction():
            existing = await self.statuses.get(tenant_id, status_id)
            updated = _without_idle_timer(_patched(existing, patch))
            validate_rename(existing, updated)
            updated = apply_blocked_defaults(
                updated,
                default_blocked=updated.default_blocked,
                default_unblocked=updated.default_unblocked,
            )
            await self._demote_holders(tenant_id, updated, log)
            if updated.timer_transition_id is not None:
                await self._check_timer_target(tenant_id, updated)
            await self._check_transition_targets(tenant_id, updated)
            saved = await self.statuses.update(tenant_id, updated)
            await self._sync(tenant_id, saved, log)
        log.info("status updated")
        return saved

    async def sync_siblings(self, ctx: RequestContext, status: Status) -> list[Status]:
        """Clear the default selectors ``status`` holds from every sibling."""

        tenant_id = require_tenant(ctx)
        log = bind(logger, ctx, "status.sync_siblings", status_id=status.id)
        async with self.repositories.unit_of_work.transaction():
            return await self._sync(tenant_id, status, log)

    async def delete(self, ctx: RequestContext, status_id: str) -> None:
        tenant_id = require_tenant(ctx)
        log = bind(logger, ctx, "status.delete", status_id=status_id)
        async with self.repositories.unit_of_work.transaction():
            status = await self.statuses.get(tenant_id, status_id)
            referencing = await self.statuses.get_referencing(tenant_id, status_id)
            if referencing:
                names = ", ".join(sorted(other.name for other in referencing))
                raise InvariantViolation(
                    f"status '{status.name}' is still referenced by: {names}",
                    field="id",
                    entity=STATUS_MODEL,
                )
            signals = await self.repositories.signals.get_by_status(tenant_id, status_id)
            if signals:
                names = ", ".join(sorted(signal.signal_name or signal.action for signal in signals))
                raise InvariantViolation(
                    f"status '{status.name}' is still the target of signals: {names}",
                    field="id",
                    entity=STATUS_MODEL,
                )
            await self.statuses.delete(tenant_id, status)
        log.info("status deleted")

    async def get(self, ctx: RequestContext, status_id: str) -> Status:
        return await self.statuses.get(require_tenant(ctx), status_id)

    async def get_all(self, ctx: RequestContext, channel_ids: Sequence[str] | None = None) -> list[Status]:
        tenant_id = require_tenant(ctx)
        if channel_ids is None:
            return await self.statuses.get_all(tenant_id)
        return await self.statuses.get_by_channels(tenant_id, list(channel_ids))

    async def get_by_channel(self, ctx: RequestContext, channel_id: str) -> list[Status]:
        return await self.statuses.get_by_channel(require_tenant(ctx), channel_id)

    async def get_starting(self, ctx: RequestContext, channel_id: str) -> Status:
        holder = await self.statuses.get_by_channel_and_is_starting(require_tenant(ctx), channel_id)
        return _holder_or_missing(holder, Selector.STARTING, channel_id)

    async def get_on_reject(self, ctx: RequestContext, channel_id: str) -> Status:
        holder = await self.statuses.get_on_reject(require_tenant(ctx), channel_id)
        return _holder_or_missing(holder, Selector.ON_REJECT, channel_id)

    async def get_on_timeout(self, ctx: RequestContext, channel_id: str) -> Status:
        holder = await self.statuses.get_on_timeout(require_tenant(ctx), channel_id)
        return _holder_or_missing(holder, Selector.ON_TIMEOUT, channel_id)

    async def get_edges(self, ctx: RequestContext, status_id: str) -> StatusEdges:
        """Resolve ``transition_ids`` and ``timer_transition_id`` to live records."""

        tenant_id = require_tenant(ctx)
        status = await self.statuses.get(tenant_id, status_id)
        transitions = tuple([await self.statuses.get(tenant_id, target) for target in status.transition_ids])
        timer_transition = None
        if status.timer_transition_id is not None:
            timer_transition = await self.statuses.get(tenant_id, status.timer_transition_id)
        return StatusEdges(status=status, transitions=transitions, timer_transition=timer_transition)

    async def _check_timer_target(self, tenant_id: str, status: Status) -> None:
        target_id = status.timer_transition_id
        assert target_id is not None
        target = await self.statuses.get(tenant_id, target_id)
        validate_timer_target(status, target_id, [target])

    async def _check_transition_targets(self, tenant_id: str, status: Status) -> None:
        targets = [await self.statuses.get(tenant_id, target_id) for target_id in status.transition_ids]
        validate_transition_targets(status, targets)

    async def _current_holder(self, tenant_id: str, channel_id: str, selector: Selector) -> Status | None:
        if selector is Selector.STARTING:
            return await self.statuses.get_by_channel_and_is_starting(tenant_id, channel_id)
        if selector is Selector.ON_REJECT:
            return await self.statuses.get_on_reject(tenant_id, channel_id)
        return await self.statuses.get_on_timeout(tenant_id, channel_id)

    async def _demote_holders(self, tenant_id: str, status: Status, log: ContextLogger) -> None:
        for selector in self._DEMOTED_SELECTORS:
            if not getattr(status, selector.value):
                continue
            holder = await self._current_holder(tenant_id, status.channel_id, selector)
            if holder is None or holder.id == status.id:
                continue
            await self.statuses.update(tenant_id, structs.replace(holder, **{selector.value: False}))
            log.debug("selector demoted", extra={"selector": selector.value, "demoted_id": holder.id})

    async def _sync(self, tenant_id: str, status: Status, log: ContextLogger) -> list[Status]:
        siblings = await self.statuses.get_by_channel(tenant_id, status.channel_id)
        resets = compute_sibling_resets(status, siblings)
        saved = [await self.statuses.update(tenant_id, sibling) for sibling in resets]
        if saved:
            log.debug("default selectors cleared", extra={"count": len(saved)})
        return saved


def _holder_or_missing(holder: Status | None, selector: Selector, channel_id: str) -> Status:
    if holder is None:
        raise NotFound(
            f"no {selector.value} status in channel {channel_id}",
            field=selector.value,
            entity=STATUS_MODEL,
        )
    return holder


class GlobalStatusService:
    """Tenant wide statuses; ``starting_status`` is a per-tenant singleton."""

    def __init__(self, repositories: Repositories) -> None:
        self.repositories = repositories
        self.statuses = repositories.global_statuses

    async def create(self, ctx: RequestContext, data: GlobalStatusCreate) -> GlobalStatus:
        tenant_id = require_tenant(ctx)
        log = bind(logger, ctx, "global_status.create", status_name=data.name)
        candidate = _without_idle_timer(
            GlobalStatus(
                tenant_id=tenant_id,
                name=data.name,
                label=data.label,
                reason=data.reason,
                blocked=data.blocked,
                system=data.system,
                starting_status=data.starting_status,
                timer=data.timer,
                timer_transition_id=data.timer_transition_id,
                transition_ids=tuple(data.transition_ids),
            )
        )
        async with self.repositories.unit_of_work.transaction():
            if candidate.timer_transition_id is not None:
                await self.statuses.get(tenant_id, candidate.timer_transition_id)
            for target_id in candidate.transition_ids:
                await self.statuses.get(tenant_id, target_id)
            await self._demote_starting(tenant_id, candidate, log)
            created = await self.statuses.persist(tenant_id, candidate)
        log.info("global status created", extra={"status_id": created.id})
        return created

    async def update(self, ctx: RequestContext, status_id: str, patch: GlobalStatusPatch) -> GlobalStatus:
        tenant_id = require_tenant(ctx)
        log = bind(logger, ctx, "global_status.update", status_id=status_id)
        async with self.repositories.unit_of_work.transaction():
            existing = await self.statuses.get(tenant_id, status_id)
            updated = _without_idle_timer(_patched(existing, patch))
            validate_rename(existing, updated, entity=GLOBAL_STATUS_MODEL)
            await self._demote_starting(tenant_id, updated, log)
            if updated.timer_transition_id is not None:
                await self.statuses.get(tenant_id, updated.timer_transition_id)
            for target_id in updated.transition_ids:
                await self.statuses.get(tenant_id, target_id)
            saved = await self.statuses.update(tenant_id, updated)
        log.info("global status updated")
        return saved

    async def delete(self, ctx: RequestContext, status_id: str) -> None:
        tenant_id = require_tenant(ctx)
        async with self.repositories.unit_of_work.transaction():
            status = await self.statuses.get(tenant_id, status_id)
            referencing = await self.statuses.get_referencing(tenant_id, status_id)
            if referencing:
                names = ", ".join(sorted(other.name for other in referencing))
                raise InvariantViolation(
                    f"global status '{status.name}' is still referenced by: {names}",
                    field="id",
                    entity=GLOBAL_STATUS_MODEL,
                )
            await self.statuses.delete(tenant_id, status)
        bind(logger, ctx, "global_status.delete", status_id=status_id).info("global status deleted")

    async def get(self, ctx: RequestContext, status_id: str) -> GlobalStatus:
        return await self.statuses.get(require_tenant(ctx), status_id)

    async def get_all(self, ctx: RequestContext) -> list[GlobalStatus]:
        return await self.statuses.get_all(require_tenant(ctx))

    async def get_starting(self, ctx: RequestContext) -> GlobalStatus:
        holder = await self.statuses.get_starting(require_tenant(ctx))
        if holder is None:
            raise NotFound("no starting global status", field="starting_status", entity=GLOBAL_STATUS_MODEL)
        return holder

    async def _demote_starting(self, tenant_id: str, status: GlobalStatus, log: ContextLogger) -> None:
        if not status.starting_status:
            return
        holder = await self.statuses.get_starting(tenant_id)
        if holder is None or holder.id == status.id:
            return
        await self.statuses.update(tenant_id, structs.replace(holder, starting_status=False))
        log.debug("selector demoted", extra={"selector": "starting_status", "demoted_id": holder.id})


__all__ = [
    "GlobalStatusCreate",
    "GlobalStatusPatch",
    "GlobalStatusService",
    "StatusCreate",
    "StatusEdges",
    "StatusPatch",
    "StatusService",
]
