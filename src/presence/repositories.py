"""Persistence contracts consumed by the status services and the provisioner.

Every method is tenant scoped. ``get`` raises :class:`~presence.exceptions.NotFound`
when the row does not exist; the remaining lookups return ``None`` (or an empty
list) so callers can treat "no holder yet" as a normal outcome. Write failures
surface as :class:`~presence.exceptions.PersistFailure`. ``get_or_create`` inserts a row
unless a live row already holds its natural key and reports which happened.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncContextManager, Protocol, Sequence

from .models import ActivityStatus, Channel, GlobalStatus, Ponder, Signal, Status, Tenant


class UnitOfWork(Protocol):
    """Open a transaction; nested scopes join the outermost one."""

    def transaction(self) -> AsyncContextManager[object]: ...


class TenantRepository(Protocol):
    async def persist(self, tenant: Tenant) -> Tenant: ...

    async def get_or_create(self, tenant: Tenant) -> tuple[Tenant, bool]:
        """Return the live row holding ``tenant``'s natural key and whether it was inserted now."""
        ...

    async def get(self, tenant_id: str) -> Tenant: ...

    async def get_by_name(self, name: str) -> Tenant | None: ...

    async def get_all(self) -> list[Tenant]: ...


class ChannelRepository(Protocol):
    async def persist(self, tenant_id: str, channel: Channel) -> Channel: ...

    async def get_or_create(self, tenant_id: str, channel: Channel) -> tuple[Channel, bool]: ...

    async def update(self, tenant_id: str, channel: Channel) -> Channel: ...

    async def get(self, tenant_id: str, channel_id: str) -> Channel: ...

    async def get_all(self, tenant_id: str) -> list[Channel]: ...

    async def get_by_name(self, tenant_id: str, name: str) -> Channel | None: ...


class StatusRepository(Protocol):
    async def persist(self, tenant_id: str, status: Status) -> Status: ...

    async def get_or_create(self, tenant_id: str, status: Status) -> tuple[Status, bool]: ...

    async def update(self, tenant_id: str, status: Status) -> Status: ...

    async def delete(self, tenant_id: str, status: Status) -> None: ...

    async def get(self, tenant_id: str, status_id: str) -> Status: ...

    async def get_all(self, tenant_id: str) -> list[Status]: ...

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Status]: ...

    async def get_by_channels(self, tenant_id: str, channel_ids: Sequence[str]) -> list[Status]: ...

    async def get_by_channel_and_is_starting(
        self, tenant_id: str, channel_id: str, starting: bool = True
    ) -> Status | None: ...

    async def get_on_reject(self, tenant_id: str, channel_id: str) -> Status | None: ...

    async def get_on_timeout(self, tenant_id: str, channel_id: str) -> Status | None: ...

    async def get_by_name_and_channel(self, tenant_id: str, name: str, channel_id: str) -> Status | None: ...

    async def get_referencing(self, tenant_id: str, status_id: str) -> list[Status]:
        """Statuses whose transitions or timer transition point at ``status_id``."""
        ...


class GlobalStatusRepository(Protocol):
    async def persist(self, tenant_id: str, status: GlobalStatus) -> GlobalStatus: ...

    async def get_or_create(self, tenant_id: str, status: GlobalStatus) -> tuple[GlobalStatus, bool]: ...

    async def update(self, tenant_id: str, status: GlobalStatus) -> GlobalStatus: ...

    async def delete(self, tenant_id: str, status: GlobalStatus) -> None: ...

    async def get(self, tenant_id: str, status_id: str) -> GlobalStatus: ...

    async def get_all(self, tenant_id: str) -> list[GlobalStatus]: ...

    async def get_by_name(self, tenant_id: str, name: str) -> GlobalStatus | None: ...

    async def get_starting(self, tenant_id: str) -> GlobalStatus | None: ...

    async def get_referencing(self, tenant_id: str, status_id: str) -> list[GlobalStatus]: ...


class SignalRepository(Protocol):
    async def persist(self, tenant_id: str, signal: Signal) -> Signal: ...

    async def get_or_create(self, tenant_id: str, signal: Signal) -> tuple[Signal, bool]: ...

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Signal]: ...

    async def get_by_status(self, tenant_id: str, status_id: str) -> list[Signal]: ...

    async def get_by_service_model_action_and_channel(
        self, tenant_id: str, service: str, model_name: str, action: str, channel_id: str
    ) -> Signal | None: ...


class ActivityStatusRepository(Protocol):
    async def persist(self, tenant_id: str, status: ActivityStatus) -> ActivityStatus: ...

    async def get_or_create(self, tenant_id: str, status: ActivityStatus) -> tuple[ActivityStatus, bool]: ...

    async def get_all(self, tenant_id: str) -> list[ActivityStatus]: ...

    async def get_by_name(self, tenant_id: str, name: str) -> ActivityStatus | None: ...


class PonderRepository(Protocol):
    async def persist(self, tenant_id: str, ponder: Ponder) -> Ponder: ...

    async def get_or_create(self, tenant_id: str, ponder: Ponder) -> tuple[Ponder, bool]: ...

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Ponder]: ...

    async def get_by_key(
        self, tenant_id: str, channel_id: str, skill_group_id: str | None, name: str
    ) -> Ponder | None: ...


@dataclass(slots=True)
class Repositories:
    """Bundle of every collaborator the services and the provisioner need."""

    unit_of_work: UnitOfWork
    tenants: TenantRepository
    channels: ChannelRepository
    statuses: StatusRepository
    global_statuses: GlobalStatusRepository
    signals: SignalRepository
    activity_statuses: ActivityStatusRepository
    ponders: PonderRepository


__all__ = [
    "ActivityStatusRepository",
    "ChannelRepository",
    "GlobalStatusRepository",
    "PonderRepository",
    "Repositories",
    "SignalRepository",
    "StatusRepository",
    "TenantRepository",
    "UnitOfWork",
]
