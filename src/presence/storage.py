"""ORM backed implementations of the repository contracts."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Generic, Mapping, Sequence, TypeVar

from msgspec import structs

from .database import Database, DatabaseConnection
from .exceptions import NotFound, PersistFailure, PresenceError
from .models import (
    ACTIVITY_STATUS_MODEL,
    CHANNEL_MODEL,
    GLOBAL_STATUS_MODEL,
    PONDER_MODEL,
    SIGNAL_MODEL,
    STATUS_MODEL,
    TENANT_MODEL,
    ActivityStatus,
    Channel,
    GlobalStatus,
    GlobalStatusTransition,
    Ponder,
    Signal,
    Status,
    StatusTransition,
    Tenant,
)
from .orm import ORM, Model, ModelManager
from .repositories import Repositories

M = TypeVar("M", bound=Model)
T = TypeVar("T")
G = TypeVar("G", Status, GlobalStatus)

_IMMUTABLE_COLUMNS = frozenset({"id", "tenant_id", "created_at", "updated_at"})


class DatabaseUnitOfWork:
    """Transaction scopes backed by :meth:`Database.transaction`."""

    def __init__(self, database: Database) -> None:
        self.database = database

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DatabaseConnection]:
        async with self.database.transaction() as connection:
            yield connection


class _OrmRepository(Generic[M]):
    model: type[M]
    model_name: str

    def __init__(self, orm: ORM) -> None:
        self.orm = orm
        self.manager: ModelManager[M] = orm.manager(self.model)

    async def _guard(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except PresenceError:
            raise
        except Exception as exc:
            raise PersistFailure(operation, self.model_name, exc) from exc

    async def _first(self, tenant_id: str | None, filters: Mapping[str, Any]) -> M | None:
        return await self._guard("querying", self.manager.get(tenant_id=tenant_id, filters=filters))

    async def _list(self, tenant_id: str | None, filters: Mapping[str, Any] | None = None) -> list[M]:
        return await self._guard(
            "querying", self.manager.list(tenant_id=tenant_id, filters=filters, order_by=["id asc"])
        )

    async def _require(self, tenant_id: str | None, row_id: str) -> M:
        row = await self._first(tenant_id, {"id": row_id})
        if row is None:
            raise NotFound(f"{self.model_name} {row_id} not found", field="id", entity=self.model_name)
        return row

    async def _insert(self, tenant_id: str | None, instance: M) -> M:
        return await self._guard("persisting", self.manager.create(instance, tenant_id=tenant_id))

    async def _get_or_create(self, tenant_id: str | None, instance: M) -> tuple[M, bool]:
        return await self._guard("persisting", self.manager.get_or_create(instance, tenant_id=tenant_id))

    async def _save(self, tenant_id: str | None, instance: M) -> M:
        values = {
            field.name: getattr(instance, field.name)
            for field in self.manager.info.fields
            if field.name not in _IMMUTABLE_COLUMNS
        }
        rows = await self._guard(
            "updating",
            self.manager.update(values, tenant_id=tenant_id, filters={"id": getattr(instance, "id")}),
        )
        if not rows:
            raise NotFound(
                f"{self.model_name} {getattr(instance, 'id')} not found", field="id", entity=self.model_name
            )
        return rows[0]


class SqlTenantRepository(_OrmRepository[Tenant]):
    model = Tenant
    model_name = TENANT_MODEL

    async def persist(self, tenant: Tenant) -> Tenant:
        return await self._insert(None, tenant)

    async def get_or_create(self, tenant: Tenant) -> tuple[Tenant, bool]:
        return await self._get_or_create(None, tenant)

    async def get(self, tenant_id: str) -> Tenant:
        return await self._require(None, tenant_id)

    async def get_by_name(self, name: str) -> Tenant | None:
        return await self._first(None, {"name": name})

    async def get_all(self) -> list[Tenant]:
        return await self._list(None)


class SqlChannelRepository(_OrmRepository[Channel]):
    model = Channel
    model_name = CHANNEL_MODEL

    async def persist(self, tenant_id: str, channel: Channel) -> Channel:
        return await self._insert(tenant_id, channel)

    async def get_or_create(self, tenant_id: str, channel: Channel) -> tuple[Channel, bool]:
        return await self._get_or_create(tenant_id, channel)

    async def update(self, tenant_id: str, channel: Channel) -> Channel:
        return await self._save(tenant_id, channel)

    async def get(self, tenant_id: str, channel_id: str) -> Channel:
        return await self._require(tenant_id, channel_id)

    async def get_all(self, tenant_id: str) -> list[Channel]:
        return await self._list(tenant_id)

    async def get_by_name(self, tenant_id: str, name: str) -> Channel | None:
        return await self._first(tenant_id, {"name": name})


class _GraphRepository(_OrmRepository[G]):
    """Shared persistence for status nodes and their transition edge rows."""

    edge_model: type[StatusTransition] | type[GlobalStatusTransition]

    def __init__(self, orm: ORM) -> None:
        super().__init__(orm)
        self.edges: ModelManager[Any] = orm.manager(self.edge_model)

    async def persist(self, tenant_id: str, status: G) -> G:
        row = await self._insert(tenant_id, status)
        targets = await self._write_edges(tenant_id, row.id, status.transition_ids)
        return structs.replace(row, transition_ids=targets)

    async def get_or_create(self, tenant_id: str, status: G) -> tuple[G, bool]:
        row, created = await self._get_or_create(tenant_id, status)
        if not created:
            return (await self._attach(tenant_id, [row]))[0], False
        targets = await self._write_edges(tenant_id, row.id, status.transition_ids)
        return structs.replace(row, transition_ids=targets), True

    async def update(self, tenant_id: str, status: G) -> G:
        row = await self._save(tenant_id, status)
        await self._guard("updating", self.edges.delete(tenant_id=tenant_id, filters={"status_id": row.id}))
        targets = await self._write_edges(tenant_id, row.id, status.transition_ids)
        return structs.replace(row, transition_ids=targets)

    async def delete(self, tenant_id: str, status: G) -> None:
        await self._guard("deleting", self.edges.delete(tenant_id=tenant_id, filters={"status_id": status.id}))
        removed = await self._guard("deleting", self.manager.delete(tenant_id=tenant_id, filters={"id": status.id}))
        if not removed:
            raise NotFound(f"{self.model_name} {status.id} not found", field="id", entity=self.model_name)

    async def get(self, tenant_id: str, status_id: str) -> G:
        return (await self._attach(tenant_id, [await self._require(tenant_id, status_id)]))[0]

    async def get_all(self, tenant_id: str) -> list[G]:
        return await self._attach(tenant_id, await self._list(tenant_id))

    async def get_referencing(self, tenant_id: str, status_id: str) -> list[G]:
        edges = await self._guard(
            "querying", self.edges.list(tenant_id=tenant_id, filters={"target_id": status_id})
        )
        source_ids = {edge.status_id for edge in edges}
        timed = await self._list(tenant_id, {"timer_transition_id": status_id})
        source_ids.update(row.id for row in timed)
        source_ids.discard(status_id)
        if not source_ids:
            return []
        return await self._attach(tenant_id, await self._list(tenant_id, {"id": tuple(sorted(source_ids))}))

    async def _find(self, tenant_id: str, filters: Mapping[str, Any]) -> G | None:
        row = await self._first(tenant_id, filters)
        if row is None:
            return None
        return (await self._attach(tenant_id, [row]))[0]

    async def _write_edges(self, tenant_id: str, status_id: str, target_ids: Sequence[str]) -> tuple[str, ...]:
        targets = tuple(dict.fromkeys(target_ids))
        for target_id in targets:
            edge = self.edge_model(status_id=status_id, target_id=target_id)
            await self._guard("persisting", self.edges.create(edge, tenant_id=tenant_id))
        return targets

    async def _attach(self, tenant_id: str, rows: list[G]) -> list[G]:
        if not rows:
            return rows
        edges = await self._guard(
            "querying",
            self.edges.list(tenant_id=tenant_id, filters={"status_id": tuple(row.id for row in rows)}),
        )
        grouped: dict[str, list[str]] = {}
        for edge in edges:
            grouped.setdefault(edge.status_id, []).append(edge.target_id)
        return [structs.replace(row, transition_ids=tuple(grouped.get(row.id, ()))) for row in rows]


class SqlStatusRepository(_GraphRepository[Status]):
    model = Status
    model_name = STATUS_MODEL
    edge_model = StatusTransition

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Status]:
        return await self._attach(tenant_id, await self._list(tenant_id, {"channel_id": channel_id}))

    async def get_by_channels(self, tenant_id: str, channel_ids: Sequence[str]) -> list[Status]:
        return await self._attach(tenant_id, await self._list(tenant_id, {"channel_id": tuple(channel_ids)}))

    async def get_by_channel_and_is_starting(
        self, tenant_id: str, channel_id: str, starting: bool = True
    ) -> Status | None:
        return await self._find(tenant_id, {"channel_id": channel_id, "starting_status": starting})

    async def get_on_reject(self, tenant_id: str, channel_id: str) -> Status | None:
        return await self._find(tenant_id, {"channel_id": channel_id, "on_reject": True})

    async def get_on_timeout(self, tenant_id: str, channel_id: str) -> Status | None:
        return await self._find(tenant_id, {"channel_id": channel_id, "on_timeout": True})

    async def get_by_name_and_channel(self, tenant_id: str, name: str, channel_id: str) -> Status | None:
        return await self._find(tenant_id, {"name": name, "channel_id": channel_id})


class SqlGlobalStatusRepository(_GraphRepository[GlobalStatus]):
    model = GlobalStatus
    model_name = GLOBAL_STATUS_MODEL
    edge_model = GlobalStatusTransition

    async def get_by_name(self, tenant_id: str, name: str) -> GlobalStatus | None:
        return await self._find(tenant_id, {"name": name})

    async def get_starting(self, tenant_id: str) -> GlobalStatus | None:
        return await self._find(tenant_id, {"starting_status": True})


class SqlSignalRepository(_OrmRepository[Signal]):
    model = Signal
    model_name = SIGNAL_MODEL

    async def persist(self, tenant_id: str, signal: Signal) -> Signal:
        return await self._insert(tenant_id, signal)

    async def get_or_create(self, tenant_id: str, signal: Signal) -> tuple[Signal, bool]:
        return await self._get_or_create(tenant_id, signal)

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Signal]:
        return await self._list(tenant_id, {"channel_id": channel_id})

    async def get_by_status(self, tenant_id: str, status_id: str) -> list[Signal]:
        return await self._list(tenant_id, {"status_id": status_id})

    async def get_by_service_model_action_and_channel(
        self, tenant_id: str, service: str, model_name: str, action: str, channel_id: str
    ) -> Signal | None:
        return await self._first(
            tenant_id,
            {"service": service, "model_name": model_name, "action": action, "channel_id": channel_id},
        )


class SqlActivityStatusRepository(_OrmRepository[ActivityStatus]):
    model = ActivityStatus
    model_name = ACTIVITY_STATUS_MODEL

    async def persist(self, tenant_id: str, status: ActivityStatus) -> ActivityStatus:
        return await self._insert(tenant_id, status)

    async def get_or_create(self, tenant_id: str, status: ActivityStatus) -> tuple[ActivityStatus, bool]:
        return await self._get_or_create(tenant_id, status)

    async def get_all(self, tenant_id: str) -> list[ActivityStatus]:
        return await self._list(tenant_id)

    async def get_by_name(self, tenant_id: str, name: str) -> ActivityStatus | None:
        return await self._first(tenant_id, {"name": name})


class SqlPonderRepository(_OrmRepository[Ponder]):
    model = Ponder
    model_name = PONDER_MODEL

    async def persist(self, tenant_id: str, ponder: Ponder) -> Ponder:
        return await self._insert(tenant_id, ponder)

    async def get_or_create(self, tenant_id: str, ponder: Ponder) -> tuple[Ponder, bool]:
        return await self._get_or_create(tenant_id, ponder)

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Ponder]:
        return await self._list(tenant_id, {"channel_id": channel_id})

    async def get_by_key(
        self, tenant_id: str, channel_id: str, skill_group_id: str | None, name: str
    ) -> Ponder | None:
        return await self._first(
            tenant_id, {"channel_id": channel_id, "skill_group_id": skill_group_id, "name": name}
        )


def sql_repositories(database: Database, orm: ORM | None = None) -> Repositories:
    """Wire every SQL repository against ``database``."""

    orm = orm or ORM(database)
    return Repositories(
        unit_of_work=DatabaseUnitOfWork(database),
        tenants=SqlTenantRepository(orm),
        channels=SqlChannelRepository(orm),
        statuses=SqlStatusRepository(orm),
        global_statuses=SqlGlobalStatusRepository(orm),
        signals=SqlSignalRepository(orm),
        activity_statuses=SqlActivityStatusRepository(orm),
        ponders=SqlPonderRepository(orm),
    )


__all__ = [
    "DatabaseUnitOfWork",
    "SqlActivityStatusRepository",
    "SqlChannelRepository",
    "SqlGlobalStatusRepository",
    "SqlPonderRepository",
    "SqlSignalRepository",
    "SqlStatusRepository",
    "SqlTenantRepository",
    "sql_repositories",
]
