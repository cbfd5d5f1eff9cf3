"""In-memory implementations of the repository contracts.

The store keeps every row as an immutable struct keyed by table and id, so a
transaction snapshot is a shallow copy of the table dicts. Errors can be
injected per ``(operation, model)`` to exercise failure paths, and inserts
respect each model's natural key the way the unique indexes do.
"""

from __future__ import annotations

import datetime as dt
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Generic, Sequence, TypeVar

from msgspec import structs

from .exceptions import NotFound, PersistFailure
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
    Ponder,
    Signal,
    Status,
    Tenant,
)
from .orm import default_registry
from .repositories import Repositories

R = TypeVar("R", bound=Any)
G = TypeVar("G", Status, GlobalStatus)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class InMemoryStore:
    """Tables of rows plus a write journal and transaction snapshots."""

    __test__ = False

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, Any]] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], BaseException] = {}
        self.commits = 0
        self.rollbacks = 0
        self._depth = 0

    def table(self, model_name: str) -> dict[str, Any]:
        return self.tables.setdefault(model_name, {})

    def rows(self, model_name: str, *, include_deleted: bool = False) -> list[Any]:
        rows = list(self.table(model_name).values())
        if include_deleted:
            return rows
        return [row for row in rows if row.deleted_at is None]

    def fail(self, operation: str, model_name: str, error: BaseException | None = None) -> None:
        """Make the next ``operation`` ("persisting", "updating", "deleting") on ``model_name`` fail."""

        self.failures[(operation, model_name)] = error or RuntimeError(f"{operation} {model_name} refused")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryStore"]:
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return
        snapshot = {name: dict(rows) for name, rows in self.tables.items()}
        journal = len(self.writes)
        self._depth = 1
        try:
            yield self
        except BaseException:
            self.tables = snapshot
            del self.writes[journal:]
            self.rollbacks += 1
            raise
        finally:
            self._depth = 0
        self.commits += 1

    def record(self, operation: str, model_name: str, row_id: str) -> None:
        error = self.failures.pop((operation, model_name), None)
        if error is not None:
            raise PersistFailure(operation, model_name, error)
        self.writes.append((operation, model_name, row_id))


class _MemoryRepository(Generic[R]):
    model_name: str

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def _rows(self, tenant_id: str | None, predicate: Callable[[R], bool] | None = None) -> list[R]:
        rows = self.store.rows(self.model_name)
        if tenant_id is not None:
            rows = [row for row in rows if row.tenant_id == tenant_id]
        if predicate is not None:
            rows = [row for row in rows if predicate(row)]
        return rows

    def _first(self, tenant_id: str | None, predicate: Callable[[R], bool]) -> R | None:
        rows = self._rows(tenant_id, predicate)
        return rows[0] if rows else None

    def _require(self, tenant_id: str | None, row_id: str) -> R:
        row = self._first(tenant_id, lambda candidate: candidate.id == row_id)
        if row is None:
            raise NotFound(f"{self.model_name} {row_id} not found", field="id", entity=self.model_name)
        return row

    def _insert(self, tenant_id: str | None, row: R) -> R:
        now = _utcnow()
        changes: dict[str, Any] = {"created_at": now, "updated_at": now}
        if tenant_id is not None:
            changes["tenant_id"] = tenant_id
        row = structs.replace(row, **changes)
        if self._holder(row) is not None:
            raise PersistFailure(
                "persisting", self.model_name, ValueError(f"duplicate {self.model_name} key {self._key(row)}")
            )
        self.store.record("persisting", self.model_name, row.id)
        self.store.table(self.model_name)[row.id] = row
        return row

    def _get_or_create(self, tenant_id: str | None, row: R) -> tuple[R, bool]:
        if tenant_id is not None:
            row = structs.replace(row, tenant_id=tenant_id)
        existing = self._holder(row)
        if existing is not None:
            return existing, False
        return self._insert(tenant_id, row), True

    def _key(self, row: R) -> tuple[Any, ...]:
        return tuple(getattr(row, name) for name in default_registry().info_for(type(row)).natural_key)

    def _holder(self, row: R) -> R | None:
        key = self._key(row)
        if not key:
            return None
        return self._first(None, lambda candidate: self._key(candidate) == key)

    def _save(self, tenant_id: str | None, row: R) -> R:
        current = self._require(tenant_id, row.id)
        row = structs.replace(row, tenant_id=current.tenant_id, created_at=current.created_at, updated_at=_utcnow())
        holder = self._holder(row)
        if holder is not None and holder.id != row.id:
            raise PersistFailure(
                "updating", self.model_name, ValueError(f"duplicate {self.model_name} key {self._key(row)}")
            )
        self.store.record("updating", self.model_name, row.id)
        self.store.table(self.model_name)[row.id] = row
        return row


class MemoryTenantRepository(_MemoryRepository[Tenant]):
    model_name = TENANT_MODEL

    async def persist(self, tenant: Tenant) -> Tenant:
        return self._insert(None, tenant)

    async def get_or_create(self, tenant: Tenant) -> tuple[Tenant, bool]:
        return self._get_or_create(None, tenant)

    async def get(self, tenant_id: str) -> Tenant:
        return self._require(None, tenant_id)

    async def get_by_name(self, name: str) -> Tenant | None:
        return self._first(None, lambda tenant: tenant.name == name)

    async def get_all(self) -> list[Tenant]:
        return self._rows(None)


class MemoryChannelRepository(_MemoryRepository[Channel]):
    model_name = CHANNEL_MODEL

    async def persist(self, tenant_id: str, channel: Channel) -> Channel:
        return self._insert(tenant_id, channel)

    async def get_or_create(self, tenant_id: str, channel: Channel) -> tuple[Channel, bool]:
        return self._get_or_create(tenant_id, channel)

    async def update(self, tenant_id: str, channel: Channel) -> Channel:
        return self._save(tenant_id, channel)

    async def get(self, tenant_id: str, channel_id: str) -> Channel:
        return self._require(tenant_id, channel_id)

    async def get_all(self, tenant_id: str) -> list[Channel]:
        return self._rows(tenant_id)

    async def get_by_name(self, tenant_id: str, name: str) -> Channel | None:
        return self._first(tenant_id, lambda channel: channel.name == name)


def _deduplicated_edges(status: G) -> G:
    return structs.replace(status, transition_ids=tuple(dict.fromkeys(status.transition_ids)))


class _MemoryGraphRepository(_MemoryRepository[G]):
    async def persist(self, tenant_id: str, status: G) -> G:
        return self._insert(tenant_id, _deduplicated_edges(status))

    async def get_or_create(self, tenant_id: str, status: G) -> tuple[G, bool]:
        return self._get_or_create(tenant_id, _deduplicated_edges(status))

    async def update(self, tenant_id: str, status: G) -> G:
        return self._save(tenant_id, _deduplicated_edges(status))

    async def delete(self, tenant_id: str, status: G) -> None:
        current = self._require(tenant_id, status.id)
        self.store.record("deleting", self.model_name, status.id)
        self.store.table(self.model_name)[status.id] = structs.replace(current, deleted_at=_utcnow())

    async def get(self, tenant_id: str, status_id: str) -> G:
        return self._require(tenant_id, status_id)

    async def get_all(self, tenant_id: str) -> list[G]:
        return self._rows(tenant_id)

    async def get_referencing(self, tenant_id: str, status_id: str) -> list[G]:
        return self._rows(
            tenant_id,
            lambda status: status.id != status_id
            and (status_id in status.transition_ids or status.timer_transition_id == status_id),
        )


class MemoryStatusRepository(_MemoryGraphRepository[Status]):
    model_name = STATUS_MODEL

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Status]:
        return self._rows(tenant_id, lambda status: status.channel_id == channel_id)

    async def get_by_channels(self, tenant_id: str, channel_ids: Sequence[str]) -> list[Status]:
        wanted = set(channel_ids)
        return self._rows(tenant_id, lambda status: status.channel_id in wanted)

    async def get_by_channel_and_is_starting(
        self, tenant_id: str, channel_id: str, starting: bool = True
    ) -> Status | None:
        return self._first(
            tenant_id, lambda status: status.channel_id == channel_id and status.starting_status is starting
        )

    async def get_on_reject(self, tenant_id: str, channel_id: str) -> Status | None:
        return self._first(tenant_id, lambda status: status.channel_id == channel_id and status.on_reject)

    async def get_on_timeout(self, tenant_id: str, channel_id: str) -> Status | None:
        return self._first(tenant_id, lambda status: status.channel_id == channel_id and status.on_timeout)

    async def get_by_name_and_channel(self, tenant_id: str, name: str, channel_id: str) -> Status | None:
        return self._first(tenant_id, lambda status: status.name == name and status.channel_id == channel_id)


class MemoryGlobalStatusRepository(_MemoryGraphRepository[GlobalStatus]):
    model_name = GLOBAL_STATUS_MODEL

    async def get_by_name(self, tenant_id: str, name: str) -> GlobalStatus | None:
        return self._first(tenant_id, lambda status: status.name == name)

    async def get_starting(self, tenant_id: str) -> GlobalStatus | None:
        return self._first(tenant_id, lambda status: status.starting_status)


class MemorySignalRepository(_MemoryRepository[Signal]):
    model_name = SIGNAL_MODEL

    async def persist(self, tenant_id: str, signal: Signal) -> Signal:
        return self._insert(tenant_id, signal)

    async def get_or_create(self, tenant_id: str, signal: Signal) -> tuple[Signal, bool]:
        return self._get_or_create(tenant_id, signal)

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Signal]:
        return self._rows(tenant_id, lambda signal: signal.channel_id == channel_id)

    async def get_by_status(self, tenant_id: str, status_id: str) -> list[Signal]:
        return self._rows(tenant_id, lambda signal: signal.status_id == status_id)

    async def get_by_service_model_action_and_channel(
        self, tenant_id: str, service: str, model_name: str, action: str, channel_id: str
    ) -> Signal | None:
        return self._first(
            tenant_id,
            lambda signal: (signal.service, signal.model_name, signal.action, signal.channel_id)
            == (service, model_name, action, channel_id),
        )


class MemoryActivityStatusRepository(_MemoryRepository[ActivityStatus]):
    model_name = ACTIVITY_STATUS_MODEL

    async def persist(self, tenant_id: str, status: ActivityStatus) -> ActivityStatus:
        return self._insert(tenant_id, status)

    async def get_or_create(self, tenant_id: str, status: ActivityStatus) -> tuple[ActivityStatus, bool]:
        return self._get_or_create(tenant_id, status)

    async def get_all(self, tenant_id: str) -> list[ActivityStatus]:
        return self._rows(tenant_id)

    async def get_by_name(self, tenant_id: str, name: str) -> ActivityStatus | None:
        return self._first(tenant_id, lambda status: status.name == name)


class MemoryPonderRepository(_MemoryRepository[Ponder]):
    model_name = PONDER_MODEL

    async def persist(self, tenant_id: str, ponder: Ponder) -> Ponder:
        return self._insert(tenant_id, ponder)

    async def get_or_create(self, tenant_id: str, ponder: Ponder) -> tuple[Ponder, bool]:
        return self._get_or_create(tenant_id, ponder)

    async def get_by_channel(self, tenant_id: str, channel_id: str) -> list[Ponder]:
        return self._rows(tenant_id, lambda ponder: ponder.channel_id == channel_id)

    async def get_by_key(
        self, tenant_id: str, channel_id: str, skill_group_id: str | None, name: str
    ) -> Ponder | None:
        key = (channel_id, skill_group_id, name)
        return self._first(tenant_id, lambda ponder: (ponder.channel_id, ponder.skill_group_id, ponder.name) == key)


def memory_repositories(store: InMemoryStore | None = None) -> Repositories:
    """Wire every repository contract against one :class:`InMemoryStore`."""

    store = store or InMemoryStore()
    return Repositories(
        unit_of_work=store,
        tenants=MemoryTenantRepository(store),
        channels=MemoryChannelRepository(store),
        statuses=MemoryStatusRepository(store),
        global_statuses=MemoryGlobalStatusRepository(store),
        signals=MemorySignalRepository(store),
        activity_statuses=MemoryActivityStatusRepository(store),
        ponders=MemoryPonderRepository(store),
    )


__all__ = [
    "InMemoryStore",
    "MemoryActivityStatusRepository",
    "MemoryChannelRepository",
    "MemoryGlobalStatusRepository",
    "MemoryPonderRepository",
    "MemorySignalRepository",
    "MemoryStatusRepository",
    "MemoryTenantRepository",
    "memory_repositories",
]
