"""Test support utilities for presence database, ORM and service tests."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence

from presence.database import Database, DatabaseConfig, PoolConfig
from presence.provisioning import ChannelTemplate, ProvisioningTemplates, StatusTemplate
from presence.tenancy import RequestContext

CONTROL_STATEMENTS = ("SET ", "BEGIN", "COMMIT", "ROLLBACK")
NOW = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)


@dataclass
class FakeResult:
    rows: List[dict[str, Any]]

    def result(self) -> List[dict[str, Any]]:
        return self.rows


class FakeConnection:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, list[Any], bool]] = []
        self._queued: list[list[dict[str, Any]] | BaseException] = []

    def queue_result(self, rows: Iterable[dict[str, Any]]) -> None:
        self._queued.append([dict(row) for row in rows])

    def queue_error(self, error: BaseException) -> None:
        self._queued.append(error)

    @property
    def statements(self) -> list[str]:
        return [call[1] for call in self.calls]

    async def execute(
        self,
        query: str,
        parameters: Sequence[Any] | None = None,
        *,
        prepared: bool = False,
    ) -> FakeResult:
        params = list(parameters or [])
        self.calls.append(("execute", query, params, prepared))
        if query.lstrip().upper().startswith(CONTROL_STATEMENTS):
            return FakeResult([])
        queued = self._queued.pop(0) if self._queued else []
        if isinstance(queued, BaseException):
            raise queued
        return FakeResult(queued)


class _Acquire:
    def __init__(self, connection: FakeConnection) -> None:
        self._connection = connection

    async def __aenter__(self) -> FakeConnection:
        return self._connection

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class FakePool:
    def __init__(self, connection: FakeConnection | None = None) -> None:
        self.connection = connection or FakeConnection()
        self.closed = False
        self.acquired = 0

    def acquire(self) -> _Acquire:
        self.acquired += 1
        return _Acquire(self.connection)

    def close(self) -> None:
        self.closed = True


def fake_database(connection: FakeConnection | None = None, **config: Any) -> Database:
    pool = FakePool(connection)
    return Database(DatabaseConfig(pool=PoolConfig(dsn="postgres://presence"), **config), pool=pool)


def row(**values: Any) -> dict[str, Any]:
    """A persisted row with timestamps filled in."""

    values.setdefault("created_at", NOW)
    values.setdefault("updated_at", NOW)
    values.setdefault("deleted_at", None)
    return values


def context(tenant_id: str = "tenant-1") -> RequestContext:
    return RequestContext(tenant_id=tenant_id, correlation_id="corr-1")


def voice_templates() -> ProvisioningTemplates:
    available = StatusTemplate(name="Available", starting_status=True)
    busy = StatusTemplate(name="Busy", blocked=True, timer=60, timer_transition=available)
    return ProvisioningTemplates(
        channels=(ChannelTemplate(name="voice", realtime=False),),
        basic_statuses=(available, busy),
    )
