"""Declarative ORM mapping msgspec models onto tenant scoped tables."""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Iterable, Mapping, Sequence, TypeVar, get_type_hints

import msgspec
from id57 import generate_id57
from msgspec import structs
from msgspec.inspect import NODEFAULT, StructType, type_info

from .database import Database, _quote_identifier

M = TypeVar("M", bound="Model")


class Model(msgspec.Struct, frozen=True, kw_only=True):
    """Base class for all ORM models."""


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class DatabaseModel(Model, kw_only=True):
    """Base model including identifier, timestamps and soft-delete marker."""

    id: str = msgspec.field(default_factory=generate_id57)
    created_at: dt.datetime = msgspec.field(default_factory=_utcnow)
    updated_at: dt.datetime = msgspec.field(default_factory=_utcnow)
    deleted_at: dt.datetime | None = None


class TenantModel(DatabaseModel, kw_only=True):
    """Base model for rows owned by a tenant."""

    tenant_id: str = ""


class ModelScope(str, Enum):
    """Supported model scopes."""

    GLOBAL = "global"
    TENANT = "tenant"


@dataclass(slots=True)
class FieldInfo:
    """Metadata describing a model field."""

    name: str
    column: str
    python_type: type[Any]
    has_default: bool
    default: Any
    default_factory: Callable[[], Any] | None


@dataclass(slots=True)
class ModelInfo(Generic[M]):
    """Metadata describing a registered model.

    ``fields`` only lists column backed fields; ``virtual_fields`` are struct
    fields the owning repository persists elsewhere (join tables).
    ``natural_key`` names the columns that are unique among live rows and
    ``references`` maps a column to the table whose ``id`` it points at.
    """

    model: type[M]
    table: str
    scope: str
    identity: tuple[str, ...]
    fields: tuple[FieldInfo, ...]
    accessor: str
    field_map: Mapping[str, FieldInfo]
    virtual_fields: frozenset[str]
    soft_delete: bool
    natural_key: tuple[str, ...] = ()
    references: Mapping[str, str] = field(default_factory=dict)


class ModelRegistry:
    """Registry mapping models to metadata for runtime lookups."""

    def __init__(self) -> None:
        self._models: dict[type[Model], ModelInfo[Any]] = {}
        self._accessors: dict[tuple[str, str], ModelInfo[Any]] = {}

    def register(self, info: ModelInfo[Any]) -> None:
        if info.model in self._models:
            raise ValueError(f"Model {info.model.__name__} already registered")
        accessor_key = (info.scope, info.accessor)
        if accessor_key in self._accessors:
            raise ValueError(f"Accessor '{info.accessor}' already registered for scope {info.scope}")
        self._models[info.model] = info
        self._accessors[accessor_key] = info

    def info_for(self, model: type[M]) -> ModelInfo[M]:
        try:
            info = self._models[model]
        except KeyError as exc:
            raise LookupError(f"Model {model.__name__} is not registered") from exc
        return info  # type: ignore[return-value]

    def get_by_accessor(self, scope: str, accessor: str) -> ModelInfo[Any]:
        try:
            return self._accessors[(scope, accessor)]
        except KeyError as exc:
            raise LookupError(f"Model accessor '{accessor}' not registered for scope {scope}") from exc

    def models(self) -> Iterable[ModelInfo[Any]]:
        return self._models.values()


_default_registry = ModelRegistry()


def default_registry() -> ModelRegistry:
    """Return the shared global registry."""

    return _default_registry


def model(
    *,
    scope: ModelScope,
    table: str,
    identity: Sequence[str] = ("id",),
    accessor: str | None = None,
    registry: ModelRegistry | None = None,
    virtual_fields: Sequence[str] = (),
    natural_key: Sequence[str] = (),
    references: Mapping[str, str] | None = None,
) -> Callable[[type[M]], type[M]]:
    """Class decorator used to register ORM models."""

    def decorator(cls: type[M]) -> type[M]:
        reg = registry or _default_registry
        info = _build_model_info(
            cls,
            scope=scope.value,
            table=table,
            identity=tuple(identity),
            accessor=accessor or table,
            virtual_fields=tuple(virtual_fields),
            natural_key=tuple(natural_key),
            references=dict(references or {}),
        )
        setattr(cls, "__model_info__", info)
        reg.register(info)
        return cls

    return decorator


class ORM:
    """Runtime object responsible for executing SQL for models."""

    def __init__(self, database: Database, registry: ModelRegistry | None = None) -> None:
        self.database = database
        self.registry = registry or _default_registry
        self.globals = _Namespace(self, ModelScope.GLOBAL.value)
        self.tenants = _Namespace(self, ModelScope.TENANT.value)

    async def insert(self, model: type[M], data: M | Mapping[str, Any], *, tenant_id: str | None = None) -> M:
        info = self.registry.info_for(model)
        return await self._insert(info, self._coerce_instance(info, data), tenant_id)

    async def select(
        self,
        model: type[M],
        *,
        tenant_id: str | None = None,
        filters: Mapping[str, Any] | None = None,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[M]:
        info = self.registry.info_for(model)
        rows = await self._select(info, tenant_id=tenant_id, filters=filters, order_by=order_by, limit=limit)
        return [self._convert(info, row) for row in rows]

    async def update(
        self,
        model: type[M],
        values: Mapping[str, Any],
        *,
        tenant_id: str | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> list[M]:
        info = self.registry.info_for(model)
        rows = await self._update(info, values, tenant_id=tenant_id, filters=filters)
        return [self._convert(info, row) for row in rows]

    async def delete(
        self,
        model: type[M],
        *,
        tenant_id: str | None = None,
        filters: Mapping[str, Any] | None = None,
        hard: bool = False,
    ) -> int:
        info = self.registry.info_for(model)
        return await self._delete(info, tenant_id=tenant_id, filters=filters, hard=hard)

    def manager(self, model: type[M]) -> "ModelManager[M]":
        return ModelManager(self, self.registry.info_for(model))

    async def _insert(self, info: ModelInfo[M], instance: M, tenant_id: str | None) -> M:
        rows = await self._insert_rows(info, instance, tenant_id)
        if not rows:
            raise RuntimeError("Insert did not return any rows")  # pragma: no cover - safety net
        return self._convert(info, rows[0])

    async def _insert_rows(
        self, info: ModelInfo[M], instance: M, tenant_id: str | None, *, skip_conflicts: bool = False
    ) -> list[dict[str, Any]]:
        payload = _column_payload(instance)
        if info.scope == ModelScope.TENANT.value:
            payload["tenant_id"] = _require_tenant(info, tenant_id)
        _apply_insert_metadata(info, payload)
        columns: list[str] = []
        values: list[Any] = []
        for field in info.fields:
            if field.name not in payload:
                continue
            columns.append(_quote_identifier(field.column))
            values.append(payload[field.name])
        placeholders = ", ".join(f"${idx}" for idx in range(1, len(values) + 1))
        sql = f"INSERT INTO {self._table(info)} ({', '.join(columns)}) VALUES ({placeholders})"
        if skip_conflicts:
            sql += f" {self._conflict_clause(info)}"
        sql += f" RETURNING {self._projection(info)}"
        async with self.database.connection() as connection:
            return await connection.fetch_all(sql, values)

    def _conflict_clause(self, info: ModelInfo[Any]) -> str:
        if not info.natural_key:
            raise LookupError(f"Model {info.model.__name__} declares no natural key")
        columns = ", ".join(_quote_identifier(self._resolve_field(info, name).column) for name in info.natural_key)
        clause = f"ON CONFLICT ({columns})"
        if info.soft_delete:
            clause += f" WHERE {_quote_identifier('deleted_at')} IS NULL"
        return clause + " DO NOTHING"

    async def _select(
        self,
        info: ModelInfo[M],
        *,
        tenant_id: str | None,
        filters: Mapping[str, Any] | None,
        order_by: Sequence[str] | None,
        limit: int | None,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        where_clause, parameters = self._build_filters(
            info, self._scoped_filters(info, tenant_id, filters), include_deleted=include_deleted
        )
        sql = f"SELECT {self._projection(info)} FROM {self._table(info)}"
        if where_clause:
            sql += f" WHERE {where_clause}"
        if order_by:
            sql += f" ORDER BY {', '.join(self._order_fragment(info, part) for part in order_by)}"
        if limit is not None:
            parameters.append(limit)
            sql += f" LIMIT ${len(parameters)}"
        async with self.database.connection() as connection:
            return await connection.fetch_all(sql, parameters)

    async def _update(
        self,
        info: ModelInfo[M],
        values: Mapping[str, Any],
        *,
        tenant_id: str | None,
        filters: Mapping[str, Any] | None,
    ) -> list[dict[str, Any]]:
        if not values:
            return await self._select(info, tenant_id=tenant_id, filters=filters, order_by=None, limit=None)
        update_values = {key: value for key, value in values.items() if key not in info.virtual_fields}
        _apply_update_metadata(info, update_values)
        set_clause, parameters = self._build_set(info, update_values)
        where_clause, where_parameters = self._build_filters(
            info, self._scoped_filters(info, tenant_id, filters), start=len(parameters) + 1
        )
        parameters.extend(where_parameters)
        sql = f"UPDATE {self._table(info)} SET {set_clause}"
        if where_clause:
            sql += f" WHERE {where_clause}"
        sql += f" RETURNING {self._projection(info)}"
        async with self.database.connection() as connection:
            return await connection.fetch_all(sql, parameters)

    async def _delete(
        self,
        info: ModelInfo[M],
        *,
        tenant_id: str | None,
        filters: Mapping[str, Any] | None,
        hard: bool,
    ) -> int:
        if info.soft_delete and not hard:
            rows = await self._update(info, {"deleted_at": _utcnow()}, tenant_id=tenant_id, filters=filters)
            return len(rows)
        where_clause, parameters = self._build_filters(
            info, self._scoped_filters(info, tenant_id, filters), include_deleted=True
        )
        sql = f"DELETE FROM {self._table(info)}"
        if where_clause:
            sql += f" WHERE {where_clause}"
        sql += f" RETURNING {self._projection(info)}"
        async with self.database.connection() as connection:
            rows = await connection.fetch_all(sql, parameters)
        return len(rows)

    def _coerce_instance(self, info: ModelInfo[M], data: M | Mapping[str, Any]) -> M:
        if isinstance(data, info.model):
            return data
        return msgspec.convert(data, type=info.model)

    def _convert(self, info: ModelInfo[M], row: Mapping[str, Any]) -> M:
        return msgspec.convert(dict(row), type=info.model, strict=False)

    def _table(self, info: ModelInfo[Any]) -> str:
        return f"{_quote_identifier(self.database.config.schema)}.{_quote_identifier(info.table)}"

    def _scoped_filters(
        self,
        info: ModelInfo[Any],
        tenant_id: str | None,
        filters: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        scoped: dict[str, Any] = {}
        if info.scope == ModelScope.TENANT.value:
            scoped["tenant_id"] = _require_tenant(info, tenant_id)
        scoped.update(filters or {})
        return scoped

    def _projection(self, info: ModelInfo[Any]) -> str:
        parts: list[str] = []
        for field in info.fields:
            column = _quote_identifier(field.column)
            if field.column != field.name:
                parts.append(f"{column} AS {_quote_identifier(field.name)}")
            else:
                parts.append(column)
        return ", ".join(parts)

    def _order_fragment(self, info: ModelInfo[Any], expression: str) -> str:
        direction = "ASC"
        field_name = expression
        if expression.lower().endswith(" desc"):
            direction = "DESC"
            field_name = expression[: -len(" desc")]
        elif expression.lower().endswith(" asc"):
            field_name = expression[: -len(" asc")]
        field = self._resolve_field(info, field_name.strip())
        return f"{_quote_identifier(field.column)} {direction}"

    def _build_filters(
        self,
        info: ModelInfo[Any],
        filters: Mapping[str, Any] | None,
        *,
        start: int = 1,
        include_deleted: bool = False,
    ) -> tuple[str, list[Any]]:
        parts: list[str] = []
        parameters: list[Any] = []
        index = start
        for name, value in (filters or {}).items():
            column = _quote_identifier(self._resolve_field(info, name).column)
            if value is None:
                parts.append(f"{column} IS NULL")
                continue
            if isinstance(value, (list, tuple, set, frozenset)):
                parts.append(f"{column} = ANY(${index})")
                parameters.append(list(value))
            else:
                parts.append(f"{column} = ${index}")
                parameters.append(value)
            index += 1
        if info.soft_delete and not include_deleted and "deleted_at" not in (filters or {}):
            parts.append(f"{_quote_identifier('deleted_at')} IS NULL")
        return " AND ".join(parts), parameters

    def _build_set(self, info: ModelInfo[Any], values: Mapping[str, Any]) -> tuple[str, list[Any]]:
        parts: list[str] = []
        parameters: list[Any] = []
        for idx, (name, value) in enumerate(values.items(), start=1):
            field = self._resolve_field(info, name)
            parts.append(f"{_quote_identifier(field.column)} = ${idx}")
            parameters.append(list(value) if isinstance(value, tuple) else value)
        return ", ".join(parts), parameters

    def _resolve_field(self, info: ModelInfo[Any], name: str) -> FieldInfo:
        try:
            return info.field_map[name]
        except KeyError as exc:
            raise LookupError(f"Unknown field '{name}' for model {info.model.__name__}") from exc


class ModelManager(Generic[M]):
    """Per-model convenience wrapper exposed on :class:`ORM`."""

    def __init__(self, orm: ORM, info: ModelInfo[M]) -> None:
        self._orm = orm
        self._info = info

    @property
    def info(self) -> ModelInfo[M]:
        return self._info

    async def create(self, data: M | Mapping[str, Any], *, tenant_id: str | None = None) -> M:
        return await self._orm._insert(self._info, self._orm._coerce_instance(self._info, data), tenant_id)

    async def get_or_create(self, data: M | Mapping[str, Any], *, tenant_id: str | None = None) -> tuple[M, bool]:
        """Insert ``data`` unless a live row already holds its natural key.

        The insert uses ``ON CONFLICT ... DO NOTHING`` so concurrent callers
        converge on one row; the loser reads the winner back by key.
        """

        instance = self._orm._coerce_instance(self._info, data)
        rows = await self._orm._insert_rows(self._info, instance, tenant_id, skip_conflicts=True)
        if rows:
            return self._orm._convert(self._info, rows[0]), True
        filters = {name: getattr(instance, name) for name in self._info.natural_key if name != "tenant_id"}
        existing = await self.get(tenant_id=tenant_id, filters=filters)
        if existing is None:
            raise LookupError(f"Conflicting {self._info.table} row disappeared before it could be read")
        return existing, False

    async def get(
        self,
        *,
        tenant_id: str | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> M | None:
        rows = await self._orm._select(self._info, tenant_id=tenant_id, filters=filters, order_by=None, limit=1)
        if not rows:
            return None
        return self._orm._convert(self._info, rows[0])

    async def list(
        self,
        *,
        tenant_id: str | None = None,
        filters: Mapping[str, Any] | None = None,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[M]:
        rows = await self._orm._select(
            self._info,
            tenant_id=tenant_id,
            filters=filters,
            order_by=order_by,
            limit=limit,
        )
        return [self._orm._convert(self._info, row) for row in rows]

    async def update(
        self,
        values: Mapping[str, Any],
        *,
        tenant_id: str | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> list[M]:
        rows = await self._orm._update(self._info, values, tenant_id=tenant_id, filters=filters)
        return [self._orm._convert(self._info, row) for row in rows]

    async def delete(
        self,
        *,
        tenant_id: str | None = None,
        filters: Mapping[str, Any] | None = None,
        hard: bool = False,
    ) -> int:
        return await self._orm._delete(self._info, tenant_id=tenant_id, filters=filters, hard=hard)


class _Namespace:
    def __init__(self, orm: ORM, scope: str) -> None:
        self._orm = orm
        self._scope = scope
        self._cache: dict[str, ModelManager[Any]] = {}

    def __getattr__(self, item: str) -> ModelManager[Any]:
        if item.startswith("__"):
            raise AttributeError(item)
        try:
            return self._cache[item]
        except KeyError:
            info = self._orm.registry.get_by_accessor(self._scope, item)
            manager = ModelManager(self._orm, info)
            self._cache[item] = manager
            return manager


def _build_model_info(
    model: type[M],
    *,
    scope: str,
    table: str,
    identity: tuple[str, ...],
    accessor: str,
    virtual_fields: Sequence[str],
    natural_key: tuple[str, ...] = (),
    references: Mapping[str, str] | None = None,
) -> ModelInfo[M]:
    metadata = type_info(model)
    if not isinstance(metadata, StructType):  # pragma: no cover - msgspec ensures this
        raise TypeError(f"Model {model!r} is not a msgspec.Struct")
    annotations = get_type_hints(model, include_extras=True)
    virtual = frozenset(virtual_fields)
    known = {field.name for field in metadata.fields}
    unknown = sorted(virtual - known)
    if unknown:
        raise ValueError(f"Unknown virtual field(s) {', '.join(unknown)} for model {model.__name__}")
    fields: list[FieldInfo] = []
    field_map: dict[str, FieldInfo] = {}
    for field in metadata.fields:
        if field.name in virtual:
            continue
        default = field.default if field.default is not NODEFAULT else msgspec.UNSET
        default_factory = field.default_factory if field.default_factory is not NODEFAULT else None
        info = FieldInfo(
            name=field.name,
            column=field.encode_name,
            python_type=annotations.get(field.name, Any),
            has_default=field.required is False,
            default=default,
            default_factory=default_factory,
        )
        fields.append(info)
        field_map[field.name] = info
    if scope == ModelScope.TENANT.value and "tenant_id" not in field_map:
        raise ValueError(f"Tenant scoped model {model.__name__} must declare tenant_id")
    references = dict(references or {})
    undeclared = sorted((set(natural_key) | set(references)) - set(field_map))
    if undeclared:
        raise ValueError(f"Unknown key column(s) {', '.join(undeclared)} for model {model.__name__}")
    return ModelInfo(
        model=model,
        table=table,
        scope=scope,
        identity=identity,
        fields=tuple(fields),
        accessor=_normalize_accessor(accessor),
        field_map=field_map,
        virtual_fields=virtual,
        soft_delete="deleted_at" in field_map,
        natural_key=natural_key,
        references=references,
    )


_accessor_pattern = re.compile(r"[^a-z0-9_]+")


def _normalize_accessor(name: str) -> str:
    lowered = name.lower()
    normalized = _accessor_pattern.sub("_", lowered)
    return normalized.strip("_") or lowered


def _require_tenant(info: ModelInfo[Any], tenant_id: str | None) -> str:
    if not tenant_id:
        raise LookupError(f"tenant_id required for tenant scoped model {info.model.__name__}")
    return tenant_id


def _column_payload(instance: Any) -> dict[str, Any]:
    # Native values are kept so the driver binds TIMESTAMPTZ and array columns.
    payload = structs.asdict(instance)
    return {key: list(value) if isinstance(value, tuple) else value for key, value in payload.items()}


def _apply_insert_metadata(info: ModelInfo[Any], payload: dict[str, Any]) -> None:
    now = _utcnow()
    if "created_at" in info.field_map:
        payload["created_at"] = now
    if "updated_at" in info.field_map:
        payload["updated_at"] = payload.get("created_at", now)
    for name in info.virtual_fields:
        payload.pop(name, None)


def _apply_update_metadata(info: ModelInfo[Any], values: dict[str, Any]) -> None:
    if "updated_at" in info.field_map:
        values["updated_at"] = _utcnow()


__all__ = [
    "ORM",
    "DatabaseModel",
    "FieldInfo",
    "Model",
    "ModelInfo",
    "ModelManager",
    "ModelRegistry",
    "ModelScope",
    "TenantModel",
    "default_registry",
    "model",
]
