"""``CREATE TABLE`` and index generation for the registered models."""

from __future__ import annotations

import datetime as dt
import enum
import inspect
import logging
import types
from typing import Annotated, Any, Iterable, Union, get_args, get_origin

import msgspec

from .database import Database, _quote_identifier
from .orm import FieldInfo, ModelInfo, ModelRegistry, ModelScope, default_registry

logger = logging.getLogger(__name__)


def build_create_table_statement(schema: str, info: ModelInfo[Any]) -> str:
    columns = [
        build_column_definition(field, references=_reference_target(schema, info, field.name))
        for field in info.fields
    ]
    identity = [_quote_identifier(info.field_map[name].column) for name in info.identity if name in info.field_map]
    if identity:
        columns.append(f"PRIMARY KEY ({', '.join(identity)})")
    column_sql = ",\n    ".join(columns)
    return f"CREATE TABLE IF NOT EXISTS {_qualified_table(schema, info.table)} (\n    {column_sql}\n)"


def build_index_statements(schema: str, info: ModelInfo[Any]) -> list[str]:
    """Unique natural key index plus a tenant lookup index, both over live rows.

    The lookup index is skipped when it is a prefix of the natural key.
    """

    statements: list[str] = []
    table = _qualified_table(schema, info.table)
    live_rows = ' WHERE "deleted_at" IS NULL' if info.soft_delete else ""
    if info.natural_key:
        key_columns = [info.field_map[name].column for name in info.natural_key]
        index_name = _quote_identifier(f"{info.table}_{'_'.join(key_columns)}_key")
        column_sql = ", ".join(_quote_identifier(column) for column in key_columns)
        nullable = any(_is_nullable(info.field_map[name]) for name in info.natural_key)
        nulls = " NULLS NOT DISTINCT" if nullable else ""
        statements.append(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {index_name} ON {table} ({column_sql}){nulls}{live_rows}"
        )
    if info.scope != ModelScope.TENANT.value:
        return statements
    columns = ["tenant_id"]
    for name in ("channel_id", "status_id", "name"):
        if name in info.field_map:
            columns.append(name)
            break
    if tuple(columns) == info.natural_key[: len(columns)]:
        return statements
    index_name = _quote_identifier(f"{info.table}_{'_'.join(columns)}_idx")
    column_sql = ", ".join(_quote_identifier(column) for column in columns)
    statements.append(f"CREATE INDEX IF NOT EXISTS {index_name} ON {table} ({column_sql}){live_rows}")
    return statements


def build_column_definition(field: FieldInfo, *, references: str | None = None) -> str:
    sql_type = sql_type_for(field.python_type)
    parts = [f"{_quote_identifier(field.column)} {sql_type}"]
    if not field.has_default:
        parts.append("NOT NULL")
    default_clause = render_default(field)
    if default_clause:
        parts.append(default_clause)
    if references:
        parts.append(f'REFERENCES {references} ("id")')
    return " ".join(parts)


def sql_type_for(python_type: Any) -> str:
    if get_origin(python_type) in {tuple, list} and _normalize_python_type(get_args(python_type)[0]) is str:
        return "TEXT[]"
    resolved = _normalize_python_type(python_type)
    if resolved is str:
        return "TEXT"
    if resolved is bool:
        return "BOOLEAN"
    if resolved is int:
        return "BIGINT"
    if resolved is float:
        return "DOUBLE PRECISION"
    if resolved is dt.datetime:
        return "TIMESTAMPTZ"
    if inspect.isclass(resolved) and issubclass(resolved, enum.Enum):
        return "TEXT"
    return "JSONB"


def _normalize_python_type(python_type: Any) -> Any:
    origin = get_origin(python_type)
    if origin is Annotated:
        return _normalize_python_type(get_args(python_type)[0])
    if origin in {Union, types.UnionType}:
        args = [arg for arg in get_args(python_type) if arg is not type(None)]
        if len(args) == 1:
            return _normalize_python_type(args[0])
        return object
    if origin is None:
        return python_type
    return origin


def render_default(field: FieldInfo) -> str:
    if field.default is msgspec.UNSET or field.default_factory is not None:
        return ""
    return f"DEFAULT {render_literal(field.default)}"


def render_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, enum.Enum):
        return render_literal(value.value)
    if isinstance(value, (tuple, list)):
        items = ",".join('"' + str(item).replace('"', '\\"') + '"' for item in value)
        return "'{" + items.replace("'", "''") + "}'"
    return "'" + str(value).replace("'", "''") + "'"


def schema_statements(schema: str, registry: ModelRegistry | None = None) -> list[str]:
    """Every statement needed to create ``schema`` and its tables, in order.

    Tables are created by name, except that a referenced table always comes
    before the tables that point at it.
    """

    registry = registry or default_registry()
    statements = [f"CREATE SCHEMA IF NOT EXISTS {_quote_identifier(schema)}"]
    infos = _creation_order(registry.models())
    for info in infos:
        statements.append(build_create_table_statement(schema, info))
    for info in infos:
        statements.extend(build_index_statements(schema, info))
    return statements


async def create_schema(database: Database, registry: ModelRegistry | None = None) -> int:
    statements = schema_statements(database.config.schema, registry)
    async with database.transaction() as connection:
        for statement in statements:
            await connection.execute(statement)
    logger.info("schema created", extra={"schema": database.config.schema, "statements": len(statements)})
    return len(statements)


def _creation_order(infos: Iterable[ModelInfo[Any]]) -> list[ModelInfo[Any]]:
    by_table = {info.table: info for info in infos}
    ordered: list[ModelInfo[Any]] = []
    placed: set[str] = set()

    def place(info: ModelInfo[Any]) -> None:
        if info.table in placed:
            return
        placed.add(info.table)
        for target in sorted(set(info.references.values())):
            if target in by_table:
                place(by_table[target])
        ordered.append(info)

    for table in sorted(by_table):
        place(by_table[table])
    return ordered


def _reference_target(schema: str, info: ModelInfo[Any], name: str) -> str | None:
    target = info.references.get(name)
    if target is None:
        return None
    return _qualified_table(schema, target)


def _is_nullable(field: FieldInfo) -> bool:
    return get_origin(field.python_type) in {Union, types.UnionType} and type(None) in get_args(field.python_type)


def _qualified_table(schema: str, table: str) -> str:
    return f"{_quote_identifier(schema)}.{_quote_identifier(table)}"


__all__ = [
    "build_column_definition",
    "build_create_table_statement",
    "build_index_statements",
    "create_schema",
    "render_literal",
    "schema_statements",
    "sql_type_for",
]
