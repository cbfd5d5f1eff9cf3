"""Command line utilities for presence."""

from __future__ import annotations

import argparse
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Mapping, Sequence

from .config import AppConfig
from .database import Database
from .models import Tenant
from .observability import configure_logging
from .provisioning import TenantProvisioner, load_tenant_names
from .repositories import Repositories
from .schema import create_schema, schema_statements
from .seeds import default_templates
from .storage import sql_repositories
from .tenancy import RequestContext
from .testing import memory_repositories

PROJECT_NAME = "presence"


def main(argv: Sequence[str] | None = None, *, environ: Mapping[str, str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env(environ)
    configure_logging(args.log_level or config.log_level)
    return args.func(args, config)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROJECT_NAME, description="Agent status graph management commands")
    parser.add_argument("--log-level", default=None, help="Override PRESENCE_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    provision = sub.add_parser("provision", help="Provision tenants with the built-in templates")
    provision.add_argument("tenants", nargs="+", help="Tenant names")
    provision.add_argument("--dry-run", action="store_true", help="Provision into an in-memory store")
    provision.set_defaults(func=_cmd_provision)

    seed = sub.add_parser("seed", help="Provision the tenants listed in a seed file")
    seed.add_argument("--file", default=None, help='JSON list of {"name": ...}; defaults to the default tenant')
    seed.add_argument("--dry-run", action="store_true", help="Provision into an in-memory store")
    seed.set_defaults(func=_cmd_seed)

    schema = sub.add_parser("schema", help="Create the database schema")
    schema.add_argument("--print", dest="print_only", action="store_true", help="Print the DDL instead")
    schema.set_defaults(func=_cmd_schema)
    return parser


def _cmd_provision(args: argparse.Namespace, config: AppConfig) -> int:
    tenants = asyncio.run(_provision(config, list(args.tenants), dry_run=args.dry_run))
    _report(tenants)
    return 0


def _cmd_seed(args: argparse.Namespace, config: AppConfig) -> int:
    if args.file is None:
        names = [config.default_tenant]
    else:
        path = Path(args.file)
        if not path.exists():
            raise SystemExit(f"Seed file {path} does not exist")
        names = load_tenant_names(path)
    tenants = asyncio.run(_provision(config, names, dry_run=args.dry_run))
    _report(tenants)
    return 0


def _cmd_schema(args: argparse.Namespace, config: AppConfig) -> int:
    if args.print_only:
        schema = config.database.schema if config.database is not None else "presence"
        for statement in schema_statements(schema):
            print(f"{statement};")
        return 0
    database = _require_database(config)
    count = asyncio.run(_create_schema(database))
    print(f"executed {count} statements")
    return 0


async def _provision(config: AppConfig, names: list[str], *, dry_run: bool) -> list[Tenant]:
    async with _repositories(config, dry_run=dry_run) as repositories:
        provisioner = TenantProvisioner(repositories, config)
        return await provisioner.provision_many(names, default_templates(), ctx=RequestContext())


async def _create_schema(database: Database) -> int:
    await database.startup()
    try:
        return await create_schema(database)
    finally:
        await database.shutdown()


@asynccontextmanager
async def _repositories(config: AppConfig, *, dry_run: bool) -> AsyncIterator[Repositories]:
    if dry_run:
        yield memory_repositories()
        return
    database = _require_database(config)
    await database.startup()
    try:
        yield sql_repositories(database)
    finally:
        await database.shutdown()


def _require_database(config: AppConfig) -> Database:
    if config.database is None:
        raise SystemExit("DATABASE_URL is not set")
    return Database(config.database)


def _report(tenants: Sequence[Tenant]) -> None:
    for tenant in tenants:
        print(f"provisioned {tenant.name} ({tenant.id})")


__all__ = ["PROJECT_NAME", "main"]
