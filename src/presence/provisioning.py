"""Idempotent seeding of a tenant's channel and status graph from templates.

Provisioning is create-once: when a tenant with the requested name already
exists it is returned untouched. Otherwise the tenant and its whole graph are
written inside a single transaction, stage by stage, so a failing stage
leaves nothing behind. Every row is written through ``get_or_create``, which
keys on the row's natural key (name, channel, skill group), so a retried run
or a concurrent run for the same tenant converges on the same rows.
"""

from __future__ import annotations

import logging
import pathlib
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Sequence, TypeVar

from msgspec import Struct, structs

from .config import AppConfig
from .exceptions import NotFound, ProvisioningFailure
from .graph import selector_violations
from .models import STATUS_MODEL, ActivityStatus, Channel, GlobalStatus, Ponder, Signal, Status, Tenant
from .observability import ContextLogger, bind
from .repositories import Repositories
from .serialization import json_decode
from .tenancy import RequestContext

logger = logging.getLogger(__name__)

S = TypeVar("S", Status, GlobalStatus)

STAGE_TENANT = "tenant"
STAGE_GLOBAL_STATUSES = "global_statuses"
STAGE_ACTIVITY_STATUSES = "activity_statuses"
STAGE_CHANNELS = "channels"
STAGE_CHANNEL_STATUSES = "channel_statuses"
STAGE_SIGNALS = "signals"
STAGE_PONDERS = "ponders"


class StatusTemplate(Struct, frozen=True, kw_only=True):
    """Declarative channel status; edges are nested templates resolved by name."""

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
    transitions: tuple[StatusTemplate, ...] = ()
    timer_transition: StatusTemplate | None = None


class GlobalStatusTemplate(Struct, frozen=True, kw_only=True):
    name: str
    label: str = ""
    reason: str = ""
    blocked: bool = False
    system: bool = False
    starting_status: bool = False
    timer: int = 0
    transitions: tuple[GlobalStatusTemplate, ...] = ()
    timer_transition: GlobalStatusTemplate | None = None


class ChannelTemplate(Struct, frozen=True, kw_only=True):
    """``realtime=None`` defers to :attr:`AppConfig.realtime_channels`."""

    name: str
    label: str = ""
    realtime: bool | None = None
    skill_group_ids: tuple[str, ...] = ()


class SignalTemplate(Struct, frozen=True, kw_only=True):
    service: str
    model_name: str
    action: str
    signal_name: str = ""
    status_name: str | None = None
    url: str | None = None
    enabled: bool = True


class ActivityStatusTemplate(Struct, frozen=True, kw_only=True):
    name: str
    label: str = ""
    description: str = ""


class PonderTemplate(Struct, frozen=True, kw_only=True):
    object: str
    name: str
    label: str = ""
    value: float = 0.0
    enabled: bool = True


class ProvisioningTemplates(Struct, frozen=True, kw_only=True):
    channels: tuple[ChannelTemplate, ...] = ()
    system_statuses: tuple[StatusTemplate, ...] = ()
    basic_statuses: tuple[StatusTemplate, ...] = ()
    global_statuses: tuple[GlobalStatusTemplate, ...] = ()
    signals: tuple[SignalTemplate, ...] = ()
    activity_statuses: tuple[ActivityStatusTemplate, ...] = ()
    ponders: tuple[PonderTemplate, ...] = ()


class TenantSeed(Struct, frozen=True):
    name: str


def load_tenant_names(path: str | pathlib.Path) -> list[str]:
    """Read a JSON seed file of the form ``[{"name": "acme"}, ...]``."""

    seeds = json_decode(pathlib.Path(path).read_bytes(), type=list[TenantSeed])
    return [seed.name for seed in seeds]


class TenantProvisioner:
    def __init__(self, repositories: Repositories, config: AppConfig | None = None) -> None:
        self.repositories = repositories
        self.config = config or AppConfig()

    async def provision(self, ctx: RequestContext, tenant_name: str, templates: ProvisioningTemplates) -> Tenant:
        log = bind(logger, ctx, "tenant.provision", tenant_name=tenant_name)
        repos = self.repositories
        async with repos.unit_of_work.transaction():
            async with self._stage(STAGE_TENANT, log, tenant_name):
                tenant, created = await repos.tenants.get_or_create(Tenant(name=tenant_name))
                if not created:
                    log.debug("tenant exists, skipping", extra={"tenant_id": tenant.id})
                    return tenant

            log = bind(logger, ctx.for_tenant(tenant.id), "tenant.provision", tenant_name=tenant_name)
            async with self._stage(STAGE_GLOBAL_STATUSES, log, tenant_name):
                for template in templates.global_statuses:
                    await self._seed_global_status(tenant.id, template, log)

            async with self._stage(STAGE_ACTIVITY_STATUSES, log, tenant_name):
                for activity in templates.activity_statuses:
                    await self._seed_activity_status(tenant.id, activity)

            async with self._stage(STAGE_CHANNELS, log, tenant_name):
                channels = [
                    await self._seed_channel(tenant.id, template, templates, log, tenant_name)
                    for template in templates.channels
                ]
                if channels:
                    self._report_selector_conflicts(
                        await repos.statuses.get_by_channels(tenant.id, [channel.id for channel in channels]), log
                    )

            async with self._stage(STAGE_PONDERS, log, tenant_name):
                created = await self._seed_ponders(tenant.id, templates.ponders, channels)

        log.info(
            "tenant provisioned",
            extra={"tenant_id": tenant.id, "channels": len(channels), "ponders": created},
        )
        return tenant

    async def provision_many(
        self,
        tenant_names: Iterable[str],
        templates: ProvisioningTemplates,
        *,
        ctx: RequestContext | None = None,
    ) -> list[Tenant]:
        """Provision each tenant in order, one transaction per tenant."""

        context = ctx or RequestContext()
        return [await self.provision(context, name, templates) for name in tenant_names]

    @asynccontextmanager
    async def _stage(self, stage: str, log: ContextLogger, tenant_name: str) -> AsyncIterator[None]:
        log.debug("stage started", extra={"stage": stage})
        try:
            yield
        except ProvisioningFailure:
            raise
        except Exception as exc:
            log.error("stage failed", extra={"stage": stage}, exc_info=True)
            raise ProvisioningFailure(stage, exc, tenant=tenant_name) from exc

    async def _seed_global_status(
        self, tenant_id: str, template: GlobalStatusTemplate, log: ContextLogger
    ) -> GlobalStatus:
        repo = self.repositories.global_statuses
        transition_ids = tuple(
            [(await self._seed_global_status(tenant_id, child, log)).id for child in template.transitions]
        )
        timer_target = None
        if template.timer_transition is not None:
            timer_target = await self._seed_global_status(tenant_id, template.timer_transition, log)

        status, created = await repo.get_or_create(
            tenant_id,
            GlobalStatus(
                tenant_id=tenant_id,
                name=template.name,
                label=template.label,
                reason=template.reason,
                blocked=template.blocked,
                system=template.system,
                starting_status=template.starting_status,
                timer=template.timer,
            ),
        )
        if created:
            log.debug("global status created", extra={"status_name": template.name})
        return await self._attach_edges(repo, tenant_id, status, transition_ids, timer_target)

    async def _seed_channel_status(
        self, tenant_id: str, channel: Channel, template: StatusTemplate, log: ContextLogger
    ) -> Status:
        repo = self.repositories.statuses
        transition_ids = tuple(
            [(await self._seed_channel_status(tenant_id, channel, child, log)).id for child in template.transitions]
        )
        timer_target = None
        if template.timer_transition is not None:
            timer_target = await self._seed_channel_status(tenant_id, channel, template.timer_transition, log)

        status, created = await repo.get_or_create(
            tenant_id,
            Status(
                tenant_id=tenant_id,
                channel_id=channel.id,
                name=template.name,
                label=template.label,
                reason=template.reason,
                blocked=template.blocked,
                system=template.system,
                starting_status=template.starting_status,
                on_reject=template.on_reject,
                on_timeout=template.on_timeout,
                default_blocked=template.default_blocked,
                default_unblocked=template.default_unblocked,
                timer=template.timer,
            ),
        )
        if created:
            log.debug("status created", extra={"status_name": template.name, "channel_id": channel.id})
        return await self._attach_edges(repo, tenant_id, status, transition_ids, timer_target)

    async def _attach_edges(
        self,
        repo: Any,
        tenant_id: str,
        status: S,
        transition_ids: tuple[str, ...],
        timer_target: Status | GlobalStatus | None,
    ) -> S:
        # Edges declared by the template replace stored ones; undeclared edges are kept.
        changes: dict[str, Any] = {}
        if transition_ids:
            changes["transition_ids"] = transition_ids
        if timer_target is not None:
            changes["timer_transition_id"] = timer_target.id
        if not changes:
            return status
        return await repo.update(tenant_id, structs.replace(status, **changes))

    async def _seed_activity_status(self, tenant_id: str, template: ActivityStatusTemplate) -> ActivityStatus:
        repo = self.repositories.activity_statuses
        status, _ = await repo.get_or_create(
            tenant_id,
            ActivityStatus(
                tenant_id=tenant_id, name=template.name, label=template.label, description=template.description
            ),
        )
        return status

    async def _seed_channel(
        self,
        tenant_id: str,
        template: ChannelTemplate,
        templates: ProvisioningTemplates,
        log: ContextLogger,
        tenant_name: str,
    ) -> Channel:
        repo = self.repositories.channels
        realtime = template.realtime
        if realtime is None:
            realtime = self.config.is_realtime(template.name)
        channel, created = await repo.get_or_create(
            tenant_id,
            Channel(
                tenant_id=tenant_id,
                name=template.name,
                label=template.label,
                realtime=realtime,
                skill_group_ids=tuple(template.skill_group_ids),
            ),
        )
        if not created:
            log.debug("channel exists, skipping", extra={"channel_id": channel.id})
            return channel
        log.debug("channel created", extra={"channel_id": channel.id, "realtime": realtime})

        async with self._stage(STAGE_CHANNEL_STATUSES, log, tenant_name):
            statuses = templates.system_statuses if realtime else templates.basic_statuses
            for status_template in statuses:
                await self._seed_channel_status(tenant_id, channel, status_template, log)

        if realtime:
            async with self._stage(STAGE_SIGNALS, log, tenant_name):
                for signal_template in templates.signals:
                    await self._seed_signal(tenant_id, channel, signal_template)
        return channel

    async def _seed_signal(self, tenant_id: str, channel: Channel, template: SignalTemplate) -> Signal:
        repo = self.repositories.signals
        existing = await repo.get_by_service_model_action_and_channel(
            tenant_id, template.service, template.model_name, template.action, channel.id
        )
        if existing is not None:
            return existing

        status_id = None
        if template.status_name is not None:
            status = await self.repositories.statuses.get_by_name_and_channel(
                tenant_id, template.status_name, channel.id
            )
            if status is None:
                raise NotFound(
                    f"signal status '{template.status_name}' not found in channel {channel.name}",
                    field="status_name",
                    entity=STATUS_MODEL,
                )
            status_id = status.id
        signal, _ = await repo.get_or_create(
            tenant_id,
            Signal(
                tenant_id=tenant_id,
                channel_id=channel.id,
                service=template.service,
                model_name=template.model_name,
                action=template.action,
                signal_name=template.signal_name,
                status_id=status_id,
                url=template.url,
                enabled=template.enabled,
            ),
        )
        return signal

    async def _seed_ponders(
        self, tenant_id: str, templates: Sequence[PonderTemplate], channels: Sequence[Channel]
    ) -> int:
        created = 0
        for template in templates:
            for channel in channels:
                created += await self._seed_ponder(tenant_id, channel, None, template, template.enabled)
                for skill_group_id in channel.skill_group_ids:
                    created += await self._seed_ponder(tenant_id, channel, skill_group_id, template, False)
        return created

    async def _seed_ponder(
        self,
        tenant_id: str,
        channel: Channel,
        skill_group_id: str | None,
        template: PonderTemplate,
        enabled: bool,
    ) -> int:
        _, created = await self.repositories.ponders.get_or_create(
            tenant_id,
            Ponder(
                tenant_id=tenant_id,
                channel_id=channel.id,
                skill_group_id=skill_group_id,
                object=template.object,
                name=template.name,
                label=template.label,
                value=template.value,
                enabled=enabled,
            ),
        )
        return int(created)

    def _report_selector_conflicts(self, statuses: Sequence[Status], log: ContextLogger) -> None:
        for (channel_id, selector), ids in selector_violations(statuses).items():
            log.warning(
                "selector held by several statuses",
                extra={"channel_id": channel_id, "selector": selector.value, "status_ids": ",".join(ids)},
            )


__all__ = [
    "ActivityStatusTemplate",
    "ChannelTemplate",
    "GlobalStatusTemplate",
    "PonderTemplate",
    "ProvisioningTemplates",
    "STAGE_ACTIVITY_STATUSES",
    "STAGE_CHANNELS",
    "STAGE_CHANNEL_STATUSES",
    "STAGE_GLOBAL_STATUSES",
    "STAGE_PONDERS",
    "STAGE_SIGNALS",
    "STAGE_TENANT",
    "SignalTemplate",
    "StatusTemplate",
    "TenantProvisioner",
    "TenantSeed",
    "load_tenant_names",
]
