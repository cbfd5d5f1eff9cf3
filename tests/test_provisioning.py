from __future__ import annotations

import json
import pathlib

import pytest
from msgspec import structs

from presence.config import AppConfig
from presence.exceptions import NotFound, PersistFailure, ProvisioningFailure
from presence.graph import selector_violations
from presence.models import Channel, Ponder
from presence.provisioning import (
    ActivityStatusTemplate,
    ChannelTemplate,
    GlobalStatusTemplate,
    PonderTemplate,
    ProvisioningTemplates,
    SignalTemplate,
    StatusTemplate,
    TenantProvisioner,
    load_tenant_names,
)
from presence.seeds import default_templates
from presence.storage import sql_repositories
from presence.tenancy import RequestContext
from presence.testing import InMemoryStore, memory_repositories
from tests.support import FakeConnection, fake_database, row, voice_templates


def _provisioner(store: InMemoryStore, config: AppConfig | None = None) -> TenantProvisioner:
    return TenantProvisioner(memory_repositories(store), config)


def _counts(store: InMemoryStore) -> dict[str, int]:
    return {name: len(store.rows(name)) for name in sorted(store.tables)}


@pytest.mark.asyncio
async def test_provision_voice_channel_end_to_end() -> None:
    store = InMemoryStore()
    provisioner = _provisioner(store)

    tenant = await provisioner.provision(RequestContext(), "t1", voice_templates())

    statuses = {status.name: status for status in store.rows("status")}
    assert tenant.name == "t1"
    assert set(statuses) == {"Available", "Busy"}
    assert statuses["Available"].starting_status is True
    assert statuses["Busy"].timer == 60
    assert statuses["Busy"].timer_transition_id == statuses["Available"].id
    assert {status.tenant_id for status in statuses.values()} == {tenant.id}

    before = _counts(store)
    again = await provisioner.provision(RequestContext(), "t1", voice_templates())

    assert again.id == tenant.id
    assert _counts(store) == before


@pytest.mark.asyncio
async def test_provision_is_idempotent_for_default_templates() -> None:
    store = InMemoryStore()
    provisioner = _provisioner(store)

    await provisioner.provision(RequestContext(), "acme", default_templates())
    before = _counts(store)
    writes = len(store.writes)
    await provisioner.provision(RequestContext(), "acme", default_templates())

    assert [tenant.name for tenant in store.rows("tenant")] == ["acme"]
    assert _counts(store) == before
    assert len(store.writes) == writes


@pytest.mark.asyncio
async def test_global_timer_target_is_seeded_first() -> None:
    store = InMemoryStore()
    offline = GlobalStatusTemplate(name="offline", blocked=True)
    templates = ProvisioningTemplates(
        global_statuses=(GlobalStatusTemplate(name="away", timer=900, timer_transition=offline),)
    )

    await _provisioner(store).provision(RequestContext(), "acme", templates)

    writes = [(operation, model) for operation, model, _ in store.writes if model == "global_status"]
    assert writes == [
        ("persisting", "global_status"),
        ("persisting", "global_status"),
        ("updating", "global_status"),
    ]
    rows = {status.name: status for status in store.rows("global_status")}
    assert rows["away"].timer_transition_id == rows["offline"].id
    assert rows["offline"].timer_transition_id is None


@pytest.mark.asyncio
async def test_nested_transitions_resolve_by_name() -> None:
    store = InMemoryStore()
    available = StatusTemplate(name="available", starting_status=True)
    offline = StatusTemplate(name="offline", blocked=True)
    on_break = StatusTemplate(name="break", blocked=True, transitions=(available, offline))
    templates = ProvisioningTemplates(
        channels=(ChannelTemplate(name="email", realtime=False),),
        basic_statuses=(
            available,
            on_break,
            StatusTemplate(name="available", starting_status=True, transitions=(on_break, offline)),
        ),
    )

    await _provisioner(store).provision(RequestContext(), "acme", templates)

    rows = {status.name: status for status in store.rows("status")}
    assert len(store.rows("status")) == 3
    assert rows["break"].transition_ids == (rows["available"].id, rows["offline"].id)
    assert rows["available"].transition_ids == (rows["break"].id, rows["offline"].id)
    assert selector_violations(store.rows("status")) == {}


@pytest.mark.asyncio
async def test_realtime_channels_get_system_statuses_and_signals() -> None:
    store = InMemoryStore()
    templates = ProvisioningTemplates(
        channels=(ChannelTemplate(name="telephone"), ChannelTemplate(name="email")),
        system_statuses=(StatusTemplate(name="available"), StatusTemplate(name="missed", on_reject=True)),
        basic_statuses=(StatusTemplate(name="available"),),
        signals=(
            SignalTemplate(service="sip_service", model_name="connection", action="failed", status_name="missed"),
        ),
    )

    await _provisioner(store, AppConfig(realtime_channels=("telephone",))).provision(
        RequestContext(), "acme", templates
    )

    channels = {channel.name: channel for channel in store.rows("channel")}
    assert channels["telephone"].realtime is True
    assert channels["email"].realtime is False
    by_channel = {
        name: sorted(status.name for status in store.rows("status") if status.channel_id == channel.id)
        for name, channel in channels.items()
    }
    assert by_channel == {"telephone": ["available", "missed"], "email": ["available"]}
    signals = store.rows("signal")
    assert len(signals) == 1
    assert signals[0].channel_id == channels["telephone"].id
    missed = next(status for status in store.rows("status") if status.name == "missed")
    assert signals[0].status_id == missed.id


@pytest.mark.asyncio
async def test_missing_signal_status_aborts_and_rolls_back() -> None:
    store = InMemoryStore()
    templates = ProvisioningTemplates(
        channels=(ChannelTemplate(name="telephone", realtime=True),),
        system_statuses=(StatusTemplate(name="available"),),
        signals=(SignalTemplate(service="sip", model_name="connection", action="ringing", status_name="ringing"),),
    )

    with pytest.raises(ProvisioningFailure) as excinfo:
        await _provisioner(store).provision(RequestContext(), "acme", templates)

    assert excinfo.value.stage == "signals"
    assert isinstance(excinfo.value.cause, NotFound)
    assert excinfo.value.to_dict()["cause"]["kind"] == "not_found"
    assert store.rows("tenant") == []
    assert store.rows("channel") == []
    assert store.rollbacks == 1


@pytest.mark.asyncio
async def test_persist_failure_reports_stage() -> None:
    store = InMemoryStore()
    store.fail("persisting", "activity_status")
    templates = ProvisioningTemplates(activity_statuses=(ActivityStatusTemplate(name="queued"),))

    with pytest.raises(ProvisioningFailure) as excinfo:
        await _provisioner(store).provision(RequestContext(), "acme", templates)

    assert excinfo.value.stage == "activity_statuses"
    assert isinstance(excinfo.value.cause, PersistFailure)
    assert "activity_statuses" in excinfo.value.message

    tenant = await _provisioner(store).provision(RequestContext(), "acme", templates)
    assert [row.tenant_id for row in store.rows("activity_status")] == [tenant.id]


@pytest.mark.asyncio
async def test_ponders_cover_channels_and_skill_groups() -> None:
    store = InMemoryStore()
    templates = ProvisioningTemplates(
        channels=(
            ChannelTemplate(name="email", realtime=False, skill_group_ids=("sg-1", "sg-2")),
            ChannelTemplate(name="sms", realtime=False),
        ),
        ponders=(
            PonderTemplate(object="agent", name="utilization", value=1.0),
            PonderTemplate(object="agent", name="skill_level", value=0.5, enabled=False),
        ),
    )

    await _provisioner(store).provision(RequestContext(), "acme", templates)

    ponders = store.rows("ponder")
    assert len(ponders) == 2 * (3 + 1)
    keys = {(ponder.channel_id, ponder.skill_group_id, ponder.name) for ponder in ponders}
    assert len(keys) == len(ponders)
    skill_group_rows = [ponder for ponder in ponders if ponder.skill_group_id is not None]
    assert skill_group_rows and all(ponder.enabled is False for ponder in skill_group_rows)
    channel_rows = {ponder.name: ponder.enabled for ponder in ponders if ponder.skill_group_id is None}
    assert channel_rows == {"utilization": True, "skill_level": False}


@pytest.mark.asyncio
async def test_duplicate_ponder_templates_are_not_duplicated() -> None:
    store = InMemoryStore()
    ponder = PonderTemplate(object="agent", name="utilization")
    templates = ProvisioningTemplates(
        channels=(ChannelTemplate(name="email", realtime=False),),
        ponders=(ponder, ponder),
    )

    await _provisioner(store).provision(RequestContext(), "acme", templates)

    assert len(store.rows("ponder")) == 1


@pytest.mark.asyncio
async def test_default_templates_seed_consistent_graph() -> None:
    store = InMemoryStore()

    tenant = await _provisioner(store).provision(RequestContext(), "default", default_templates())

    channels = {channel.name: channel for channel in store.rows("channel")}
    assert set(channels) == {"telephone", "video-chat", "asseco-chat", "email", "sms"}
    assert {name for name, channel in channels.items() if channel.realtime} == {
        "telephone",
        "video-chat",
        "asseco-chat",
    }
    statuses = store.rows("status")
    assert selector_violations(statuses) == {}
    ids = {status.id for status in statuses}
    for status in statuses:
        assert status.tenant_id == tenant.id
        assert set(status.transition_ids) <= ids
        assert status.timer_transition_id is None or status.timer_transition_id in ids
    for signal in store.rows("signal"):
        assert signal.status_id is None or signal.status_id in ids
    assert len(store.rows("global_status")) == 3
    assert len(store.rows("activity_status")) == 4


@pytest.mark.asyncio
async def test_provision_many_and_seed_file(tmp_path: pathlib.Path) -> None:
    seed_file = tmp_path / "tenants.json"
    seed_file.write_text(json.dumps([{"name": "acme"}, {"name": "globex"}]), encoding="utf-8")
    store = InMemoryStore()

    names = load_tenant_names(seed_file)
    tenants = await _provisioner(store).provision_many(names, voice_templates())

    assert names == ["acme", "globex"]
    assert [tenant.name for tenant in tenants] == ["acme", "globex"]
    assert len(store.rows("status")) == 4
    assert store.commits == 2


@pytest.mark.asyncio
async def test_provision_adopts_tenant_created_by_concurrent_run() -> None:
    connection = FakeConnection()
    provisioner = TenantProvisioner(sql_repositories(fake_database(connection)))
    connection.queue_result([])
    connection.queue_result([row(id="t-winner", name="acme")])

    tenant = await provisioner.provision(RequestContext(), "acme", voice_templates())

    queries = [statement for statement in connection.statements if not statement.startswith("SET ")]
    assert tenant.id == "t-winner"
    assert queries[0] == "BEGIN"
    assert queries[1].startswith('INSERT INTO "presence"."tenants"')
    assert 'ON CONFLICT ("name") WHERE "deleted_at" IS NULL DO NOTHING' in queries[1]
    assert queries[2].startswith("SELECT ")
    assert 'FROM "presence"."tenants" WHERE "name" = $1' in queries[2]
    assert queries[3:] == ["COMMIT"]


@pytest.mark.asyncio
async def test_memory_repositories_honour_natural_keys() -> None:
    repositories = memory_repositories(InMemoryStore())

    first, created = await repositories.channels.get_or_create("t1", Channel(name="voice"))
    again, created_again = await repositories.channels.get_or_create("t1", Channel(name="voice", label="Voice"))
    other, created_other = await repositories.channels.get_or_create("t2", Channel(name="voice"))

    assert (created, created_again, created_other) == (True, False, True)
    assert again == first
    assert other.id != first.id
    with pytest.raises(PersistFailure):
        await repositories.channels.persist("t1", Channel(name="voice"))

    ponder = Ponder(channel_id=first.id, object="agent", name="utilization")
    _, ponder_created = await repositories.ponders.get_or_create("t1", ponder)
    _, ponder_again = await repositories.ponders.get_or_create("t1", structs.replace(ponder, id="p-2"))
    assert (ponder_created, ponder_again) == (True, False)
