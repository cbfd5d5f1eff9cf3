import datetime as dt

import msgspec
import pytest

from presence.models import Channel, Ponder, Status, StatusTransition, Tenant
from presence.orm import (
    ORM,
    DatabaseModel,
    ModelRegistry,
    ModelScope,
    TenantModel,
    _apply_insert_metadata,
    _apply_update_metadata,
    default_registry,
    model,
)
from tests.support import NOW, FakeConnection, fake_database, row


@pytest.mark.asyncio
async def test_tenant_model_insert_injects_tenant_and_lists() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result(
        [row(id="ch1", tenant_id="t1", name="email", label="E-mail", realtime=False, skill_group_ids=["sg-1"])]
    )

    channel = Channel(id="ch1", name="email", label="E-mail", skill_group_ids=("sg-1",))
    created = await orm.insert(Channel, channel, tenant_id="t1")

    _, sql, params, _ = connection.calls[-1]
    columns = sql.split("(", 1)[1].split(")", 1)[0].replace('"', "").split(", ")
    bound = dict(zip(columns, params))
    assert sql.startswith('INSERT INTO "presence"."channels" (')
    assert "RETURNING" in sql
    assert bound["id"] == "ch1"
    assert bound["tenant_id"] == "t1"
    assert bound["skill_group_ids"] == ["sg-1"]
    assert isinstance(bound["created_at"], dt.datetime)
    assert bound["updated_at"] == bound["created_at"]
    assert created.skill_group_ids == ("sg-1",)
    assert created.tenant_id == "t1"


@pytest.mark.asyncio
async def test_tenant_model_requires_tenant_id() -> None:
    orm = ORM(fake_database())

    with pytest.raises(LookupError):
        await orm.insert(Channel, {"name": "email"})
    with pytest.raises(LookupError):
        await orm.select(Status)


@pytest.mark.asyncio
async def test_global_model_insert_accepts_mapping() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result([row(id="t-1", name="acme")])

    tenant = await orm.insert(Tenant, {"id": "t-1", "name": "acme"})

    assert tenant.name == "acme"
    assert connection.calls[-1][1].startswith('INSERT INTO "presence"."tenants"')
    assert '"tenant_id"' not in connection.calls[-1][1]


@pytest.mark.asyncio
async def test_select_builds_scoped_filters() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result([row(id="a", tenant_id="t1", channel_id="voice", name="Available")])

    statuses = await orm.select(
        Status,
        tenant_id="t1",
        filters={"channel_id": "voice", "timer_transition_id": None, "id": ("a", "b")},
        order_by=["name desc"],
        limit=5,
    )

    _, sql, params, _ = connection.calls[-1]
    assert 'FROM "presence"."statuses"' in sql
    assert sql.endswith(
        'WHERE "tenant_id" = $1 AND "channel_id" = $2 AND "timer_transition_id" IS NULL '
        'AND "id" = ANY($3) AND "deleted_at" IS NULL ORDER BY "name" DESC LIMIT $4'
    )
    assert params == ["t1", "voice", ["a", "b"], 5]
    assert '"transition_ids"' not in sql
    assert statuses[0].name == "Available"
    assert statuses[0].transition_ids == ()
    assert statuses[0].created_at == NOW


@pytest.mark.asyncio
async def test_update_places_set_parameters_before_filters() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result([row(id="a", tenant_id="t1", channel_id="voice", name="Available", label="Ready")])

    updated = await orm.update(
        Status,
        {"label": "Ready", "transition_ids": ("b",)},
        tenant_id="t1",
        filters={"id": "a"},
    )

    _, sql, params, _ = connection.calls[-1]
    assert sql.startswith('UPDATE "presence"."statuses" SET "label" = $1, "updated_at" = $2 WHERE "tenant_id" = $3')
    assert '"id" = $4' in sql
    assert params[0] == "Ready"
    assert params[2:] == ["t1", "a"]
    assert updated[0].label == "Ready"


@pytest.mark.asyncio
async def test_delete_is_soft_for_timestamped_models() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result([row(id="a", tenant_id="t1", channel_id="voice", name="Available", deleted_at=NOW)])

    removed = await orm.delete(Status, tenant_id="t1", filters={"id": "a"})

    _, sql, params, _ = connection.calls[-1]
    assert removed == 1
    assert sql.startswith('UPDATE "presence"."statuses" SET "deleted_at" = $1')
    assert '"deleted_at" IS NULL' in sql
    assert isinstance(params[0], dt.datetime)


@pytest.mark.asyncio
async def test_delete_is_hard_for_join_rows() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result([{"tenant_id": "t1", "status_id": "a", "target_id": "b"}])

    removed = await orm.manager(StatusTransition).delete(tenant_id="t1", filters={"status_id": "a"})

    _, sql, params, _ = connection.calls[-1]
    assert removed == 1
    assert sql == (
        'DELETE FROM "presence"."status_transitions" WHERE "tenant_id" = $1 AND "status_id" = $2 '
        'RETURNING "tenant_id", "status_id", "target_id"'
    )
    assert params == ["t1", "a"]


@pytest.mark.asyncio
async def test_namespaces_expose_managers() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result([])

    assert await orm.tenants.statuses.get(tenant_id="t1", filters={"name": "Busy"}) is None
    assert orm.globals.tenants.info.model is Tenant
    assert orm.tenants.statuses is orm.tenants.statuses
    with pytest.raises(LookupError):
        orm.tenants.unknown


@pytest.mark.asyncio
async def test_get_or_create_inserts_when_key_is_free() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result([row(id="ch1", tenant_id="t1", name="voice")])

    channel, created = await orm.manager(Channel).get_or_create(Channel(id="ch1", name="voice"), tenant_id="t1")

    _, sql, _, _ = connection.calls[-1]
    assert created is True
    assert channel.id == "ch1"
    assert sql.startswith('INSERT INTO "presence"."channels" (')
    assert ') ON CONFLICT ("tenant_id", "name") WHERE "deleted_at" IS NULL DO NOTHING RETURNING ' in sql


@pytest.mark.asyncio
async def test_get_or_create_reads_back_the_row_that_won_the_insert() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))
    connection.queue_result([])
    connection.queue_result(
        [row(id="p-winner", tenant_id="t1", channel_id="voice", object="agent", name="utilization")]
    )

    ponder, created = await orm.manager(Ponder).get_or_create(
        Ponder(channel_id="voice", object="agent", name="utilization"), tenant_id="t1"
    )

    insert = next(call for call in connection.calls if call[1].startswith("INSERT"))
    _, select_sql, select_params, _ = connection.calls[-1]
    assert created is False
    assert ponder.id == "p-winner"
    assert 'ON CONFLICT ("tenant_id", "channel_id", "skill_group_id", "name")' in insert[1]
    assert select_sql.startswith("SELECT")
    assert '"skill_group_id" IS NULL' in select_sql
    assert select_params == ["t1", "voice", "utilization", 1]


@pytest.mark.asyncio
async def test_get_or_create_requires_natural_key() -> None:
    connection = FakeConnection()
    orm = ORM(fake_database(connection))

    with pytest.raises(LookupError):
        await orm.manager(StatusTransition).get_or_create(
            StatusTransition(status_id="a", target_id="b"), tenant_id="t1"
        )
    assert not [call for call in connection.calls if call[1].startswith("INSERT")]


def test_registry_records_virtual_fields() -> None:
    info = default_registry().info_for(Status)

    assert info.scope == ModelScope.TENANT.value
    assert info.soft_delete is True
    assert "transition_ids" in info.virtual_fields
    assert "transition_ids" not in info.field_map
    assert default_registry().info_for(StatusTransition).soft_delete is False


def test_model_registration_validates_declarations() -> None:
    registry = ModelRegistry()

    with pytest.raises(ValueError):

        @model(scope=ModelScope.TENANT, table="bad_virtual", registry=registry, virtual_fields=("missing",))
        class BadVirtual(TenantModel):
            name: str

    with pytest.raises(ValueError):

        @model(scope=ModelScope.TENANT, table="no_tenant", registry=registry)
        class NoTenant(DatabaseModel):
            name: str

    with pytest.raises(ValueError):

        @model(scope=ModelScope.GLOBAL, table="bad_key", registry=registry, natural_key=("missing",))
        class BadKey(DatabaseModel):
            name: str

    @model(scope=ModelScope.GLOBAL, table="widgets", registry=registry)
    class Widget(DatabaseModel):
        name: str

    with pytest.raises(ValueError):
        model(scope=ModelScope.GLOBAL, table="widgets", registry=registry)(Widget)
    assert [info.table for info in registry.models()] == ["widgets"]


def test_metadata_helpers_stamp_timestamps() -> None:
    info = default_registry().info_for(Status)
    payload = {"transition_ids": ["x"], "created_at": None}
    _apply_insert_metadata(info, payload)
    assert payload["created_at"] == payload["updated_at"]
    assert "transition_ids" not in payload

    values: dict[str, object] = {}
    _apply_update_metadata(info, values)
    assert isinstance(values["updated_at"], dt.datetime)


def test_models_generate_distinct_ids() -> None:
    first = Tenant(name="a")
    second = Tenant(name="b")

    assert first.id != second.id
    assert isinstance(msgspec.json.encode(first), bytes)
