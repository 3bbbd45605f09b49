"""Shared model schemas, validation and versioned records."""

import pytest

from modweave.contracts import MessageStatus
from modweave.errors import (
    ConflictError,
    DuplicateName,
    ModelNotFound,
    RecordNotFound,
    ValidationError,
)
from modweave.shared import (
    FieldSpec,
    RecordStatus,
    SharedModelRegistry,
    check_value,
    default_models,
    install_default_models,
)

PAYMENT_FIELDS = {
    "reference_number": {"type": "string", "required": True},
    "amount": {"type": "float", "required": True},
    "payment_date": {"type": "date"},
    "payer_email": {"type": "email"},
    "installments": {"type": "integer"},
    "refunded": {"type": "boolean"},
    "meta": {"type": "json"},
}


@pytest.mark.parametrize(
    "kind,value,ok",
    [
        ("string", "abc", True),
        ("string", 5, False),
        ("integer", 5, True),
        ("integer", "12", True),
        ("integer", "1.5", False),
        ("integer", True, False),
        ("float", 2, True),
        ("float", 2.5, True),
        ("float", "2.5", False),
        ("boolean", False, True),
        ("boolean", "yes", False),
        ("date", "2026-03-01", True),
        ("date", "2026-03-01T10:00:00Z", True),
        ("date", "next tuesday", False),
        ("email", "a.b@example.org", True),
        ("email", "not-an-email", False),
        ("geojson", {"anything": ["goes"]}, True),
    ],
)
def test_field_type_checks(kind, value, ok):
    assert check_value(value, FieldSpec(type=kind)) is ok


@pytest.mark.asyncio
async def test_define_model_once(shared):
    schema = await shared.define_model("payment", PAYMENT_FIELDS, owner="Billing")
    assert schema.required_fields == ["reference_number", "amount"]
    assert not schema.fields["meta"].known
    assert (await shared.get_model("payment")).owner == "Billing"

    with pytest.raises(DuplicateName):
        await shared.define_model("payment", {})
    with pytest.raises(ModelNotFound):
        await shared.get_model("invoice")


@pytest.mark.asyncio
async def test_create_validates_and_starts_at_version_one(shared):
    await shared.define_model("payment", PAYMENT_FIELDS)

    with pytest.raises(ValidationError) as excinfo:
        await shared.create("payment", {"amount": "ten", "payer_email": "nope"})
    errors = excinfo.value.errors
    assert "Required field 'reference_number' is missing" in errors
    assert any("amount" in e for e in errors)
    assert any("payer_email" in e for e in errors)
    assert await shared.list_records("payment") == []

    record = await shared.create(
        "payment", {"reference_number": "R-1", "amount": 10, "meta": {"source": "counter"}}, actor="clerk"
    )
    assert record.version == 1
    assert record.id.startswith("PAYMENT_")
    assert record.created_by == "clerk"
    assert (await shared.get("payment", record.id)).data["amount"] == 10


@pytest.mark.asyncio
async def test_update_merges_and_bumps_version(shared):
    await shared.define_model("payment", PAYMENT_FIELDS)
    record = await shared.create("payment", {"reference_number": "R-1", "amount": 10})

    updated = await shared.update("payment", record.id, {"refunded": True}, expected_version=1, actor="clerk")
    assert updated.version == 2
    assert updated.data == {"reference_number": "R-1", "amount": 10, "refunded": True}
    assert updated.updated_by == "clerk"


@pytest.mark.asyncio
async def test_stale_version_conflicts(shared):
    await shared.define_model("payment", PAYMENT_FIELDS)
    record = await shared.create("payment", {"reference_number": "R-1", "amount": 10})
    await shared.update("payment", record.id, {"amount": 12}, expected_version=1)

    with pytest.raises(ConflictError) as excinfo:
        await shared.update("payment", record.id, {"amount": 99}, expected_version=1)
    assert excinfo.value.details["actual_version"] == 2
    stored = await shared.get("payment", record.id)
    assert stored.data["amount"] == 12
    assert stored.version == 2


@pytest.mark.asyncio
async def test_invalid_update_leaves_record_untouched(shared):
    await shared.define_model("payment", PAYMENT_FIELDS)
    record = await shared.create("payment", {"reference_number": "R-1", "amount": 10})

    with pytest.raises(ValidationError):
        await shared.update("payment", record.id, {"installments": "many"}, expected_version=1)
    assert (await shared.get("payment", record.id)).version == 1


@pytest.mark.asyncio
async def test_archive_is_a_versioned_soft_delete(shared):
    await shared.define_model("payment", PAYMENT_FIELDS)
    record = await shared.create("payment", {"reference_number": "R-1", "amount": 10})

    archived = await shared.archive("payment", record.id, expected_version=1)
    assert archived.status is RecordStatus.ARCHIVED
    assert archived.version == 2
    assert await shared.list_records("payment", status=RecordStatus.ACTIVE) == []
    with pytest.raises(ValidationError):
        await shared.update("payment", record.id, {"amount": 1}, expected_version=2)
    with pytest.raises(RecordNotFound):
        await shared.get("payment", "PAYMENT_missing")


@pytest.mark.asyncio
async def test_writes_notify_dependents(registry, bus, shared, module_factory):
    events = []
    await registry.register(module_factory("Billing"))
    await registry.register(
        module_factory(
            "Reports",
            subscribes=["payment"],
            handlers={
                "record_created": lambda p: events.append(("created", p["record"]["version"])),
                "record_updated": lambda p: events.append(("updated", p["record"]["version"])),
            },
        )
    )
    await registry.register(module_factory("Permits", dependencies=["Billing"]))
    await registry.register(module_factory("Unrelated"))
    await shared.define_model("payment", PAYMENT_FIELDS, owner="Billing")

    record = await shared.create("payment", {"reference_number": "R-1", "amount": 10})
    await shared.update("payment", record.id, {"amount": 11}, expected_version=1)
    assert await bus.drain(timeout=2)

    assert events == [("created", 1), ("updated", 2)]
    targets = {m.target for m in await bus.list_messages()}
    assert targets == {"Reports", "Permits"}
    await bus.stop()


@pytest.mark.asyncio
async def test_failed_notification_does_not_undo_write(registry, bus, shared, module_factory):
    def broken(payload):
        raise RuntimeError("cannot index")

    await registry.register(module_factory("Reports", subscribes=["payment"], handlers={"record_created": broken}))
    await shared.define_model("payment", PAYMENT_FIELDS)

    record = await shared.create("payment", {"reference_number": "R-1", "amount": 10})
    assert await bus.drain(timeout=2)

    assert (await shared.get("payment", record.id)).version == 1
    assert [m.status for m in await bus.list_messages()] == [MessageStatus.FAILED]
    await bus.stop()


@pytest.mark.asyncio
async def test_writes_succeed_while_the_bus_is_stopped(registry, bus, shared, module_factory):
    await registry.register(module_factory("Reports", subscribes=["payment"]))
    await shared.define_model("payment", PAYMENT_FIELDS)
    await bus.stop()

    record = await shared.create("payment", {"reference_number": "R-2", "amount": 10})
    updated = await shared.update("payment", record.id, {"amount": 12}, expected_version=1)

    assert updated.version == 2
    assert (await shared.get("payment", record.id)).data["amount"] == 12
    assert await bus.list_messages() == []


@pytest.mark.asyncio
async def test_install_default_models(store, registry):
    shared = SharedModelRegistry(store, registry)
    assert sorted(default_models()) == ["application", "payment", "user"]

    assert sorted(await install_default_models(shared)) == ["application", "payment", "user"]
    assert await install_default_models(shared) == []

    user = await shared.create(
        "user",
        {
            "username": "jdoe",
            "email": "jdoe@example.org",
            "first_name": "Jo",
            "last_name": "Doe",
            "status": "active",
        },
    )
    assert user.version == 1
    schema = await shared.get_model("application")
    assert schema.relationships["user"].type == "belongs_to"
