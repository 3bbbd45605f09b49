"""ModuleRegistry behaviour."""

import pytest

from modweave.errors import DependencyUnmet, DuplicateName, ModuleNotFound, RegistrationError
from modweave.registry import ModuleRegistry, ModuleStatus


@pytest.mark.asyncio
async def test_register_and_lookup(registry, module_factory):
    billing = module_factory("Billing", version="1.2.0")
    descriptor = await registry.register(billing)

    assert descriptor.name == "Billing"
    assert await registry.is_registered("Billing")
    assert registry.implementation("Billing") is billing
    assert str(await registry.version_of("Billing")) == "1.2.0"
    assert await registry.module_names() == ["Billing"]


@pytest.mark.asyncio
async def test_duplicate_name_is_rejected(registry, module_factory):
    await registry.register(module_factory("Billing"))
    with pytest.raises(DuplicateName):
        await registry.register(module_factory("Billing", version="2.0"))
    assert str(await registry.version_of("Billing")) == "1.0.0"


@pytest.mark.asyncio
async def test_missing_or_incompatible_dependency(registry, module_factory):
    with pytest.raises(DependencyUnmet) as excinfo:
        await registry.register(module_factory("Permits", dependencies=["Billing"]))
    assert "Billing is not registered" in excinfo.value.details["problems"]
    assert not await registry.is_registered("Permits")

    await registry.register(module_factory("Billing", version="1.0"))
    with pytest.raises(DependencyUnmet):
        await registry.register(module_factory("Permits", dependencies=["Billing>=2.0"]))

    await registry.register(module_factory("Permits", dependencies=["Billing^1.0"]))
    assert await registry.is_registered("Permits")


@pytest.mark.asyncio
async def test_dependency_check_for_messages(store, module_factory):
    registry = ModuleRegistry(store)
    await registry.register(module_factory("Billing"))
    await registry.register(module_factory("Inspections"))
    await registry.register(module_factory("Permits", dependencies=["Billing"]))

    assert await registry.check_dependency_satisfied("Permits", "Billing")
    assert not await registry.check_dependency_satisfied("Permits", "Inspections")
    # system-originated messages are always allowed
    assert await registry.check_dependency_satisfied("Permits", None)
    # empty dependency list is permissive by default
    assert await registry.check_dependency_satisfied("Billing", "Inspections")
    assert not await registry.check_dependency_satisfied("Unknown", "Billing")


@pytest.mark.asyncio
async def test_strict_dependencies_close_empty_lists(store, module_factory):
    registry = ModuleRegistry(store, strict_dependencies=True)
    await registry.register(module_factory("Billing"))
    assert not await registry.check_dependency_satisfied("Billing", "Inspections")
    assert await registry.check_dependency_satisfied("Billing", None)


@pytest.mark.asyncio
async def test_dependents_include_model_subscribers(registry, module_factory):
    await registry.register(module_factory("Billing"))
    await registry.register(module_factory("Permits", dependencies=["Billing"]))
    await registry.register(module_factory("Reports", subscribes=["payment"]))

    assert await registry.get_dependents("Billing") == ["Permits"]
    assert await registry.get_dependents("payment") == ["Reports"]


@pytest.mark.asyncio
async def test_unregister_refuses_while_depended_on(registry, module_factory):
    await registry.register(module_factory("Billing"))
    await registry.register(module_factory("Permits", dependencies=["Billing"]))

    with pytest.raises(RegistrationError):
        await registry.unregister("Billing")
    await registry.unregister("Permits")
    await registry.unregister("Billing")
    assert await registry.list_modules() == []
    with pytest.raises(ModuleNotFound):
        await registry.unregister("Billing")


@pytest.mark.asyncio
async def test_needs_intervention_flag(registry, module_factory):
    await registry.register(module_factory("Billing"))
    await registry.mark_needs_intervention("Billing", "rollback incomplete")

    descriptor = await registry.require("Billing")
    assert descriptor.status is ModuleStatus.NEEDS_INTERVENTION
    assert descriptor.status_reason == "rollback incomplete"

    await registry.clear_intervention("Billing")
    assert (await registry.require("Billing")).status is ModuleStatus.REGISTERED
