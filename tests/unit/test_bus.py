"""MessageBus delivery semantics."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from modweave.bus import MessageBus
from modweave.contracts import Message, MessageStatus, Priority
from modweave.config import BusConfig
from modweave.errors import (
    BusStopped,
    DeliveryFailed,
    DeliveryTimeout,
    DependencyNotSatisfied,
    ModuleUnavailable,
    TargetNotRegistered,
)
from modweave.persistence import InMemoryStore
from modweave.registry import ModuleRegistry
from modweave.transports import InMemoryTransport


@pytest.mark.asyncio
async def test_send_delivers_and_records_result(registry, bus, recorder):
    await registry.register(recorder)

    message_id = await bus.send("Recorder", "ping", {"n": 1}, priority=Priority.HIGH)
    assert await bus.drain(timeout=2)

    message = await bus.get_message(message_id)
    assert message.status is MessageStatus.DELIVERED
    assert message.attempts == 1
    assert message.result == {"pong": 1}
    assert message.priority is Priority.HIGH
    assert recorder.received == [{"n": 1}]
    await bus.stop()


@pytest.mark.asyncio
async def test_send_rejects_unknown_target_and_unmet_dependency(registry, bus, store, module_factory):
    await registry.register(module_factory("Billing"))
    await registry.register(module_factory("Inspections"))
    await registry.register(module_factory("Permits", dependencies=["Billing"]))

    with pytest.raises(TargetNotRegistered):
        await bus.send("Nowhere", "ping", {})
    with pytest.raises(DependencyNotSatisfied) as excinfo:
        await bus.send("Permits", "ping", {}, sender="Inspections")
    assert excinfo.value.to_dict()["error"] == "dependency_not_satisfied"
    # nothing was queued
    assert await store.select(MessageBus.COLLECTION) == []


@pytest.mark.asyncio
async def test_pair_fifo_with_one_delivery_in_flight(registry, bus, module_factory):
    received = []
    in_flight = {"Billing": 0, "Inspections": 0}
    peak = {"Billing": 0, "Inspections": 0}

    async def handler(payload):
        sender = payload["sender"]
        in_flight[sender] += 1
        peak[sender] = max(peak[sender], in_flight[sender])
        # later messages finish faster; FIFO must still hold
        await asyncio.sleep(0.01 * (5 - payload["n"]))
        received.append((sender, payload["n"]))
        in_flight[sender] -= 1

    await registry.register(module_factory("Billing"))
    await registry.register(module_factory("Inspections"))
    await registry.register(module_factory("Permits", handlers={"note": handler}))

    for n in range(5):
        for sender in ("Billing", "Inspections"):
            await bus.send("Permits", "note", {"sender": sender, "n": n}, sender=sender)
    assert await bus.drain(timeout=5)

    for sender in ("Billing", "Inspections"):
        assert [n for s, n in received if s == sender] == [0, 1, 2, 3, 4]
        assert peak[sender] == 1
    await bus.stop()


@pytest.mark.asyncio
async def test_transient_failures_are_retried(registry, bus, module_factory):
    calls = []

    async def flaky(payload):
        calls.append(payload)
        if len(calls) < 3:
            raise ModuleUnavailable("Payments gateway down")
        return "ok"

    await registry.register(module_factory("Payments", handlers={"charge": flaky}))
    message_id = await bus.send("Payments", "charge", {"amount": 10})
    assert await bus.drain(timeout=2)

    message = await bus.get_message(message_id)
    assert message.status is MessageStatus.DELIVERED
    assert message.attempts == 3
    assert message.result == "ok"
    await bus.stop()


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter(registry, bus, module_factory):
    async def down(payload):
        raise ModuleUnavailable("still down")

    await registry.register(module_factory("Payments", handlers={"charge": down}))
    message_id = await bus.send("Payments", "charge", {})
    assert await bus.drain(timeout=2)

    message = await bus.get_message(message_id)
    assert message.status is MessageStatus.DEAD_LETTERED
    assert message.attempts == bus.config.max_attempts
    assert message.last_error == "still down"
    assert [m.message_id for m in await bus.dead_letters()] == [message_id]
    assert await bus.failed_messages() == []
    await bus.stop()


@pytest.mark.asyncio
async def test_permanent_failures_are_not_retried(registry, bus, module_factory):
    attempts = []

    def broken(payload):
        attempts.append(payload)
        raise ValueError("bad invoice")

    await registry.register(module_factory("Payments", handlers={"charge": broken}))
    failed_id = await bus.send("Payments", "charge", {})
    unknown_id = await bus.send("Payments", "refund", {})
    assert await bus.drain(timeout=2)

    failed = await bus.get_message(failed_id)
    assert failed.status is MessageStatus.FAILED
    assert failed.attempts == 1
    assert failed.last_error == "ValueError: bad invoice"
    assert len(attempts) == 1
    assert (await bus.get_message(unknown_id)).status is MessageStatus.FAILED
    assert len(await bus.failed_messages()) == 2
    await bus.stop()


@pytest.mark.asyncio
async def test_call_returns_handler_outcome(registry, bus, recorder):
    await registry.register(recorder)
    assert await bus.call("Recorder", "ping", {"n": 7}) == {"pong": 7}
    await bus.stop()


@pytest.mark.asyncio
async def test_call_timeout_leaves_message_queued(registry, bus, module_factory):
    release = asyncio.Event()

    async def slow(payload):
        await release.wait()
        return "done"

    await registry.register(module_factory("Archive", handlers={"store": slow}))
    with pytest.raises(DeliveryTimeout) as excinfo:
        await bus.call("Archive", "store", {}, timeout=0.05)

    message_id = excinfo.value.details["message_id"]
    assert (await bus.get_message(message_id)).status is MessageStatus.QUEUED

    release.set()
    assert await bus.drain(timeout=2)
    assert (await bus.get_message(message_id)).status is MessageStatus.DELIVERED
    await bus.stop()


@pytest.mark.asyncio
async def test_call_reports_failed_delivery(registry, bus, module_factory):
    def broken(payload):
        raise RuntimeError("nope")

    await registry.register(module_factory("Archive", handlers={"store": broken}))
    with pytest.raises(DeliveryFailed) as excinfo:
        await bus.call("Archive", "store", {})
    assert excinfo.value.details["status"] == "failed"
    await bus.stop()


@pytest.mark.asyncio
async def test_broadcast_reports_each_target(registry, bus, module_factory):
    await registry.register(module_factory("Billing"))
    await registry.register(module_factory("Permits", dependencies=["Billing"]))
    await registry.register(module_factory("Reports"))
    await registry.register(module_factory("Audit", dependencies=["Permits"]))

    result = await bus.broadcast(
        "record_updated", {"id": 1}, targets=["Permits", "Reports", "Audit", "Ghost"], sender="Billing"
    )
    assert not result.succeeded
    assert result.total_sent == 4
    assert result.successful == 2
    assert result.failed_targets == ["Audit", "Ghost"]
    assert result.results["Ghost"].error["error"] == "target_not_registered"
    assert result.results["Permits"].message_id is not None
    await bus.drain(timeout=2)
    await bus.stop()


@pytest.mark.asyncio
async def test_broadcast_defaults_to_every_other_module(registry, bus, module_factory):
    for name in ("Billing", "Permits", "Reports"):
        await registry.register(module_factory(name))
    result = await bus.broadcast("maintenance", {}, sender="Billing")
    assert result.succeeded
    assert sorted(result.results) == ["Permits", "Reports"]
    await bus.drain(timeout=2)
    await bus.stop()


@pytest.mark.asyncio
async def test_reply_to_routes_outcome_back(registry, bus, module_factory):
    replies = []
    await registry.register(
        module_factory("Billing", handlers={"quote.reply": lambda payload: replies.append(payload)})
    )
    await registry.register(module_factory("Pricing", handlers={"quote": lambda payload: {"total": 42}}))

    message_id = await bus.send("Pricing", "quote", {}, sender="Billing", reply_to="Billing")
    assert await bus.drain(timeout=2)
    assert replies == [{"in_reply_to": message_id, "result": {"total": 42}}]
    await bus.stop()


@pytest.mark.asyncio
async def test_replay_dead_letter_creates_linked_message(registry, bus, module_factory):
    state = {"up": False}

    def charge(payload):
        if not state["up"]:
            raise ModuleUnavailable("down")
        return "charged"

    await registry.register(module_factory("Payments", handlers={"charge": charge}))
    original_id = await bus.send("Payments", "charge", {"amount": 5})
    assert await bus.drain(timeout=2)

    state["up"] = True
    replay_id = await bus.replay_dead_letter(original_id)
    assert await bus.drain(timeout=2)

    original = await bus.get_message(original_id)
    replay = await bus.get_message(replay_id)
    assert original.status is MessageStatus.DEAD_LETTERED
    assert replay.status is MessageStatus.DELIVERED
    assert replay.replay_of == original_id
    assert replay.payload == {"amount": 5}
    await bus.stop()


@pytest.mark.asyncio
async def test_collect_garbage_keeps_dead_letters(registry, bus, recorder, module_factory):
    def down(payload):
        raise ModuleUnavailable("down")

    await registry.register(recorder)
    await registry.register(module_factory("Payments", handlers={"charge": down}))
    delivered_id = await bus.send("Recorder", "ping", {})
    dead_id = await bus.send("Payments", "charge", {})
    assert await bus.drain(timeout=2)

    assert await bus.collect_garbage() == 0
    later = datetime.now(timezone.utc) + timedelta(seconds=bus.config.message_ttl + 1)
    assert await bus.collect_garbage(now=later) == 1
    assert await bus.get_message(delivered_id) is None
    assert (await bus.get_message(dead_id)).status is MessageStatus.DEAD_LETTERED
    await bus.stop()


@pytest.mark.asyncio
async def test_start_resumes_messages_queued_before_restart(bus_config, recorder):
    store = InMemoryStore()
    registry = ModuleRegistry(store)
    await registry.register(recorder)
    pending = Message(target="Recorder", message_type="ping", payload={"n": 3})
    await store.insert(MessageBus.COLLECTION, pending.message_id, pending.to_document())

    bus = MessageBus(registry, store, config=bus_config)
    await bus.start()
    assert await bus.drain(timeout=2)
    assert (await bus.get_message(pending.message_id)).status is MessageStatus.DELIVERED
    assert recorder.received == [{"n": 3}]
    await bus.stop()


@pytest.mark.asyncio
async def test_nested_call_does_not_starve_a_single_worker(registry, store, module_factory):
    bus = MessageBus(
        registry,
        store,
        config=BusConfig(workers=1, backoff_base=0, backoff_jitter=0, call_timeout=2),
    )

    async def orchestrate(payload):
        stock = await bus.call("Inventory", "lookup", {"sku": payload["sku"]}, sender="Permits")
        return {"outcome": "reserved", "stock": stock}

    def lookup(payload):
        return {"sku": payload["sku"], "on_hand": 3}

    await registry.register(module_factory("Inventory", handlers={"lookup": lookup}))
    await registry.register(module_factory("Permits", handlers={"orchestrate": orchestrate}))

    result = await bus.call("Permits", "orchestrate", {"sku": "PIPE-40"}, timeout=2)
    assert result == {"outcome": "reserved", "stock": {"sku": "PIPE-40", "on_hand": 3}}

    # the worker slot is back: a plain delivery still goes through
    assert await bus.call("Inventory", "lookup", {"sku": "VALVE-9"}, timeout=2) == {"sku": "VALVE-9", "on_hand": 3}
    await bus.stop()


@pytest.mark.asyncio
async def test_stopped_bus_rejects_sends_and_reports_broadcast_targets(registry, bus, module_factory):
    await registry.register(module_factory("Billing"))
    await bus.stop()

    with pytest.raises(BusStopped):
        await bus.send("Billing", "invoice_paid", {"invoice": "INV-3"})
    result = await bus.broadcast("invoice_paid", {"invoice": "INV-3"}, targets=["Billing"])
    assert not result.succeeded
    assert result.results["Billing"].error["error"] == "bus_stopped"
    assert await bus.list_messages() == []


@pytest.mark.asyncio
async def test_idle_lanes_stop_and_restart_on_demand(registry, store, recorder):
    transport = InMemoryTransport()
    bus = MessageBus(
        registry,
        store,
        transport,
        BusConfig(backoff_base=0, backoff_jitter=0, call_timeout=1, lane_idle_timeout=0.05),
    )
    await registry.register(recorder)

    assert await bus.call("Recorder", "ping", {"n": 1}) == {"pong": 1}
    assert bus.active_lanes == ["system->Recorder"]
    for _ in range(100):
        if not bus.active_lanes:
            break
        await asyncio.sleep(0.01)
    assert bus.active_lanes == []
    assert transport.topics == []

    assert await bus.call("Recorder", "ping", {"n": 2}) == {"pong": 2}
    assert recorder.received == [{"n": 1}, {"n": 2}]
    await bus.stop()


@pytest.mark.asyncio
async def test_stop_cancels_running_lanes(registry, bus, module_factory):
    release = asyncio.Event()

    async def slow(payload):
        await release.wait()

    await registry.register(module_factory("Archive", handlers={"store": slow}))
    await bus.send("Archive", "store", {"doc": 1})
    await asyncio.sleep(0)
    assert bus.active_lanes == ["system->Archive"]

    await bus.stop()
    assert bus.active_lanes == []
    assert [m.status for m in await bus.list_messages()] == [MessageStatus.QUEUED]
