"""Shared fixtures for modweave tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from modweave.bus import MessageBus
from modweave.config import BusConfig, WorkflowConfig
from modweave.module import DomainModule, handles
from modweave.persistence import InMemoryStore
from modweave.registry import ModuleRegistry
from modweave.shared import SharedModelRegistry
from modweave.workflow import WorkflowEngine


class FakeClock:
    """Manually advanced clock for SLA tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class Recorder(DomainModule):
    """Module that records every payload it receives."""

    name = "Recorder"

    def __init__(self) -> None:
        super().__init__()
        self.received = []

    @handles("ping")
    async def ping(self, payload):
        self.received.append(payload)
        return {"pong": payload.get("n")}


def make_module(name, dependencies=(), version="1.0.0", subscribes=(), handlers=None):
    """Build a DomainModule subclass instance on the fly."""
    module_cls = type(
        name,
        (DomainModule,),
        {
            "name": name,
            "version": version,
            "dependencies": list(dependencies),
            "subscribes": list(subscribes),
        },
    )
    module = module_cls()
    for message_type, handler in (handlers or {}).items():
        module.add_handler(message_type, handler)
    return module


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def bus_config():
    return BusConfig(max_attempts=3, backoff_base=0, backoff_jitter=0, call_timeout=1)


@pytest.fixture
def registry(store):
    return ModuleRegistry(store)


@pytest_asyncio.fixture
async def bus(registry, store, bus_config):
    bus = MessageBus(registry, store, config=bus_config)
    yield bus
    await bus.stop()


@pytest.fixture
def shared(store, registry, bus):
    return SharedModelRegistry(store, registry, bus)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(store, bus, clock):
    return WorkflowEngine(store, bus, WorkflowConfig(step_timeout=1), clock=clock)


@pytest.fixture
def module_factory():
    return make_module


@pytest.fixture
def recorder():
    return Recorder()
