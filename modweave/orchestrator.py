"""Explicitly constructed orchestration context."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from .bus import MessageBus
from .catalog import ModuleCatalog, default_catalog_entries
from .config import ModweaveConfig, load_config
from .contracts import Message
from .migrations import MigrationManager, MigrationRun
from .persistence import Store, get_store
from .registry import ModuleDescriptor, ModuleRegistry, ModuleStatus
from .shared import SharedModelRegistry
from .transports import BaseTransport, get_transport
from .workflow import InstanceStatus, WorkflowEngine, WorkflowInstance

logger = logging.getLogger(__name__)


class OperatorReport(BaseModel):
    """Everything that needs an operator, one list per kind of problem."""

    dead_letters: List[Message] = Field(default_factory=list)
    failed_messages: List[Message] = Field(default_factory=list)
    failed_migrations: List[MigrationRun] = Field(default_factory=list)
    overdue_instances: List[WorkflowInstance] = Field(default_factory=list)
    modules_needing_intervention: List[ModuleDescriptor] = Field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (
            self.dead_letters
            or self.failed_messages
            or self.failed_migrations
            or self.overdue_instances
            or self.modules_needing_intervention
        )


class Orchestrator:
    """Owns the store, transport and the five orchestration components.

    Nothing here is global: build one per process (or per test) and pass it
    to whatever needs it.
    """

    def __init__(
        self,
        store: Store,
        transport: Optional[BaseTransport] = None,
        config: Optional[ModweaveConfig] = None,
    ) -> None:
        self.config = config or ModweaveConfig()
        self.store = store
        self.transport = transport or get_transport("inmemory", self.config)
        self.registry = ModuleRegistry(store, strict_dependencies=self.config.bus.strict_dependencies)
        self.bus = MessageBus(self.registry, store, self.transport, self.config.bus)
        self.shared = SharedModelRegistry(store, self.registry, self.bus)
        self.workflows = WorkflowEngine(store, self.bus, self.config.workflow)
        self.migrations = MigrationManager(store, self.registry)
        self.catalog = ModuleCatalog(self.registry, default_catalog_entries(), self.migrations)
        self._started = False

    @classmethod
    def from_config(
        cls, config: Optional[ModweaveConfig] = None, path: Optional[str] = None
    ) -> "Orchestrator":
        config = config or load_config(path)
        return cls(
            get_store(config.database_url, config),
            get_transport(config.transport.backend, config),
            config,
        )

    async def start(self, sweep: bool = True) -> None:
        """Connect backends, resume queued deliveries and start the SLA sweep."""
        await self.store.connect()
        await self.bus.start()
        if sweep:
            await self.workflows.start()
        self._started = True
        logger.info("Orchestrator started")

    async def shutdown(self, drain_timeout: Optional[float] = 10.0) -> None:
        """Drain in-flight deliveries, then stop everything in reverse order."""
        if not await self.bus.drain(drain_timeout):
            logger.warning(f"Bus did not drain within {drain_timeout}s; queued messages resume on restart")
        await self.workflows.stop()
        await self.bus.stop()
        await self.transport.disconnect()
        await self.store.close()
        self._started = False
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def operator_report(self) -> OperatorReport:
        modules = await self.registry.list_modules()
        return OperatorReport(
            dead_letters=await self.bus.dead_letters(),
            failed_messages=await self.bus.failed_messages(),
            failed_migrations=await self.migrations.failed_runs(),
            overdue_instances=[
                i
                for i in await self.workflows.list_instances(status=InstanceStatus.ACTIVE)
                if i.overdue
            ],
            modules_needing_intervention=[
                m for m in modules if m.status is ModuleStatus.NEEDS_INTERVENTION
            ],
        )
