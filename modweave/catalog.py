"""Catalogue of installable modules."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import ModuleNotFound, RegistrationError
from .migrations import MigrationManager, MigrationRun
from .module import DomainModule
from .registry import DependencySpec, ModuleDescriptor, ModuleRegistry, SemanticVersion

logger = logging.getLogger(__name__)


class Pricing(BaseModel):
    type: str = "free"
    amount: float = 0.0
    currency: str = "USD"
    interval: Optional[str] = None


class CatalogEntry(BaseModel):
    """A module offered for installation."""

    id: str
    name: str
    description: Optional[str] = None
    version: str
    category: str
    pricing: Pricing = Field(default_factory=Pricing)
    required_modules: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)


class CompatibilityReport(BaseModel):
    entry_id: str
    compatible: bool
    issues: List[str] = Field(default_factory=list)


class ModuleCatalog:
    """Lists catalogue entries, installs them through the registry and
    upgrades installed modules through the migration ledger."""

    def __init__(
        self,
        registry: ModuleRegistry,
        entries: Optional[Iterable[CatalogEntry]] = None,
        migrations: Optional[MigrationManager] = None,
    ) -> None:
        self._registry = registry
        self._migrations = migrations
        self._entries: Dict[str, CatalogEntry] = {}
        for entry in entries or ():
            self.add(entry)

    def add(self, entry: CatalogEntry) -> None:
        self._entries[entry.id] = entry

    def get(self, entry_id: str) -> CatalogEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise ModuleNotFound(f"Catalog entry {entry_id} not found", entry_id=entry_id) from None

    def available(
        self,
        category: Optional[str] = None,
        price_range: Optional[Tuple[float, float]] = None,
    ) -> List[CatalogEntry]:
        """Entries filtered by category and by an inclusive ``(min, max)`` price."""
        entries = list(self._entries.values())
        if category:
            entries = [e for e in entries if e.category == category]
        if price_range is not None:
            low, high = price_range
            entries = [e for e in entries if low <= e.pricing.amount <= high]
        return entries

    async def check_compatibility(self, entry_id: str) -> CompatibilityReport:
        entry = self.get(entry_id)
        issues = [
            f"Required module {name} is not installed"
            for name in entry.required_modules
            if not await self._registry.is_registered(name)
        ]
        return CompatibilityReport(entry_id=entry_id, compatible=not issues, issues=issues)

    async def install(self, entry_id: str, module: DomainModule) -> ModuleDescriptor:
        """Register ``module`` as the implementation of catalogue entry ``entry_id``.

        Raises:
            RegistrationError: Required modules are missing or ``module``
                does not match the entry version.
        """
        entry = self.get(entry_id)
        report = await self.check_compatibility(entry_id)
        if not report.compatible:
            raise RegistrationError(
                f"Module {entry.name} is not compatible",
                entry_id=entry_id,
                issues=report.issues,
            )
        descriptor = module.descriptor()
        if descriptor.version != SemanticVersion.parse(entry.version):
            raise RegistrationError(
                f"{descriptor.name} {descriptor.version} does not match catalogue version {entry.version}",
                entry_id=entry_id,
            )
        missing = [n for n in entry.required_modules if n not in descriptor.dependency_names]
        if missing:
            descriptor = descriptor.model_copy(
                update={"dependencies": [*descriptor.dependencies, *map(DependencySpec.parse, missing)]}
            )
        descriptor = descriptor.model_copy(
            update={"category": descriptor.category or entry.category, "catalog_entry": entry_id}
        )
        registered = await self._registry.register(module, descriptor)
        logger.info(f"Installed catalogue entry {entry_id} as module {registered.name}")
        return registered

    async def installed(self, entry_id: str) -> Optional[ModuleDescriptor]:
        """The registered module installed from ``entry_id``, if any."""
        for descriptor in await self._registry.list_modules():
            if descriptor.catalog_entry == entry_id:
                return descriptor
        return None

    async def check_for_update(self, entry_id: str) -> Optional[SemanticVersion]:
        """Return the catalogue version if it is newer than the installed one."""
        entry = self.get(entry_id)
        descriptor = await self.installed(entry_id)
        if descriptor is None:
            raise ModuleNotFound(f"Catalog entry {entry_id} is not installed", entry_id=entry_id)
        available = SemanticVersion.parse(entry.version)
        return available if available > descriptor.version else None

    async def update(self, entry_id: str, actor: Optional[str] = None) -> MigrationRun:
        """Migrate the installed module to the catalogue entry's version.

        The module version pointer moves only when every migration unit on
        the ledger path applied; otherwise the run is rolled back.

        Raises:
            ModuleNotFound: ``entry_id`` is unknown or not installed.
            RegistrationError: No newer version is available, or the catalog
                has no migration manager.
            MigrationError: The migration run failed.
        """
        if self._migrations is None:
            raise RegistrationError(
                "Module updates need a migration manager", entry_id=entry_id
            )
        available = await self.check_for_update(entry_id)
        descriptor = await self.installed(entry_id)
        if available is None:
            raise RegistrationError(
                f"No update available for {entry_id}; {descriptor.name} is at {descriptor.version}",
                entry_id=entry_id,
            )
        run = await self._migrations.run_migrations(descriptor.name, str(available), actor=actor)
        logger.info(
            f"Updated catalogue entry {entry_id} ({descriptor.name}) "
            f"from {descriptor.version} to {available}"
        )
        return run


def default_catalog_entries() -> List[CatalogEntry]:
    return [
        CatalogEntry(
            id="advanced_analytics",
            name="Advanced Analytics Module",
            description="Advanced reporting and analytics capabilities",
            version="2.0.0",
            category="analytics",
            pricing=Pricing(type="subscription", amount=99.99, interval="monthly"),
            required_modules=["Database", "AdvancedAnalytics"],
            features=[
                "Custom dashboards",
                "Advanced reporting",
                "Data visualization",
                "Predictive analytics",
            ],
        ),
        CatalogEntry(
            id="document_management",
            name="Document Management Module",
            description="Advanced document management and collaboration",
            version="1.5.0",
            category="productivity",
            pricing=Pricing(type="one_time", amount=299.99),
            required_modules=["Database", "FileStorage"],
            features=[
                "Version control",
                "Collaborative editing",
                "Document templates",
                "Digital signatures",
            ],
        ),
    ]
