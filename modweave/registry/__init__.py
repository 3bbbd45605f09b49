"""Module registry: identities, versions and declared dependencies."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import (
    ConflictError,
    DependencyUnmet,
    DuplicateName,
    ModuleNotFound,
    RegistrationError,
)
from ..persistence import Store
from .models import (
    DependencySpec,
    ModuleDescriptor,
    ModuleStatus,
    SemanticVersion,
    version_satisfies,
)

if TYPE_CHECKING:
    from ..module import DomainModule

logger = logging.getLogger(__name__)


class ModuleRegistry:
    """Tracks registered modules.

    Descriptors live in the store so that the version pointer can be updated
    atomically with migration bookkeeping; module implementations (the
    handler tables) are attached in memory.
    """

    COLLECTION = "modules"

    def __init__(self, store: Store, strict_dependencies: bool = False) -> None:
        self._store = store
        self._strict = strict_dependencies
        self._implementations: Dict[str, "DomainModule"] = {}

    async def register(
        self,
        module: "DomainModule",
        descriptor: Optional[ModuleDescriptor] = None,
    ) -> ModuleDescriptor:
        """Register ``module`` under its descriptor.

        Raises:
            DuplicateName: A module with the same name is already registered.
            DependencyUnmet: A declared dependency is missing or its version
                does not satisfy the declared constraint.
        """
        descriptor = descriptor or module.descriptor()
        if await self._store.get(self.COLLECTION, descriptor.name) is not None:
            raise DuplicateName(
                f"Module {descriptor.name} is already registered", module=descriptor.name
            )

        problems: List[str] = []
        for dep in descriptor.dependencies:
            other = await self.get(dep.name)
            if other is None:
                problems.append(f"{dep.name} is not registered")
            elif not version_satisfies(other.version, dep.constraint):
                problems.append(
                    f"{dep.name} {other.version} does not satisfy {dep.constraint}"
                )
        if problems:
            raise DependencyUnmet(
                f"Cannot register {descriptor.name}: " + "; ".join(problems),
                module=descriptor.name,
                problems=problems,
            )

        try:
            await self._store.insert(self.COLLECTION, descriptor.name, descriptor.to_document())
        except ConflictError as exc:
            raise DuplicateName(
                f"Module {descriptor.name} is already registered", module=descriptor.name
            ) from exc
        self._implementations[descriptor.name] = module
        logger.info(
            f"Registered module {descriptor.name} {descriptor.version} "
            f"(dependencies: {descriptor.dependency_names or 'none'})"
        )
        return descriptor

    def attach(self, name: str, module: "DomainModule") -> None:
        """Re-attach an implementation to an already persisted registration."""
        self._implementations[name] = module

    async def unregister(self, name: str, force: bool = False) -> None:
        """Uninstall ``name``; refuses while other modules depend on it unless ``force``."""
        if await self.get(name) is None:
            raise ModuleNotFound(f"Module {name} is not registered", module=name)
        dependents = [
            d.name for d in await self.list_modules() if name in d.dependency_names
        ]
        if dependents and not force:
            raise RegistrationError(
                f"Module {name} is required by {', '.join(dependents)}",
                module=name,
                dependents=dependents,
            )
        await self._store.delete(self.COLLECTION, name)
        self._implementations.pop(name, None)
        logger.info(f"Unregistered module {name}")

    async def get(self, name: str) -> ModuleDescriptor | None:
        doc = await self._store.get(self.COLLECTION, name)
        return ModuleDescriptor.model_validate(doc) if doc else None

    async def require(self, name: str) -> ModuleDescriptor:
        descriptor = await self.get(name)
        if descriptor is None:
            raise ModuleNotFound(f"Module {name} is not registered", module=name)
        return descriptor

    async def is_registered(self, name: str) -> bool:
        return await self.get(name) is not None

    async def list_modules(self) -> List[ModuleDescriptor]:
        docs = await self._store.select(self.COLLECTION)
        return [ModuleDescriptor.model_validate(doc) for doc in docs]

    async def module_names(self) -> List[str]:
        return [d.name for d in await self.list_modules()]

    def implementation(self, name: str) -> "DomainModule | None":
        """Return the in-process implementation for ``name``, if attached."""
        return self._implementations.get(name)

    async def version_of(self, name: str) -> SemanticVersion:
        return (await self.require(name)).version

    async def check_dependency_satisfied(
        self, target: str, sender: Optional[str]
    ) -> bool:
        """Return ``True`` if ``sender`` may message ``target``.

        System-originated messages (``sender`` is ``None``) are always
        allowed. A target with an empty dependency list accepts any sender
        unless the registry runs with ``strict_dependencies``.
        """
        if sender is None:
            return True
        descriptor = await self.get(target)
        if descriptor is None:
            return False
        if not descriptor.dependencies:
            return not self._strict
        return sender in descriptor.dependency_names

    async def get_dependents(self, name: str) -> List[str]:
        """Modules that declare ``name`` as a dependency or subscribe to it as a shared model."""
        return [
            d.name
            for d in await self.list_modules()
            if name in d.dependency_names or name in d.subscribes
        ]

    async def mark_needs_intervention(self, name: str, reason: str) -> None:
        descriptor = await self.require(name)
        updated = descriptor.model_copy(
            update={"status": ModuleStatus.NEEDS_INTERVENTION, "status_reason": reason}
        )
        await self._store.update(self.COLLECTION, name, updated.to_document())
        logger.warning(f"Module {name} flagged for manual intervention: {reason}")

    async def clear_intervention(self, name: str) -> None:
        descriptor = await self.require(name)
        updated = descriptor.model_copy(
            update={"status": ModuleStatus.REGISTERED, "status_reason": None}
        )
        await self._store.update(self.COLLECTION, name, updated.to_document())


__all__ = [
    "SemanticVersion",
    "DependencySpec",
    "ModuleDescriptor",
    "ModuleStatus",
    "ModuleRegistry",
    "version_satisfies",
]
