"""Base class for domain modules plugged into the orchestration layer."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Union

from .errors import UnknownMessageType
from .registry.models import ModuleDescriptor

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


def handles(message_type: str) -> Callable[[Callable], Callable]:
    """Mark a ``DomainModule`` method as the handler for ``message_type``."""

    def decorator(func: Callable) -> Callable:
        types = getattr(func, "_handles", ())
        func._handles = (*types, message_type)  # type: ignore[attr-defined]
        return func

    return decorator


class DomainModule:
    """A module with a per-message-type handler table.

    Subclasses declare identity as class attributes and mark handlers with
    :func:`handles`::

        class Billing(DomainModule):
            name = "Billing"
            version = "1.0"

            @handles("create_invoice")
            async def create_invoice(self, payload):
                return {"outcome": "created"}
    """

    name: ClassVar[str] = ""
    version: ClassVar[str] = "1.0.0"
    dependencies: ClassVar[List[str]] = []
    subscribes: ClassVar[List[str]] = []
    description: ClassVar[Optional[str]] = None
    category: ClassVar[Optional[str]] = None

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}
        for attr in dir(type(self)):
            member = getattr(type(self), attr, None)
            for message_type in getattr(member, "_handles", ()):
                self._handlers[message_type] = getattr(self, attr)

    def descriptor(self) -> ModuleDescriptor:
        """Build the registration descriptor from class attributes."""
        return ModuleDescriptor(
            name=self.name,
            version=self.version,
            dependencies=list(self.dependencies),
            subscribes=list(self.subscribes),
            description=self.description,
            category=self.category,
        )

    def add_handler(self, message_type: str, handler: Handler) -> None:
        self._handlers[message_type] = handler

    @property
    def message_types(self) -> List[str]:
        return sorted(self._handlers)

    async def handle(self, message_type: str, payload: Dict[str, Any]) -> Any:
        """Dispatch ``payload`` to the handler registered for ``message_type``."""
        handler = self._handlers.get(message_type)
        if handler is None:
            return await self.on_unknown(message_type, payload)
        result = handler(payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def on_unknown(self, message_type: str, payload: Dict[str, Any]) -> Any:
        """Fallback for unregistered message types; raises ``UnknownMessageType``."""
        raise UnknownMessageType(
            f"{self.name or type(self).__name__} has no handler for {message_type!r}",
            module=self.name,
            message_type=message_type,
        )
