"""Store abstraction for orchestration state persistence."""

from __future__ import annotations

from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol

Document = Dict[str, Any]


class StoreTransaction(Protocol):
    """Buffered writes that commit together or not at all.

    A guarded ``update`` that matches no row aborts the whole unit with
    :class:`~modweave.errors.ConflictError`.
    """

    def insert(self, collection: str, key: str, doc: Document) -> None:
        """Queue an insert."""

    def update(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Queue a predicate-guarded replace."""


class Store(Protocol):
    """Protocol for document persistence backends.

    Documents are JSON-compatible dicts grouped by ``collection`` and
    addressed by ``key``.
    """

    async def connect(self) -> None:
        """Prepare the backend (schema creation, pools)."""

    async def close(self) -> None:
        """Release backend resources."""

    async def insert(self, collection: str, key: str, doc: Document) -> None:
        """Atomically insert ``doc``; raise ``ConflictError`` if ``key`` exists."""

    async def update(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Replace ``doc`` if every ``expected`` field matches; return rows affected."""

    async def get(self, collection: str, key: str) -> Document | None:
        """Return a single document or ``None``."""

    async def select(self, collection: str, **filters: Any) -> List[Document]:
        """Return documents whose top-level fields equal ``filters``, insertion ordered."""

    async def delete(self, collection: str, key: str) -> int:
        """Remove a document; return rows affected."""

    def transaction(self) -> AsyncContextManager[StoreTransaction]:
        """Open an atomic write unit."""


class PendingWrites:
    """Write buffer shared by the bundled store transactions."""

    def __init__(self) -> None:
        self.operations: List[tuple] = []

    def insert(self, collection: str, key: str, doc: Document) -> None:
        self.operations.append(("insert", collection, key, doc, None))

    def update(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.operations.append(("update", collection, key, doc, expected))


def matches(doc: Document, filters: Optional[Dict[str, Any]]) -> bool:
    """Return ``True`` when every filter field equals the document's value."""
    if not filters:
        return True
    return all(doc.get(field) == value for field, value in filters.items())
