"""In-memory implementation of the document store."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from ..errors import ConflictError
from .repository import Document, PendingWrites, Store, matches


class InMemoryStore(Store):
    """Store documents in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # ------------------------------------------------------------------
    def _insert(self, collection: str, key: str, doc: Document) -> None:
        rows = self._collections.setdefault(collection, {})
        if key in rows:
            raise ConflictError(
                f"Document {collection}/{key} already exists",
                collection=collection,
                key=key,
            )
        rows[key] = copy.deepcopy(doc)

    def _update(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]],
    ) -> int:
        rows = self._collections.get(collection, {})
        current = rows.get(key)
        if current is None or not matches(current, expected):
            return 0
        rows[key] = copy.deepcopy(doc)
        return 1

    # ------------------------------------------------------------------
    async def insert(self, collection: str, key: str, doc: Document) -> None:
        async with self._lock:
            self._insert(collection, key, doc)

    async def update(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        async with self._lock:
            return self._update(collection, key, doc, expected)

    async def get(self, collection: str, key: str) -> Document | None:
        doc = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def select(self, collection: str, **filters: Any) -> List[Document]:
        rows = self._collections.get(collection, {})
        return [copy.deepcopy(doc) for doc in rows.values() if matches(doc, filters)]

    async def delete(self, collection: str, key: str) -> int:
        async with self._lock:
            rows = self._collections.get(collection, {})
            return 1 if rows.pop(key, None) is not None else 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PendingWrites]:
        pending = PendingWrites()
        yield pending
        async with self._lock:
            snapshot = copy.deepcopy(self._collections)
            try:
                for op, collection, key, doc, expected in pending.operations:
                    if op == "insert":
                        self._insert(collection, key, doc)
                    elif self._update(collection, key, doc, expected) == 0:
                        raise ConflictError(
                            f"Guarded update on {collection}/{key} matched no rows",
                            collection=collection,
                            key=key,
                            expected=expected,
                        )
            except Exception:
                self._collections = snapshot
                raise
