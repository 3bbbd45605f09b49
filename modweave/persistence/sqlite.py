"""SQLite implementation of the document store."""

from __future__ import annotations

import asyncio
import json
import re
import sqlite3
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..errors import ConflictError
from .repository import Document, PendingWrites, Store

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _predicate(filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
    """Translate field equality filters into a JSON1 ``WHERE`` fragment."""
    clauses: List[str] = []
    params: List[Any] = []
    for field, value in (filters or {}).items():
        if not _FIELD_RE.match(field):
            raise ValueError(f"Unsupported filter field: {field!r}")
        if value is None:
            clauses.append(f"json_extract(body, '$.{field}') IS NULL")
        else:
            clauses.append(f"json_extract(body, '$.{field}') = ?")
            params.append(value)
    sql = "".join(f" AND {clause}" for clause in clauses)
    return sql, params


class SQLiteStore(Store):
    """Persist documents using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    body TEXT NOT NULL,
                    UNIQUE (collection, key)
                )
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _insert_row(self, collection: str, key: str, doc: Document) -> None:
        try:
            self._conn.execute(
                "INSERT INTO documents (collection, key, body) VALUES (?, ?, ?)",
                (collection, key, json.dumps(doc)),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"Document {collection}/{key} already exists",
                collection=collection,
                key=key,
            ) from exc

    def _update_row(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]],
    ) -> int:
        where, params = _predicate(expected)
        cur = self._conn.execute(
            "UPDATE documents SET body = ? WHERE collection = ? AND key = ?" + where,
            (json.dumps(doc), collection, key, *params),
        )
        return cur.rowcount

    def _insert(self, collection: str, key: str, doc: Document) -> None:
        with self._mutex, self._conn:
            self._insert_row(collection, key, doc)

    def _update(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]],
    ) -> int:
        with self._mutex, self._conn:
            return self._update_row(collection, key, doc, expected)

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _delete(self, collection: str, key: str) -> int:
        with self._mutex, self._conn:
            cur = self._conn.execute(
                "DELETE FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            )
            return cur.rowcount

    def _commit(self, pending: PendingWrites) -> None:
        with self._mutex, self._conn:
            for op, collection, key, doc, expected in pending.operations:
                if op == "insert":
                    self._insert_row(collection, key, doc)
                elif self._update_row(collection, key, doc, expected) == 0:
                    raise ConflictError(
                        f"Guarded update on {collection}/{key} matched no rows",
                        collection=collection,
                        key=key,
                        expected=expected,
                    )

    # ------------------------------------------------------------------
    # Store API
    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)

    async def insert(self, collection: str, key: str, doc: Document) -> None:
        await asyncio.to_thread(self._insert, collection, key, doc)

    async def update(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        return await asyncio.to_thread(self._update, collection, key, doc, expected)

    async def get(self, collection: str, key: str) -> Document | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM documents WHERE collection = ? AND key = ?",
            collection,
            key,
        )
        return json.loads(rows[0]["body"]) if rows else None

    async def select(self, collection: str, **filters: Any) -> List[Document]:
        where, params = _predicate(filters)
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM documents WHERE collection = ?" + where + " ORDER BY id",
            collection,
            *params,
        )
        return [json.loads(r["body"]) for r in rows]

    async def delete(self, collection: str, key: str) -> int:
        return await asyncio.to_thread(self._delete, collection, key)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PendingWrites]:
        pending = PendingWrites()
        yield pending
        await asyncio.to_thread(self._commit, pending)
