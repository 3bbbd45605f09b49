"""PostgreSQL implementation of the document store."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from ..errors import ConflictError
from .repository import Document, PendingWrites, Store


class PostgresStore(Store):
    """Persist documents using PostgreSQL JSONB columns.

    Guarded updates use JSONB containment (``body @> expected``), so the
    version or status check and the write happen in one statement.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self._dsn)
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                id BIGSERIAL PRIMARY KEY,
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                body JSONB NOT NULL,
                UNIQUE (collection, key)
            )
            """
        )

    async def _acquire(self) -> asyncpg.Pool:
        if self._pool is None:
            await self.connect()
        assert self._pool
        return self._pool

    # ------------------------------------------------------------------
    @staticmethod
    async def _insert_row(
        conn: asyncpg.Connection, collection: str, key: str, doc: Document
    ) -> None:
        try:
            await conn.execute(
                "INSERT INTO documents (collection, key, body) VALUES ($1, $2, $3::jsonb)",
                collection,
                key,
                json.dumps(doc),
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError(
                f"Document {collection}/{key} already exists",
                collection=collection,
                key=key,
            ) from exc

    @staticmethod
    async def _update_row(
        conn: asyncpg.Connection,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]],
    ) -> int:
        status = await conn.execute(
            """
            UPDATE documents SET body = $1::jsonb
            WHERE collection = $2 AND key = $3 AND body @> $4::jsonb
            """,
            json.dumps(doc),
            collection,
            key,
            json.dumps(expected or {}),
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return int(status.split()[-1])

    # ------------------------------------------------------------------
    async def insert(self, collection: str, key: str, doc: Document) -> None:
        pool = await self._acquire()
        async with pool.acquire() as conn:
            await self._insert_row(conn, collection, key, doc)

    async def update(
        self,
        collection: str,
        key: str,
        doc: Document,
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        pool = await self._acquire()
        async with pool.acquire() as conn:
            return await self._update_row(conn, collection, key, doc, expected)

    async def get(self, collection: str, key: str) -> Document | None:
        pool = await self._acquire()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT body FROM documents WHERE collection = $1 AND key = $2",
                collection,
                key,
            )
        return json.loads(row["body"]) if row else None

    async def select(self, collection: str, **filters: Any) -> List[Document]:
        pool = await self._acquire()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT body FROM documents
                WHERE collection = $1 AND body @> $2::jsonb
                ORDER BY id
                """,
                collection,
                json.dumps(filters),
            )
        return [json.loads(r["body"]) for r in rows]

    async def delete(self, collection: str, key: str) -> int:
        pool = await self._acquire()
        async with pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM documents WHERE collection = $1 AND key = $2",
                collection,
                key,
            )
        return int(status.split()[-1])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PendingWrites]:
        pending = PendingWrites()
        yield pending
        pool = await self._acquire()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for op, collection, key, doc, expected in pending.operations:
                    if op == "insert":
                        await self._insert_row(conn, collection, key, doc)
                    elif await self._update_row(conn, collection, key, doc, expected) == 0:
                        raise ConflictError(
                            f"Guarded update on {collection}/{key} matched no rows",
                            collection=collection,
                            key=key,
                            expected=expected,
                        )
