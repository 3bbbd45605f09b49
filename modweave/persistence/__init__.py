"""Persistence layer for modweave orchestration state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ModweaveConfig, load_config
from .inmemory import InMemoryStore
from .repository import Document, Store, StoreTransaction
from .sqlite import SQLiteStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresStore = None  # type: ignore


def get_store(
    database_url: Optional[str] = None, config: Optional[ModweaveConfig] = None
) -> Store:
    """Factory function to obtain a document store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``MODWEAVE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("MODWEAVE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresStore is None:
            raise RuntimeError("Postgres support not available")
        return PostgresStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "Document",
    "Store",
    "StoreTransaction",
    "InMemoryStore",
    "SQLiteStore",
    "PostgresStore",
    "get_store",
]
