"""Module version migrations."""

from .manager import MigrationManager
from .models import (
    ChangeUnit,
    Migration,
    MigrationContext,
    MigrationRun,
    MigrationStatus,
    RunStatus,
)

__all__ = [
    "ChangeUnit",
    "Migration",
    "MigrationContext",
    "MigrationManager",
    "MigrationRun",
    "MigrationStatus",
    "RunStatus",
]
