"""Migration ledger, change units and run records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..persistence import Store


@dataclass
class MigrationContext:
    """What a change unit sees while it runs."""

    module_name: str
    migration_id: str
    run_id: str
    store: Store
    actor: Optional[str] = None
    state: Dict[str, Any] = field(default_factory=dict)


UnitAction = Callable[[MigrationContext], Awaitable[None]]


@dataclass
class ChangeUnit:
    """One schema/data change with an optional compensating action.

    ``compensate`` is best effort: it is only invoked for units that were
    applied in a run that later failed.
    """

    name: str
    apply: UnitAction
    compensate: Optional[UnitAction] = None


class MigrationStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class Migration(BaseModel):
    """A ledger edge moving ``module_name`` from one version to the next."""

    id: str = Field(default_factory=lambda: f"mig-{uuid.uuid4().hex[:12]}")
    module_name: str
    from_version: str
    to_version: str
    description: str = ""
    units: List[str] = Field(default_factory=list)
    sequence: int
    status: MigrationStatus = MigrationStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    applied_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLBACK_INCOMPLETE = "rollback_incomplete"


class MigrationRun(BaseModel):
    """Outcome of one ``run_migrations`` call."""

    id: str = Field(default_factory=lambda: f"run-{uuid.uuid4().hex[:12]}")
    module_name: str
    from_version: str
    to_version: str
    status: RunStatus = RunStatus.COMPLETED
    migrations: List[str] = Field(default_factory=list)
    applied_units: List[str] = Field(default_factory=list)
    failed_unit: Optional[str] = None
    error: Optional[str] = None
    compensation_errors: Dict[str, str] = Field(default_factory=dict)
    actor: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
