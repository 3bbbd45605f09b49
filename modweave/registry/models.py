"""Pydantic models describing registered modules."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from functools import total_ordering
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

_CONSTRAINT_RE = re.compile(r"^\s*(>=|<=|==|!=|>|<|\^|~)?\s*([0-9][0-9.]*)\s*$")


@total_ordering
class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components.

    ``parse`` accepts one to three dotted components; missing parts are zero,
    so ``"1.2"`` and ``"1.2.0"`` compare equal.
    """

    major: int
    minor: int = 0
    patch: int = 0

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, value: "str | SemanticVersion") -> "SemanticVersion":
        """Parse a dotted semantic version string."""
        if isinstance(value, SemanticVersion):
            return value
        parts = str(value).strip().split(".")
        if not 1 <= len(parts) <= 3 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid semantic version: {value!r}")
        numbers = [int(p) for p in parts] + [0] * (3 - len(parts))
        return cls(major=numbers[0], minor=numbers[1], patch=numbers[2])

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self.as_tuple() < other.as_tuple()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self.as_tuple() == other.as_tuple()

    def __hash__(self) -> int:
        return hash(self.as_tuple())

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def version_satisfies(version: SemanticVersion, constraint: Optional[str]) -> bool:
    """Check ``version`` against a constraint such as ``>=1.2``, ``^1.0`` or ``~1.4``.

    A bare version means ``==``; ``None`` or ``"*"`` accepts anything.
    """
    if constraint is None or constraint.strip() in ("", "*"):
        return True
    match = _CONSTRAINT_RE.match(constraint)
    if not match:
        raise ValueError(f"Invalid version constraint: {constraint!r}")
    op, raw = match.group(1) or "==", match.group(2)
    bound = SemanticVersion.parse(raw)
    if op == "==":
        return version == bound
    if op == "!=":
        return version != bound
    if op == ">=":
        return version >= bound
    if op == "<=":
        return version <= bound
    if op == ">":
        return version > bound
    if op == "<":
        return version < bound
    if op == "^":
        return version >= bound and version.major == bound.major
    # "~": same major.minor
    return version >= bound and (version.major, version.minor) == (bound.major, bound.minor)


class DependencySpec(BaseModel):
    """A declared dependency on another module, optionally version-constrained."""

    name: str
    constraint: Optional[str] = None

    @classmethod
    def parse(cls, value: "str | DependencySpec") -> "DependencySpec":
        """Parse ``"Billing"`` or ``"Billing>=1.0"`` style declarations."""
        if isinstance(value, DependencySpec):
            return value
        match = re.match(r"^\s*([A-Za-z_][\w.\-]*)\s*(.*)$", value)
        if not match:
            raise ValueError(f"Invalid dependency declaration: {value!r}")
        name, constraint = match.group(1), match.group(2).strip() or None
        return cls(name=name, constraint=constraint)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.name}{self.constraint or ''}"


class ModuleStatus(str, Enum):
    REGISTERED = "registered"
    NEEDS_INTERVENTION = "needs_intervention"


class ModuleDescriptor(BaseModel):
    """Metadata describing a module registered with the orchestration layer."""

    name: str
    version: SemanticVersion
    dependencies: List[DependencySpec] = Field(default_factory=list)
    subscribes: List[str] = Field(
        default_factory=list, description="Shared model names this module consumes"
    )
    description: Optional[str] = None
    category: Optional[str] = None
    catalog_entry: Optional[str] = None
    status: ModuleStatus = ModuleStatus.REGISTERED
    status_reason: Optional[str] = None
    registered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name must be a non-empty string")
        return v

    @field_validator("version", mode="before")
    @classmethod
    def _parse_version(cls, v: Any) -> Any:
        if isinstance(v, str):
            return SemanticVersion.parse(v)
        return v

    @field_validator("dependencies", mode="before")
    @classmethod
    def _parse_dependencies(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [DependencySpec.parse(d) if isinstance(d, str) else d for d in v]
        return v

    @model_validator(mode="after")
    def _no_self_dependency(self) -> "ModuleDescriptor":
        if any(dep.name == self.name for dep in self.dependencies):
            raise ValueError(f"Module {self.name} cannot depend on itself")
        return self

    @property
    def dependency_names(self) -> List[str]:
        return [dep.name for dep in self.dependencies]

    def to_document(self) -> dict[str, Any]:
        doc = self.model_dump(mode="json")
        doc["version"] = str(self.version)
        return doc
