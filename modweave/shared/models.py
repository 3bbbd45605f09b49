"""Schemas and records for entities shared across modules."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"
    EMAIL = "email"


KNOWN_FIELD_TYPES = {t.value for t in FieldType}


class FieldSpec(BaseModel):
    """Declared type and presence rule for one field.

    ``type`` outside :class:`FieldType` is kept as-is and never rejects a value.
    """

    type: str = FieldType.STRING.value
    required: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, v: Any) -> Any:
        if isinstance(v, FieldType):
            return v.value
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def known(self) -> bool:
        return self.type in KNOWN_FIELD_TYPES


class Relationship(BaseModel):
    type: Literal["has_many", "has_one", "belongs_to"]
    model: str


class ModelSchema(BaseModel):
    """A centrally registered shared model."""

    name: str
    fields: Dict[str, FieldSpec]
    relationships: Dict[str, Relationship] = Field(default_factory=dict)
    owner: Optional[str] = None

    @property
    def required_fields(self) -> list[str]:
        return [name for name, spec in self.fields.items() if spec.required]


class RecordStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class SharedRecord(BaseModel):
    """A versioned record conforming to a :class:`ModelSchema`."""

    model_name: str
    id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    status: RecordStatus = RecordStatus.ACTIVE
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
