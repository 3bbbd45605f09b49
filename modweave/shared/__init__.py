"""Shared data models and optimistic-concurrency records."""

from .defaults import default_models, install_default_models
from .models import (
    FieldSpec,
    FieldType,
    ModelSchema,
    RecordStatus,
    Relationship,
    SharedRecord,
)
from .registry import SharedModelRegistry
from .validation import check_value, validate_data

__all__ = [
    "FieldSpec",
    "FieldType",
    "ModelSchema",
    "RecordStatus",
    "Relationship",
    "SharedRecord",
    "SharedModelRegistry",
    "check_value",
    "validate_data",
    "default_models",
    "install_default_models",
]
