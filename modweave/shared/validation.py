"""Field-level validation for shared records."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, List

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .models import FieldSpec, FieldType, ModelSchema

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")

_datetime_adapter = TypeAdapter(datetime)
_date_adapter = TypeAdapter(date)


def _is_timestamp(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    for adapter in (_datetime_adapter, _date_adapter):
        try:
            adapter.validate_python(value.strip())
        except PydanticValidationError:
            continue
        return True
    return False


def check_value(value: Any, spec: FieldSpec) -> bool:
    """Return ``True`` when ``value`` conforms to ``spec.type``."""
    kind = spec.type
    if kind == FieldType.STRING.value:
        return isinstance(value, str)
    if kind == FieldType.INTEGER.value:
        if isinstance(value, bool):
            return False
        return isinstance(value, int) or (
            isinstance(value, str) and value.isascii() and value.isdigit()
        )
    if kind == FieldType.FLOAT.value:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == FieldType.BOOLEAN.value:
        return isinstance(value, bool)
    if kind == FieldType.DATE.value:
        return _is_timestamp(value)
    if kind == FieldType.EMAIL.value:
        return isinstance(value, str) and EMAIL_RE.match(value) is not None
    # unrecognised types accept anything
    return True


def validate_data(data: Dict[str, Any], schema: ModelSchema) -> List[str]:
    """Return human-readable problems; an empty list means ``data`` is valid."""
    errors: List[str] = []
    for name, spec in schema.fields.items():
        value = data.get(name)
        if value is None:
            if spec.required:
                errors.append(f"Required field '{name}' is missing")
            continue
        if not check_value(value, spec):
            errors.append(f"Field '{name}': expected {spec.type}, got {value!r}")
    return errors
