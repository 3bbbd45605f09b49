"""Shared models every platform deployment starts with."""

from __future__ import annotations

from typing import Any, Dict


def default_models() -> Dict[str, Dict[str, Any]]:
    """Schemas for citizens, their applications and payments.

    Returned as ``{name: {"fields": ..., "relationships": ...}}`` ready for
    :meth:`SharedModelRegistry.define_model`.
    """
    return {
        "user": {
            "fields": {
                "username": {"type": "string", "required": True},
                "email": {"type": "email", "required": True},
                "first_name": {"type": "string", "required": True},
                "last_name": {"type": "string", "required": True},
                "phone": {"type": "string"},
                "address": {"type": "string"},
                "date_of_birth": {"type": "date"},
                "status": {"type": "string", "required": True},
            },
            "relationships": {
                "applications": {"type": "has_many", "model": "application"},
                "payments": {"type": "has_many", "model": "payment"},
            },
        },
        "application": {
            "fields": {
                "application_number": {"type": "string", "required": True},
                "type": {"type": "string", "required": True},
                "status": {"type": "string", "required": True},
                "submitted_date": {"type": "date", "required": True},
                "approved_date": {"type": "date"},
                "user_id": {"type": "string", "required": True},
            },
            "relationships": {
                "user": {"type": "belongs_to", "model": "user"},
                "documents": {"type": "has_many", "model": "document"},
                "payments": {"type": "has_many", "model": "payment"},
            },
        },
        "payment": {
            "fields": {
                "reference_number": {"type": "string", "required": True},
                "amount": {"type": "float", "required": True},
                "currency": {"type": "string", "required": True},
                "status": {"type": "string", "required": True},
                "payment_date": {"type": "date", "required": True},
                "user_id": {"type": "string", "required": True},
            },
            "relationships": {
                "user": {"type": "belongs_to", "model": "user"},
                "application": {"type": "belongs_to", "model": "application"},
            },
        },
    }


async def install_default_models(shared: Any) -> list[str]:
    """Define every default model that is not defined yet; return the names added."""
    existing = {schema.name for schema in await shared.list_models()}
    added = []
    for name, definition in default_models().items():
        if name in existing:
            continue
        await shared.define_model(
            name, definition["fields"], relationships=definition["relationships"]
        )
        added.append(name)
    return added
