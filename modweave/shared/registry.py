"""Central schema registry and optimistic-concurrency record store."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from ..contracts import BroadcastResult
from ..errors import (
    ConflictError,
    DuplicateName,
    ModelNotFound,
    RecordNotFound,
    ValidationError,
)
from ..persistence import Store
from ..registry import ModuleRegistry
from .models import FieldSpec, ModelSchema, RecordStatus, Relationship, SharedRecord
from .validation import validate_data

if TYPE_CHECKING:
    from ..bus import MessageBus

logger = logging.getLogger(__name__)


class SharedModelRegistry:
    """Schemas and versioned records for entities shared across modules.

    Writes are guarded only by the record version: an update carries the
    version it was based on and fails with :class:`ConflictError` if another
    writer got there first. The loser re-reads and retries.
    """

    SCHEMAS = "shared_models"
    RECORDS = "shared_records"

    def __init__(
        self,
        store: Store,
        registry: ModuleRegistry,
        bus: Optional["MessageBus"] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._bus = bus
        self._schemas: Dict[str, ModelSchema] = {}

    # ------------------------------------------------------------------
    # Schemas
    async def define_model(
        self,
        name: str,
        fields: Mapping[str, FieldSpec | Dict[str, Any]],
        relationships: Optional[Mapping[str, Relationship | Dict[str, Any]]] = None,
        owner: Optional[str] = None,
    ) -> ModelSchema:
        """Register the schema for ``name``."""
        schema = ModelSchema(
            name=name,
            fields=dict(fields),
            relationships=dict(relationships or {}),
            owner=owner,
        )
        unknown = [f for f, spec in schema.fields.items() if not spec.known]
        if unknown:
            logger.debug(f"Model {name} fields {unknown} use unchecked types")
        try:
            await self._store.insert(self.SCHEMAS, name, schema.model_dump(mode="json"))
        except ConflictError as exc:
            raise DuplicateName(f"Shared model {name} is already defined", model=name) from exc
        self._schemas[name] = schema
        logger.info(f"Defined shared model {name} with fields {list(schema.fields)}")
        return schema

    async def get_model(self, name: str) -> ModelSchema:
        schema = self._schemas.get(name)
        if schema is None:
            doc = await self._store.get(self.SCHEMAS, name)
            if doc is None:
                raise ModelNotFound(f"Shared model {name} is not defined", model=name)
            schema = self._schemas[name] = ModelSchema.model_validate(doc)
        return schema

    async def list_models(self) -> List[ModelSchema]:
        return [ModelSchema.model_validate(d) for d in await self._store.select(self.SCHEMAS)]

    # ------------------------------------------------------------------
    # Records
    @staticmethod
    def _key(model_name: str, record_id: str) -> str:
        return f"{model_name}:{record_id}"

    async def get(self, model_name: str, record_id: str) -> SharedRecord:
        doc = await self._store.get(self.RECORDS, self._key(model_name, record_id))
        if doc is None:
            raise RecordNotFound(
                f"{model_name} record {record_id} not found",
                model=model_name,
                record_id=record_id,
            )
        return SharedRecord.model_validate(doc)

    async def list_records(
        self, model_name: str, status: Optional[RecordStatus] = None
    ) -> List[SharedRecord]:
        filters: Dict[str, Any] = {"model_name": model_name}
        if status is not None:
            filters["status"] = status.value
        return [SharedRecord.model_validate(d) for d in await self._store.select(self.RECORDS, **filters)]

    async def create(
        self,
        model_name: str,
        data: Dict[str, Any],
        actor: Optional[str] = None,
    ) -> SharedRecord:
        """Validate and persist a new record at version 1.

        Raises:
            ModelNotFound: ``model_name`` has no schema.
            ValidationError: ``data`` does not conform to the schema.
        """
        schema = await self.get_model(model_name)
        errors = validate_data(data, schema)
        if errors:
            raise ValidationError(
                f"{model_name} data validation failed", errors=errors, model=model_name
            )

        record = SharedRecord(
            model_name=model_name,
            id=f"{model_name.upper()}_{uuid.uuid4().hex[:12]}",
            data=dict(data),
            version=1,
            created_by=actor,
        )
        await self._store.insert(self.RECORDS, self._key(model_name, record.id), record.to_document())
        logger.info(f"Created {model_name} record {record.id}")
        await self._notify(model_name, "record_created", record)
        return record

    async def update(
        self,
        model_name: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int,
        actor: Optional[str] = None,
    ) -> SharedRecord:
        """Merge ``data`` into the record if it is still at ``expected_version``.

        Raises:
            ConflictError: The stored version differs from ``expected_version``.
            ValidationError: The merged record violates the schema.
        """
        schema = await self.get_model(model_name)
        existing = await self.get(model_name, record_id)
        if existing.version != expected_version:
            raise ConflictError(
                f"{model_name} record {record_id} is at version {existing.version}, "
                f"not {expected_version}",
                record_id=record_id,
                expected_version=expected_version,
                actual_version=existing.version,
            )
        if existing.status is RecordStatus.ARCHIVED:
            raise ValidationError(
                f"{model_name} record {record_id} is archived",
                errors=["record is archived"],
                record_id=record_id,
            )

        merged = {**existing.data, **data}
        errors = validate_data(merged, schema)
        if errors:
            raise ValidationError(
                f"{model_name} data validation failed", errors=errors, model=model_name
            )

        updated = existing.model_copy(
            update={
                "data": merged,
                "version": existing.version + 1,
                "updated_at": datetime.now(timezone.utc),
                "updated_by": actor,
            }
        )
        await self._write(updated, expected_version)
        logger.info(f"Updated {model_name} record {record_id} to version {updated.version}")
        await self._notify(model_name, "record_updated", updated)
        return updated

    async def archive(
        self,
        model_name: str,
        record_id: str,
        expected_version: int,
        actor: Optional[str] = None,
    ) -> SharedRecord:
        """Soft-delete a record by moving it to ``archived`` status."""
        existing = await self.get(model_name, record_id)
        if existing.version != expected_version:
            raise ConflictError(
                f"{model_name} record {record_id} is at version {existing.version}, "
                f"not {expected_version}",
                record_id=record_id,
                expected_version=expected_version,
                actual_version=existing.version,
            )
        archived = existing.model_copy(
            update={
                "status": RecordStatus.ARCHIVED,
                "version": existing.version + 1,
                "updated_at": datetime.now(timezone.utc),
                "updated_by": actor,
            }
        )
        await self._write(archived, expected_version)
        logger.info(f"Archived {model_name} record {record_id}")
        await self._notify(model_name, "record_archived", archived)
        return archived

    async def _write(self, record: SharedRecord, expected_version: int) -> None:
        rows = await self._store.update(
            self.RECORDS,
            self._key(record.model_name, record.id),
            record.to_document(),
            expected={"version": expected_version},
        )
        if rows == 0:
            current = await self.get(record.model_name, record.id)
            raise ConflictError(
                f"{record.model_name} record {record.id} was modified concurrently",
                record_id=record.id,
                expected_version=expected_version,
                actual_version=current.version,
            )

    async def _notify(
        self, model_name: str, event: str, record: SharedRecord
    ) -> Optional[BroadcastResult]:
        if self._bus is None:
            return None
        dependents = await self._registry.get_dependents(model_name)
        owner = (await self.get_model(model_name)).owner
        if owner:
            for name in await self._registry.get_dependents(owner):
                if name not in dependents:
                    dependents.append(name)
        if not dependents:
            return None
        return await self._bus.broadcast(
            event,
            {"model": model_name, "record": record.to_document()},
            targets=dependents,
            correlation_id=record.id,
        )
