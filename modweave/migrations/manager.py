"""Per-module migration ledger with compensating rollback."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ..errors import (
    ConflictError,
    MigrationError,
    NoPathFound,
    RollbackIncomplete,
    UnitFailed,
)
from ..persistence import Store
from ..registry import ModuleRegistry, SemanticVersion
from .models import (
    ChangeUnit,
    Migration,
    MigrationContext,
    MigrationRun,
    MigrationStatus,
    RunStatus,
)

logger = logging.getLogger(__name__)


def _normalize(version: "str | SemanticVersion") -> str:
    return str(SemanticVersion.parse(version))


class MigrationManager:
    """Plans and executes module version migrations.

    The ledger holds ``from -> to`` edges per module. Running a migration
    walks the edges from the module's registered version to the requested
    one; the registry version pointer only moves if every unit succeeded,
    and it moves in the same store transaction that records the run.
    """

    MIGRATIONS = "migrations"
    RUNS = "migration_runs"

    def __init__(self, store: Store, registry: ModuleRegistry) -> None:
        self._store = store
        self._registry = registry
        self._units: Dict[str, List[ChangeUnit]] = {}

    async def create_migration(
        self,
        module_name: str,
        description: str,
        units: Sequence[ChangeUnit],
        *,
        from_version: str,
        to_version: str,
    ) -> Migration:
        """Append a ledger edge for ``module_name``. Nothing is executed."""
        source, target = _normalize(from_version), _normalize(to_version)
        if source == target:
            raise MigrationError(
                f"Migration for {module_name} must change the version",
                module=module_name,
                version=source,
            )
        names = [unit.name for unit in units]
        if len(set(names)) != len(names):
            raise MigrationError(
                f"Migration for {module_name} has duplicate unit names",
                module=module_name,
                units=names,
            )
        existing = await self.list_migrations(module_name)
        migration = Migration(
            module_name=module_name,
            from_version=source,
            to_version=target,
            description=description,
            units=names,
            sequence=len(existing) + 1,
        )
        await self._store.insert(self.MIGRATIONS, migration.id, migration.to_document())
        self._units[migration.id] = list(units)
        logger.info(
            f"Added migration {migration.id} for {module_name}: {source} -> {target} "
            f"({len(names)} units)"
        )
        return migration

    def attach_units(self, migration_id: str, units: Sequence[ChangeUnit]) -> None:
        """Re-attach executable units to a ledger edge loaded from the store."""
        self._units[migration_id] = list(units)

    async def list_migrations(self, module_name: Optional[str] = None) -> List[Migration]:
        filters = {"module_name": module_name} if module_name else {}
        docs = await self._store.select(self.MIGRATIONS, **filters)
        return sorted((Migration.model_validate(d) for d in docs), key=lambda m: (m.module_name, m.sequence))

    async def get_migration_path(
        self, module_name: str, from_version: str, to_version: str
    ) -> List[Migration]:
        """Shortest chain of ledger edges from ``from_version`` to ``to_version``.

        Edges leaving a version are explored in ledger order, so the same
        ledger always yields the same path.
        """
        source, target = _normalize(from_version), _normalize(to_version)
        if source == target:
            return []
        outgoing: Dict[str, List[Migration]] = {}
        for migration in await self.list_migrations(module_name):
            outgoing.setdefault(migration.from_version, []).append(migration)

        previous: Dict[str, Tuple[str, Migration]] = {}
        queue = deque([source])
        seen = {source}
        while queue:
            version = queue.popleft()
            if version == target:
                break
            for migration in outgoing.get(version, []):
                if migration.to_version not in seen:
                    seen.add(migration.to_version)
                    previous[migration.to_version] = (version, migration)
                    queue.append(migration.to_version)

        if target not in previous:
            raise NoPathFound(
                f"No migration path for {module_name} from {source} to {target}",
                module=module_name,
                from_version=source,
                to_version=target,
            )
        path: List[Migration] = []
        version = target
        while version != source:
            version, migration = previous[version]
            path.append(migration)
        path.reverse()
        return path

    async def run_migrations(
        self, module_name: str, to_version: str, actor: Optional[str] = None
    ) -> MigrationRun:
        """Apply every unit on the path to ``to_version``.

        Raises:
            NoPathFound: The ledger has no chain to ``to_version``.
            UnitFailed: A unit raised; applied units were compensated and
                the module version is unchanged.
            RollbackIncomplete: A compensation also raised; the module is
                flagged ``needs_intervention``.
        """
        descriptor = await self._registry.require(module_name)
        current = str(descriptor.version)
        target = _normalize(to_version)
        path = await self.get_migration_path(module_name, current, target)
        missing = [m.id for m in path if m.id not in self._units]
        if missing:
            raise MigrationError(
                f"Change units for migrations {missing} are not loaded",
                module=module_name,
                migrations=missing,
            )

        run = MigrationRun(
            module_name=module_name,
            from_version=current,
            to_version=target,
            migrations=[m.id for m in path],
            actor=actor,
        )
        logger.info(f"Migrating {module_name} {current} -> {target} via {len(path)} migrations")

        applied: List[Tuple[Migration, ChangeUnit, MigrationContext]] = []
        for migration in path:
            for unit in self._units[migration.id]:
                ctx = MigrationContext(
                    module_name=module_name,
                    migration_id=migration.id,
                    run_id=run.id,
                    store=self._store,
                    actor=actor,
                )
                try:
                    await unit.apply(ctx)
                except Exception as exc:
                    logger.error(f"Unit {unit.name} of {migration.id} failed: {exc}")
                    run.failed_unit = unit.name
                    run.error = str(exc)
                    await self._fail(run, applied, failed=migration)
                    raise self._failure(run) from exc
                applied.append((migration, unit, ctx))
                run.applied_units.append(unit.name)

        run.finished_at = datetime.now(timezone.utc)
        try:
            async with self._store.transaction() as tx:
                tx.insert(self.RUNS, run.id, run.to_document())
                for migration in path:
                    done = migration.model_copy(
                        update={"status": MigrationStatus.APPLIED, "applied_at": run.finished_at}
                    )
                    tx.update(self.MIGRATIONS, migration.id, done.to_document())
                moved = descriptor.model_copy(update={"version": SemanticVersion.parse(target)})
                tx.update(
                    self._registry.COLLECTION,
                    module_name,
                    moved.to_document(),
                    expected={"version": current},
                )
        except ConflictError as exc:
            logger.error(f"{module_name} version moved during migration run {run.id}")
            run.error = f"version conflict: {exc.message}"
            await self._fail(run, applied)
            raise
        logger.info(f"Migrated {module_name} to {target} (run {run.id})")
        return run

    async def _fail(
        self,
        run: MigrationRun,
        applied: List[Tuple[Migration, ChangeUnit, MigrationContext]],
        failed: Optional[Migration] = None,
    ) -> None:
        """Compensate ``applied`` in reverse order and record the failed run."""
        for migration, unit, ctx in reversed(applied):
            if unit.compensate is None:
                continue
            try:
                await unit.compensate(ctx)
            except Exception as exc:
                logger.error(f"Compensation of {unit.name} in {migration.id} failed: {exc}")
                run.compensation_errors[unit.name] = str(exc)

        run.status = RunStatus.ROLLBACK_INCOMPLETE if run.compensation_errors else RunStatus.FAILED
        run.finished_at = datetime.now(timezone.utc)
        touched = {migration.id: migration for migration, _, _ in applied}
        async with self._store.transaction() as tx:
            tx.insert(self.RUNS, run.id, run.to_document())
            for migration in touched.values():
                tx.update(
                    self.MIGRATIONS,
                    migration.id,
                    migration.model_copy(update={"status": MigrationStatus.ROLLED_BACK}).to_document(),
                )
            if failed is not None:
                tx.update(
                    self.MIGRATIONS,
                    failed.id,
                    failed.model_copy(update={"status": MigrationStatus.FAILED}).to_document(),
                )
        if run.compensation_errors:
            await self._registry.mark_needs_intervention(
                run.module_name,
                f"migration run {run.id} left units {sorted(run.compensation_errors)} uncompensated",
            )

    @staticmethod
    def _failure(run: MigrationRun) -> MigrationError:
        if run.status is RunStatus.ROLLBACK_INCOMPLETE:
            return RollbackIncomplete(
                f"Migration of {run.module_name} failed at {run.failed_unit} and could not be fully rolled back",
                run=run,
                run_id=run.id,
                compensation_errors=run.compensation_errors,
            )
        return UnitFailed(
            f"Migration of {run.module_name} failed at {run.failed_unit}: {run.error}",
            run=run,
            run_id=run.id,
            failed_unit=run.failed_unit,
        )

    async def get_run(self, run_id: str) -> MigrationRun | None:
        doc = await self._store.get(self.RUNS, run_id)
        return MigrationRun.model_validate(doc) if doc else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> List[MigrationRun]:
        filters = {"status": status.value} if status else {}
        return [MigrationRun.model_validate(d) for d in await self._store.select(self.RUNS, **filters)]

    async def failed_runs(self) -> List[MigrationRun]:
        """Runs needing operator attention, incomplete rollbacks first."""
        return await self.list_runs(RunStatus.ROLLBACK_INCOMPLETE) + await self.list_runs(
            RunStatus.FAILED
        )
