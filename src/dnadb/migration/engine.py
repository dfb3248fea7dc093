"""
Migration engine: versioned, dependency-checked schema and data changes.

Per migration: ``pending -> running -> completed | failed``, and
``completed -> rolled_back`` through an explicit rollback run. A batch
halts at the first failure. Each migration runs in its target's own unit
of work; batch-level atomicity is the caller's responsibility.

Usage:
    engine = MigrationEngine.for_module(config, sql_module, backups=orchestrator)
    await engine.initialize()
    await engine.create_migration(
        "add users",
        MigrationType.CREATE_TABLE,
        up=MigrationScript(sql="CREATE TABLE users (id INTEGER PRIMARY KEY)"),
        down=MigrationScript(sql="DROP TABLE users"),
    )
    results = await engine.run_migrations()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dnadb.config import coerce_config
from dnadb.errors import ConfigurationError, DnaDbError, MigrationLockError, ValidationError
from dnadb.events import EventChannel
from dnadb.generated import GeneratedFile, ModuleContext, render_template
from dnadb.logging import apply_log_level, log_with_context
from dnadb.migration.backup import BackupOrchestrator
from dnadb.migration.config import MigrationConfig
from dnadb.migration.files import MigrationFileStore, VersionGenerator, generate_migration_id, sanitize_name
from dnadb.migration.graph import DependencyGraph
from dnadb.migration.models import (
    Migration,
    MigrationResult,
    MigrationScript,
    MigrationStatus,
    MigrationStatusReport,
    MigrationType,
    ValidationReport,
    ValidationRule,
)
from dnadb.migration.targets import DocumentMigrationTarget, MigrationTarget, SQLMigrationTarget

logger = logging.getLogger(__name__)


class MigrationEngine:
    def __init__(
        self,
        config: MigrationConfig | Mapping[str, Any],
        target: MigrationTarget,
        backups: BackupOrchestrator | None = None,
        *,
        versions: VersionGenerator | None = None,
    ):
        self.config = coerce_config(MigrationConfig, config)
        if target.database_type != self.config.database_type:
            raise ConfigurationError(
                f"Migration target is {target.database_type} but config declares {self.config.database_type}"
            )
        self.target = target
        self.backups = backups
        self.files = MigrationFileStore(self.config.migrations_directory)
        self.versions = versions or VersionGenerator()
        self.events = EventChannel("migration")
        self._migrations: dict[str, Migration] = {}
        self._applied: list[str] = []
        self._failed: set[str] = set()
        self._locked = False
        apply_log_level(logger, self.config.log_level)

    @classmethod
    def for_module(
        cls,
        config: MigrationConfig | Mapping[str, Any],
        module: Any,
        backups: BackupOrchestrator | None = None,
    ) -> MigrationEngine:
        """Engine over a :class:`SQLModule` or :class:`NoSQLModule`."""
        from dnadb.nosql.module import NoSQLModule
        from dnadb.sql.module import SQLModule

        config = coerce_config(MigrationConfig, config)
        target: MigrationTarget
        if isinstance(module, SQLModule):
            if module.config.migrations_table == config.migrations_table:
                raise ConfigurationError(
                    f"Table '{config.migrations_table}' is already used by SQLModule.migrate; "
                    "set a different MigrationConfig.migrations_table"
                )
            target = SQLMigrationTarget(module, config.migrations_table, timeout=config.max_migration_time)
        elif isinstance(module, NoSQLModule):
            target = DocumentMigrationTarget(module, config.migrations_table, timeout=config.max_migration_time)
        else:
            raise ConfigurationError(f"Cannot run migrations against {type(module).__name__}")
        return cls(config, target, backups)

    @property
    def migration_lock(self) -> bool:
        """True while a migration or rollback batch is running."""
        return self._locked

    @contextmanager
    def _hold_lock(self):
        if self._locked:
            raise MigrationLockError("Migration is already in progress")
        self._locked = True
        try:
            yield
        finally:
            self._locked = False

    # =========================================================================
    # Registry
    # =========================================================================

    async def initialize(self) -> bool:
        """Prepare the target, load migration files and the applied set."""
        logger.info("Initializing migration system")
        try:
            await self.target.initialize()
            self.load_migrations()
            self._applied = await self.target.load_applied()
        except DnaDbError as e:
            logger.error("Failed to initialize migration system: %s", e)
            return False
        await self.events.publish("initialized", {"migrations": len(self._migrations), "applied": len(self._applied)})
        return True

    def register(self, migration: Migration) -> None:
        if migration.id in self._migrations:
            raise ConfigurationError(f"Migration {migration.id} is already registered")
        for existing in self._migrations.values():
            if existing.version == migration.version:
                raise ConfigurationError(
                    f"Migration version {migration.version} is used by both {existing.id} and {migration.id}"
                )
        if migration.database_type != self.config.database_type:
            raise ConfigurationError(
                f"Migration {migration.id} targets {migration.database_type}, expected {self.config.database_type}"
            )
        self._migrations[migration.id] = migration
        self.versions.observe(migration.version)

    def load_migrations(self) -> int:
        """Register migration files not yet known. Returns how many were added."""
        added = 0
        for migration in self.files.load_all():
            if migration.id not in self._migrations:
                self.register(migration)
                added += 1
        if added:
            logger.info("Loaded %d migration file(s) from %s", added, self.files.directory)
        return added

    async def create_migration(
        self,
        name: str,
        type: MigrationType | str,
        up: MigrationScript | None = None,
        down: MigrationScript | None = None,
        *,
        description: str = "",
        author: str = "system",
        dependencies: Iterable[str] = (),
        data_loss: bool = False,
        breaking_changes: bool = False,
        tags: Iterable[str] = (),
        pre_conditions: Sequence[ValidationRule] = (),
        post_conditions: Sequence[ValidationRule] = (),
    ) -> str:
        """Create, persist and register a migration. Returns its id."""
        migration = Migration(
            id=generate_migration_id(),
            version=self.versions.next(),
            name=sanitize_name(name),
            description=description,
            type=MigrationType(type),
            database_type=self.config.database_type,
            timestamp=datetime.now(UTC),
            author=author,
            dependencies=tuple(dependencies),
            data_loss=data_loss,
            breaking_changes=breaking_changes,
            tags=tuple(tags),
            up=up or MigrationScript(),
            down=down or MigrationScript(),
            pre_conditions=tuple(pre_conditions),
            post_conditions=tuple(post_conditions),
        )
        self.register(migration)
        path = self.files.write(migration)
        await self.events.publish("migration:created", {"id": migration.id, "version": migration.version, "file": str(path)})
        logger.info("Migration created: %s (%s)", migration.name, migration.id)
        return migration.id

    def get_migration(self, migration_id: str) -> Migration | None:
        return self._migrations.get(migration_id)

    @property
    def applied(self) -> list[str]:
        return list(self._applied)

    def pending(self, target: str | None = None) -> list[Migration]:
        """Unapplied migrations in version order, up to and including ``target``."""
        applied = set(self._applied)
        return sorted(
            (
                m
                for m in self._migrations.values()
                if m.id not in applied and (target is None or m.version <= target)
            ),
            key=lambda m: m.version,
        )

    # =========================================================================
    # Apply
    # =========================================================================

    async def run_migrations(self, target: str | None = None, dry_run: bool = False) -> list[MigrationResult]:
        """
        Apply pending migrations in version order.

        Dependencies are validated before anything runs. A full backup is
        taken first when automatic backups are enabled (not on dry runs). The
        batch stops at the first failed migration.
        """
        with self._hold_lock():
            pending = self.pending(target)
            if not pending:
                logger.info("No pending migrations found")
                return []

            DependencyGraph(self._migrations).validate_batch(pending, self._applied)
            logger.info("Running %d migration(s)%s", len(pending), " (dry run)" if dry_run else "")

            if not dry_run:
                await self._safety_backup("pre-migration")

            results: list[MigrationResult] = []
            for migration in pending:
                result = await self._execute(migration, dry_run)
                results.append(result)
                if result.status == MigrationStatus.FAILED:
                    logger.error("Migration failed: %s", migration.name)
                    break

            await self.events.publish(
                "migrations:completed", {"results": [r.to_dict() for r in results], "dry_run": dry_run}
            )
            logger.info("Migrations completed. %d executed.", len(results))
            return results

    async def _execute(self, migration: Migration, dry_run: bool) -> MigrationResult:
        start = datetime.now(UTC)
        logger.info("Executing migration: %s%s", migration.label, " (dry run)" if dry_run else "")
        await self.events.publish("migration:running", {"id": migration.id, "dry_run": dry_run})
        affected = 0
        try:
            await self._check_conditions(migration, migration.pre_conditions, "Pre-condition")
            if not dry_run:
                affected = await self.target.apply(migration)
                self._applied.append(migration.id)
                self._failed.discard(migration.id)
                await self._check_conditions(migration, migration.post_conditions, "Post-condition")
        except Exception as e:
            self._failed.add(migration.id)
            result = MigrationResult(
                migration_id=migration.id,
                status=MigrationStatus.FAILED,
                start_time=start,
                end_time=datetime.now(UTC),
                affected_rows=affected,
                error_message=str(e),
                rollback_required=True,
                dry_run=dry_run,
            )
            log_with_context(
                logger, logging.ERROR, f"Migration {migration.label} failed: {e}", migration_id=migration.id
            )
            await self.events.publish("migration:failed", {"id": migration.id, "result": result.to_dict(), "error": str(e)})
            return result

        result = MigrationResult(
            migration_id=migration.id,
            status=MigrationStatus.COMPLETED,
            start_time=start,
            end_time=datetime.now(UTC),
            affected_rows=affected,
            dry_run=dry_run,
        )
        await self.events.publish("migration:executed", {"id": migration.id, "result": result.to_dict()})
        return result

    async def _check_conditions(self, migration: Migration, rules: Sequence[ValidationRule], kind: str) -> None:
        for rule in rules:
            actual = await self.target.evaluate(rule.query)
            if not rule.evaluate(actual):
                raise ValidationError(
                    f"{kind} '{rule.name}' failed for migration {migration.label}: "
                    f"got {actual!r}, expected {rule.operator.value} {rule.expected_result!r}"
                )

    # =========================================================================
    # Rollback
    # =========================================================================

    def _rollback_candidates(self, target: str | None, steps: int | None) -> list[str]:
        def version_of(mid: str) -> str:
            migration = self._migrations.get(mid)
            return migration.version if migration else ""

        applied = sorted(self._applied, key=version_of, reverse=True)
        if steps is not None:
            return applied[: max(steps, 0)]
        if target is not None:
            for index, mid in enumerate(applied):
                if version_of(mid) == target:
                    return applied[: index + 1]
            return []
        return applied

    async def rollback_migrations(self, target: str | None = None, steps: int | None = None) -> list[MigrationResult]:
        """
        Revert applied migrations newest first.

        ``steps`` reverts that many; ``target`` reverts down to and including
        that version; neither reverts everything. Stops at the first failure.
        """
        with self._hold_lock():
            candidates = self._rollback_candidates(target, steps)
            if not candidates:
                logger.info("No migrations to roll back")
                return []

            await self._safety_backup("pre-rollback")

            results: list[MigrationResult] = []
            for migration_id in candidates:
                result = await self._revert(migration_id)
                results.append(result)
                if result.status == MigrationStatus.FAILED:
                    logger.error("Rollback failed: %s", migration_id)
                    break

            await self.events.publish("migrations:rolled_back", {"results": [r.to_dict() for r in results]})
            logger.info("Rollback completed. %d rolled back.", len(results))
            return results

    async def _revert(self, migration_id: str) -> MigrationResult:
        start = datetime.now(UTC)
        migration = self._migrations.get(migration_id)
        try:
            if migration is None:
                raise ConfigurationError(f"Applied migration {migration_id} has no definition")
            if migration.down.is_empty:
                logger.warning("Migration %s has no down script; only its record is removed", migration.label)
            logger.info("Rolling back migration: %s", migration.label)
            affected = await self.target.revert(migration)
        except Exception as e:
            result = MigrationResult(
                migration_id=migration_id,
                status=MigrationStatus.FAILED,
                start_time=start,
                end_time=datetime.now(UTC),
                error_message=str(e),
            )
            log_with_context(logger, logging.ERROR, f"Rollback of {migration_id} failed: {e}", migration_id=migration_id)
            await self.events.publish("migration:failed", {"id": migration_id, "result": result.to_dict(), "error": str(e)})
            return result

        self._applied.remove(migration_id)
        result = MigrationResult(
            migration_id=migration_id,
            status=MigrationStatus.ROLLED_BACK,
            start_time=start,
            end_time=datetime.now(UTC),
            affected_rows=affected,
        )
        await self.events.publish("migration:rolled_back", {"id": migration_id, "result": result.to_dict()})
        return result

    async def _safety_backup(self, label: str) -> None:
        if not self.config.enable_automatic_backups or self.backups is None:
            return
        destination = Path(self.config.backup_directory) / label
        await self.backups.create_backup(self.config.backup_config(destination))

    # =========================================================================
    # Status and validation
    # =========================================================================

    def get_migration_status(self) -> MigrationStatusReport:
        known_applied = [mid for mid in self._applied if mid in self._migrations]
        last = max((self._migrations[mid] for mid in known_applied), key=lambda m: m.version, default=None)
        return MigrationStatusReport(
            total=len(self._migrations),
            applied=len(self._applied),
            pending=len(self.pending()),
            failed=len(self._failed),
            last_migration=last,
        )

    def validate_migration(self, migration_id: str) -> ValidationReport:
        migration = self._migrations.get(migration_id)
        if migration is None:
            return ValidationReport(valid=False, errors=[f"Migration not found: {migration_id}"])

        report = ValidationReport()
        applied = set(self._applied)
        for dep in migration.dependencies:
            if dep not in self._migrations:
                report.errors.append(f"Dependency not found: {dep}")
            elif dep not in applied:
                report.errors.append(f"Dependency not applied: {dep}")

        cycle = DependencyGraph(self._migrations).find_cycle([migration.id])
        if cycle:
            report.errors.append(f"Cyclic dependency: {' -> '.join(cycle)}")

        sql_target = isinstance(self.target, SQLMigrationTarget)
        if sql_target and migration.up.nosql:
            report.errors.append("Document operations cannot run against a SQL database")
        if not sql_target and migration.up.sql.strip():
            report.errors.append("SQL cannot run against a document store")

        if migration.up.is_empty:
            report.warnings.append("Migration has no up script")
        if migration.down.is_empty:
            report.warnings.append("Migration has no down script and cannot be reverted")
        if migration.breaking_changes:
            report.warnings.append("Migration contains breaking changes")
        if migration.data_loss:
            report.warnings.append("Migration may cause data loss")

        report.valid = not report.errors
        return report

    # =========================================================================
    # Generated files
    # =========================================================================

    def get_files(self, context: ModuleContext) -> list[GeneratedFile]:
        config = self.config.model_dump(mode="json", exclude={"encryption_key"})
        return [
            GeneratedFile(
                path=f"{context.package_name}/database/migrations.py",
                content=render_template("migration_runner.py.j2", context=context, config=config),
                type="python",
            ),
            GeneratedFile(
                path="config/database/migrations.yaml",
                content=render_template("module_config.yaml.j2", module="migration", config=config),
                type="yaml",
            ),
        ]
