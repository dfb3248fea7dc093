"""
Migrations and backups.

This package provides:
- MigrationEngine (versioned migrations with dependencies, dry runs, rollback)
- SQL and document migration targets
- BackupOrchestrator (compressed, optionally encrypted, checksummed backups)
- Backup drivers for SQLite, PostgreSQL, MySQL, MongoDB and Redis

Example usage:
    >>> from dnadb.migration import MigrationEngine, MigrationScript, MigrationType
    >>> engine = MigrationEngine.for_module(config, sql_module)
    >>> await engine.initialize()
    >>> await engine.create_migration(
    ...     "add users", MigrationType.CREATE_TABLE,
    ...     up=MigrationScript(sql="CREATE TABLE users (id INTEGER PRIMARY KEY)"),
    ...     down=MigrationScript(sql="DROP TABLE users"),
    ... )
    >>> await engine.run_migrations()
"""

from dnadb.migration.backup import BackupOrchestrator, file_checksum
from dnadb.migration.backup_drivers import (
    BackupDriver,
    MongoBackupDriver,
    MySQLBackupDriver,
    PostgresBackupDriver,
    RedisBackupDriver,
    SQLiteBackupDriver,
    create_backup_driver,
)
from dnadb.migration.config import BackupConfig, MigrationConfig
from dnadb.migration.engine import MigrationEngine
from dnadb.migration.files import MigrationFileStore, VersionGenerator, sanitize_name
from dnadb.migration.graph import DependencyGraph
from dnadb.migration.models import (
    BackupResult,
    BackupType,
    ConditionOperator,
    DatabaseType,
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

__all__ = [
    # Config
    "BackupConfig",
    "MigrationConfig",
    # Models
    "BackupResult",
    "BackupType",
    "ConditionOperator",
    "DatabaseType",
    "Migration",
    "MigrationResult",
    "MigrationScript",
    "MigrationStatus",
    "MigrationStatusReport",
    "MigrationType",
    "ValidationReport",
    "ValidationRule",
    # Engine
    "DependencyGraph",
    "MigrationEngine",
    "MigrationFileStore",
    "VersionGenerator",
    "sanitize_name",
    # Targets
    "DocumentMigrationTarget",
    "MigrationTarget",
    "SQLMigrationTarget",
    # Backups
    "BackupDriver",
    "BackupOrchestrator",
    "MongoBackupDriver",
    "MySQLBackupDriver",
    "PostgresBackupDriver",
    "RedisBackupDriver",
    "SQLiteBackupDriver",
    "create_backup_driver",
    "file_checksum",
]
