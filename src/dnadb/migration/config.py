"""Migration and backup configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dnadb.errors import ConfigurationError
from dnadb.migration.models import BackupType, DatabaseType


class MigrationConfig(BaseModel):
    """Settings for :class:`MigrationEngine` and :class:`BackupOrchestrator`.

    ``max_migration_time`` (seconds) is handed to backends as a statement or
    subprocess timeout; the engine itself never cancels a running migration.
    """

    model_config = ConfigDict(frozen=True)

    database_type: DatabaseType
    migrations_directory: Path
    migrations_table: str = "migrations"
    backup_directory: Path
    backup_retention: int = Field(default=30, ge=0)
    enable_automatic_backups: bool = True
    compression_enabled: bool = True
    encryption_enabled: bool = False
    encryption_key: str | None = None
    max_migration_time: float = Field(default=3600.0, gt=0)
    log_level: str = "info"

    @model_validator(mode="after")
    def _check_consistency(self) -> MigrationConfig:
        if not str(self.migrations_directory).strip():
            raise ConfigurationError("Migrations directory is required")
        if not str(self.backup_directory).strip():
            raise ConfigurationError("Backup directory is required")
        if self.encryption_enabled and not self.encryption_key:
            raise ConfigurationError("encryption_key is required when encryption is enabled")
        return self

    def backup_config(self, destination: str | Path | None = None) -> BackupConfig:
        """Full backup settings derived from this config."""
        return BackupConfig(
            type=BackupType.FULL,
            destination=Path(destination) if destination else self.backup_directory,
            compression=self.compression_enabled,
            encryption=self.encryption_enabled,
            retention=self.backup_retention,
        )


class BackupConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: BackupType = BackupType.FULL
    destination: Path
    compression: bool = True
    encryption: bool = False
    include_data: bool = True
    include_schema: bool = True
    include_indexes: bool = True
    include_tables: tuple[str, ...] = ()
    exclude_tables: tuple[str, ...] = ()
    include_collections: tuple[str, ...] = ()
    exclude_collections: tuple[str, ...] = ()
    retention: int = Field(default=30, ge=0)

    @model_validator(mode="after")
    def _check_consistency(self) -> BackupConfig:
        if not (self.include_data or self.include_schema):
            raise ConfigurationError("A backup must include data, schema or both")
        overlap = set(self.include_tables) & set(self.exclude_tables)
        if overlap:
            raise ConfigurationError(f"Tables both included and excluded: {sorted(overlap)}")
        return self
