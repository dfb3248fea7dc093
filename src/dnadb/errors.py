"""
Error taxonomy shared by every dnadb module.

All errors derive from :class:`DnaDbError` so callers can catch the whole
family at once. Driver exceptions are wrapped with ``raise ... from exc``
so the original cause stays attached.
"""

from __future__ import annotations


class DnaDbError(Exception):
    """Base class for all dnadb errors."""


class ConfigurationError(DnaDbError):
    """Invalid configuration. Fatal to the module instance that raised it."""


class BackendConnectionError(DnaDbError):
    """Connecting to or disconnecting from a backend failed."""


class PoolExhaustedError(BackendConnectionError):
    """No pooled connection became available within the acquire timeout."""

    def __init__(self, pool_name: str, timeout: float):
        self.pool_name = pool_name
        self.timeout = timeout
        super().__init__(
            f"Connection pool '{pool_name}' exhausted: no connection available "
            f"within {timeout:g}s"
        )


class OperationError(DnaDbError):
    """A query, collection or cache call failed."""


class InvalidQueryError(OperationError):
    """Builder input (identifier, operator, value shape) is not acceptable."""


class TransactionStateError(OperationError):
    """A transaction handle was used outside its legal state."""


class MigrationLockError(OperationError):
    """A migration or rollback batch is already running."""


class BackupError(OperationError):
    """Backup creation or restore failed."""


class ValidationError(DnaDbError):
    """Migration dependency or pre/post-condition validation failed."""


class DependencyError(ValidationError):
    """A migration depends on a migration that is neither applied nor pending before it."""

    def __init__(self, migration_id: str, missing: str, migration_name: str | None = None):
        self.migration_id = migration_id
        self.missing = missing
        label = migration_name or migration_id
        super().__init__(f"Migration {label} depends on {missing} which is not applied")


class CyclicDependencyError(ValidationError):
    """The migration dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic migration dependency: {' -> '.join(cycle)}")


class UnsupportedOperationError(DnaDbError):
    """The configured backend does not support the requested capability."""

    def __init__(self, operation: str, backend: str):
        self.operation = operation
        self.backend = backend
        super().__init__(f"Operation '{operation}' is not supported by the {backend} backend")
