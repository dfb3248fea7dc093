"""
dnadb - data-access abstraction layer.

One consistent, async interface over relational databases, document
stores and caches, plus a migration and backup engine.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _metadata_version

from .errors import (
    BackendConnectionError,
    BackupError,
    ConfigurationError,
    CyclicDependencyError,
    DependencyError,
    DnaDbError,
    InvalidQueryError,
    MigrationLockError,
    OperationError,
    PoolExhaustedError,
    TransactionStateError,
    UnsupportedOperationError,
    ValidationError,
)
from .events import Event, EventChannel
from .generated import GeneratedFile, ModuleContext

try:
    __version__ = _metadata_version("dnadb")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "Event",
    "EventChannel",
    "GeneratedFile",
    "ModuleContext",
    # Errors
    "BackendConnectionError",
    "BackupError",
    "ConfigurationError",
    "CyclicDependencyError",
    "DependencyError",
    "DnaDbError",
    "InvalidQueryError",
    "MigrationLockError",
    "OperationError",
    "PoolExhaustedError",
    "TransactionStateError",
    "UnsupportedOperationError",
    "ValidationError",
]
