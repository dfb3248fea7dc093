"""
Migration versions and on-disk migration files.

Each migration is stored as ``<version>_<name>.yaml`` with a ``.sql``
preview beside it for SQL migrations. Python ``script`` callables live in
code and are attached by registering the migration, not through files.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import yaml

from dnadb.errors import ConfigurationError
from dnadb.migration.models import Migration

logger = logging.getLogger(__name__)

VERSION_FORMAT = "%Y%m%d%H%M%S"

_UNSAFE_NAME = re.compile(r"[^a-z0-9_]")


def sanitize_name(name: str) -> str:
    """Lowercase ``[a-z0-9_]`` migration name."""
    cleaned = _UNSAFE_NAME.sub("_", name.strip().lower())
    if not cleaned.strip("_"):
        raise ConfigurationError(f"Invalid migration name: {name!r}")
    return cleaned


def generate_migration_id() -> str:
    return f"migration_{uuid.uuid4().hex[:12]}"


class VersionGenerator:
    """
    ``YYYYMMDDHHMMSS`` UTC versions, strictly increasing.

    A version that would collide with or precede the last one issued is
    bumped to one second after it.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None, last: str | None = None):
        self._clock = clock or (lambda: datetime.now(UTC))
        self._last = last

    def observe(self, version: str) -> None:
        """Record an existing version so new ones sort after it."""
        if self._last is None or version > self._last:
            self._last = version

    def next(self) -> str:
        candidate = self._clock().astimezone(UTC).strftime(VERSION_FORMAT)
        if self._last is not None and candidate <= self._last:
            last = datetime.strptime(self._last, VERSION_FORMAT)
            candidate = (last + timedelta(seconds=1)).strftime(VERSION_FORMAT)
        self._last = candidate
        return candidate


def render_sql_preview(migration: Migration) -> str:
    return (
        f"-- Migration: {migration.name}\n"
        f"-- Version: {migration.version}\n"
        f"-- Type: {migration.type.value}\n"
        "\n"
        "-- UP\n"
        f"{migration.up.sql}\n"
        "\n"
        "-- DOWN\n"
        f"{migration.down.sql}\n"
    )


class MigrationFileStore:
    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, migration: Migration) -> Path:
        return self.directory / f"{migration.label}.yaml"

    def write(self, migration: Migration) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(migration)
        path.write_text(yaml.safe_dump(migration.to_dict(), sort_keys=False), encoding="utf-8")
        if migration.up.sql or migration.down.sql:
            path.with_suffix(".sql").write_text(render_sql_preview(migration), encoding="utf-8")
        logger.debug("Wrote migration file %s", path)
        return path

    def read(self, path: str | Path) -> Migration:
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read migration file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Migration file {path} does not contain a mapping")
        try:
            return Migration.from_dict(data)
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Invalid migration file {path}: {e}") from e

    def load_all(self) -> list[Migration]:
        """Every migration in the directory, in version order."""
        if not self.directory.is_dir():
            return []
        migrations = [self.read(path) for path in sorted(self.directory.glob("*.yaml"))]
        return sorted(migrations, key=lambda m: m.version)
