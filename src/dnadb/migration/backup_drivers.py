"""
Backend dump and restore routines.

Each driver writes one raw artifact file and restores from one. Compression,
encryption, checksums and the catalog are handled by
:class:`BackupOrchestrator`.

- SQLite: online backup API through aiosqlite
- PostgreSQL: ``pg_dump -F c`` / ``pg_restore``
- MySQL: ``mysqldump`` / ``mysql``
- MongoDB: ``mongodump --archive`` / ``mongorestore``
- Redis: per-key ``DUMP`` / ``RESTORE`` as JSON lines
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from dnadb.cache.config import CacheConfig, CacheType
from dnadb.errors import BackupError, ConfigurationError
from dnadb.migration.config import BackupConfig
from dnadb.migration.models import DatabaseType
from dnadb.nosql.config import NoSQLConfig, NoSQLDatabaseType
from dnadb.sql.config import SQLConfig, SQLDatabaseType

logger = logging.getLogger(__name__)


class BackupDriver(ABC):
    database_type: DatabaseType
    extension = "backup"

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    @abstractmethod
    async def dump(self, destination: Path, config: BackupConfig) -> dict[str, Any]:
        """Write a raw artifact to ``destination``. Returns metadata for the catalog."""

    @abstractmethod
    async def restore(self, source: Path, *, overwrite: bool = False, target_database: str | None = None) -> None: ...


# =============================================================================
# Subprocess helpers
# =============================================================================


def _require_tool(name: str) -> str:
    path = shutil.which(name)
    if not path:
        raise BackupError(f"{name} not found on PATH")
    return path


async def run_tool(
    cmd: list[str],
    *,
    env: dict[str, str] | None = None,
    stdin_path: Path | None = None,
    timeout: float | None = None,
) -> None:
    """Run a client tool, raising :class:`BackupError` on a non-zero exit."""
    tool = Path(cmd[0]).name
    logger.info("Running %s", tool)
    stdin = stdin_path.open("rb") if stdin_path else None
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **(env or {})},
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise BackupError(f"{tool} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise BackupError(f"{tool} executable not found") from e
    finally:
        if stdin is not None:
            stdin.close()

    if proc.returncode != 0:
        message = stderr.decode(errors="replace").strip()
        logger.error("%s failed (%s): %s", tool, proc.returncode, message)
        raise BackupError(f"{tool} failed: {message}")


# =============================================================================
# SQL
# =============================================================================


class SQLiteBackupDriver(BackupDriver):
    database_type = DatabaseType.SQLITE
    extension = "db"

    def __init__(self, path: str | Path, timeout: float | None = None):
        super().__init__(timeout)
        if str(path).strip() in ("", ":memory:") or str(path).startswith("file::memory:"):
            raise ConfigurationError("Cannot back up an in-memory SQLite database")
        self.path = Path(path)

    async def _copy(self, source: Path, target: Path) -> None:
        import aiosqlite

        async with aiosqlite.connect(source) as src, aiosqlite.connect(target) as dst:
            await src.backup(dst)

    async def dump(self, destination: Path, config: BackupConfig) -> dict[str, Any]:
        if not self.path.exists():
            raise BackupError(f"Database not found: {self.path}")
        if config.include_tables or config.exclude_tables:
            logger.warning("SQLite backups copy the whole database; table filters are ignored")
        await self._copy(self.path, destination)
        return {"source": str(self.path)}

    async def restore(self, source: Path, *, overwrite: bool = False, target_database: str | None = None) -> None:
        target = Path(target_database) if target_database else self.path
        target.parent.mkdir(parents=True, exist_ok=True)
        await self._copy(source, target)


class PostgresBackupDriver(BackupDriver):
    database_type = DatabaseType.POSTGRESQL
    extension = "dump"

    def __init__(self, config: SQLConfig, timeout: float | None = None):
        super().__init__(timeout)
        self.config = config

    def _connection_args(self) -> list[str]:
        return ["-h", self.config.host, "-p", str(self.config.effective_port), "-U", self.config.username or "postgres"]

    def _env(self) -> dict[str, str]:
        return {"PGPASSWORD": self.config.password} if self.config.password else {}

    async def dump(self, destination: Path, config: BackupConfig) -> dict[str, Any]:
        cmd = [_require_tool("pg_dump"), *self._connection_args(), "-F", "c", "--no-owner", "--no-privileges"]
        if not config.include_data:
            cmd.append("--schema-only")
        elif not config.include_schema:
            cmd.append("--data-only")
        cmd += [f"--table={t}" for t in config.include_tables]
        cmd += [f"--exclude-table={t}" for t in config.exclude_tables]
        cmd += ["-f", str(destination), self.config.database]
        await run_tool(cmd, env=self._env(), timeout=self.timeout)
        return {"database": self.config.database, "format": "custom"}

    async def restore(self, source: Path, *, overwrite: bool = False, target_database: str | None = None) -> None:
        cmd = [_require_tool("pg_restore"), *self._connection_args(), "--no-owner", "--no-privileges"]
        if overwrite:
            cmd += ["--clean", "--if-exists"]
        cmd += ["-d", target_database or self.config.database, str(source)]
        await run_tool(cmd, env=self._env(), timeout=self.timeout)


class MySQLBackupDriver(BackupDriver):
    database_type = DatabaseType.MYSQL
    extension = "sql"

    def __init__(self, config: SQLConfig, timeout: float | None = None):
        super().__init__(timeout)
        self.config = config

    def _connection_args(self) -> list[str]:
        return ["-h", self.config.host, "-P", str(self.config.effective_port), "-u", self.config.username or "root"]

    def _env(self) -> dict[str, str]:
        return {"MYSQL_PWD": self.config.password} if self.config.password else {}

    async def dump(self, destination: Path, config: BackupConfig) -> dict[str, Any]:
        cmd = [_require_tool("mysqldump"), *self._connection_args(), "--single-transaction", "--routines"]
        if not config.include_data:
            cmd.append("--no-data")
        elif not config.include_schema:
            cmd.append("--no-create-info")
        cmd += [f"--ignore-table={self.config.database}.{t}" for t in config.exclude_tables]
        cmd += [f"--result-file={destination}", self.config.database, *config.include_tables]
        await run_tool(cmd, env=self._env(), timeout=self.timeout)
        return {"database": self.config.database}

    async def restore(self, source: Path, *, overwrite: bool = False, target_database: str | None = None) -> None:
        cmd = [_require_tool("mysql"), *self._connection_args(), target_database or self.config.database]
        await run_tool(cmd, env=self._env(), stdin_path=source, timeout=self.timeout)


# =============================================================================
# Documents and cache
# =============================================================================


class MongoBackupDriver(BackupDriver):
    database_type = DatabaseType.MONGODB
    extension = "archive"

    def __init__(self, config: NoSQLConfig, timeout: float | None = None):
        super().__init__(timeout)
        self.config = config

    async def dump(self, destination: Path, config: BackupConfig) -> dict[str, Any]:
        cmd = [_require_tool("mongodump"), f"--uri={self.config.mongo_uri()}", f"--db={self.config.database}"]
        if len(config.include_collections) == 1:
            cmd.append(f"--collection={config.include_collections[0]}")
        elif config.include_collections:
            logger.warning("mongodump accepts one --collection; dumping the whole database")
        cmd += [f"--excludeCollection={c}" for c in config.exclude_collections]
        cmd.append(f"--archive={destination}")
        await run_tool(cmd, timeout=self.timeout)
        return {"database": self.config.database, "format": "archive"}

    async def restore(self, source: Path, *, overwrite: bool = False, target_database: str | None = None) -> None:
        cmd = [_require_tool("mongorestore"), f"--uri={self.config.mongo_uri()}", f"--archive={source}"]
        if overwrite:
            cmd.append("--drop")
        if target_database and target_database != self.config.database:
            cmd += [f"--nsFrom={self.config.database}.*", f"--nsTo={target_database}.*"]
        await run_tool(cmd, timeout=self.timeout)


class RedisBackupDriver(BackupDriver):
    """Serializes keys with ``DUMP`` and restores them with ``RESTORE``.

    Uses its own binary-safe client (``decode_responses=False``).
    """

    database_type = DatabaseType.REDIS
    extension = "jsonl"

    def __init__(self, config: CacheConfig, client: Any = None, timeout: float | None = None):
        super().__init__(timeout)
        self.config = config
        self._client = client

    async def _connection(self) -> Any:
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(self.config.redis_url(), decode_responses=False)
        return self._client

    def _pattern(self) -> str:
        prefix = self.config.key_prefix
        return f"{prefix}{self.config.key_separator}*" if prefix else "*"

    async def dump(self, destination: Path, config: BackupConfig) -> dict[str, Any]:
        client = await self._connection()
        count = 0
        with destination.open("w", encoding="utf-8") as out:
            async for key in client.scan_iter(match=self._pattern(), count=self.config.pipeline_max_size):
                payload = await client.dump(key)
                if payload is None:
                    continue
                ttl_ms = await client.pttl(key)
                record = {
                    "key": base64.b64encode(key if isinstance(key, bytes) else key.encode()).decode("ascii"),
                    "ttl_ms": max(ttl_ms, 0),
                    "value": base64.b64encode(payload).decode("ascii"),
                }
                out.write(json.dumps(record) + "\n")
                count += 1
        return {"keys": count, "pattern": self._pattern()}

    async def restore(self, source: Path, *, overwrite: bool = False, target_database: str | None = None) -> None:
        client = await self._connection()
        with source.open(encoding="utf-8") as lines:
            for line in lines:
                if not line.strip():
                    continue
                record = json.loads(line)
                await client.restore(
                    base64.b64decode(record["key"]),
                    record["ttl_ms"],
                    base64.b64decode(record["value"]),
                    replace=overwrite,
                )


def create_backup_driver(
    config: SQLConfig | NoSQLConfig | CacheConfig,
    timeout: float | None = None,
) -> BackupDriver:
    """Backup driver for a module's connection settings."""
    if isinstance(config, SQLConfig):
        if config.type == SQLDatabaseType.SQLITE:
            return SQLiteBackupDriver(config.filename or "", timeout=timeout)
        if config.type == SQLDatabaseType.POSTGRESQL:
            return PostgresBackupDriver(config, timeout=timeout)
        return MySQLBackupDriver(config, timeout=timeout)
    if isinstance(config, NoSQLConfig):
        if config.type == NoSQLDatabaseType.MONGODB:
            return MongoBackupDriver(config, timeout=timeout)
        raise ConfigurationError(f"Backups are not supported for {config.type}")
    if isinstance(config, CacheConfig):
        if config.type == CacheType.REDIS:
            return RedisBackupDriver(config, timeout=timeout)
        raise ConfigurationError("Backups are not supported for the memory cache")
    raise ConfigurationError(f"No backup driver for {type(config).__name__}")
