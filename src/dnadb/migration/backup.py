"""
Backup and restore orchestration.

A backup is one artifact file produced by a :class:`BackupDriver`,
optionally gzip-compressed and Fernet-encrypted, checksummed with SHA-256
and recorded in ``catalog.json`` under the backup directory. Retention
cleanup runs after every successful backup.

Backups taken around migrations are best-effort safety nets: there is no
coordination across backends, so they are not consistent snapshots of a
multi-backend system.
"""

from __future__ import annotations

import asyncio
import base64
import gzip
import hashlib
import json
import logging
import shutil
import tempfile
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from dnadb.config import coerce_config
from dnadb.errors import BackupError, ConfigurationError, DnaDbError
from dnadb.events import EventChannel
from dnadb.migration.backup_drivers import BackupDriver
from dnadb.migration.config import BackupConfig, MigrationConfig
from dnadb.migration.models import BackupResult

logger = logging.getLogger(__name__)

CATALOG_FILE = "catalog.json"
_CHUNK_SIZE = 1024 * 1024


def fernet_for(key: str) -> Fernet:
    """Fernet cipher for a key: used as-is when it is a Fernet key, else derived with SHA-256."""
    try:
        return Fernet(key.encode())
    except ValueError:
        return Fernet(base64.urlsafe_b64encode(hashlib.sha256(key.encode()).digest()))


def file_checksum(path: Path) -> str:
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def _gzip_file(source: Path, target: Path) -> None:
    with source.open("rb") as src, gzip.open(target, "wb") as dst:
        shutil.copyfileobj(src, dst, _CHUNK_SIZE)


def _gunzip_file(source: Path, target: Path) -> None:
    with gzip.open(source, "rb") as src, target.open("wb") as dst:
        shutil.copyfileobj(src, dst, _CHUNK_SIZE)


def _transform_file(source: Path, target: Path, transform: Callable[[bytes], bytes]) -> None:
    target.write_bytes(transform(source.read_bytes()))


class BackupOrchestrator:
    """Creates, restores, lists and prunes backups for one backend."""

    def __init__(
        self,
        config: MigrationConfig | Mapping[str, Any],
        driver: BackupDriver,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = coerce_config(MigrationConfig, config)
        self.driver = driver
        self.events = EventChannel("backup")
        self._clock = clock or (lambda: datetime.now(UTC))
        self._catalog_lock = asyncio.Lock()
        self._cipher = fernet_for(self.config.encryption_key) if self.config.encryption_key else None

    @property
    def catalog_path(self) -> Path:
        return Path(self.config.backup_directory) / CATALOG_FILE

    # =========================================================================
    # Catalog
    # =========================================================================

    def _read_catalog(self) -> list[BackupResult]:
        if not self.catalog_path.exists():
            return []
        try:
            entries = json.loads(self.catalog_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BackupError(f"Backup catalog {self.catalog_path} is unreadable: {e}") from e
        return [BackupResult.from_dict(entry) for entry in entries]

    def _write_catalog(self, backups: list[BackupResult]) -> None:
        self.catalog_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.catalog_path.with_suffix(".tmp")
        tmp.write_text(json.dumps([b.to_dict() for b in backups], indent=2), encoding="utf-8")
        tmp.replace(self.catalog_path)

    async def get_backup_history(self, limit: int = 100) -> list[BackupResult]:
        """Backups newest first."""
        async with self._catalog_lock:
            backups = self._read_catalog()
        return sorted(backups, key=lambda b: b.start_time, reverse=True)[:limit]

    async def find_backup(self, backup_id: str) -> BackupResult | None:
        async with self._catalog_lock:
            return next((b for b in self._read_catalog() if b.id == backup_id), None)

    # =========================================================================
    # Create
    # =========================================================================

    async def create_backup(self, config: BackupConfig | Mapping[str, Any] | None = None) -> BackupResult:
        backup_config = self.config.backup_config() if config is None else coerce_config(BackupConfig, config)
        if backup_config.encryption and self._cipher is None:
            raise ConfigurationError("Encrypted backups require MigrationConfig.encryption_key")

        start = self._clock()
        backup_id = f"backup_{start.strftime('%Y%m%d%H%M%S')}_{uuid.uuid4().hex[:8]}"
        destination = Path(backup_config.destination)
        destination.mkdir(parents=True, exist_ok=True)
        artifact = destination / f"{backup_id}.{self.driver.extension}"
        produced: list[Path] = [artifact]

        logger.info("Creating %s backup %s", backup_config.type, backup_id)
        try:
            metadata = await self.driver.dump(artifact, backup_config)
            if backup_config.compression:
                compressed = artifact.with_name(artifact.name + ".gz")
                produced.append(compressed)
                await asyncio.to_thread(_gzip_file, artifact, compressed)
                artifact.unlink()
                artifact = compressed
            if backup_config.encryption:
                encrypted = artifact.with_name(artifact.name + ".enc")
                produced.append(encrypted)
                await asyncio.to_thread(_transform_file, artifact, encrypted, self._cipher.encrypt)
                artifact.unlink()
                artifact = encrypted
            checksum = await asyncio.to_thread(file_checksum, artifact)
        except Exception as e:
            for path in produced:
                path.unlink(missing_ok=True)
            logger.error("Backup %s failed: %s", backup_id, e)
            await self.events.publish("backup:failed", {"id": backup_id, "error": str(e)})
            if isinstance(e, DnaDbError):
                raise
            raise BackupError(f"Backup {backup_id} failed: {e}") from e

        result = BackupResult(
            id=backup_id,
            type=backup_config.type,
            database_type=self.driver.database_type,
            start_time=start,
            end_time=self._clock(),
            size=artifact.stat().st_size,
            location=str(artifact),
            checksum=checksum,
            compressed=backup_config.compression,
            encrypted=backup_config.encryption,
            metadata={**metadata, "include_data": backup_config.include_data, "include_schema": backup_config.include_schema},
        )
        async with self._catalog_lock:
            catalog = self._read_catalog()
            catalog.append(result)
            self._write_catalog(catalog)

        await self.cleanup_old_backups(backup_config.retention)
        await self.events.publish("backup:created", result.to_dict())
        logger.info("Backup created: %s (%d bytes)", result.id, result.size)
        return result

    # =========================================================================
    # Restore
    # =========================================================================

    async def restore_from_backup(
        self,
        backup_id: str,
        overwrite: bool = False,
        target_database: str | None = None,
    ) -> bool:
        """
        Restore a cataloged backup after verifying its checksum.

        With ``overwrite`` and automatic backups enabled, the current state is
        backed up first.
        """
        backup = await self.find_backup(backup_id)
        if backup is None:
            raise BackupError(f"Backup not found: {backup_id}")

        location = Path(backup.location)
        if not location.exists():
            raise BackupError(f"Backup file missing: {location}")
        checksum = await asyncio.to_thread(file_checksum, location)
        if checksum != backup.checksum:
            raise BackupError(f"Checksum mismatch for backup {backup_id}")

        if overwrite and self.config.enable_automatic_backups:
            await self.create_backup(self.config.backup_config(Path(self.config.backup_directory) / "pre-restore"))

        logger.info("Restoring backup %s", backup_id)
        with tempfile.TemporaryDirectory(prefix="dnadb-restore-") as workdir:
            artifact = location
            if backup.encrypted:
                if self._cipher is None:
                    raise ConfigurationError(f"Backup {backup_id} is encrypted but no encryption_key is configured")
                decrypted = Path(workdir) / "artifact.dec"
                try:
                    await asyncio.to_thread(_transform_file, artifact, decrypted, self._cipher.decrypt)
                except InvalidToken as e:
                    raise BackupError(f"Cannot decrypt backup {backup_id}: wrong key") from e
                artifact = decrypted
            if backup.compressed:
                plain = Path(workdir) / f"artifact.{self.driver.extension}"
                await asyncio.to_thread(_gunzip_file, artifact, plain)
                artifact = plain
            try:
                await self.driver.restore(artifact, overwrite=overwrite, target_database=target_database)
            except DnaDbError:
                raise
            except Exception as e:
                raise BackupError(f"Restore of {backup_id} failed: {e}") from e

        await self.events.publish("backup:restored", {"id": backup_id, "target_database": target_database})
        logger.info("Backup restored: %s", backup_id)
        return True

    # =========================================================================
    # Retention
    # =========================================================================

    async def cleanup_old_backups(self, retention_days: int | None = None) -> list[str]:
        """Delete backups older than ``retention_days``. 0 keeps everything."""
        days = self.config.backup_retention if retention_days is None else retention_days
        if days <= 0:
            return []
        cutoff = self._clock() - timedelta(days=days)

        async with self._catalog_lock:
            catalog = self._read_catalog()
            expired = [b for b in catalog if b.start_time < cutoff]
            if not expired:
                return []
            for backup in expired:
                Path(backup.location).unlink(missing_ok=True)
            self._write_catalog([b for b in catalog if b.start_time >= cutoff])

        for backup in expired:
            logger.info("Deleted expired backup %s", backup.id)
            await self.events.publish("backup:deleted", {"id": backup.id, "location": backup.location})
        return [b.id for b in expired]
