"""Tests for backup creation, restore, encryption and retention."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aiosqlite
import pytest

from dnadb.cache import CacheConfig
from dnadb.errors import BackupError, ConfigurationError
from dnadb.migration import (
    BackupConfig,
    BackupOrchestrator,
    BackupType,
    MigrationConfig,
    MongoBackupDriver,
    PostgresBackupDriver,
    RedisBackupDriver,
    SQLiteBackupDriver,
    create_backup_driver,
    file_checksum,
)
from dnadb.migration import backup_drivers
from dnadb.nosql import NoSQLConfig
from dnadb.sql import SQLConfig


class Clock:
    """Wall clock the test moves by hand."""

    def __init__(self) -> None:
        self.now = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


async def seed_database(path: Path, names: list[str]) -> None:
    async with aiosqlite.connect(path) as db:
        await db.execute("CREATE TABLE IF NOT EXISTS users (name TEXT)")
        await db.executemany("INSERT INTO users (name) VALUES (?)", [(n,) for n in names])
        await db.commit()


async def user_names(path: Path) -> list[str]:
    async with aiosqlite.connect(path) as db:
        async with db.execute("SELECT name FROM users ORDER BY name") as cursor:
            return [row[0] for row in await cursor.fetchall()]


def make_config(tmp_path: Path, **overrides: Any) -> MigrationConfig:
    settings: dict[str, Any] = {
        "database_type": "sqlite",
        "migrations_directory": tmp_path / "migrations",
        "backup_directory": tmp_path / "backups",
        "enable_automatic_backups": False,
    }
    settings.update(overrides)
    return MigrationConfig(**settings)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "app.db"


# =============================================================================
# Create and restore
# =============================================================================


class TestCreateAndRestore:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path: Path, db_path: Path, clock: Clock) -> None:
        await seed_database(db_path, ["ada", "grace"])
        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(db_path), clock=clock)

        result = await backups.create_backup()

        assert result.type == BackupType.FULL
        assert result.compressed is True
        assert result.encrypted is False
        assert result.location.endswith(".db.gz")
        assert result.checksum == file_checksum(Path(result.location))
        assert result.size == Path(result.location).stat().st_size
        assert result.id.startswith("backup_20260501120000_")

        await seed_database(db_path, ["mallory"])
        assert await backups.restore_from_backup(result.id, overwrite=True) is True
        assert await user_names(db_path) == ["ada", "grace"]

    @pytest.mark.asyncio
    async def test_restore_into_other_database(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path, compression_enabled=False), SQLiteBackupDriver(db_path))
        result = await backups.create_backup()
        assert result.location.endswith(".db")

        copy_path = tmp_path / "restored" / "copy.db"
        await backups.restore_from_backup(result.id, target_database=str(copy_path))
        assert await user_names(copy_path) == ["ada"]

    @pytest.mark.asyncio
    async def test_catalog_persists_across_instances(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        config = make_config(tmp_path)
        result = await BackupOrchestrator(config, SQLiteBackupDriver(db_path)).create_backup()

        again = BackupOrchestrator(config, SQLiteBackupDriver(db_path))
        assert await again.find_backup(result.id) == result

    @pytest.mark.asyncio
    async def test_overwrite_takes_pre_restore_backup(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path, enable_automatic_backups=True), SQLiteBackupDriver(db_path))
        result = await backups.create_backup()

        await backups.restore_from_backup(result.id, overwrite=True)

        history = await backups.get_backup_history()
        assert len(history) == 2
        assert any(Path(b.location).parent.name == "pre-restore" for b in history)

    @pytest.mark.asyncio
    async def test_publishes_events(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(db_path))
        topics: list[str] = []
        backups.events.subscribe("*", lambda event: topics.append(event.topic))

        result = await backups.create_backup()
        await backups.restore_from_backup(result.id)

        assert topics == ["backup:created", "backup:restored"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_backup(self, tmp_path: Path, db_path: Path) -> None:
        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(db_path))
        with pytest.raises(BackupError):
            await backups.restore_from_backup("backup_missing")

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(db_path))
        result = await backups.create_backup()
        with Path(result.location).open("ab") as f:
            f.write(b"tampered")

        with pytest.raises(BackupError, match="Checksum mismatch"):
            await backups.restore_from_backup(result.id)
        assert await user_names(db_path) == ["ada"]

    @pytest.mark.asyncio
    async def test_deleted_artifact(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(db_path))
        result = await backups.create_backup()
        Path(result.location).unlink()

        with pytest.raises(BackupError, match="missing"):
            await backups.restore_from_backup(result.id)

    @pytest.mark.asyncio
    async def test_failed_dump_leaves_nothing_behind(self, tmp_path: Path) -> None:
        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(tmp_path / "absent.db"))
        topics: list[str] = []
        backups.events.subscribe("backup:failed", lambda event: topics.append(event.topic))

        with pytest.raises(BackupError):
            await backups.create_backup()

        assert topics == ["backup:failed"]
        assert await backups.get_backup_history() == []
        assert list((tmp_path / "backups").iterdir()) == []

    def test_in_memory_sqlite_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            SQLiteBackupDriver(":memory:")

    def test_backup_must_include_something(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            BackupConfig(destination=tmp_path, include_data=False, include_schema=False)

    def test_corrupt_catalog(self, tmp_path: Path, db_path: Path) -> None:
        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(db_path))
        backups.catalog_path.parent.mkdir(parents=True)
        backups.catalog_path.write_text("{not json")
        with pytest.raises(BackupError):
            backups._read_catalog()


# =============================================================================
# Encryption
# =============================================================================


class TestEncryption:
    @pytest.mark.asyncio
    async def test_encrypted_round_trip(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        config = make_config(tmp_path, encryption_enabled=True, encryption_key="correct horse battery staple")
        backups = BackupOrchestrator(config, SQLiteBackupDriver(db_path))

        result = await backups.create_backup()

        assert result.encrypted is True
        assert result.location.endswith(".db.gz.enc")
        assert b"SQLite format" not in Path(result.location).read_bytes()

        await seed_database(db_path, ["mallory"])
        await backups.restore_from_backup(result.id, overwrite=True)
        assert await user_names(db_path) == ["ada"]

    @pytest.mark.asyncio
    async def test_wrong_key(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        config = make_config(tmp_path, encryption_enabled=True, encryption_key="right key")
        result = await BackupOrchestrator(config, SQLiteBackupDriver(db_path)).create_backup()

        wrong = make_config(tmp_path, encryption_enabled=True, encryption_key="wrong key")
        with pytest.raises(BackupError, match="wrong key"):
            await BackupOrchestrator(wrong, SQLiteBackupDriver(db_path)).restore_from_backup(result.id)

    @pytest.mark.asyncio
    async def test_missing_key(self, tmp_path: Path, db_path: Path) -> None:
        await seed_database(db_path, ["ada"])
        keyed = make_config(tmp_path, encryption_enabled=True, encryption_key="k")
        result = await BackupOrchestrator(keyed, SQLiteBackupDriver(db_path)).create_backup()

        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(db_path))
        with pytest.raises(ConfigurationError):
            await backups.restore_from_backup(result.id)
        with pytest.raises(ConfigurationError):
            await backups.create_backup({"destination": tmp_path / "backups", "encryption": True})


# =============================================================================
# Retention and history
# =============================================================================


class TestRetention:
    @pytest.mark.asyncio
    async def test_old_backups_removed_after_new_backup(self, tmp_path: Path, db_path: Path, clock: Clock) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path, backup_retention=7), SQLiteBackupDriver(db_path), clock=clock)
        old = await backups.create_backup()

        clock.advance(days=10)
        new = await backups.create_backup()

        assert [b.id for b in await backups.get_backup_history()] == [new.id]
        assert not Path(old.location).exists()
        assert Path(new.location).exists()

    @pytest.mark.asyncio
    async def test_zero_retention_keeps_everything(self, tmp_path: Path, db_path: Path, clock: Clock) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path, backup_retention=0), SQLiteBackupDriver(db_path), clock=clock)
        await backups.create_backup()
        clock.advance(days=400)
        await backups.create_backup()

        assert len(await backups.get_backup_history()) == 2
        assert await backups.cleanup_old_backups() == []

    @pytest.mark.asyncio
    async def test_explicit_cleanup(self, tmp_path: Path, db_path: Path, clock: Clock) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path, backup_retention=0), SQLiteBackupDriver(db_path), clock=clock)
        first = await backups.create_backup()
        clock.advance(days=3)

        assert await backups.cleanup_old_backups(retention_days=2) == [first.id]

    @pytest.mark.asyncio
    async def test_history_newest_first_with_limit(self, tmp_path: Path, db_path: Path, clock: Clock) -> None:
        await seed_database(db_path, ["ada"])
        backups = BackupOrchestrator(make_config(tmp_path), SQLiteBackupDriver(db_path), clock=clock)
        created = []
        for _ in range(3):
            created.append(await backups.create_backup())
            clock.advance(hours=1)

        history = await backups.get_backup_history(limit=2)
        assert [b.id for b in history] == [created[2].id, created[1].id]


# =============================================================================
# Tool-based and Redis drivers
# =============================================================================


class TestDrivers:
    def test_driver_selection(self, tmp_path: Path) -> None:
        sqlite = SQLConfig(type="sqlite", database="app", filename=str(tmp_path / "a.db"))
        postgres = SQLConfig(type="postgresql", database="app")
        mongo = NoSQLConfig(type="mongodb", database="app")
        redis = CacheConfig(type="redis")

        assert isinstance(create_backup_driver(sqlite), SQLiteBackupDriver)
        assert isinstance(create_backup_driver(postgres), PostgresBackupDriver)
        assert isinstance(create_backup_driver(mongo), MongoBackupDriver)
        assert isinstance(create_backup_driver(redis), RedisBackupDriver)
        with pytest.raises(ConfigurationError):
            create_backup_driver(CacheConfig(type="memory"))

    @pytest.mark.asyncio
    async def test_pg_dump_arguments(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        run_tool = AsyncMock()
        monkeypatch.setattr(backup_drivers, "_require_tool", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr(backup_drivers, "run_tool", run_tool)
        driver = PostgresBackupDriver(
            SQLConfig(type="postgresql", database="app", username="app", password="pw"), timeout=30
        )

        await driver.dump(
            tmp_path / "out.dump",
            BackupConfig(destination=tmp_path, include_data=False, exclude_tables=("audit",)),
        )

        cmd = run_tool.await_args.args[0]
        assert cmd[0] == "/usr/bin/pg_dump"
        assert "--schema-only" in cmd
        assert "--exclude-table=audit" in cmd
        assert cmd[-1] == "app"
        assert run_tool.await_args.kwargs == {"env": {"PGPASSWORD": "pw"}, "timeout": 30}

    @pytest.mark.asyncio
    async def test_pg_restore_overwrite_cleans(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        run_tool = AsyncMock()
        monkeypatch.setattr(backup_drivers, "_require_tool", lambda name: name)
        monkeypatch.setattr(backup_drivers, "run_tool", run_tool)
        driver = PostgresBackupDriver(SQLConfig(type="postgresql", database="app"))

        await driver.restore(tmp_path / "in.dump", overwrite=True, target_database="copy")

        cmd = run_tool.await_args.args[0]
        assert "--clean" in cmd
        assert cmd[-3:] == ["-d", "copy", str(tmp_path / "in.dump")]

    @pytest.mark.asyncio
    async def test_missing_tool(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(backup_drivers.shutil, "which", lambda name: None)
        driver = MongoBackupDriver(NoSQLConfig(type="mongodb", database="app"))
        with pytest.raises(BackupError, match="mongodump"):
            await driver.dump(tmp_path / "out.archive", BackupConfig(destination=tmp_path))

    @pytest.mark.asyncio
    async def test_redis_dump_and_restore(self, tmp_path: Path) -> None:
        async def scan_iter(match: str, count: int) -> Any:
            for key in (b"app:a", b"app:b"):
                yield key

        client = MagicMock()
        client.scan_iter = scan_iter
        client.dump = AsyncMock(side_effect=[b"\x00payload-a", None])
        client.pttl = AsyncMock(return_value=-1)
        client.restore = AsyncMock()
        driver = RedisBackupDriver(CacheConfig(type="redis", key_prefix="app"), client=client)

        artifact = tmp_path / "cache.jsonl"
        metadata = await driver.dump(artifact, BackupConfig(destination=tmp_path))

        assert metadata == {"keys": 1, "pattern": "app:*"}
        record = json.loads(artifact.read_text().strip())
        assert base64.b64decode(record["key"]) == b"app:a"
        assert record["ttl_ms"] == 0

        await driver.restore(artifact, overwrite=True)
        client.restore.assert_awaited_once_with(b"app:a", 0, b"\x00payload-a", replace=True)
