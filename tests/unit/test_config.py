"""Tests for config loading and the shared query cache."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from dnadb.cache import CacheConfig
from dnadb.config import coerce_config, load_config_file
from dnadb.errors import ConfigurationError
from dnadb.query_cache import QueryCache
from dnadb.sql import SQLConfig


class TestCoerceConfig:
    def test_mapping_is_validated(self) -> None:
        config = coerce_config(SQLConfig, {"type": "sqlite", "database": "app", "filename": "app.db"})
        assert isinstance(config, SQLConfig)
        assert config.filename == "app.db"

    def test_instance_passes_through(self) -> None:
        config = SQLConfig(type="sqlite", database="app", filename="app.db")
        assert coerce_config(SQLConfig, config) is config

    def test_wrong_type_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="expects a mapping"):
            coerce_config(SQLConfig, ["not", "a", "mapping"])

    def test_pydantic_errors_become_configuration_errors(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            coerce_config(CacheConfig, {"type": "memory", "default_ttl": "forever"})
        assert "default_ttl" in str(exc_info.value)

    def test_configs_are_frozen(self) -> None:
        config = SQLConfig(type="sqlite", database="app", filename="app.db")
        with pytest.raises(PydanticValidationError):
            config.database = "other"  # type: ignore[misc]


class TestLoadConfigFile:
    def test_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "sql.yaml"
        path.write_text("type: sqlite\ndatabase: app\nfilename: app.db\n")
        assert load_config_file(path, SQLConfig).database == "app"

    def test_json(self, tmp_path: Path) -> None:
        path = tmp_path / "cache.json"
        path.write_text(json.dumps({"type": "memory", "key_prefix": "shop"}))
        assert load_config_file(path, CacheConfig).key_prefix == "shop"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_config_file(tmp_path / "absent.yaml", SQLConfig)

    def test_unparseable_file(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{oops")
        with pytest.raises(ConfigurationError, match="Cannot parse"):
            load_config_file(path, CacheConfig)

    def test_invalid_values(self, tmp_path: Path) -> None:
        path = tmp_path / "sql.yaml"
        path.write_text("type: sqlite\ndatabase: app\n")
        with pytest.raises(ConfigurationError, match="Filename"):
            load_config_file(path, SQLConfig)


class TestQueryCache:
    def test_entries_expire(self) -> None:
        now = [0.0]
        cache = QueryCache(10, clock=lambda: now[0])
        cache.set("k", 1)

        now[0] = 9.9
        assert cache.get("k") == (True, 1)
        now[0] = 10.0
        assert cache.get("k") == (False, None)
        assert len(cache) == 0

    def test_capacity_prunes_oldest(self) -> None:
        cache = QueryCache(60, capacity=5, prune_count=2)
        for i in range(6):
            cache.set(f"k{i}", i)

        assert len(cache) == 4
        assert "k0" not in cache
        assert "k1" not in cache
        assert "k5" in cache

    def test_reset_moves_key_to_newest(self) -> None:
        cache = QueryCache(60, capacity=3, prune_count=1)
        for key in ("a", "b", "c"):
            cache.set(key, key)
        cache.set("a", "again")
        cache.set("d", "d")

        assert "a" in cache
        assert "b" not in cache

    def test_invalidate_prefix(self) -> None:
        cache = QueryCache(60)
        cache.set("find:users:1", 1)
        cache.set("count:users:1", 2)
        cache.set("find:orders:1", 3)

        assert cache.invalidate_prefix("find:users:") == 1
        assert "count:users:1" in cache
        assert "find:orders:1" in cache
