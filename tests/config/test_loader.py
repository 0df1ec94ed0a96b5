"""Tests for config/loader.py module.

Covers:
- _load_yaml() function
- _deep_merge() function
- load_config() precedence: defaults < yaml < env vars < kwargs
- get_data_dir() function
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from codeweave.config.loader import (
    GLOBAL_CONFIG_PATH,
    _deep_merge,
    _load_yaml,
    get_data_dir,
    load_config,
)
from codeweave.config.models import LoggingConfig, WatchConfig
from codeweave.core.errors import ConfigError


class TestLoadYaml:
    """Tests for _load_yaml function."""

    def test_returns_empty_dict_for_missing_file(self, tmp_path: Path) -> None:
        assert _load_yaml(tmp_path / "nonexistent.yaml") == {}

    def test_loads_valid_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("watch:\n  debounce_ms: 250\n")

        assert _load_yaml(yaml_file) == {"watch": {"debounce_ms": 250}}

    def test_returns_empty_for_yaml_null(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "null.yaml"
        yaml_file.write_text("null\n")

        assert _load_yaml(yaml_file) == {}

    def test_raises_config_error_for_invalid_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "invalid.yaml"
        yaml_file.write_text("logging:\n  level:\n    - invalid: [unclosed")

        with pytest.raises(ConfigError):
            _load_yaml(yaml_file)

    def test_raises_config_error_for_non_mapping(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "list.yaml"
        yaml_file.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="mapping"):
            _load_yaml(yaml_file)


class TestDeepMerge:
    """Tests for _deep_merge function."""

    def test_nested_merge(self) -> None:
        base = {"query": {"cache_capacity": 10, "rerank_top_n": 5}}
        override = {"query": {"cache_capacity": 20}}

        assert _deep_merge(base, override) == {"query": {"cache_capacity": 20, "rerank_top_n": 5}}

    def test_override_replaces_non_dict(self) -> None:
        base: dict[str, Any] = {"a": {"nested": 1}}
        override: dict[str, Any] = {"a": "simple"}

        assert _deep_merge(base, override) == {"a": "simple"}

    def test_does_not_mutate_base(self) -> None:
        base = {"a": 1}
        _deep_merge(base, {"b": 2})

        assert base == {"a": 1}


class TestLoadConfig:
    """Tests for load_config function."""

    @pytest.fixture(autouse=True)
    def _no_global_config(self, tmp_path: Path) -> Any:
        with patch("codeweave.config.loader.GLOBAL_CONFIG_PATH", tmp_path / "none.yaml"):
            yield

    def test_returns_defaults_when_no_files(self, tmp_path: Path) -> None:
        config = load_config(tmp_path)

        assert config.logging.level == "INFO"
        assert config.query.cache_capacity == 256
        assert config.watch.storm_threshold == 200
        assert config.rerank.provider == "fastembed"

    def test_loads_repo_config(self, tmp_path: Path) -> None:
        (tmp_path / ".codeweave").mkdir()
        (tmp_path / ".codeweave" / "config.yaml").write_text(
            "query:\n  cache_capacity: 8\nwatch:\n  cascade_reindex: false\n"
        )

        config = load_config(tmp_path)

        assert config.query.cache_capacity == 8
        assert config.watch.cascade_reindex is False

    def test_env_vars_override_yaml(self, tmp_path: Path) -> None:
        (tmp_path / ".codeweave").mkdir()
        (tmp_path / ".codeweave" / "config.yaml").write_text("logging:\n  level: INFO\n")

        with patch.dict(os.environ, {"CODEWEAVE__LOGGING__LEVEL": "WARNING"}):
            config = load_config(tmp_path)

        assert config.logging.level == "WARNING"

    def test_kwargs_override_all(self, tmp_path: Path) -> None:
        with patch.dict(os.environ, {"CODEWEAVE__LOGGING__LEVEL": "WARNING"}):
            config = load_config(tmp_path, logging=LoggingConfig(level="ERROR"))

        assert config.logging.level == "ERROR"

    def test_raises_config_error_for_invalid_value(self, tmp_path: Path) -> None:
        (tmp_path / ".codeweave").mkdir()
        (tmp_path / ".codeweave" / "config.yaml").write_text("query:\n  cache_capacity: 0\n")

        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)

        assert "cache_capacity" in exc_info.value.details["field"]

    def test_batch_window_shorter_than_debounce_is_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError):
            load_config(tmp_path, watch={"debounce_ms": 500, "batch_window_ms": 100})


class TestWatchConfig:
    def test_staleness_window_has_a_floor(self) -> None:
        assert WatchConfig(batch_window_ms=1000).staleness_window_ms == 60000

    def test_staleness_window_scales_with_batch_window(self) -> None:
        config = WatchConfig(batch_window_ms=30000, staleness_floor_ms=1000)

        assert config.staleness_window_ms == 120000


class TestGetDataDir:
    """Tests for get_data_dir function."""

    def test_returns_default_path(self, tmp_path: Path) -> None:
        with patch("codeweave.config.loader.GLOBAL_CONFIG_PATH", tmp_path / "none.yaml"):
            config = load_config(tmp_path)

        assert get_data_dir(tmp_path, config) == tmp_path / ".codeweave"

    def test_respects_custom_index_path(self, tmp_path: Path) -> None:
        custom = tmp_path / "custom" / "index"
        with patch("codeweave.config.loader.GLOBAL_CONFIG_PATH", tmp_path / "none.yaml"):
            config = load_config(tmp_path, index={"index_path": str(custom)})

        assert get_data_dir(tmp_path, config) == custom


class TestGlobalConfigPath:
    def test_is_in_user_config(self) -> None:
        assert isinstance(GLOBAL_CONFIG_PATH, Path)
        assert "codeweave" in str(GLOBAL_CONFIG_PATH)
