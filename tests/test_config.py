"""Tests for explorer configuration and the derived security policy."""

from __future__ import annotations

from pathlib import Path

import pydantic
import pytest
import yaml

from explorer_core.config import (
    DEFAULT_CAPABILITIES,
    MB,
    ExplorerConfig,
    load_config,
    save_config,
)
from sandbox.capabilities import CAPABILITY_MANIFEST


class TestExplorerConfig:
    def test_defaults(self) -> None:
        config = ExplorerConfig()

        assert config.small_threshold_bytes == 100 * MB
        assert config.large_threshold_bytes == 1024 * MB
        assert config.default_timeout_s == 30
        assert config.memory_limit_mb == 2048
        assert "eval" in config.denied_identifiers
        assert "math" in config.allowed_modules

    def test_default_capabilities_exist_in_manifest(self) -> None:
        assert all(name in CAPABILITY_MANIFEST for name in DEFAULT_CAPABILITIES)

    def test_thresholds_must_be_ordered(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            ExplorerConfig(small_threshold_bytes=10, large_threshold_bytes=10)

    def test_default_timeout_within_max(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            ExplorerConfig(default_timeout_s=100, max_timeout_s=50)

    def test_log_level_is_uppercased(self) -> None:
        assert ExplorerConfig(log_level="debug").log_level == "DEBUG"

    def test_security_policy_resolves_paths(self, tmp_path: Path) -> None:
        (tmp_path / "data").mkdir()
        config = ExplorerConfig(path_allowlist=[str(tmp_path / "data" / ".." / "data")])

        policy = config.security_policy()

        assert policy.path_allowlist == (str((tmp_path / "data").resolve()),)
        assert policy.timeout_s == config.default_timeout_s
        with pytest.raises(pydantic.ValidationError):
            policy.timeout_s = 1  # type: ignore[misc]


class TestConfigFiles:
    def test_load_config_from_yaml(self, tmp_path: Path) -> None:
        config_path = tmp_path / "explorer.yaml"
        with open(config_path, "w") as f:
            yaml.dump(
                {
                    "data_root": "datasets",
                    "small_threshold_bytes": 1000,
                    "large_threshold_bytes": 5000,
                    "max_concurrent_workers": 2,
                    "path_allowlist": ["datasets", "exports"],
                },
                f,
            )

        config = load_config(config_path)

        assert config.data_root == "datasets"
        assert config.small_threshold_bytes == 1000
        assert config.max_concurrent_workers == 2
        assert config.path_allowlist == ["datasets", "exports"]

    def test_load_config_missing_file(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_config("nonexistent.yaml")

    def test_load_config_empty_file(self, tmp_path: Path) -> None:
        config_path = tmp_path / "empty.yaml"
        config_path.write_text("")
        with pytest.raises(ValueError, match="Empty or invalid"):
            load_config(config_path)

    def test_load_config_invalid_values(self, tmp_path: Path) -> None:
        config_path = tmp_path / "bad.yaml"
        config_path.write_text("max_concurrent_workers: 0\n")
        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config(config_path)

    def test_save_and_reload(self, tmp_path: Path) -> None:
        config = ExplorerConfig(data_root="store", memory_limit_mb=512)
        config_path = tmp_path / "nested" / "saved.yaml"

        save_config(config, config_path)
        loaded = load_config(config_path)

        assert loaded == config
