from pathlib import Path

import pytest

from explorer_core.config import ExplorerConfig
from registry.registry import DataRegistry


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "data"
    directory.mkdir()
    return directory


@pytest.fixture
def config(data_dir: Path) -> ExplorerConfig:
    return ExplorerConfig(
        data_root=str(data_dir),
        path_allowlist=[str(data_dir)],
        default_timeout_s=20,
        max_timeout_s=60,
        memory_limit_mb=4096,
    )


@pytest.fixture
def registry(data_dir: Path):
    with DataRegistry(data_dir, small_threshold_bytes=1000, large_threshold_bytes=10_000) as reg:
        yield reg


@pytest.fixture
def make_csv(data_dir: Path):
    def _make(name: str, header: str, rows: list[str]) -> Path:
        path = data_dir / name
        path.write_text("\n".join([header, *rows]) + "\n", encoding="utf-8")
        return path

    return _make
