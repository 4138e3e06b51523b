"""Tests for execution scope assembly and materialization."""

from __future__ import annotations

import json
from pathlib import Path

import pyarrow as pa
import pytest

from explorer_core.config import ExplorerConfig
from explorer_core.errors import AccessDenied, NotFound, ValidationError
from explorer_core.schemas import Backend
from registry.registry import DataRegistry
from sandbox.capabilities import CAPABILITY_MANIFEST, CapabilityContext, materialize_capabilities
from sandbox.scope import ExecutionScope, ScopeBuilder


@pytest.fixture
def policy(config: ExplorerConfig):
    return config.security_policy()


@pytest.fixture
def loaded(registry: DataRegistry) -> DataRegistry:
    registry.store("sales", pa.table({"region": ["n", "s"], "amount": [3, 4]}), size_hint=500)
    registry.store("events", pa.table({"kind": ["a", "b", "c"]}), size_hint=5_000)
    return registry


def _run(namespace: dict[str, object], code: str) -> dict[str, object]:
    exec(compile(code, "<test>", "exec"), namespace)
    return namespace


class TestScopeBuilder:
    def test_build_references_requested_datasets(self, loaded: DataRegistry, policy) -> None:
        scope = ScopeBuilder(loaded).build(["sales", "events", "sales"], policy)

        assert scope.dataset_names == ["sales", "events"]
        assert scope.datasets["events"].backend == Backend.COLUMNAR
        assert scope.capabilities == policy.capabilities
        assert scope.path_allowlist == policy.path_allowlist

    def test_unknown_dataset_fails_before_spilling(self, loaded: DataRegistry, policy) -> None:
        with pytest.raises(NotFound):
            ScopeBuilder(loaded).build(["sales", "missing"], policy)
        assert list(loaded.spill_dir.iterdir()) == []

    @pytest.mark.parametrize("name", ["print", "eval"])
    def test_dataset_colliding_with_reserved_name(
        self, registry: DataRegistry, policy, name: str
    ) -> None:
        registry.store(name, {"x": [1]}, size_hint=10)
        with pytest.raises(ValidationError, match="collides"):
            ScopeBuilder(registry).build([name], policy)

    def test_capability_outside_manifest_rejected(
        self, registry: DataRegistry, data_dir: Path
    ) -> None:
        config = ExplorerConfig(
            data_root=str(data_dir),
            path_allowlist=[str(data_dir)],
            capabilities=["print", "os_system"],
        )
        with pytest.raises(ValidationError, match="os_system"):
            ScopeBuilder(registry).build([], config.security_policy())


def test_payload_survives_json(loaded: DataRegistry, policy) -> None:
    scope = ScopeBuilder(loaded).build(["sales"], policy)

    restored = ExecutionScope.from_payload(json.loads(json.dumps(scope.to_payload())))

    assert restored.dataset_names == ["sales"]
    assert restored.datasets["sales"] == scope.datasets["sales"]
    assert restored.denied == scope.denied
    assert restored.allowed_modules == scope.allowed_modules


def test_malformed_payload_rejected() -> None:
    with pytest.raises(ValidationError):
        ExecutionScope.from_payload({"capabilities": "print"})


class TestMaterialize:
    def test_datasets_and_helpers_bound(self, loaded: DataRegistry, policy) -> None:
        namespace = ScopeBuilder(loaded).build(["sales", "events"], policy).materialize()

        result = _run(
            namespace,
            "total = sales.aggregate({'amount': 'sum'}).to_pylist()[0]['amount_sum']\n"
            "kinds = get_data('events').count()\n"
            "catalog = sorted(list_data())\n",
        )

        assert result["total"] == 7
        assert result["kinds"] == 3
        assert result["catalog"] == ["events", "sales"]

    def test_only_granted_datasets_visible(self, loaded: DataRegistry, policy) -> None:
        namespace = ScopeBuilder(loaded).build(["sales"], policy).materialize()

        assert "events" not in namespace
        with pytest.raises(NotFound):
            _run(namespace, "get_data('events')")

    def test_denied_identifiers_raise(self, loaded: DataRegistry, policy) -> None:
        namespace = ScopeBuilder(loaded).build([], policy).materialize()
        with pytest.raises(AccessDenied):
            _run(namespace, "eval('1 + 1')")

    def test_denied_wins_over_capability(self) -> None:
        scope = ExecutionScope(capabilities=("print", "open"), denied=("open",))
        namespace = scope.materialize(handles={})

        with pytest.raises(AccessDenied):
            _run(namespace, "open('x.txt')")
        _run(namespace, "print('still here')")

    def test_builtins_limited_to_capabilities(self) -> None:
        namespace = ExecutionScope(capabilities=("len",)).materialize(handles={})

        _run(namespace, "n = len([1, 2])")
        assert namespace["n"] == 2
        with pytest.raises(NameError):
            _run(namespace, "print(n)")

    def test_imports_follow_allowlist(self) -> None:
        namespace = ExecutionScope(allowed_modules=("math",)).materialize(handles={})

        _run(namespace, "import math\nroot = math.sqrt(16)")
        assert namespace["root"] == 4
        with pytest.raises(AccessDenied):
            _run(namespace, "import os")

    def test_class_statements_work(self) -> None:
        namespace = ExecutionScope(capabilities=("object",)).materialize(handles={})
        _run(namespace, "class Box(object):\n    size = 3\nvalue = Box().size")
        assert namespace["value"] == 3


class TestCapabilities:
    def test_io_helpers_are_path_guarded(self, tmp_path: Path) -> None:
        allowed = tmp_path / "allowed"
        allowed.mkdir()
        context = CapabilityContext(path_allowlist=(str(allowed),))
        helpers = materialize_capabilities(
            ["write_text", "read_text", "list_files", "open"], context
        )

        helpers["write_text"](allowed / "note.txt", "hello")

        assert helpers["read_text"](allowed / "note.txt") == "hello"
        assert helpers["list_files"](allowed) == ["note.txt"]
        with pytest.raises(AccessDenied):
            helpers["read_text"](tmp_path / "elsewhere.txt")
        with pytest.raises(AccessDenied):
            helpers["open"]("/etc/passwd")
        with pytest.raises(NotFound):
            helpers["list_files"](allowed / "note.txt")

    def test_csv_helpers_round_trip(self, tmp_path: Path) -> None:
        context = CapabilityContext(path_allowlist=(str(tmp_path),))
        helpers = materialize_capabilities(["write_csv", "read_csv"], context)

        helpers["write_csv"]([{"a": 1, "b": "x"}, {"a": 2, "b": "y"}], tmp_path / "out.csv")

        assert helpers["read_csv"](tmp_path / "out.csv").to_pylist() == [
            {"a": 1, "b": "x"},
            {"a": 2, "b": "y"},
        ]

    def test_unknown_capability(self) -> None:
        with pytest.raises(ValidationError):
            materialize_capabilities(["print", "subprocess"], CapabilityContext(()))

    def test_manifest_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            CAPABILITY_MANIFEST["evil"] = print  # type: ignore[index]
