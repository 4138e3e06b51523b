"""
Static capability manifest.

Each entry maps a capability name to a factory that builds the object bound
under that name inside a worker. Factories receive a ``CapabilityContext`` so
I/O helpers can enforce the path allow-list and data helpers only see the
datasets granted to the current execution.
"""

from __future__ import annotations

import builtins
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType, ModuleType
from typing import IO, Any

from explorer_core.errors import AccessDenied, NotFound, ValidationError
from registry.handles import DatasetHandle
from sandbox.policy import guard_path, module_view

SAFE_BUILTINS = (
    "abs", "all", "any", "bool", "callable", "chr", "dict", "divmod", "enumerate",
    "filter", "float", "format", "frozenset", "hash", "hex", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "oct", "ord",
    "pow", "print", "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "str", "sum", "tuple", "zip", "object", "property", "staticmethod",
    "classmethod", "bytes", "bytearray", "complex", "bin", "ascii", "id", "hasattr",
    "type", "super",
)

SAFE_EXCEPTIONS = (
    "Exception", "ArithmeticError", "AssertionError", "AttributeError",
    "IndexError", "KeyError", "LookupError", "NameError", "NotImplementedError",
    "OverflowError", "RuntimeError", "StopIteration", "TypeError", "ValueError",
    "ZeroDivisionError",
)


@dataclass(frozen=True)
class CapabilityContext:
    path_allowlist: tuple[str, ...]
    datasets: Mapping[str, DatasetHandle] = field(default_factory=dict)

    def guard(self, path: object) -> Path:
        return guard_path(path, self.path_allowlist)


CapabilityFactory = Callable[[CapabilityContext], object]


class LazyModule:
    """Module proxy that imports its target on first attribute access.

    Plotting and compute modules are expensive to import; most executions never
    touch them.
    """

    def __init__(self, name: str, loader: Callable[[], ModuleType]) -> None:
        self._name = name
        self._loader = loader
        self._module: ModuleType | None = None

    def _load(self) -> ModuleType:
        if self._module is None:
            self._module = self._loader()
        return self._module

    def __getattr__(self, attribute: str) -> object:
        if attribute.startswith("_"):
            raise AttributeError(attribute)
        return getattr(self._load(), attribute)

    def __dir__(self) -> list[str]:
        return sorted(vars(self._load()))

    def __repr__(self) -> str:
        return f"<module '{self._name}' (sandboxed)>"


def _builtin(name: str) -> CapabilityFactory:
    value = getattr(builtins, name)

    def factory(_context: CapabilityContext) -> object:
        return value

    return factory


def _open(context: CapabilityContext) -> Callable[..., IO[Any]]:
    def open(file: object, mode: str = "r", *args: Any, **kwargs: Any) -> IO[Any]:
        path = context.guard(file)
        return builtins.open(path, mode, *args, **kwargs)

    return open


def _read_text(context: CapabilityContext) -> Callable[..., str]:
    def read_text(path: object, encoding: str = "utf-8") -> str:
        return context.guard(path).read_text(encoding=encoding)

    return read_text


def _write_text(context: CapabilityContext) -> Callable[..., int]:
    def write_text(path: object, text: str, encoding: str = "utf-8") -> int:
        return context.guard(path).write_text(str(text), encoding=encoding)

    return write_text


def _list_files(context: CapabilityContext) -> Callable[..., list[str]]:
    def list_files(path: object = ".") -> list[str]:
        directory = context.guard(path)
        if not directory.is_dir():
            raise NotFound(f"Not a directory: {path}")
        return sorted(entry.name for entry in directory.iterdir())

    return list_files


def _read_csv(context: CapabilityContext) -> Callable[..., object]:
    from registry import loaders

    def read_csv(path: object, **options: object) -> object:
        source = context.guard(path)
        return loaders.read_table(source, {"format": "csv", **options})

    return read_csv


def _as_table(data: object) -> object:
    import pyarrow as pa

    if isinstance(data, pa.Table):
        return data
    if isinstance(data, DatasetHandle):
        return data.collect()
    if isinstance(data, Mapping):
        return pa.table(dict(data))
    if isinstance(data, Sequence) and not isinstance(data, (str, bytes)):
        return pa.Table.from_pylist(list(data))
    raise ValidationError(f"Cannot write {type(data).__name__} as CSV")


def _write_csv(context: CapabilityContext) -> Callable[..., None]:
    def write_csv(data: object, path: object) -> None:
        import pyarrow.csv as pa_csv

        target = context.guard(path)
        pa_csv.write_csv(_as_table(data), str(target))

    return write_csv


def _list_data(context: CapabilityContext) -> Callable[[], dict[str, dict[str, object]]]:
    def list_data() -> dict[str, dict[str, object]]:
        return {
            name: {"rows": handle.row_count, "columns": handle.schema}
            for name, handle in context.datasets.items()
        }

    return list_data


def _get_data(context: CapabilityContext) -> Callable[[str], DatasetHandle]:
    def get_data(name: str) -> DatasetHandle:
        handle = context.datasets.get(name)
        if handle is None:
            raise NotFound(f"Dataset '{name}' is not available in this execution")
        return handle

    return get_data


def _load_pyplot(context: CapabilityContext) -> ModuleType:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as pyplot
    from matplotlib.figure import Figure

    original = Figure.savefig
    if not getattr(original, "path_guarded", False):

        def savefig(self: Figure, fname: object, *args: object, **kwargs: object) -> None:
            # File-like buffers stay in memory; only real paths are guarded.
            if isinstance(fname, (str, os.PathLike)):
                fname = context.guard(fname)
            elif not hasattr(fname, "write"):
                raise AccessDenied("savefig needs a path or a writable buffer")
            original(self, fname, *args, **kwargs)

        setattr(savefig, "path_guarded", True)
        Figure.savefig = savefig  # type: ignore[method-assign]
    return module_view(pyplot)


def _pyplot(context: CapabilityContext) -> LazyModule:
    return LazyModule("matplotlib.pyplot", lambda: _load_pyplot(context))


def _load_compute() -> ModuleType:
    import pyarrow.compute as pc

    return module_view(pc)


def _compute(_context: CapabilityContext) -> LazyModule:
    return LazyModule("pyarrow.compute", _load_compute)


def _build_manifest() -> Mapping[str, CapabilityFactory]:
    entries: dict[str, CapabilityFactory] = {}
    for name in SAFE_BUILTINS + SAFE_EXCEPTIONS:
        entries[name] = _builtin(name)
    entries.update(
        {
            "open": _open,
            "read_text": _read_text,
            "write_text": _write_text,
            "list_files": _list_files,
            "read_csv": _read_csv,
            "write_csv": _write_csv,
            "list_data": _list_data,
            "get_data": _get_data,
            "plt": _pyplot,
            "pc": _compute,
        }
    )
    return MappingProxyType(entries)


CAPABILITY_MANIFEST: Mapping[str, CapabilityFactory] = _build_manifest()


def materialize_capabilities(
    names: Sequence[str], context: CapabilityContext
) -> dict[str, object]:
    """Instantiate the named capabilities; unknown names are rejected."""
    unknown = [name for name in names if name not in CAPABILITY_MANIFEST]
    if unknown:
        raise ValidationError(f"Unknown capabilities: {', '.join(unknown)}")
    return {name: CAPABILITY_MANIFEST[name](context) for name in names}
