"""
Sandbox policy guards: import allow-listing, path containment, deny-list stubs
and the pre-flight code check.
"""

from __future__ import annotations

import ast
import builtins
import io
import os
import re
import sys
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from types import ModuleType
from typing import Any, cast

from explorer_core.errors import AccessDenied, ValidationError

ImportHook = Callable[
    [str, dict[str, object] | None, dict[str, object] | None, Sequence[str], int],
    object,
]

# Names user code may reference even though they start with a double underscore.
ALLOWED_DUNDER_NAMES = {"__name__"}

# "{0.__class__}" style attribute lookups hidden inside str.format templates
_FORMAT_ATTRIBUTE = re.compile(r"\{[^{}]*\.\s*_")


def _normalize_modules(modules: Iterable[str] | None) -> set[str]:
    return {name for name in (modules or [])}


def module_view(module: ModuleType) -> ModuleType:
    """Copy of ``module`` exposing only public, non-module attributes.

    Allow-listed modules often import ``sys`` or ``os`` themselves; handing out
    the real module object would re-expose those through attribute chains.
    """
    view = ModuleType(module.__name__, module.__doc__)
    for name, value in vars(module).items():
        if name.startswith("_") or isinstance(value, ModuleType):
            continue
        setattr(view, name, value)
    return view


def _view_chain(module: ModuleType, parts: Sequence[str]) -> ModuleType:
    view = module_view(module)
    if parts:
        child = cast(ModuleType, getattr(module, parts[0]))
        setattr(view, parts[0], _view_chain(child, parts[1:]))
    return view


def build_import_guard(allowed_modules: Iterable[str]) -> ImportHook:
    """
    Build a restricted __import__ hook that only allows allowlisted modules and
    returns sanitized module views.
    """
    allowed = _normalize_modules(allowed_modules)
    original_import = cast(ImportHook, builtins.__import__)

    def guarded_import(
        name: str,
        globals: dict[str, object] | None = None,
        locals: dict[str, object] | None = None,
        fromlist: Sequence[str] = (),
        level: int = 0,
    ) -> ModuleType:
        if level != 0:
            raise AccessDenied("Relative imports are not allowed in the sandbox")
        root = name.split(".")[0]
        if root not in allowed and name not in allowed:
            raise AccessDenied(f"Import of '{root}' is not allowlisted")
        module = cast(ModuleType, original_import(name, None, None, fromlist, 0))
        if fromlist:
            return _view_with_fromlist(module, fromlist)
        return _view_chain(module, name.split(".")[1:])

    return guarded_import


def _view_with_fromlist(module: ModuleType, fromlist: Sequence[str]) -> ModuleType:
    # Every requested submodule is bound on the view; otherwise the interpreter
    # falls back to the real object in sys.modules.
    view = module_view(module)
    for entry in fromlist:
        if entry == "*":
            continue
        if entry.startswith("_"):
            raise AccessDenied(f"Import of '{module.__name__}.{entry}' is not allowed")
        child = getattr(module, entry, None)
        if child is None:
            child = sys.modules.get(f"{module.__name__}.{entry}")
        if isinstance(child, ModuleType):
            setattr(view, entry, module_view(child))
    return view


def make_denied_stub(name: str) -> Callable[..., None]:
    """Callable bound in place of a deny-listed name."""

    def _denied(*_args: object, **_kwargs: object) -> None:
        raise AccessDenied(f"'{name}' is not allowed in the sandbox")

    _denied.__name__ = name
    _denied.__qualname__ = name
    return _denied


def guard_path(path: object, allowlist: Iterable[str]) -> Path:
    """Resolve ``path`` and require it to sit inside an allow-listed directory.

    ``.``/``..`` segments and symlinks are resolved before the prefix check, so
    a link pointing outside the allow-list is rejected.

    Raises:
        AccessDenied: path is not a string/path-like or lies outside every prefix.
    """
    if not isinstance(path, (str, bytes, os.PathLike)):
        raise AccessDenied(f"Expected a filesystem path, got {type(path).__name__}")
    raw = os.fsdecode(path)
    resolved = os.path.realpath(os.path.expanduser(raw))
    for prefix in allowlist:
        root = os.path.realpath(os.path.expanduser(prefix))
        try:
            if os.path.commonpath([root, resolved]) == root:
                return Path(resolved)
        except ValueError:
            # Different drives on Windows
            continue
    raise AccessDenied(f"Access denied: '{raw}' is outside the allowed directories")


def check_code(code: str) -> ast.Module:
    """Parse submitted code and reject constructs that reach interpreter internals.

    This runs in the supervisor before any worker is spawned.

    Raises:
        ValidationError: code does not parse.
        AccessDenied: code touches private/dunder attributes, dunder names,
            relative imports, or attribute lookups inside format templates.
    """
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("Code must be a non-empty string")
    try:
        tree = ast.parse(code, filename="<sandbox>", mode="exec")
    except SyntaxError as exc:
        raise ValidationError(f"SyntaxError: {exc.msg} (line {exc.lineno})") from exc

    for node in ast.walk(tree):
        line = getattr(node, "lineno", "?")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise AccessDenied(f"Access to attribute '{node.attr}' is not allowed (line {line})")
        if (
            isinstance(node, ast.Name)
            and node.id.startswith("__")
            and node.id not in ALLOWED_DUNDER_NAMES
        ):
            raise AccessDenied(f"Use of name '{node.id}' is not allowed (line {line})")
        if isinstance(node, ast.ImportFrom) and node.level:
            raise AccessDenied(f"Relative imports are not allowed (line {line})")
        if isinstance(node, ast.MatchClass) and any(
            attr.startswith("_") for attr in node.kwd_attrs
        ):
            raise AccessDenied(f"Pattern on private attribute is not allowed (line {line})")
        if (
            isinstance(node, ast.Constant)
            and isinstance(node.value, str)
            and _FORMAT_ATTRIBUTE.search(node.value)
        ):
            raise AccessDenied(f"Format template reaches a private attribute (line {line})")
    return tree


def install_write_guard(
    allowlist: Iterable[str], extra_writable: Iterable[str] = ()
) -> Callable[..., object]:
    """Route every Python-level open() for writing through the path guard.

    Installed process-wide in the worker so libraries that write files on the
    caller's behalf (matplotlib canvases, image writers) obey the allow-list.
    Reads are left alone.
    """
    original_open = builtins.open
    writable = tuple(allowlist) + tuple(extra_writable)

    def guarded_open(file: Any, mode: str = "r", *args: Any, **kwargs: Any) -> object:
        if isinstance(file, (str, bytes, os.PathLike)) and any(flag in mode for flag in "wax+"):
            _ = guard_path(file, writable)
        return original_open(file, mode, *args, **kwargs)

    builtins.open = guarded_open  # type: ignore[assignment]
    io.open = guarded_open  # type: ignore[assignment]
    return guarded_open
