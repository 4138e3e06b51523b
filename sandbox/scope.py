"""
Execution scopes: what a single piece of submitted code may see.

The supervisor builds an ``ExecutionScope`` from registry lookups and the
security policy, ships it to the worker as JSON, and the worker turns it into
the namespace the code runs in.
"""

from __future__ import annotations

import builtins
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from explorer_core.config import SecurityPolicy
from explorer_core.errors import ValidationError
from explorer_core.schemas import DatasetRef
from registry.handles import DatasetHandle, open_handle
from registry.registry import DataRegistry
from sandbox.capabilities import CAPABILITY_MANIFEST, CapabilityContext, materialize_capabilities
from sandbox.policy import build_import_guard, make_denied_stub

logger = logging.getLogger(__name__)

# Interpreter hook needed for ``class`` statements.
_CLASS_BUILDER = "__build_class__"


@dataclass(frozen=True)
class ExecutionScope:
    datasets: Mapping[str, DatasetRef] = field(default_factory=dict)
    capabilities: tuple[str, ...] = ()
    denied: tuple[str, ...] = ()
    path_allowlist: tuple[str, ...] = ()
    allowed_modules: tuple[str, ...] = ()

    @property
    def dataset_names(self) -> list[str]:
        return list(self.datasets)

    def to_payload(self) -> dict[str, object]:
        return {
            "datasets": [ref.to_dict() for ref in self.datasets.values()],
            "capabilities": list(self.capabilities),
            "denied": list(self.denied),
            "path_allowlist": list(self.path_allowlist),
            "allowed_modules": list(self.allowed_modules),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "ExecutionScope":
        refs = [DatasetRef.from_dict(item) for item in _as_list(payload.get("datasets"))]
        return cls(
            datasets=MappingProxyType({ref.name: ref for ref in refs}),
            capabilities=tuple(str(name) for name in _as_list(payload.get("capabilities"))),
            denied=tuple(str(name) for name in _as_list(payload.get("denied"))),
            path_allowlist=tuple(str(path) for path in _as_list(payload.get("path_allowlist"))),
            allowed_modules=tuple(str(name) for name in _as_list(payload.get("allowed_modules"))),
        )

    def open_handles(self) -> dict[str, DatasetHandle]:
        return {name: open_handle(ref) for name, ref in self.datasets.items()}

    def materialize(self, handles: Mapping[str, DatasetHandle] | None = None) -> dict[str, object]:
        """Build the namespace submitted code runs in.

        Layering, last wins: capabilities (as builtins), dataset handles, then
        deny-list stubs, so a deny-listed name can never be re-exposed by a
        capability or dataset of the same name.
        """
        if handles is None:
            handles = self.open_handles()
        context = CapabilityContext(
            path_allowlist=self.path_allowlist,
            datasets=MappingProxyType(dict(handles)),
        )
        scope_builtins = materialize_capabilities(self.capabilities, context)
        scope_builtins["__import__"] = build_import_guard(self.allowed_modules)
        scope_builtins[_CLASS_BUILDER] = getattr(builtins, _CLASS_BUILDER)

        stubs = {name: make_denied_stub(name) for name in self.denied}
        scope_builtins.update(stubs)

        namespace: dict[str, object] = {"__builtins__": scope_builtins, "__name__": "__main__"}
        namespace.update(handles)
        namespace.update(stubs)
        return namespace


def _as_list(value: object) -> list[object]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"Expected a list in scope payload, got {type(value).__name__}")
    return value


class ScopeBuilder:
    """Assembles execution scopes from registry lookups and the security policy."""

    def __init__(self, registry: DataRegistry) -> None:
        self.registry: DataRegistry = registry

    def build(self, dataset_names: Iterable[str], policy: SecurityPolicy) -> ExecutionScope:
        unknown = [name for name in policy.capabilities if name not in CAPABILITY_MANIFEST]
        if unknown:
            raise ValidationError(f"Capabilities not in manifest: {', '.join(unknown)}")

        names = list(dict.fromkeys(dataset_names))
        reserved = set(policy.capabilities) | set(policy.denied_identifiers)
        for name in names:
            if name in reserved:
                raise ValidationError(
                    f"Dataset name '{name}' collides with a capability or denied identifier"
                )

        # Resolve every name before spilling any, so a missing dataset fails
        # without side effects.
        for name in names:
            _ = self.registry.info(name)
        refs = {name: self.registry.reference(name) for name in names}

        logger.debug(f"Built scope with datasets={names}")
        return ExecutionScope(
            datasets=MappingProxyType(refs),
            capabilities=tuple(policy.capabilities),
            denied=tuple(policy.denied_identifiers),
            path_allowlist=tuple(policy.path_allowlist),
            allowed_modules=tuple(policy.allowed_modules),
        )
