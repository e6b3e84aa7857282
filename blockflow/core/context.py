"""Execution context threaded through a workflow run.

A context is an immutable snapshot. Blocks read from it and report updates;
the engine produces the next version with :meth:`ExecutionContext.merge`.
A block that fails or is retried never observes a half-applied update.
"""

import copy
import re
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Iterator

_TEMPLATE = re.compile(r"\{\{([^}]+)\}\}")

_MISSING = object()


class ExecutionContext(Mapping):
    """Read-only, versioned key/value store for one run.

    Keys are only ever added or overwritten between versions, never removed.
    """

    __slots__ = ("_data", "version")

    def __init__(self, data: Mapping[str, Any] | None = None, version: int = 0) -> None:
        self._data = MappingProxyType(copy.deepcopy(dict(data or {})))
        self.version = version

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ExecutionContext(version={self.version}, keys={sorted(self._data)})"

    def merge(self, updates: Mapping[str, Any] | None) -> "ExecutionContext":
        """Return the next version with ``updates`` applied on top."""
        if not updates:
            return self
        merged = dict(self._data)
        merged.update(updates)
        return ExecutionContext(merged, self.version + 1)

    def resolve(self, path: str, default: Any = None) -> Any:
        """Look up a dotted path such as ``user.profile.email``."""
        value = lookup_path(self._data, path)
        return default if value is _MISSING else value

    def to_dict(self) -> dict[str, Any]:
        """Deep copy of the current contents."""
        return copy.deepcopy(dict(self._data))


def lookup_path(data: Any, path: str) -> Any:
    """Walk a dotted path through mappings and sequences.

    Returns the module sentinel ``_MISSING`` when any segment is absent.
    """
    current = data
    for segment in path.strip().split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return _MISSING
    return current


def substitute(value: Any, context: Mapping[str, Any]) -> Any:
    """Replace ``{{path}}`` references in a string with context values.

    Unresolved references are left verbatim. A string that is exactly one
    reference yields the referenced value itself, keeping its type.
    """
    if not isinstance(value, str):
        return value

    whole = _TEMPLATE.fullmatch(value.strip())
    if whole is not None:
        resolved = lookup_path(context, whole.group(1))
        return value if resolved is _MISSING else resolved

    def replace(match: re.Match) -> str:
        resolved = lookup_path(context, match.group(1))
        if resolved is _MISSING or resolved is None:
            return match.group(0)
        return str(resolved)

    return _TEMPLATE.sub(replace, value)


def substitute_deep(value: Any, context: Mapping[str, Any]) -> Any:
    """Apply :func:`substitute` through nested dicts and lists."""
    if isinstance(value, dict):
        return {key: substitute_deep(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_deep(item, context) for item in value]
    return substitute(value, context)
