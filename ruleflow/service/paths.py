"""Dotted-path reads and writes against the ``flow`` namespace.

Paths may be written as ``$.flow.a.b``, ``flow.a.b``, ``$.a.b`` or ``a.b``;
all four address key ``b`` of mapping ``a`` inside the namespace. Integer
segments index into lists and tuples.
"""
from __future__ import annotations

from collections.abc import Mapping, MutableMapping, Sequence
from typing import Any, List, Optional

_PREFIXES = ("$.flow.", "flow.", "$.")
_ROOT_ALIASES = {"$", "$.flow", "flow", ""}
_MISSING = object()


def split_path(path: str) -> List[str]:
    """Strip the namespace prefix and split ``path`` into segments."""

    normalized = path.strip() if isinstance(path, str) else ""
    if normalized in _ROOT_ALIASES:
        return []
    for prefix in _PREFIXES:
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix):]
            break
    return [part for part in normalized.split(".") if part != ""]


def _list_index(container: Sequence, part: str) -> Optional[int]:
    if part.lstrip("-").isdigit():
        index = int(part)
        if -len(container) <= index < len(container):
            return index
    return None


def _step(current: Any, part: str) -> Any:
    if isinstance(current, Mapping):
        return current.get(part, _MISSING)
    if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
        index = _list_index(current, part)
        if index is not None:
            return current[index]
    return _MISSING


def resolve_path(path: str, namespace: Mapping[str, Any], default: Any = None) -> Any:
    """Return the value at ``path``, or ``default`` when any segment is missing.

    A stored ``None`` is returned as ``None``; ``default`` only stands in for
    absent keys, out-of-range indices and non-string paths.
    """

    if not isinstance(path, str):
        return default
    current: Any = namespace
    for part in split_path(path):
        current = _step(current, part)
        if current is _MISSING:
            return default
    return current


def _accepts(container: Any, part: str) -> bool:
    if isinstance(container, MutableMapping):
        return True
    if isinstance(container, list):
        return _list_index(container, part) is not None or part == str(len(container))
    return False


def _assign(container: Any, part: str, value: Any) -> None:
    if isinstance(container, list):
        index = _list_index(container, part)
        if index is None:
            container.append(value)
        else:
            container[index] = value
        return
    container[part] = value


def write_path(path: str, namespace: MutableMapping[str, Any], value: Any) -> None:
    """Set ``value`` at ``path``, creating intermediate dicts as needed.

    An intermediate that cannot hold the next segment (a scalar, or a list
    addressed by a name or an out-of-range index) is replaced by a fresh
    dict. Only an empty path is refused.
    """

    parts = split_path(path)
    if not parts:
        raise ValueError(f"cannot write to empty path {path!r}")

    current: Any = namespace
    for part, next_part in zip(parts, parts[1:]):
        child = _step(current, part)
        if not _accepts(child, next_part):
            child = {}
            _assign(current, part, child)
        current = child

    _assign(current, parts[-1], value)
