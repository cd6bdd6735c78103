"""Immutable execution context made of named, additive segments.

Each workflow stage writes its output under its own segment name. A segment
is frozen when written (mappings become read-only proxies, sequences become
tuples), so a new context only copies the top-level segment table and shares
every existing segment object with its predecessor. Snapshots handed to the
audit trail are therefore cheap and can never be mutated afterwards.

Typical usage example:
    context = ExecutionContext().with_segment("document", {"location": "s3://b/k"})
    context = context.with_segment("classification", {"job_id": "job-1"})
    context.select("classification.job_id")  # "job-1"
"""

from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from ..utils.error_handlers import ContextConflictError

_MISSING = object()


def freeze(value: Any) -> Any:
    """Return a deeply read-only version of ``value``.

    Read-only mapping proxies are taken to be frozen already and are
    returned as they are, so context snapshots and segments are shared
    rather than copied.

    Args:
        value: JSON-like value (mappings, sequences, scalars).

    Returns:
        MappingProxyType for mappings, tuple for lists and tuples, frozenset
        for sets, and the value itself otherwise.
    """
    if isinstance(value, MappingProxyType):
        return value
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Return a plain, mutable, JSON-serialisable copy of a frozen value."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(thaw(item) for item in value)
    return value


def select_path(root: Any, path: str, default: Any = _MISSING) -> Any:
    """Resolve a dotted path against nested mappings and sequences.

    Numeric path parts index into sequences (``line_items.0.amount``).

    Args:
        root: Mapping to start from.
        path: Dot-separated path.
        default: Value returned when the path does not resolve. When omitted
            a KeyError is raised instead.

    Returns:
        The resolved value.

    Raises:
        KeyError: If the path does not resolve and no default was given.
    """
    current = root
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif (
            isinstance(current, (list, tuple))
            and part.lstrip("-").isdigit()
            and -len(current) <= int(part) < len(current)
        ):
            current = current[int(part)]
        else:
            if default is _MISSING:
                raise KeyError(f"Context path does not resolve: {path}")
            return default
    return current


class ExecutionContext:
    """Immutable mapping of segment name to frozen segment value."""

    __slots__ = ("_segments",)

    def __init__(self, segments: Optional[Mapping[str, Any]] = None) -> None:
        frozen = {name: freeze(value) for name, value in (segments or {}).items()}
        self._segments: Mapping[str, Any] = MappingProxyType(frozen)

    @classmethod
    def _from_frozen(cls, segments: Dict[str, Any]) -> "ExecutionContext":
        context = cls.__new__(cls)
        context._segments = MappingProxyType(segments)
        return context

    def __contains__(self, name: object) -> bool:
        return name in self._segments

    def __iter__(self) -> Iterator[str]:
        return iter(self._segments)

    def __len__(self) -> int:
        return len(self._segments)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExecutionContext):
            return NotImplemented
        return dict(self._segments) == dict(other._segments)

    def __repr__(self) -> str:
        return f"ExecutionContext(segments={list(self._segments)})"

    @property
    def segment_names(self) -> Tuple[str, ...]:
        """Segment names in write order."""
        return tuple(self._segments)

    def with_segment(self, name: str, value: Any) -> "ExecutionContext":
        """Return a new context with ``value`` stored under ``name``.

        Args:
            name: Segment name; must not already exist.
            value: Segment content, frozen on write.

        Returns:
            New ExecutionContext sharing all existing segments.

        Raises:
            ContextConflictError: If the segment already exists.
            ValueError: If name is empty or contains a dot.
        """
        if not name or "." in name:
            raise ValueError(f"Invalid segment name: {name!r}")
        if name in self._segments:
            raise ContextConflictError(
                f"Context segment '{name}' already written", segment=name
            )
        segments = dict(self._segments)
        segments[name] = freeze(value)
        return ExecutionContext._from_frozen(segments)

    def segment(self, name: str, default: Any = _MISSING) -> Any:
        """Return the frozen value of a segment.

        Raises:
            KeyError: If missing and no default was given.
        """
        if name in self._segments:
            return self._segments[name]
        if default is _MISSING:
            raise KeyError(f"Unknown context segment: {name}")
        return default

    def select(self, path: str, default: Any = _MISSING) -> Any:
        """Resolve a dotted path whose first part is a segment name."""
        return select_path(self._segments, path, default)

    def has_path(self, path: str) -> bool:
        """Return True if ``path`` resolves (even to None)."""
        return select_path(self._segments, path, _MISSING) is not _MISSING

    def filter(self, names: Iterable[str]) -> "ExecutionContext":
        """Return a context restricted to the given segment names."""
        wanted = set(names)
        return ExecutionContext._from_frozen(
            {name: value for name, value in self._segments.items() if name in wanted}
        )

    def snapshot(self) -> Mapping[str, Any]:
        """Return a read-only view of all segments, suitable for audit records."""
        return MappingProxyType(dict(self._segments))

    def to_dict(self) -> Dict[str, Any]:
        """Return a mutable, JSON-serialisable copy of the context."""
        return {name: thaw(value) for name, value in self._segments.items()}
