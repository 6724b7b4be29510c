"""Dotted property-path resolution with a default fallback.

``resolve_path(event, "session.user.id")`` walks mappings by key,
sequences by integer index, and everything else by attribute. Any
failure along the way (missing field, non-dereferenceable value, a
property that raises) yields the caller's default instead of an
exception.

Example:
    >>> from core.property_path import resolve_path
    >>> resolve_path({"session": {"ids": [7, 8]}}, "session.ids.1")
    8
    >>> resolve_path({"session": None}, "session.id", default="n/a")
    'n/a'
"""

from collections.abc import Mapping, Sequence
from typing import Any

_MISSING: object = object()


def resolve_path(target: object, path: object, default: Any = None) -> Any:
    """Resolve a dot-separated field path against ``target``.

    Whatever value resolves is returned unchanged, including containers
    and an explicit ``None`` stored in the final field. ``default`` is
    returned only when resolution fails.

    Args:
        target: Object to resolve against (event, mapping, model...).
        path: Dot-separated field path, e.g. ``"detail.token"``.
        default: Value returned when the path cannot be resolved.

    Returns:
        The resolved value, or ``default``.
    """
    if not isinstance(path, str) or not path:
        return default

    current: Any = target
    for segment in path.split("."):
        if not segment:
            return default
        try:
            current = _step(current, segment)
        except Exception:
            return default
        if current is _MISSING:
            return default
    return current


def _step(value: Any, segment: str) -> Any:
    """Dereference a single path segment, or return ``_MISSING``."""
    if value is None:
        return _MISSING
    if isinstance(value, Mapping):
        return value.get(segment, _MISSING)
    if (
        isinstance(value, Sequence)
        and not isinstance(value, (str, bytes))
        and segment.lstrip("-").isdigit()
    ):
        index: int = int(segment)
        if -len(value) <= index < len(value):
            return value[index]
        return _MISSING
    return getattr(value, segment, _MISSING)
