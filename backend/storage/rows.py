"""
Helpers for linked-row payloads returned by composite selects.

PostgREST embeds a to-one relation either as an object or as a one-element
list depending on how the foreign key is detected. Callers normalize both to
"object or None" so views never branch on payload shape.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


def one_or_none(value: Any) -> Optional[Dict[str, Any]]:
    """Return the embedded row as a dict, or None when absent/hidden."""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if isinstance(value, dict):
        return dict(value)
    return None


def embedded_count(value: Any) -> int:
    """Extract an aggregate ``count`` from ``[{count: n}]``, ``{count: n}`` or nothing."""
    row = one_or_none(value)
    if row is None:
        return 0
    try:
        return max(0, int(row.get("count") or 0))
    except (TypeError, ValueError):
        return 0


__all__ = ["embedded_count", "one_or_none"]
