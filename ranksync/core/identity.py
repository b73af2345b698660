#!/usr/bin/env python
"""
Content-based identity for list entries.

An entry has no durable id of its own; its position shifts whenever another
client reorders the list. The identity derived here (artist, title and
release date, normalized) is what clients use to find the entry again.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Tuple

SEPARATOR = "::"

# Entry attributes a client may write. ``identity`` and ``position`` are derived.
ENTRY_FIELDS = (
    "artist",
    "title",
    "release_date",
    "country",
    "genres",
    "comment",
    "track_pick",
    "cover_image",
)

_WHITESPACE_RE = re.compile(r"\s+")
_TRANSLATION = str.maketrans(
    {
        "…": "...",
        "–": "-",
        "—": "-",
        "‘": "'",
        "’": "'",
        "`": "'",
        "“": '"',
        "”": '"',
    }
)


def normalize_component(value: Any) -> str:
    """Sanitize one identity component: unify punctuation, collapse spaces, lowercase."""
    if value is None:
        return ""
    text = str(value).translate(_TRANSLATION)
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def _field(entry: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = entry.get(name)
        if value not in (None, ""):
            return value
    return None


def identity_of(entry: Any) -> str:
    """Return the identity key of an entry, or ``""`` if it has none."""
    if not isinstance(entry, Mapping):
        return ""
    artist = normalize_component(_field(entry, "artist"))
    title = normalize_component(_field(entry, "title", "album"))
    if not artist and not title:
        return ""
    release = normalize_component(_field(entry, "release_date", "releaseDate"))
    return SEPARATOR.join((artist, title, release))


def find_by_identity(items: Sequence[Any], identity: str) -> Optional[Tuple[Any, int]]:
    """Linear scan; the first entry with a matching identity wins."""
    if not identity:
        return None
    for index, entry in enumerate(items or ()):
        if identity_of(entry) == identity:
            return entry, index
    return None


def find_duplicates(items: Sequence[Any]) -> List[str]:
    seen = set()
    duplicates: List[str] = []
    for entry in items or ():
        key = identity_of(entry)
        if not key:
            continue
        if key in seen and key not in duplicates:
            duplicates.append(key)
        seen.add(key)
    return duplicates


@dataclass(frozen=True)
class ContextState:
    """The entry a user is interacting with (context menu, drag handle)."""

    list_id: str
    index: int
    identity: str

    @classmethod
    def capture(cls, list_id: str, items: Sequence[Any], index: int) -> "ContextState":
        entry = items[index]
        return cls(list_id=list_id, index=index, identity=identity_of(entry))


def resolve_context(items: Sequence[Any], context: ContextState) -> Optional[Tuple[Any, int]]:
    """Re-validate a captured context against the current items.

    The captured index is only a hint: it is used when the entry still sitting
    there has the captured identity, otherwise the identity is searched for.
    """
    index = context.index
    if 0 <= index < len(items) and identity_of(items[index]) == context.identity:
        return items[index], index
    return find_by_identity(items, context.identity)


__all__ = [
    "ENTRY_FIELDS",
    "ContextState",
    "find_by_identity",
    "find_duplicates",
    "identity_of",
    "normalize_component",
    "resolve_context",
]
