"""Core primitives shared across server and client layers."""

from .broadcast import ListBroadcaster, format_sse
from .identity import ContextState, find_by_identity, identity_of, resolve_context

__all__ = [
    "ContextState",
    "ListBroadcaster",
    "find_by_identity",
    "format_sse",
    "identity_of",
    "resolve_context",
]
