"""Navigation: resource kinds, the object cache and the REPL cursor."""

from .cache import CacheEntry, ObjectCache
from .objects import KINDS, ObjectReference, ResourceKind, lookup_kind
from .state import NavigationState, Selection

__all__ = [
    "CacheEntry",
    "ObjectCache",
    "KINDS",
    "ObjectReference",
    "ResourceKind",
    "lookup_kind",
    "NavigationState",
    "Selection",
]
