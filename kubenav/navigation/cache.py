"""Per-cluster, per-kind cache of the most recent listings.

Entries are immutable and replaced whole, so a reader always sees either the
old listing or the new one. There is no time-based expiry: a listing changes
only when the user lists again or explicitly invalidates.

A label-filtered listing is cached under its own key. Name and pattern
lookups always read the unfiltered listing, while index selectors read
whatever listing the user saw last.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Union

from kubenav.navigation.objects import ObjectReference, ResourceKind, lookup_kind
from kubenav.navigation.selectors import (
    IndexSelector,
    NameSelector,
    PatternSelector,
    Selector,
    parse_selector,
)
from kubenav.shared.errors import (
    FetchError,
    NoMatch,
    RequestError,
    ResolveError,
    StaleSelection,
)

if TYPE_CHECKING:
    from kubenav.session.cluster import ClusterSession

logger = logging.getLogger("kubenav.cache")

CacheKey = Tuple[str, str, Optional[str], Optional[str]]

_PAGE_SIZE = 500


@dataclass(frozen=True)
class CacheEntry:
    """One listing of one kind in one namespace of one cluster."""

    key: CacheKey
    items: Tuple[ObjectReference, ...]
    fetched_at: float
    generation: int
    list_version: str = ""


class ObjectCache:
    """Listing cache with index, name and pattern resolution."""

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._last_listing: Optional[CacheKey] = None
        self._generations = itertools.count(1)

    @staticmethod
    def key_for(
        cluster: str,
        kind: ResourceKind,
        namespace: Optional[str],
        label_selector: Optional[str] = None,
    ) -> CacheKey:
        return (cluster, kind.kind, namespace if kind.namespaced else None, label_selector or None)

    @property
    def last_listing(self) -> Optional[CacheKey]:
        return self._last_listing

    def entry(
        self,
        cluster: str,
        kind: Union[str, ResourceKind],
        namespace: Optional[str],
        label_selector: Optional[str] = None,
    ) -> Optional[CacheEntry]:
        resource = lookup_kind(kind) if isinstance(kind, str) else kind
        return self._entries.get(self.key_for(cluster, resource, namespace, label_selector))

    async def _fetch(
        self,
        session: "ClusterSession",
        kind: ResourceKind,
        namespace: Optional[str],
        label_selector: Optional[str] = None,
    ) -> CacheEntry:
        key = self.key_for(session.name, kind, namespace, label_selector)
        path = kind.collection_path(key[2])
        items: List[ObjectReference] = []
        list_version = ""
        continue_token: Optional[str] = None
        try:
            while True:
                params: Dict[str, str] = {"limit": str(_PAGE_SIZE)}
                if label_selector:
                    params["labelSelector"] = label_selector
                if continue_token:
                    params["continue"] = continue_token
                data = await session.get_json(path, params=params)
                fetched_at = time.monotonic()
                for item in data.get("items") or []:
                    items.append(ObjectReference.from_item(session.name, kind, item, fetched_at))
                metadata = data.get("metadata") or {}
                list_version = str(metadata.get("resourceVersion", list_version))
                continue_token = metadata.get("continue")
                if not continue_token:
                    break
        except RequestError as exc:
            raise FetchError(f"listing {kind.plural} on '{session.name}' failed: {exc}") from exc

        entry = CacheEntry(
            key=key,
            items=tuple(items),
            fetched_at=time.monotonic(),
            generation=next(self._generations),
            list_version=list_version,
        )
        self._entries[key] = entry
        logger.debug("Cached %d %s for %s", len(items), kind.plural, key)
        return entry

    async def list(
        self,
        session: "ClusterSession",
        kind: Union[str, ResourceKind],
        namespace: Optional[str],
        force_refresh: bool = False,
        label_selector: Optional[str] = None,
    ) -> Tuple[ObjectReference, ...]:
        """Return the listing for ``(session, kind, namespace)``.

        The key becomes the last listing, which is what index selectors
        refer to.
        """

        resource = lookup_kind(kind) if isinstance(kind, str) else kind
        key = self.key_for(session.name, resource, namespace, label_selector)
        entry = self._entries.get(key)
        if entry is None or force_refresh:
            entry = await self._fetch(session, resource, namespace, label_selector)
        self._last_listing = key
        return entry.items

    async def resolve(
        self,
        session: "ClusterSession",
        kind: Union[str, ResourceKind],
        namespace: Optional[str],
        selector: Union[str, Selector],
    ) -> Tuple[ObjectReference, ...]:
        """Map *selector* to a non-empty, ordered tuple of references."""

        resource = lookup_kind(kind) if isinstance(kind, str) else kind
        parsed = parse_selector(selector) if isinstance(selector, str) else selector
        key = self.key_for(session.name, resource, namespace)

        if isinstance(parsed, IndexSelector):
            last = self._last_listing
            entry = self._entries.get(last) if last is not None else None
            if last is None or last[:3] != key[:3] or entry is None:
                raise StaleSelection(
                    f"index selection needs a fresh listing of {resource.plural}; "
                    f"run 'get {resource.plural}' first"
                )
            count = len(entry.items)
            for idx in parsed.indices:
                if idx > count:
                    raise ResolveError(f"index {idx} out of range (listing has {count})")
            return tuple(entry.items[idx - 1] for idx in parsed.indices)

        entry = self._entries.get(key)
        if entry is None:
            entry = await self._fetch(session, resource, namespace)

        if isinstance(parsed, PatternSelector):
            matched = tuple(ref for ref in entry.items if parsed.matches(ref.name))
            if not matched:
                raise NoMatch(f"no {resource.plural} match '{parsed.source}'")
            return matched

        assert isinstance(parsed, NameSelector)
        matched = tuple(ref for ref in entry.items if ref.name == parsed.name)
        if not matched:
            raise NoMatch(f"no {resource.kind.lower()} named '{parsed.name}'")
        return matched

    def invalidate(self, cluster: Optional[str] = None) -> None:
        """Drop cached listings for *cluster* (or all clusters)."""

        if cluster is None:
            self._entries = {}
            self._last_listing = None
            return
        self._entries = {k: v for k, v in self._entries.items() if k[0] != cluster}
        if self._last_listing and self._last_listing[0] == cluster:
            self._last_listing = None
