"""The REPL cursor: current cluster, namespace and selection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Optional, Tuple

from kubenav.navigation.cache import ObjectCache
from kubenav.navigation.objects import ObjectReference
from kubenav.shared.errors import NoCluster

if TYPE_CHECKING:
    from kubenav.session.registry import SessionRegistry


@dataclass(frozen=True)
class Selection:
    """Ordered objects of exactly one cluster that unqualified verbs act on."""

    cluster: Optional[str] = None
    items: Tuple[ObjectReference, ...] = ()

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[ObjectReference]:
        return iter(self.items)

    def __post_init__(self) -> None:
        for ref in self.items:
            if ref.cluster != self.cluster:
                raise ValueError("a selection cannot span clusters")


class NavigationState:
    """Sequential state machine over ``(cluster?, namespace?, selection)``.

    Only the command loop mutates it, so it needs no locking.
    """

    def __init__(self, sessions: "SessionRegistry", cache: ObjectCache) -> None:
        self._sessions = sessions
        self._cache = cache
        self._cluster: Optional[str] = None
        self._namespace: Optional[str] = None
        self._selection = Selection()

    @property
    def cluster(self) -> Optional[str]:
        return self._cluster

    @property
    def namespace(self) -> Optional[str]:
        return self._namespace

    @property
    def selection(self) -> Selection:
        return self._selection

    def require_cluster(self) -> str:
        if self._cluster is None:
            raise NoCluster("no cluster selected; use 'context <name>' first")
        return self._cluster

    def use_cluster(self, name: str) -> None:
        # Raises UnknownCluster for names that are not configured.
        self._sessions.endpoint(name)
        self._cluster = name
        self._namespace = None
        self._selection = Selection()

    def use_namespace(self, name: Optional[str]) -> None:
        cluster = self.require_cluster()
        self._namespace = name or None
        self._selection = Selection(cluster=cluster)

    async def select(self, kind: str, selector: str) -> Selection:
        """Resolve *selector* and replace the selection, or leave it untouched."""

        cluster = self.require_cluster()
        session = await self._sessions.get(cluster)
        refs = await self._cache.resolve(session, kind, self._namespace, selector)
        self._selection = Selection(cluster=cluster, items=refs)
        return self._selection

    def clear_selection(self) -> None:
        self._selection = Selection(cluster=self._cluster)

    def prompt_label(self) -> str:
        parts = [self._cluster or "none", self._namespace or "*"]
        if len(self._selection) == 1:
            parts.append(self._selection.items[0].name)
        elif len(self._selection) > 1:
            parts.append(f"{len(self._selection)} selected")
        return "][".join(parts)
