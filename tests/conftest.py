"""Shared fakes: in-memory cluster sessions and streams for dispatcher tests."""

import asyncio
from typing import Any, Dict, List, Optional, Set

import pytest

from kubenav.commands import CommandDispatcher, build_command_registry
from kubenav.navigation.cache import ObjectCache
from kubenav.navigation.objects import lookup_kind
from kubenav.navigation.state import NavigationState
from kubenav.session.endpoint import ClusterEndpoint
from kubenav.session.registry import SessionRegistry
from kubenav.session.streams import StreamingOperation
from kubenav.shared.config import Settings
from kubenav.shared.errors import NotFound


def pod(
    name: str,
    namespace: str = "default",
    containers: Optional[List[str]] = None,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": "1",
            "labels": dict(labels or {}),
        },
        "spec": {"containers": [{"name": c} for c in (containers or ["main"])]},
        "status": {"phase": "Running"},
    }


def _matches_labels(item: Dict[str, Any], selector: Optional[str]) -> bool:
    if not selector:
        return True
    labels = item["metadata"].get("labels") or {}
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeStream(StreamingOperation):
    """Emits its lines, then either ends or waits forever (``follow``)."""

    def __init__(self, target, lines, follow=False, opened=None):
        super().__init__(target)
        self.lines = list(lines)
        self.follow = follow
        self.closed_calls = 0
        if opened is not None:
            opened.append(self)

    async def _iterate(self):
        for line in self.lines:
            yield self._chunk("log", line)
        if self.follow:
            await asyncio.Event().wait()

    async def close(self):
        self.closed_calls += 1
        await super().close()


class FakeExecStream(FakeStream):
    """Exec output that ends with the given exit status (``None``: no status)."""

    def __init__(self, target, lines, exit_code=0, opened=None):
        super().__init__(target, lines, opened=opened)
        self.exit_code = exit_code
        self.error = None


class FakeSession:
    """Answers GET/DELETE from dictionaries and records every call."""

    def __init__(self, name: str):
        self.name = name
        self.listings: Dict[str, List[Dict[str, Any]]] = {}
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.errors: Dict[str, Exception] = {}
        self.stalls: Set[str] = set()
        self.calls: List[tuple] = []
        self.streams: List[FakeStream] = []
        self.exec_params: List[list] = []
        self.exec_exit_code: Optional[int] = 0
        self.closed = False

    def add_pods(self, *pods: Dict[str, Any], namespace: Optional[str] = None) -> None:
        kind = lookup_kind("pods")
        self.listings[kind.collection_path(namespace)] = list(pods)
        for item in pods:
            meta = item["metadata"]
            self.objects[kind.object_path(meta["namespace"], meta["name"])] = item

    async def get_json(self, path: str, params=None) -> Dict[str, Any]:
        self.calls.append(("GET", path))
        if path in self.stalls:
            await asyncio.Event().wait()
        if path in self.errors:
            raise self.errors[path]
        if path in self.listings:
            selector = dict(params or {}).get("labelSelector")
            items = [i for i in self.listings[path] if _matches_labels(i, selector)]
            return {"metadata": {"resourceVersion": "10"}, "items": items}
        if path in self.objects:
            return dict(self.objects[path])
        raise NotFound(f"{path} not found", status=404, reason="NotFound")

    async def delete(self, path: str, body=None) -> Dict[str, Any]:
        self.calls.append(("DELETE", path))
        if path in self.errors:
            raise self.errors[path]
        return {"kind": "Status", "status": "Success"}

    async def open_stream(self, target, path, params=None):
        self.calls.append(("STREAM", path))
        if path in self.errors:
            raise self.errors[path]
        return FakeStream(
            target, [f"hello from {target.name}"], follow=bool((params or {}).get("follow")),
            opened=self.streams,
        )

    async def open_exec(self, target, params, input_data):
        self.calls.append(("EXEC", f"{target.path}/exec"))
        self.exec_params.append(list(params))
        return FakeExecStream(target, ["ok"], self.exec_exit_code, opened=self.streams)

    def port_forward(self, target, mappings, address="127.0.0.1"):
        self.calls.append(("PORTFORWARD", f"{target.path}/portforward"))
        return FakeStream(target, [], follow=True, opened=self.streams)

    async def close(self) -> None:
        self.closed = True


class Harness:
    """A dispatcher wired to fake sessions, one per cluster name."""

    def __init__(self, clusters=("alpha", "beta"), settings: Optional[Settings] = None):
        self.settings = settings or Settings(cancel_grace=0.5)
        self.fakes = {name: FakeSession(name) for name in clusters}
        self.connects: List[str] = []
        self.stall_connects = False
        self.sessions = SessionRegistry(
            [ClusterEndpoint(name=n, server=f"https://{n}.example:6443") for n in clusters],
            self.settings,
            factory=self._connect,
        )
        self.cache = ObjectCache()
        self.state = NavigationState(self.sessions, self.cache)
        self.chunks = []
        self.dispatcher = CommandDispatcher(
            self.state,
            self.sessions,
            self.cache,
            build_command_registry(),
            self.settings,
            on_chunk=self.chunks.append,
        )

    async def _connect(self, endpoint, settings, verify=False):
        self.connects.append(endpoint.name)
        if self.stall_connects:
            await asyncio.Event().wait()
        return self.fakes[endpoint.name]

    async def run(self, line: str, input_data: Optional[bytes] = None):
        words = line.split()
        return await self.dispatcher.dispatch(words[0], words[1:], input_data=input_data)


@pytest.fixture
def harness():
    return Harness()
