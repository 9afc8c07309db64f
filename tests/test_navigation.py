"""Tests for selectors, the object cache and the navigation cursor."""

import pytest

from conftest import FakeSession, pod
from kubenav.navigation.cache import ObjectCache
from kubenav.navigation.objects import ObjectReference, lookup_kind
from kubenav.navigation.selectors import (
    IndexSelector,
    NameSelector,
    PatternSelector,
    parse_selector,
)
from kubenav.navigation.state import Selection
from kubenav.shared.errors import (
    FetchError,
    NoMatch,
    RequestError,
    ResolveError,
    StaleSelection,
    UnknownCluster,
    UnknownKind,
)


def test_parse_index_expressions():
    assert parse_selector("3") == IndexSelector((3,))
    assert parse_selector("1-3") == IndexSelector((1, 2, 3))
    assert parse_selector("4,1-2,2") == IndexSelector((4, 1, 2))


def test_parse_patterns_and_names():
    glob = parse_selector("web-*")
    assert isinstance(glob, PatternSelector)
    assert glob.matches("web-1") and not glob.matches("api-web-1")

    regex = parse_selector("/^api-[0-9]+$/")
    assert isinstance(regex, PatternSelector)
    assert regex.matches("api-12") and not regex.matches("api-x")

    assert parse_selector("nginx") == NameSelector("nginx")


@pytest.mark.parametrize("text", ["", "3-1", "0", "/(/"])
def test_parse_rejects_invalid_selectors(text):
    with pytest.raises(ResolveError):
        parse_selector(text)


def test_lookup_kind_aliases():
    assert lookup_kind("po").kind == "Pod"
    assert lookup_kind("Deployments").group_path == "/apis/apps/v1"
    with pytest.raises(UnknownKind):
        lookup_kind("widgets")


@pytest.mark.asyncio
async def test_index_range_preserves_listing_order():
    session = FakeSession("alpha")
    session.add_pods(*(pod(f"p{i}") for i in range(1, 6)))
    cache = ObjectCache()

    listing = await cache.list(session, "pods", None)
    refs = await cache.resolve(session, "pods", None, "1-3")

    assert [r.name for r in listing] == ["p1", "p2", "p3", "p4", "p5"]
    assert [r.name for r in refs] == ["p1", "p2", "p3"]
    assert all(r.cluster == "alpha" for r in refs)


@pytest.mark.asyncio
async def test_index_without_matching_listing_is_stale():
    session = FakeSession("alpha")
    session.add_pods(pod("p1"))
    session.listings["/api/v1/services"] = [{"metadata": {"name": "s1", "namespace": "default"}}]
    cache = ObjectCache()

    with pytest.raises(StaleSelection):
        await cache.resolve(session, "pods", None, "1")

    await cache.list(session, "pods", None)
    await cache.list(session, "services", None)
    with pytest.raises(StaleSelection):
        await cache.resolve(session, "pods", None, "1")

    with pytest.raises(ResolveError):
        await cache.resolve(session, "services", None, "2")


@pytest.mark.asyncio
async def test_name_lookup_fetches_without_becoming_last_listing():
    session = FakeSession("alpha")
    session.add_pods(pod("p1"), pod("p2"))
    cache = ObjectCache()

    refs = await cache.resolve(session, "pods", None, "p2")

    assert [r.name for r in refs] == ["p2"]
    assert cache.last_listing is None
    with pytest.raises(NoMatch):
        await cache.resolve(session, "pods", None, "zzz-*")


@pytest.mark.asyncio
async def test_failed_fetch_keeps_previous_entry():
    session = FakeSession("alpha")
    session.add_pods(pod("p1"))
    cache = ObjectCache()
    await cache.list(session, "pods", None)
    before = cache.entry("alpha", "pods", None)

    session.errors["/api/v1/pods"] = RequestError("boom", transient=True)
    with pytest.raises(FetchError):
        await cache.list(session, "pods", None, force_refresh=True)

    assert cache.entry("alpha", "pods", None) is before


@pytest.mark.asyncio
async def test_pagination_follows_continue_tokens():
    class PagedSession(FakeSession):
        async def get_json(self, path, params=None):
            self.calls.append(("GET", path, dict(params or {})))
            if "continue" not in params:
                return {"metadata": {"continue": "next"}, "items": [pod("p1")]}
            return {"metadata": {"resourceVersion": "7"}, "items": [pod("p2")]}

    session = PagedSession("alpha")
    cache = ObjectCache()

    listing = await cache.list(session, "pods", "default")

    assert [r.name for r in listing] == ["p1", "p2"]
    assert session.calls[0][1] == "/api/v1/namespaces/default/pods"
    assert session.calls[1][2]["continue"] == "next"
    assert cache.entry("alpha", "pods", "default").list_version == "7"


@pytest.mark.asyncio
async def test_state_transitions(harness):
    harness.fakes["alpha"].add_pods(pod("a"), pod("b"))
    state = harness.state
    assert state.prompt_label() == "none][*"

    state.use_cluster("alpha")
    await harness.run("get pods")
    selection = await state.select("pods", "1-2")
    assert len(selection) == 2
    assert state.prompt_label() == "alpha][*][2 selected"

    state.use_namespace("default")
    assert len(state.selection) == 0
    assert state.namespace == "default"

    state.use_cluster("beta")
    assert state.cluster == "beta"
    assert state.namespace is None

    with pytest.raises(UnknownCluster):
        state.use_cluster("gamma")
    assert state.cluster == "beta"


@pytest.mark.asyncio
async def test_failed_select_leaves_selection_untouched(harness):
    harness.fakes["alpha"].add_pods(pod("a"))
    await harness.run("context alpha")
    await harness.run("get pods")
    await harness.run("select pods 1")

    with pytest.raises(ResolveError):
        await harness.run("select pods 5")

    assert [r.name for r in harness.state.selection] == ["a"]


@pytest.mark.asyncio
async def test_cluster_scoped_kinds_ignore_namespace():
    session = FakeSession("alpha")
    session.listings["/api/v1/nodes"] = [{"metadata": {"name": "n1"}}]
    cache = ObjectCache()

    nodes = await cache.list(session, "nodes", "default")

    assert nodes[0].namespace is None
    assert cache.last_listing == ("alpha", "Node", None, None)
    assert nodes[0].path == "/api/v1/nodes/n1"


def test_selection_cannot_span_clusters():
    refs = (
        ObjectReference("alpha", "Pod", "default", "a"),
        ObjectReference("beta", "Pod", "default", "b"),
    )
    with pytest.raises(ValueError):
        Selection(cluster="alpha", items=refs)


@pytest.mark.asyncio
async def test_label_filtered_listing_does_not_hide_other_objects():
    session = FakeSession("alpha")
    session.add_pods(
        pod("web-1", labels={"app": "web"}),
        pod("api-1", labels={"app": "api"}),
        pod("web-2", labels={"app": "web"}),
    )
    cache = ObjectCache()

    filtered = await cache.list(session, "pods", None, force_refresh=True, label_selector="app=web")

    assert [r.name for r in filtered] == ["web-1", "web-2"]
    assert [r.name for r in await cache.resolve(session, "pods", None, "2")] == ["web-2"]
    assert [r.name for r in await cache.resolve(session, "pods", None, "api-1")] == ["api-1"]
    matched = await cache.resolve(session, "pods", None, "*-1")
    assert [r.name for r in matched] == ["web-1", "api-1"]
    assert cache.entry("alpha", "pods", None, "app=web").items == filtered
    assert len(cache.entry("alpha", "pods", None).items) == 3


@pytest.mark.asyncio
async def test_cached_get_with_label_selector(harness):
    fake = harness.fakes["alpha"]
    fake.add_pods(pod("web-1", labels={"app": "web"}), pod("api-1", labels={"app": "api"}))
    await harness.run("context alpha")

    await harness.run("get pods -l app=web")
    everything = await harness.run("get pods --cached")
    filtered = await harness.run("get pods -l app=web --cached")

    assert [r.name for r in everything.data] == ["web-1", "api-1"]
    assert [r.name for r in filtered.data] == ["web-1"]
    assert fake.calls.count(("GET", "/api/v1/pods")) == 2
    selection = await harness.state.select("pods", "1")
    assert [r.name for r in selection] == ["web-1"]
