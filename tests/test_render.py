"""Tests for rendering results and shell piping from the REPL workspace."""

from datetime import datetime, timezone

import pytest

from conftest import FakeSession, pod
from kubenav.commands import CommandResult, TargetResult, TargetStatus
from kubenav.navigation.objects import ObjectReference
from kubenav.render import Renderer, format_age
from kubenav.repl import Workspace
from kubenav.session.endpoint import ClusterEndpoint
from kubenav.session.streams import StreamChunk
from kubenav.shared.errors import Forbidden, NoTarget


def test_format_age():
    now = datetime(2024, 1, 3, 12, 0, 0, tzinfo=timezone.utc)

    assert format_age("2024-01-01T12:00:00Z", now) == "2d"
    assert format_age("2024-01-03T09:30:00Z", now) == "2h"
    assert format_age("2024-01-03T11:59:15Z", now) == "45s"
    assert format_age(None, now) == "<unknown>"


def test_plain_renderer_attributes_every_line():
    renderer = Renderer.capture()
    target = ObjectReference("alpha", "Pod", "default", "web")

    renderer.chunk(StreamChunk(target, "log", "line one\nline two"))

    assert renderer.text().splitlines() == [
        "[alpha/default/web] line one",
        "[alpha/default/web] line two",
    ]


def test_failures_are_reported_per_target():
    renderer = Renderer.capture()
    ok = ObjectReference("alpha", "Pod", "default", "a")
    bad = ObjectReference("alpha", "Pod", "default", "b")
    result = CommandResult(
        verb="delete",
        results=[
            TargetResult(ok, TargetStatus.SUCCESS, value={"deleted": "a", "dry_run": False}),
            TargetResult(bad, TargetStatus.FAILURE, error=Forbidden("denied", status=403)),
        ],
    )

    renderer.result(result)
    text = renderer.text()

    assert "[alpha/default/a] deleted" in text
    assert "[alpha/default/b] failed: Forbidden: denied" in text
    assert "1 failed" in text


def _workspace():
    fake = FakeSession("alpha")
    fake.add_pods(pod("p1"), pod("p2", namespace="kube-system"))

    async def factory(endpoint, settings, verify=False):
        return fake

    return Workspace(
        [ClusterEndpoint(name="alpha", server="https://alpha:6443")],
        renderer=Renderer.capture(),
        current_context="alpha",
        session_factory=factory,
    )


@pytest.mark.asyncio
async def test_workspace_pipes_plain_output_to_shell(tmp_path):
    workspace = _workspace()
    out = tmp_path / "pods.txt"

    result = await workspace.run_line(f"get pods | grep kube-system > {out}")

    assert result.status == "success"
    lines = out.read_text().splitlines()
    assert len(lines) == 1
    assert "p2" in lines[0]
    assert workspace.renderer.text() == ""


@pytest.mark.asyncio
async def test_workspace_renders_errors_and_reraises():
    workspace = _workspace()

    with pytest.raises(NoTarget):
        await workspace.run_line("describe")
    assert await workspace.run_line("   ") is None
    assert "needs a target" in workspace.renderer.text()
