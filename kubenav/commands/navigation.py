"""Verbs that move the cursor: cluster, namespace and selection."""

from __future__ import annotations

from typing import Any, List, Optional

import click

from kubenav.commands.base import CommandContext, CommandResult, LocalCommand


class ClustersCommand(LocalCommand):
    def __init__(self):
        super().__init__("clusters", "List configured clusters and their connection state.")

    async def execute(self, ctx: CommandContext, **kwargs: Any) -> CommandResult:
        rows = []
        for endpoint in ctx.sessions.endpoints():
            row = endpoint.describe()
            row["current"] = "*" if endpoint.name == ctx.state.cluster else ""
            row["connected"] = "yes" if ctx.sessions.is_connected(endpoint.name) else "no"
            rows.append(row)
        return CommandResult(verb=self.name, data=rows)


class ContextCommand(LocalCommand):
    def __init__(self):
        super().__init__(
            "context",
            "Switch to cluster NAME; clears namespace and selection. Without NAME, show the current one.",
            aliases=("ctx",),
        )

    def params(self) -> List[click.Parameter]:
        return [click.Argument(["name"], required=False)]

    async def execute(self, ctx: CommandContext, name: Optional[str] = None, **kwargs: Any) -> CommandResult:
        if name:
            ctx.state.use_cluster(name)
            return CommandResult(verb=self.name, message=f"Using cluster {name}")
        current = ctx.state.cluster
        return CommandResult(
            verb=self.name, message=f"Current cluster: {current}" if current else "No cluster selected"
        )


class NamespaceCommand(LocalCommand):
    def __init__(self):
        super().__init__(
            "namespace",
            "Restrict listings to namespace NAME; without NAME, use all namespaces.",
            aliases=("ns",),
        )

    def params(self) -> List[click.Parameter]:
        return [click.Argument(["name"], required=False)]

    async def execute(self, ctx: CommandContext, name: Optional[str] = None, **kwargs: Any) -> CommandResult:
        ctx.state.use_namespace(name)
        return CommandResult(
            verb=self.name,
            message=f"Using namespace {name}" if name else "Using all namespaces",
        )


class SelectCommand(LocalCommand):
    def __init__(self):
        super().__init__(
            "select",
            "Select KIND objects by index (1-3, 2,5), name, glob (web-*) or /regex/.",
            aliases=("sel",),
        )

    def params(self) -> List[click.Parameter]:
        return [click.Argument(["kind"]), click.Argument(["selector"])]

    async def execute(self, ctx: CommandContext, kind: str = "", selector: str = "", **kwargs: Any) -> CommandResult:
        selection = await ctx.state.select(kind, selector)
        return CommandResult(
            verb=self.name,
            data=list(selection.items),
            message=f"Selected {len(selection)} object(s)",
        )


class ClearCommand(LocalCommand):
    def __init__(self):
        super().__init__("clear", "Clear the current selection.")

    async def execute(self, ctx: CommandContext, **kwargs: Any) -> CommandResult:
        ctx.state.clear_selection()
        return CommandResult(verb=self.name, message="Selection cleared")


class ReconnectCommand(LocalCommand):
    def __init__(self):
        super().__init__(
            "reconnect",
            "Tear down and rebuild the session for NAME (default: current cluster) and verify it.",
        )

    def params(self) -> List[click.Parameter]:
        return [click.Argument(["name"], required=False)]

    async def execute(self, ctx: CommandContext, name: Optional[str] = None, **kwargs: Any) -> CommandResult:
        cluster = name or ctx.state.require_cluster()
        ctx.cache.invalidate(cluster)
        session = await ctx.sessions.reconnect(cluster)
        version = await session.get_json("/version")
        return CommandResult(
            verb=self.name,
            data=version,
            message=f"Connected to {cluster} (server {version.get('gitVersion', 'unknown')})",
        )


class DisconnectCommand(LocalCommand):
    def __init__(self):
        super().__init__(
            "disconnect", "Close the session for NAME (default: current cluster)."
        )

    def params(self) -> List[click.Parameter]:
        return [click.Argument(["name"], required=False)]

    async def execute(self, ctx: CommandContext, name: Optional[str] = None, **kwargs: Any) -> CommandResult:
        cluster = name or ctx.state.require_cluster()
        ctx.cache.invalidate(cluster)
        closed = await ctx.sessions.disconnect(cluster)
        return CommandResult(
            verb=self.name,
            message=f"Disconnected from {cluster}" if closed else f"{cluster} was not connected",
        )
