"""The ``get`` verb: list objects of one kind and refresh the cache."""

from __future__ import annotations

from typing import Any, List, Optional

import click

from kubenav.commands.base import CommandContext, CommandResult, LocalCommand
from kubenav.navigation.objects import KINDS, lookup_kind


class GetCommand(LocalCommand):
    """List objects; the listing becomes the base for index selection."""

    def __init__(self):
        kinds = ", ".join(k.plural for k in KINDS)
        super().__init__(
            "get",
            f"List objects of KIND in the current namespace. Kinds: {kinds}.",
            aliases=("ls", "list"),
        )

    def params(self) -> List[click.Parameter]:
        return [
            click.Argument(["kind"]),
            click.Option(["-l", "--selector", "label_selector"], help="Label selector."),
            click.Option(
                ["--cached"], is_flag=True, help="Reuse the cached listing when present."
            ),
        ]

    async def execute(
        self,
        ctx: CommandContext,
        kind: str = "",
        label_selector: Optional[str] = None,
        cached: bool = False,
        **kwargs: Any,
    ) -> CommandResult:
        resource = lookup_kind(kind)
        cluster = ctx.state.require_cluster()
        session = await ctx.sessions.get(cluster)
        items = await ctx.cache.list(
            session,
            resource,
            ctx.state.namespace,
            force_refresh=not cached,
            label_selector=label_selector,
        )
        return CommandResult(verb=self.name, data=list(items), message=resource.kind)
