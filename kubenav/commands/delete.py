"""The ``delete`` verb. Deletions are sent once and never retried."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import click

from kubenav.commands.base import CommandContext, TargetCommand, TargetResult
from kubenav.navigation.objects import ObjectReference

_CASCADE = {"background": "Background", "foreground": "Foreground", "orphan": "Orphan"}


class DeleteCommand(TargetCommand):
    def __init__(self):
        super().__init__(
            "delete", "Delete the target (KIND/SELECTOR) or every selected object.", aliases=("rm",)
        )

    def params(self) -> List[click.Parameter]:
        return [
            click.Argument(["target"], required=False),
            click.Option(["--grace"], type=click.IntRange(min=0), help="Grace period in seconds."),
            click.Option(
                ["--cascade"],
                type=click.Choice(sorted(_CASCADE)),
                default="background",
                show_default=True,
                help="Deletion propagation policy.",
            ),
            click.Option(["--dry-run"], is_flag=True, help="Ask the server to validate only."),
        ]

    async def run_one(
        self,
        ctx: CommandContext,
        session,
        target: ObjectReference,
        grace: Optional[int] = None,
        cascade: str = "background",
        dry_run: bool = False,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "kind": "DeleteOptions",
            "apiVersion": "v1",
            "propagationPolicy": _CASCADE[cascade],
        }
        if grace is not None:
            body["gracePeriodSeconds"] = grace
        if dry_run:
            body["dryRun"] = ["All"]
        await session.delete(target.path, body)
        return {"deleted": target.name, "dry_run": dry_run}

    def after(self, ctx: CommandContext, results: List[TargetResult]) -> None:
        # Listings no longer reflect the cluster once anything was deleted.
        if any(r.ok for r in results) and not all(
            (r.value or {}).get("dry_run") for r in results if r.ok
        ):
            ctx.cache.invalidate(results[0].target.cluster)
