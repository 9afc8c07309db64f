"""Verb to get detailed information about the targeted Kubernetes objects."""

from __future__ import annotations

from typing import Any, Dict, List

import click

from kubenav.commands.base import CommandContext, TargetCommand
from kubenav.navigation.objects import ObjectReference


class DescribeCommand(TargetCommand):
    """Fetch the full object, similar to ``kubectl get -o yaml``."""

    def __init__(self):
        super().__init__(
            "describe",
            "Show the full definition and status of the target (KIND/SELECTOR) or the selection.",
            aliases=("desc",),
        )

    def params(self) -> List[click.Parameter]:
        return [
            click.Argument(["target"], required=False),
            click.Option(
                ["--events/--no-events"], default=False, help="Include recent events for the object."
            ),
        ]

    async def run_one(
        self, ctx: CommandContext, session, target: ObjectReference, events: bool = False, **kwargs: Any
    ) -> Dict[str, Any]:
        obj = await session.get_json(target.path)
        if not events:
            return obj

        params = {
            "fieldSelector": f"involvedObject.name={target.name},involvedObject.kind={target.kind}"
        }
        path = (
            f"/api/v1/namespaces/{target.namespace}/events"
            if target.namespace
            else "/api/v1/events"
        )
        listing = await session.get_json(path, params=params)
        obj["events"] = [
            {
                "type": e.get("type"),
                "reason": e.get("reason"),
                "message": e.get("message"),
                "count": e.get("count"),
                "lastTimestamp": e.get("lastTimestamp"),
            }
            for e in listing.get("items") or []
        ]
        return obj
