"""Forward local ports to one pod until the command is interrupted."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

import click

from kubenav.commands.base import CommandContext, StreamCommand
from kubenav.navigation.objects import ObjectReference
from kubenav.session.streams import StreamingOperation
from kubenav.shared.errors import OperationFailed, SingleTargetRequired, UsageError


def parse_port_mappings(specs: Sequence[str]) -> List[Tuple[int, int]]:
    """Parse ``LOCAL:REMOTE`` (or ``PORT`` for both) specifications."""

    mappings: List[Tuple[int, int]] = []
    for spec in specs:
        local_text, _, remote_text = spec.partition(":")
        if not remote_text:
            remote_text = local_text
        try:
            local = int(local_text) if local_text else 0
            remote = int(remote_text)
        except ValueError:
            raise UsageError(f"port-forward: invalid port specification '{spec}'") from None
        if not (0 <= local <= 65535 and 0 < remote <= 65535):
            raise UsageError(f"port-forward: port out of range in '{spec}'")
        mappings.append((local, remote))
    return mappings


class PortForwardCommand(StreamCommand):
    target_option = True

    def __init__(self):
        super().__init__(
            "port-forward",
            "Forward LOCAL:REMOTE ports to the target pod until interrupted (Ctrl+C).",
            aliases=("pf",),
        )

    def params(self) -> List[click.Parameter]:
        return [
            click.Option(["-t", "--target"], help="KIND/SELECTOR instead of the selection."),
            click.Option(
                ["--address"], default="127.0.0.1", show_default=True, help="Local address to bind."
            ),
            click.Argument(["ports"], nargs=-1, required=True),
        ]

    def unbounded(self, kwargs: Dict[str, Any]) -> bool:
        return True

    def validate_range(
        self, ctx: CommandContext, targets: Sequence[ObjectReference], kwargs: Dict[str, Any]
    ) -> None:
        if len(targets) != 1:
            raise SingleTargetRequired(
                f"port-forward needs exactly one pod, {len(targets)} targeted"
            )
        kwargs["mappings"] = parse_port_mappings(kwargs["ports"])

    async def open(
        self,
        ctx: CommandContext,
        session,
        target: ObjectReference,
        mappings: Sequence[Tuple[int, int]] = (),
        address: str = "127.0.0.1",
        **kwargs: Any,
    ) -> StreamingOperation:
        if target.kind != "Pod":
            raise OperationFailed(f"port-forward is only possible on pods, not {target.kind}")
        return session.port_forward(target, list(mappings), address)
