"""Stream container logs from every targeted pod."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import click

from kubenav.commands.base import CommandContext, StreamCommand
from kubenav.navigation.objects import ObjectReference
from kubenav.session.streams import StreamingOperation, log_params
from kubenav.shared.errors import OperationFailed

_DURATION = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


class DurationType(click.ParamType):
    """Durations like ``90s``, ``5m`` or ``1h30m``, converted to seconds."""

    name = "duration"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            return value
        match = _DURATION.match(str(value).strip())
        if not value or not match or not any(match.groups()):
            self.fail(f"'{value}' is not a duration like 30s, 5m or 1h", param, ctx)
        hours, minutes, seconds = (int(g or 0) for g in match.groups())
        return hours * 3600 + minutes * 60 + seconds


def _default_container(target: ObjectReference) -> Optional[str]:
    containers = ((target.raw.get("spec") or {}).get("containers")) or []
    if len(containers) > 1:
        return containers[0].get("name")
    return None


class LogsCommand(StreamCommand):
    """Aggregate logs from all targeted pods, each line attributed to its pod."""

    def __init__(self):
        super().__init__(
            "logs",
            "Print (or with -f follow) the logs of the target pod(s) (KIND/SELECTOR) or the selection.",
        )

    def params(self) -> List[click.Parameter]:
        return [
            click.Argument(["target"], required=False),
            click.Option(["-c", "--container"], help="Container name (default: first container)."),
            click.Option(["-f", "--follow"], is_flag=True, help="Keep streaming new lines."),
            click.Option(["--tail"], type=int, help="Number of most recent lines to show."),
            click.Option(["--since"], type=DurationType(), help="Only newer lines, e.g. 10m."),
            click.Option(["--timestamps"], is_flag=True, help="Prefix lines with timestamps."),
            click.Option(["-p", "--previous"], is_flag=True, help="Logs of the previous container instance."),
        ]

    def unbounded(self, kwargs: Dict[str, Any]) -> bool:
        return bool(kwargs.get("follow"))

    async def open(
        self,
        ctx: CommandContext,
        session,
        target: ObjectReference,
        container: Optional[str] = None,
        follow: bool = False,
        tail: Optional[int] = None,
        since: Optional[int] = None,
        timestamps: bool = False,
        previous: bool = False,
        **kwargs: Any,
    ) -> StreamingOperation:
        if target.kind != "Pod":
            raise OperationFailed(f"logs are only available for pods, not {target.kind}")
        params = log_params(
            container or _default_container(target), follow, tail, since, timestamps, previous
        )
        return await session.open_stream(target, f"{target.path}/log", params)
