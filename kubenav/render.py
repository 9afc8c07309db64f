"""Render dispatch results and stream chunks with rich."""

from __future__ import annotations

import io
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import yaml
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from kubenav.commands.base import CommandResult, TargetResult, TargetStatus
from kubenav.navigation.objects import ObjectReference
from kubenav.session.streams import StreamChunk

_CLUSTER_COLUMNS = ("current", "name", "server", "auth", "tls", "namespace", "connected", "error")


def format_age(timestamp: Optional[str], now: Optional[datetime] = None) -> str:
    """Render a creationTimestamp the way kubectl does (``5d``, ``3h``, ``12m``)."""

    if not timestamp:
        return "<unknown>"
    try:
        created = datetime.strptime(timestamp, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return "<unknown>"
    seconds = int(((now or datetime.now(timezone.utc)) - created).total_seconds())
    if seconds < 0:
        return "0s"
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds >= size:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


def _object_status(ref: ObjectReference) -> str:
    status = ref.raw.get("status") or {}
    if ref.kind == "Pod":
        return status.get("phase") or ""
    if ref.kind in ("Deployment", "StatefulSet", "ReplicaSet"):
        desired = (ref.raw.get("spec") or {}).get("replicas", 0)
        return f"{status.get('readyReplicas', 0)}/{desired}"
    if ref.kind == "Node":
        for condition in status.get("conditions") or []:
            if condition.get("type") == "Ready":
                return "Ready" if condition.get("status") == "True" else "NotReady"
    return status.get("phase") or ""


class Renderer:
    """Writes results to a rich console; ``plain`` renderers capture text for shell pipes."""

    def __init__(self, console: Optional[Console] = None, plain: bool = False):
        self.plain = plain
        self._buffer: Optional[io.StringIO] = None
        if plain:
            self._buffer = io.StringIO()
            console = Console(
                file=self._buffer, color_system=None, force_terminal=False, width=240, highlight=False
            )
        self.console = console or Console()

    @classmethod
    def capture(cls) -> "Renderer":
        return cls(plain=True)

    def text(self) -> str:
        return self._buffer.getvalue() if self._buffer is not None else ""

    # ------------------------------------------------------------------ #

    def info(self, message: str) -> None:
        if self.plain:
            self.console.print(message, markup=False)
        else:
            self.console.print(f"[dim]{escape(message)}[/dim]")

    def error(self, message: str) -> None:
        if self.plain:
            self.console.print(f"Error: {message}", markup=False)
        else:
            self.console.print(f"[red]Error: {escape(message)}[/red]")

    def chunk(self, chunk: StreamChunk) -> None:
        prefix = f"[{chunk.target.label}]"
        for line in chunk.data.splitlines() or [""]:
            if self.plain:
                self.console.print(f"{prefix} {line}", markup=False, highlight=False)
            elif chunk.channel == "stderr":
                self.console.print(f"[cyan]{escape(prefix)}[/cyan] [red]{escape(line)}[/red]")
            elif chunk.channel == "status":
                self.console.print(f"[cyan]{escape(prefix)}[/cyan] [yellow]{escape(line)}[/yellow]")
            else:
                self.console.print(f"[cyan]{escape(prefix)}[/cyan] {escape(line)}", highlight=False)

    def yaml(self, value: Any) -> None:
        text = yaml.safe_dump(value, sort_keys=False, default_flow_style=False)
        if self.plain:
            self.console.print(text.rstrip("\n"), markup=False, highlight=False)
        else:
            self.console.print(Syntax(text, "yaml", theme="ansi_dark", background_color="default"))

    # ------------------------------------------------------------------ #

    def clusters(self, rows: List[Dict[str, Any]]) -> None:
        table = Table(box=None, show_edge=False, header_style="bold")
        for column in _CLUSTER_COLUMNS:
            table.add_column(column.upper())
        for row in rows:
            table.add_row(*(str(row.get(c) or "") for c in _CLUSTER_COLUMNS))
        self.console.print(table)

    def objects(self, refs: Sequence[ObjectReference], title: str = "") -> None:
        if not refs:
            self.info(f"No {title or 'objects'} found")
            return
        namespaced = any(ref.namespace for ref in refs)
        table = Table(box=None, show_edge=False, header_style="bold")
        table.add_column("#", justify="right")
        if namespaced:
            table.add_column("NAMESPACE")
        table.add_column("NAME", style=None if self.plain else "cyan")
        table.add_column("STATUS")
        table.add_column("AGE", justify="right")
        for index, ref in enumerate(refs, start=1):
            cells = [str(index)]
            if namespaced:
                cells.append(ref.namespace or "")
            cells += [
                ref.name,
                _object_status(ref),
                format_age((ref.raw.get("metadata") or {}).get("creationTimestamp")),
            ]
            table.add_row(*cells)
        self.console.print(table)

    def target_result(self, verb: str, result: TargetResult) -> None:
        label = result.target.label
        if result.status is TargetStatus.CANCELLED:
            if self.plain:
                self.console.print(f"[{label}] cancelled", markup=False)
            else:
                self.console.print(f"[yellow]{escape(f'[{label}]')} cancelled[/yellow]")
            return
        if result.status is TargetStatus.FAILURE:
            message = f"{type(result.error).__name__}: {result.error}"
            if self.plain:
                self.console.print(f"[{label}] failed: {message}", markup=False)
            else:
                self.console.print(f"[red]{escape(f'[{label}]')} failed: {escape(message)}[/red]")
            return
        value = result.value
        if verb == "describe" and isinstance(value, dict):
            self.info(f"--- {label}")
            self.yaml(value)
        elif verb == "delete" and isinstance(value, dict):
            suffix = " (dry run)" if value.get("dry_run") else ""
            self.info(f"[{label}] deleted{suffix}")

    def result(self, result: CommandResult) -> None:
        """Render a complete dispatch result."""

        if result.verb == "clusters" and isinstance(result.data, list):
            self.clusters(result.data)
        elif isinstance(result.data, list) and all(
            isinstance(item, ObjectReference) for item in result.data
        ):
            if result.verb == "get":
                self.objects(result.data, result.message)
                return
            self.objects(result.data)
        for target_result in result.results:
            self.target_result(result.verb, target_result)
        if result.results and result.status != "success":
            failed = len(result.failed)
            cancelled = sum(1 for r in result.results if r.status is TargetStatus.CANCELLED)
            self.info(
                f"{result.verb}: {len(result.results)} target(s), {failed} failed, {cancelled} cancelled"
            )
        if result.message:
            self.info(result.message)
