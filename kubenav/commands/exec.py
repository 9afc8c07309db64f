"""Run a command inside the targeted pods over the remote command protocol."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import click

from kubenav.commands.base import CommandContext, StreamCommand
from kubenav.navigation.objects import ObjectReference
from kubenav.session.streams import StreamChunk, StreamingOperation, exec_params
from kubenav.shared.errors import AmbiguousInput, OperationFailed, UsageError
from kubenav.shared.utils import run_subprocess_with_cancellation


def terminal_argv(
    terminal: str,
    kubeconfig: str,
    target: ObjectReference,
    command: Sequence[str],
    container: Optional[str] = None,
) -> List[str]:
    """Command line that opens *terminal* running ``kubectl exec`` on *target*."""

    argv = shlex.split(terminal)
    if not argv:
        raise UsageError("exec: the terminal command is empty")
    argv += [
        "kubectl",
        "--kubeconfig",
        kubeconfig,
        "--context",
        target.cluster,
        "--namespace",
        target.namespace or "default",
        "exec",
        "-it",
        target.name,
    ]
    if container:
        argv += ["-c", container]
    return argv + ["--", *command]


class TerminalSession(StreamingOperation):
    """An interactive exec running in its own terminal window.

    The terminal belongs to the dispatch: cancelling the dispatch terminates
    it, and its exit status is the target's result.
    """

    def __init__(self, target: ObjectReference, argv: List[str]) -> None:
        super().__init__(target)
        self.argv = argv
        self.exit_code: Optional[int] = None
        self.error: Optional[str] = None

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        try:
            yield self._chunk("status", f"Starting on {self.target.name} in terminal")
            try:
                result = await run_subprocess_with_cancellation(self.argv, capture_output=False)
            except (FileNotFoundError, PermissionError) as exc:
                raise OperationFailed(f"cannot start terminal '{self.argv[0]}': {exc}") from exc
            self.exit_code = result["returncode"]
        finally:
            await self.close()


class ExecCommand(StreamCommand):
    """Execute a command in every target; stdin is only allowed for one target."""

    target_option = True

    def __init__(self):
        super().__init__(
            "exec",
            "Run COMMAND in the target pod(s) (-t KIND/SELECTOR) or the selection. "
            "Input (--input/--input-file or piped data) requires a single target. "
            "With --terminal [CMD] every target gets its own terminal window "
            "(default from 'config set terminal').",
        )

    def params(self) -> List[click.Parameter]:
        return [
            click.Option(["-t", "--target"], help="KIND/SELECTOR instead of the selection."),
            click.Option(["-c", "--container"], help="Container to exec in."),
            click.Option(["--input", "input_text"], help="Text sent to the command's stdin."),
            click.Option(
                ["--input-file"],
                type=click.Path(dir_okay=False),
                help="File whose contents are sent to stdin.",
            ),
            click.Option(
                ["-T", "--tty"],
                is_flag=True,
                help="Allocate a TTY; stderr is merged into stdout.",
            ),
            click.Option(
                ["--terminal"],
                is_flag=False,
                flag_value="",
                default=None,
                help="Open a terminal per target, optionally with this terminal command.",
            ),
            click.Argument(["command"], nargs=-1, required=True),
        ]

    def _input(self, ctx: CommandContext, kwargs: Dict[str, Any]) -> Optional[bytes]:
        sources = [
            s for s in (ctx.input_data, kwargs.get("input_text"), kwargs.get("input_file"))
            if s is not None
        ]
        if len(sources) > 1:
            raise UsageError("exec: give at most one of --input, --input-file or piped input")
        if ctx.input_data is not None:
            return ctx.input_data
        if kwargs.get("input_text") is not None:
            return kwargs["input_text"].encode()
        if kwargs.get("input_file") is not None:
            try:
                return Path(kwargs["input_file"]).read_bytes()
            except OSError as exc:
                raise UsageError(f"exec: cannot read input file: {exc}") from exc
        return None

    def unbounded(self, kwargs: Dict[str, Any]) -> bool:
        return kwargs.get("terminal") is not None

    def validate_range(
        self, ctx: CommandContext, targets: Sequence[ObjectReference], kwargs: Dict[str, Any]
    ) -> None:
        has_input = any(
            s is not None
            for s in (ctx.input_data, kwargs.get("input_text"), kwargs.get("input_file"))
        )
        if kwargs.get("terminal") is not None:
            if has_input:
                raise UsageError("exec: --terminal cannot be combined with input")
            terminal = kwargs["terminal"] or ctx.settings.terminal
            # Fail before anything starts when the terminal command is unusable.
            terminal_argv(terminal, "", targets[0], ())
            kwargs["terminal"] = terminal
            kwargs["kubeconfig"] = ctx.settings.resolve_kubeconfig()
            return
        if has_input and len(targets) > 1:
            raise AmbiguousInput(
                f"input cannot be fanned out to {len(targets)} targets; select a single pod"
            )
        kwargs["input_bytes"] = self._input(ctx, kwargs)

    async def open(
        self,
        ctx: CommandContext,
        session,
        target: ObjectReference,
        command: Sequence[str] = (),
        container: Optional[str] = None,
        input_bytes: Optional[bytes] = None,
        tty: bool = False,
        terminal: Optional[str] = None,
        kubeconfig: str = "",
        **kwargs: Any,
    ) -> StreamingOperation:
        if target.kind != "Pod":
            raise OperationFailed(f"exec is only possible on pods, not {target.kind}")
        if terminal is not None:
            return TerminalSession(
                target, terminal_argv(terminal, kubeconfig, target, command, container)
            )
        params = exec_params(list(command), container, stdin=input_bytes is not None, tty=tty)
        return await session.open_exec(target, params, input_bytes)

    def finish(self, operation: StreamingOperation) -> Any:
        error = getattr(operation, "error", None)
        exit_code = getattr(operation, "exit_code", None)
        if error:
            raise OperationFailed(error)
        if exit_code is None:
            raise OperationFailed("exec stream ended without a status")
        if exit_code:
            raise OperationFailed(f"command exited with code {exit_code}")
        return {"exit_code": exit_code}
