"""Interactive navigation shell for kubenav."""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal
from typing import Iterable, List, Optional, Tuple

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory, InMemoryHistory
from prompt_toolkit.styles import Style
from rich.console import Console
from rich.panel import Panel

from kubenav.commands import CommandDispatcher, CommandResult, build_command_registry
from kubenav.navigation.cache import ObjectCache
from kubenav.navigation.state import NavigationState
from kubenav.render import Renderer
from kubenav.session.endpoint import ClusterEndpoint
from kubenav.session.kubeconfig import KubeconfigLoader
from kubenav.session.registry import SessionFactory, SessionRegistry
from kubenav.session.streams import StreamChunk
from kubenav.shared.config import ConfigManager, Settings, get_config_manager
from kubenav.shared.errors import KubenavError
from kubenav.shared.utils import pipe_to_shell, split_pipeline

logger = logging.getLogger("kubenav.repl")

_EXIT_WORDS = ("exit", "quit", "q")


def bootstrap(settings: Settings) -> Tuple[List[ClusterEndpoint], Optional[str]]:
    """Read the kubeconfig and return its endpoints plus the current context."""

    loader = KubeconfigLoader(settings.resolve_kubeconfig(), settings.pkcs12_passphrases)
    endpoints = loader.load()
    for endpoint in endpoints:
        if endpoint.load_error:
            logger.warning("Cluster '%s' unusable: %s", endpoint.name, endpoint.load_error)
    return endpoints, loader.current_context()


class Workspace:
    """All state for one kubenav process: sessions, cache, cursor and dispatcher."""

    def __init__(
        self,
        endpoints: Iterable[ClusterEndpoint],
        settings: Optional[Settings] = None,
        renderer: Optional[Renderer] = None,
        current_context: Optional[str] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.settings = settings or Settings()
        self.renderer = renderer or Renderer()
        self.sessions = SessionRegistry(endpoints, self.settings, session_factory)
        self.cache = ObjectCache()
        self.state = NavigationState(self.sessions, self.cache)
        self.dispatcher = CommandDispatcher(
            self.state,
            self.sessions,
            self.cache,
            build_command_registry(),
            self.settings,
            on_chunk=self._on_chunk,
        )
        self._sink: Optional[Renderer] = None
        if current_context and self.sessions.has(current_context):
            self.state.use_cluster(current_context)

    def _on_chunk(self, chunk: StreamChunk) -> None:
        (self._sink or self.renderer).chunk(chunk)

    def show_help(self, verb: Optional[str] = None) -> None:
        if verb:
            command = self.dispatcher.commands.get(verb)
            if command is None:
                self.renderer.error(f"unknown command '{verb}'")
                return
            self.renderer.console.print(command.help_text(), markup=False, highlight=False)
            return
        console = self.renderer.console
        console.print("[bold]Commands:[/bold]")
        for command in self.dispatcher.commands.list_all():
            aliases = f" ({', '.join(command.aliases)})" if command.aliases else ""
            console.print(f"  [green]{command.name}[/green]{aliases} - {command.description}")
        console.print(
            "\n  [cyan]help VERB[/cyan] - options of one command"
            "\n  [cyan]COMMAND | SHELL[/cyan] - pipe plain output into a shell command"
            "\n  [cyan]exit[/cyan] - leave (also Ctrl+D)"
        )

    async def run_line(self, line: str, input_data: Optional[bytes] = None) -> Optional[CommandResult]:
        """Dispatch one input line and render its result.

        Returns ``None`` for blank lines and built-ins; errors are rendered and
        re-raised so callers can derive an exit status.
        """

        command_text, shell = split_pipeline(line)
        try:
            words = shlex.split(command_text)
        except ValueError as exc:
            self.renderer.error(f"cannot parse line: {exc}")
            raise KubenavError(str(exc)) from exc
        if not words:
            return None
        verb, args = words[0], words[1:]
        if verb == "help":
            self.show_help(args[0] if args else None)
            return None

        sink = Renderer.capture() if shell else self.renderer
        self._sink = sink
        try:
            result = await self.dispatcher.dispatch(verb, args, input_data=input_data)
        except KubenavError as exc:
            self.renderer.error(str(exc))
            raise
        finally:
            self._sink = None
        sink.result(result)
        if shell:
            status = await pipe_to_shell(sink.text(), shell)
            if status:
                logger.debug("Shell pipeline '%s' exited with %d", shell, status)
        return result

    async def close(self) -> None:
        await self.sessions.close_all()


class KubenavRepl:
    """Prompt loop around a :class:`Workspace`."""

    def __init__(
        self,
        workspace: Workspace,
        config_manager: Optional[ConfigManager] = None,
        persist_history: bool = True,
    ):
        self.workspace = workspace
        self.console: Console = workspace.renderer.console
        self.config_manager = config_manager or get_config_manager()
        if persist_history:
            self.config_manager.ensure_dir()
            history = FileHistory(str(self.config_manager.history_path))
        else:
            history = InMemoryHistory()
        self.session = PromptSession(history=history)
        self.prompt_style = Style.from_dict({"prompt": "#00aa00 bold", "state": "#888888"})

    def _format_prompt(self) -> List[tuple]:
        return [
            ("class:state", f"[{self.workspace.state.prompt_label()}]"),
            ("class:prompt", " > "),
        ]

    async def run(self) -> None:
        """Run the interactive loop until EOF or ``exit``."""

        dispatcher = self.workspace.dispatcher

        # Ctrl+C cancels the running dispatch; at the prompt prompt_toolkit sees the key itself.
        def signal_handler(sig, frame):
            if dispatcher.cancel_current():
                self.console.print("\n[yellow]⏹  Cancelling... (Ctrl+C)[/yellow]")

        original_sigint_handler = signal.signal(signal.SIGINT, signal_handler)

        endpoints = self.workspace.sessions.endpoints()
        self.console.print(
            Panel(
                f"[bold]kubenav[/bold] - {len(endpoints)} cluster(s) configured\n\n"
                f"Type [yellow]'help'[/yellow] for available commands, "
                f"[yellow]'exit'[/yellow] or [yellow]Ctrl+D[/yellow] to quit",
                border_style="blue",
                padding=(1, 2),
            )
        )

        try:
            while True:
                try:
                    line = await asyncio.to_thread(
                        self.session.prompt, self._format_prompt(), style=self.prompt_style
                    )
                except KeyboardInterrupt:
                    continue
                except EOFError:
                    break

                if line.strip().lower() in _EXIT_WORDS:
                    break
                try:
                    await self.workspace.run_line(line)
                except KubenavError:
                    # Already rendered; keep the session alive.
                    continue
                except Exception as e:
                    logger.debug("Unexpected error while running '%s'", line, exc_info=True)
                    self.console.print(f"[red]Error: {e}[/red]")
        finally:
            signal.signal(signal.SIGINT, original_sigint_handler)
            await self.workspace.close()

        self.console.print("\n[dim]Goodbye![/dim]")
