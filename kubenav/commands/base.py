"""Base classes shared by every REPL verb."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

import click

from kubenav.navigation.objects import ObjectReference
from kubenav.shared.errors import UsageError

if TYPE_CHECKING:
    from kubenav.navigation.cache import ObjectCache
    from kubenav.navigation.state import NavigationState
    from kubenav.session.cluster import ClusterSession
    from kubenav.session.registry import SessionRegistry
    from kubenav.session.streams import StreamChunk, StreamingOperation
    from kubenav.shared.cancellation import CancellationToken
    from kubenav.shared.config import Settings


class TargetStatus(str, Enum):
    """Outcome of one sub-operation of a dispatch."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass
class TargetResult:
    """Result of a verb against one object."""

    target: ObjectReference
    status: TargetStatus
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is TargetStatus.SUCCESS


@dataclass
class CommandResult:
    """Structured result handed back to the REPL for rendering."""

    verb: str
    results: List[TargetResult] = field(default_factory=list)
    data: Any = None
    message: str = ""
    cancelled: bool = False

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if not self.results:
            return "success"
        statuses = {r.status for r in self.results}
        if TargetStatus.CANCELLED in statuses:
            return "cancelled"
        if statuses == {TargetStatus.SUCCESS}:
            return "success"
        if statuses == {TargetStatus.FAILURE}:
            return "failure"
        return "partial"

    @property
    def failed(self) -> List[TargetResult]:
        return [r for r in self.results if r.status is TargetStatus.FAILURE]


@dataclass
class CommandContext:
    """What a verb may touch while it runs."""

    state: "NavigationState"
    sessions: "SessionRegistry"
    cache: "ObjectCache"
    settings: "Settings"
    token: "CancellationToken"
    emit: Callable[["StreamChunk"], None]
    input_data: Optional[bytes] = None


def split_target(spec: str) -> Tuple[str, str]:
    """Split ``KIND/SELECTOR`` into its parts."""

    kind, sep, selector = spec.partition("/")
    if not sep or not kind or not selector:
        raise UsageError(f"target must look like KIND/SELECTOR, got '{spec}'")
    return kind, selector


class BaseCommand(ABC):
    """Base class for all verbs."""

    def __init__(self, name: str, description: str, aliases: Sequence[str] = ()):
        self.name = name
        self.description = description
        self.aliases = tuple(aliases)

    def params(self) -> List[click.Parameter]:
        """Return the click parameters accepted by this verb."""
        return []

    def _click_command(self) -> click.Command:
        return click.Command(
            self.name,
            params=self.params(),
            help=self.description,
            add_help_option=False,
        )

    def parse(self, args: Sequence[str]) -> Dict[str, Any]:
        """Parse REPL arguments into keyword arguments for this verb."""

        command = self._click_command()
        try:
            ctx = command.make_context(self.name, list(args))
        except click.ClickException as exc:
            raise UsageError(f"{self.name}: {exc.format_message()}") from exc
        return dict(ctx.params)

    def help_text(self) -> str:
        command = self._click_command()
        with click.Context(command, info_name=self.name) as ctx:
            return command.get_help(ctx)


class LocalCommand(BaseCommand):
    """A verb that does not fan out over targets (navigation, listing)."""

    @abstractmethod
    async def execute(self, ctx: CommandContext, **kwargs: Any) -> CommandResult:
        """Run the verb."""


class TargetCommand(BaseCommand):
    """A one-shot verb executed once per target with bounded parallelism."""

    target_option = False

    @abstractmethod
    async def run_one(
        self, ctx: CommandContext, session: "ClusterSession", target: ObjectReference, **kwargs: Any
    ) -> Any:
        """Execute against a single target and return its value."""

    def validate_range(
        self, ctx: CommandContext, targets: Sequence[ObjectReference], kwargs: Dict[str, Any]
    ) -> None:
        """Reject a resolved range before anything starts."""

    def after(self, ctx: CommandContext, results: List[TargetResult]) -> None:
        """Hook run once all targets have finished."""


class StreamCommand(BaseCommand):
    """A verb that opens one streaming operation per target."""

    target_option = False

    @abstractmethod
    async def open(
        self, ctx: CommandContext, session: "ClusterSession", target: ObjectReference, **kwargs: Any
    ) -> "StreamingOperation":
        """Open the stream for *target*."""

    def validate_range(
        self, ctx: CommandContext, targets: Sequence[ObjectReference], kwargs: Dict[str, Any]
    ) -> None:
        """Reject a resolved range before any stream opens."""

    def unbounded(self, kwargs: Dict[str, Any]) -> bool:
        """Whether streams run until cancelled (and so each holds a slot forever)."""
        return False

    def finish(self, operation: "StreamingOperation") -> Any:
        """Value reported for a stream that ended on its own."""
        return None


class CommandRegistry:
    """Registry to manage all available verbs."""

    def __init__(self):
        self._commands: Dict[str, BaseCommand] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, command: BaseCommand) -> None:
        """Register a new verb and its aliases."""
        self._commands[command.name] = command
        for alias in command.aliases:
            self._aliases[alias] = command.name

    def get(self, verb: str) -> Optional[BaseCommand]:
        """Get a verb by name or alias."""
        return self._commands.get(self._aliases.get(verb, verb))

    def list_all(self) -> List[BaseCommand]:
        """List all registered verbs."""
        return list(self._commands.values())

    def reset(self) -> None:
        self._commands.clear()
        self._aliases.clear()
