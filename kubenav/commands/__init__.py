"""REPL verbs and the dispatcher that runs them."""

from kubenav.commands.base import (
    BaseCommand,
    CommandContext,
    CommandRegistry,
    CommandResult,
    LocalCommand,
    StreamCommand,
    TargetCommand,
    TargetResult,
    TargetStatus,
)
from kubenav.commands.delete import DeleteCommand
from kubenav.commands.describe import DescribeCommand
from kubenav.commands.dispatcher import CommandDispatcher
from kubenav.commands.exec import ExecCommand
from kubenav.commands.listing import GetCommand
from kubenav.commands.logs import LogsCommand
from kubenav.commands.navigation import (
    ClearCommand,
    ClustersCommand,
    ContextCommand,
    DisconnectCommand,
    NamespaceCommand,
    ReconnectCommand,
    SelectCommand,
)
from kubenav.commands.portforward import PortForwardCommand

_COMMANDS = (
    ClustersCommand,
    ContextCommand,
    NamespaceCommand,
    SelectCommand,
    ClearCommand,
    ReconnectCommand,
    DisconnectCommand,
    GetCommand,
    DescribeCommand,
    DeleteCommand,
    LogsCommand,
    ExecCommand,
    PortForwardCommand,
)


def build_command_registry() -> CommandRegistry:
    """Create a registry holding every verb."""

    registry = CommandRegistry()
    for command_cls in _COMMANDS:
        registry.register(command_cls())
    return registry


__all__ = [
    "BaseCommand",
    "CommandContext",
    "CommandDispatcher",
    "CommandRegistry",
    "CommandResult",
    "LocalCommand",
    "StreamCommand",
    "TargetCommand",
    "TargetResult",
    "TargetStatus",
    "build_command_registry",
]
