"""Resolve verbs against the navigation state and fan them out over targets.

One dispatch runs at a time. Inside a dispatch, one-shot verbs run under a
worker budget and streaming verbs under a stream budget; every
sub-operation shares the dispatch's :class:`CancellationToken`. Results are
returned in target order so each one stays attributed to its object even
though completion order is arbitrary.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

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
    split_target,
)
from kubenav.navigation.cache import ObjectCache
from kubenav.navigation.objects import ObjectReference
from kubenav.navigation.state import NavigationState
from kubenav.session.registry import SessionRegistry
from kubenav.session.streams import StreamChunk, StreamingOperation
from kubenav.shared.cancellation import CancellationToken, OperationCancelled
from kubenav.shared.config import Settings
from kubenav.shared.errors import NoTarget, StreamBudgetExceeded, UnknownVerb

logger = logging.getLogger("kubenav.dispatch")

_END = object()


async def _next_chunk(iterator) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class CommandDispatcher:
    """Turn ``(verb, args)`` into concrete, possibly concurrent operations."""

    def __init__(
        self,
        state: NavigationState,
        sessions: SessionRegistry,
        cache: ObjectCache,
        commands: CommandRegistry,
        settings: Optional[Settings] = None,
        on_chunk: Optional[Callable[[StreamChunk], None]] = None,
    ) -> None:
        self.state = state
        self.sessions = sessions
        self.cache = cache
        self.commands = commands
        self.settings = settings or sessions.settings
        self._on_chunk = on_chunk or (lambda chunk: None)
        self._current: Optional[CancellationToken] = None

    @property
    def busy(self) -> bool:
        return self._current is not None

    def cancel_current(self) -> bool:
        """Cancel the in-flight dispatch, if any. Safe from signal handlers."""

        token = self._current
        if token is None:
            return False
        token.cancel_threadsafe()
        return True

    def _emit(self, chunk: StreamChunk) -> None:
        self._on_chunk(chunk)

    async def dispatch(
        self, verb: str, args: Sequence[str] = (), input_data: Optional[bytes] = None
    ) -> CommandResult:
        """Run one verb to completion (or cancellation)."""

        command = self.commands.get(verb)
        if command is None:
            raise UnknownVerb(f"unknown command '{verb}'")
        kwargs = command.parse(args)

        token = CancellationToken()
        ctx = CommandContext(
            state=self.state,
            sessions=self.sessions,
            cache=self.cache,
            settings=self.settings,
            token=token,
            emit=self._emit,
            input_data=input_data,
        )
        self._current = token
        try:
            if isinstance(command, (TargetCommand, StreamCommand)):
                return await self._dispatch_range(command, ctx, kwargs)
            assert isinstance(command, LocalCommand)
            try:
                return await token.guard(command.execute(ctx, **kwargs))
            except OperationCancelled:
                return CommandResult(verb=command.name, message="cancelled", cancelled=True)
        finally:
            self._current = None

    # ------------------------------------------------------------------ #
    # Target resolution
    # ------------------------------------------------------------------ #

    async def resolve_targets(
        self, target_spec: Optional[str]
    ) -> Tuple[Optional[str], Tuple[ObjectReference, ...]]:
        """Explicit ``KIND/SELECTOR`` wins over the current selection."""

        if target_spec:
            kind, selector = split_target(target_spec)
            cluster = self.state.require_cluster()
            session = await self.sessions.get(cluster)
            refs = await self.cache.resolve(session, kind, self.state.namespace, selector)
            return cluster, refs
        selection = self.state.selection
        return selection.cluster, selection.items

    async def _dispatch_range(
        self, command: BaseCommand, ctx: CommandContext, kwargs: Dict[str, Any]
    ) -> CommandResult:
        try:
            cluster, targets = await ctx.token.guard(
                self.resolve_targets(kwargs.pop("target", None))
            )
            if not targets or cluster is None:
                raise NoTarget(f"'{command.name}' needs a target: select objects or pass one")

            if isinstance(command, StreamCommand):
                command.validate_range(ctx, targets, kwargs)
                if command.unbounded(kwargs) and len(targets) > self.settings.stream_budget:
                    raise StreamBudgetExceeded(
                        f"{len(targets)} streams requested, budget is {self.settings.stream_budget}"
                    )
            else:
                assert isinstance(command, TargetCommand)
                command.validate_range(ctx, targets, kwargs)
            session = await ctx.token.guard(self.sessions.get(cluster))
        except OperationCancelled:
            return CommandResult(verb=command.name, message="cancelled", cancelled=True)

        if isinstance(command, StreamCommand):
            budget = asyncio.Semaphore(self.settings.stream_budget)
            runners = [
                self._run_stream(command, ctx, session, target, budget, kwargs)
                for target in targets
            ]
        else:
            budget = asyncio.Semaphore(self.settings.worker_budget)
            runners = [
                self._run_one_shot(command, ctx, session, target, budget, kwargs)
                for target in targets
            ]

        results = await self._gather(ctx.token, targets, runners)
        if isinstance(command, TargetCommand):
            command.after(ctx, results)
        return CommandResult(verb=command.name, results=results)

    # ------------------------------------------------------------------ #
    # Fan-out
    # ------------------------------------------------------------------ #

    async def _run_one_shot(
        self,
        command: TargetCommand,
        ctx: CommandContext,
        session,
        target: ObjectReference,
        budget: asyncio.Semaphore,
        kwargs: Dict[str, Any],
    ) -> TargetResult:
        acquired = False
        try:
            await ctx.token.guard(budget.acquire())
            acquired = True
            value = await ctx.token.guard(command.run_one(ctx, session, target, **kwargs))
            return TargetResult(target, TargetStatus.SUCCESS, value=value)
        except OperationCancelled:
            return TargetResult(target, TargetStatus.CANCELLED)
        except Exception as exc:
            logger.debug("%s failed on %s: %s", command.name, target.label, exc)
            return TargetResult(target, TargetStatus.FAILURE, error=exc)
        finally:
            if acquired:
                budget.release()

    async def _run_stream(
        self,
        command: StreamCommand,
        ctx: CommandContext,
        session,
        target: ObjectReference,
        budget: asyncio.Semaphore,
        kwargs: Dict[str, Any],
    ) -> TargetResult:
        acquired = False
        operation: Optional[StreamingOperation] = None
        try:
            await ctx.token.guard(budget.acquire())
            acquired = True
            operation = await ctx.token.guard(command.open(ctx, session, target, **kwargs))
            iterator = operation.__aiter__()
            while True:
                chunk = await ctx.token.guard(_next_chunk(iterator))
                if chunk is _END:
                    break
                ctx.emit(chunk)
            value = command.finish(operation)
            return TargetResult(target, TargetStatus.SUCCESS, value=value)
        except OperationCancelled:
            return TargetResult(target, TargetStatus.CANCELLED)
        except Exception as exc:
            logger.debug("%s failed on %s: %s", command.name, target.label, exc)
            return TargetResult(target, TargetStatus.FAILURE, error=exc)
        finally:
            if operation is not None:
                await operation.close()
            if acquired:
                budget.release()

    async def _gather(
        self,
        token: CancellationToken,
        targets: Sequence[ObjectReference],
        runners: List[Awaitable[TargetResult]],
    ) -> List[TargetResult]:
        """Wait for every runner; after cancellation wait at most the grace period."""

        tasks = [asyncio.ensure_future(runner) for runner in runners]
        cancelled = asyncio.ensure_future(token.wait())
        try:
            remaining = set(tasks)
            while remaining and not token.cancelled:
                done, _ = await asyncio.wait(
                    remaining | {cancelled}, return_when=asyncio.FIRST_COMPLETED
                )
                remaining -= done
            if remaining:
                _, remaining = await asyncio.wait(remaining, timeout=self.settings.cancel_grace)
                for task in remaining:
                    logger.warning("Forcing cancellation of a sub-operation that ignored the signal")
                    task.cancel()
                if remaining:
                    await asyncio.wait(remaining)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            cancelled.cancel()

        results: List[TargetResult] = []
        for target, task in zip(targets, tasks):
            if task.cancelled():
                results.append(TargetResult(target, TargetStatus.CANCELLED))
            else:
                results.append(task.result())
        return results
