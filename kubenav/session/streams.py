"""Streaming operations: log tails, exec channels and port forwards.

A streaming operation is a single-use async iterator of :class:`StreamChunk`
values bound to one object. It holds a non-owning handle on its session's
transport; the session never keeps references back to open streams.
Cancellation arrives as ``asyncio.CancelledError`` at the pending read, and
every operation releases its connection in ``finally``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiohttp

from kubenav.navigation.objects import ObjectReference
from kubenav.shared.errors import OperationFailed

logger = logging.getLogger("kubenav.streams")

# Channel numbers of the Kubernetes remote command protocol.
STDIN, STDOUT, STDERR, ERROR, RESIZE = 0, 1, 2, 3, 4
CLOSE_SIGNAL = 255

EXEC_PROTOCOLS = ("v5.channel.k8s.io", "v4.channel.k8s.io")
PORTFORWARD_PROTOCOLS = ("portforward.k8s.io",)

ChannelOpener = Callable[..., Awaitable[aiohttp.ClientWebSocketResponse]]


@dataclass(frozen=True)
class StreamChunk:
    """One piece of output attributed to the object that produced it."""

    target: ObjectReference
    channel: str
    data: str


class StreamingOperation:
    """Base class for single-use chunk streams."""

    def __init__(self, target: ObjectReference) -> None:
        self.target = target
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        if self._started:
            raise RuntimeError("a streaming operation cannot be restarted")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError
        yield  # pragma: no cover

    async def close(self) -> None:
        self._closed = True

    def _chunk(self, channel: str, data: str) -> StreamChunk:
        return StreamChunk(target=self.target, channel=channel, data=data)


class LogStream(StreamingOperation):
    """Line-oriented stream over an open HTTP response."""

    def __init__(self, target: ObjectReference, response: aiohttp.ClientResponse) -> None:
        super().__init__(target)
        self._response = response

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        try:
            async for raw in self._response.content:
                yield self._chunk("log", raw.decode("utf-8", errors="replace").rstrip("\n"))
        finally:
            await self.close()

    async def close(self) -> None:
        if not self._closed:
            self._response.close()
        await super().close()


def _parse_exec_status(payload: bytes) -> Tuple[int, Optional[str]]:
    """Return ``(exit_code, error)`` from a channel-3 Status document."""

    try:
        status = json.loads(payload.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return 1, payload.decode("utf-8", errors="replace")
    if status.get("status") == "Success":
        return 0, None
    if status.get("reason") == "NonZeroExitCode":
        for cause in (status.get("details") or {}).get("causes") or []:
            if cause.get("reason") == "ExitCode":
                try:
                    return int(cause.get("message", "1")), None
                except ValueError:
                    break
        return 1, None
    return 1, status.get("message") or "exec failed"


class ExecStream(StreamingOperation):
    """Multiplexed stdin/stdout/stderr over a remote command websocket."""

    def __init__(
        self,
        target: ObjectReference,
        ws: aiohttp.ClientWebSocketResponse,
        input_data: Optional[bytes] = None,
    ) -> None:
        super().__init__(target)
        self._ws = ws
        self._input = input_data
        self.exit_code: Optional[int] = None
        self.error: Optional[str] = None

    async def _send_input(self) -> None:
        if self._input is None:
            return
        if self._ws.protocol != "v5.channel.k8s.io":
            # Older protocols cannot signal end of input, so the command would never finish.
            raise OperationFailed(
                f"server negotiated {self._ws.protocol or 'no protocol'}, which cannot close stdin; "
                "input needs v5.channel.k8s.io"
            )
        if self._input:
            await self._ws.send_bytes(bytes([STDIN]) + self._input)
        await self._ws.send_bytes(bytes([CLOSE_SIGNAL, STDIN]))

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        try:
            await self._send_input()
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.BINARY:
                    data: bytes = msg.data
                elif msg.type == aiohttp.WSMsgType.TEXT:
                    data = msg.data.encode()
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self.error = str(self._ws.exception())
                    break
                else:
                    break
                if not data:
                    continue
                channel, body = data[0], data[1:]
                if channel == STDOUT and body:
                    yield self._chunk("stdout", body.decode("utf-8", errors="replace"))
                elif channel == STDERR and body:
                    yield self._chunk("stderr", body.decode("utf-8", errors="replace"))
                elif channel == ERROR:
                    self.exit_code, self.error = _parse_exec_status(body)
                    if self.error:
                        yield self._chunk("status", self.error)
        finally:
            await self.close()

    async def close(self) -> None:
        if not self._closed:
            await self._ws.close()
        await super().close()


class PortForwardStream(StreamingOperation):
    """Forward local TCP ports to a pod until cancelled.

    Each accepted local connection opens its own websocket. Connection events
    and errors are reported as ``status`` chunks.
    """

    def __init__(
        self,
        target: ObjectReference,
        opener: ChannelOpener,
        path: str,
        mappings: List[Tuple[int, int]],
        address: str = "127.0.0.1",
    ) -> None:
        super().__init__(target)
        self._opener = opener
        self._path = path
        self._mappings = mappings
        self._address = address
        self._events: asyncio.Queue[str] = asyncio.Queue()
        self._servers: List[asyncio.AbstractServer] = []
        self._connections: Set[asyncio.Task[Any]] = set()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        try:
            for local, remote in self._mappings:
                server = await asyncio.start_server(
                    self._make_handler(remote), self._address, local
                )
                self._servers.append(server)
                bound = server.sockets[0].getsockname()[1] if server.sockets else local
                yield self._chunk(
                    "status", f"Forwarding from {self._address}:{bound} -> {remote}"
                )
            while True:
                yield self._chunk("status", await self._events.get())
        finally:
            await self.close()

    def _make_handler(self, remote: int):
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            task = asyncio.current_task()
            if task is not None:
                self._connections.add(task)
            try:
                await self._forward(remote, reader, writer)
            finally:
                if task is not None:
                    self._connections.discard(task)
                writer.close()

        return handle

    async def _forward(
        self, remote: int, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        self._events.put_nowait(f"Handling connection from {peer} for port {remote}")
        try:
            ws = await self._opener(
                self._path, params={"ports": str(remote)}, protocols=PORTFORWARD_PROTOCOLS
            )
        except Exception as exc:
            self._events.put_nowait(f"Error opening forward to port {remote}: {exc}")
            return

        async def upstream() -> None:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                await ws.send_bytes(b"\x00" + data)

        async def downstream() -> None:
            seen_header = {0: False, 1: False}
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.BINARY or not msg.data:
                    break
                channel, body = msg.data[0], msg.data[1:]
                if channel in seen_header and not seen_header[channel]:
                    # The first frame on each channel carries the port number.
                    seen_header[channel] = True
                    body = body[2:]
                if not body:
                    continue
                if channel == 0:
                    writer.write(body)
                    await writer.drain()
                elif channel == 1:
                    self._events.put_nowait(
                        f"Error forwarding port {remote}: {body.decode(errors='replace')}"
                    )

        pumps = [asyncio.ensure_future(upstream()), asyncio.ensure_future(downstream())]
        try:
            await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await ws.close()

    async def close(self) -> None:
        if not self._closed:
            for server in self._servers:
                server.close()
            for task in list(self._connections):
                task.cancel()
            for server in self._servers:
                with contextlib.suppress(Exception):
                    await server.wait_closed()
            if self._connections:
                await asyncio.gather(*self._connections, return_exceptions=True)
        await super().close()


def exec_params(
    command: List[str], container: Optional[str], stdin: bool, tty: bool = False
) -> List[Tuple[str, str]]:
    """Query parameters for a pod ``exec`` subresource request."""

    params: List[Tuple[str, str]] = [("command", part) for part in command]
    params += [
        ("stdout", "true"),
        ("stderr", "false" if tty else "true"),
        ("stdin", "true" if stdin else "false"),
        ("tty", "true" if tty else "false"),
    ]
    if container:
        params.append(("container", container))
    return params


def log_params(
    container: Optional[str],
    follow: bool,
    tail: Optional[int],
    since_seconds: Optional[int],
    timestamps: bool,
    previous: bool,
) -> Dict[str, str]:
    """Query parameters for a pod ``log`` subresource request."""

    params: Dict[str, str] = {}
    if container:
        params["container"] = container
    if follow:
        params["follow"] = "true"
    if tail is not None and tail >= 0:
        params["tailLines"] = str(tail)
    if since_seconds:
        params["sinceSeconds"] = str(since_seconds)
    if timestamps:
        params["timestamps"] = "true"
    if previous:
        params["previous"] = "true"
    return params
