"""Authenticated connection context for one cluster.

A :class:`ClusterSession` owns an ``aiohttp.ClientSession`` whose TLS
context is derived from the endpoint's trust policy and client certificate.
Bearer tokens travel as a per-request header so they can be rotated without
rebuilding the transport.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import ssl
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import aiohttp

from kubenav import __version__
from kubenav.navigation.objects import ObjectReference
from kubenav.session.credentials import BearerToken, ClientCertificate
from kubenav.session.endpoint import ClusterEndpoint
from kubenav.session.streams import EXEC_PROTOCOLS, ExecStream, LogStream, PortForwardStream
from kubenav.shared import debug
from kubenav.shared.config import Settings
from kubenav.shared.errors import (
    AuthenticationFailed,
    ConnectError,
    Forbidden,
    LoadError,
    NotFound,
    RequestError,
)

logger = logging.getLogger("kubenav.session")

READ_METHODS = frozenset({"GET", "HEAD"})

Params = Union[Mapping[str, str], Sequence[Tuple[str, str]], None]


@dataclass
class Response:
    """A fully read API response."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> Any:
        if not self.body:
            return {}
        return json.loads(self.body)


# --------------------------------------------------------------------------- #
# TLS
# --------------------------------------------------------------------------- #


def _write_all(fd: int, data: bytes) -> None:
    with os.fdopen(fd, "wb", closefd=False) as f:
        f.write(data)


def _load_client_certificate(context: ssl.SSLContext, credential: ClientCertificate) -> None:
    """Install the client certificate without persisting decrypted key material.

    ``ssl`` only accepts file paths, so the PEM is handed over through an
    anonymous memory file.
    """

    cert_fd = os.memfd_create("kubenav-cert")
    key_fd = os.memfd_create("kubenav-key")
    try:
        _write_all(cert_fd, credential.chain_pem())
        _write_all(key_fd, credential.key_pem())
        context.load_cert_chain(f"/proc/self/fd/{cert_fd}", f"/proc/self/fd/{key_fd}")
    finally:
        os.close(cert_fd)
        os.close(key_fd)


def build_ssl_context(endpoint: ClusterEndpoint) -> Optional[ssl.SSLContext]:
    """Return the TLS context for *endpoint*, or ``None`` for plain HTTP."""

    if urlparse(endpoint.server).scheme != "https":
        return None

    trust = endpoint.trust
    if trust.insecure_skip_verify:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        logger.warning(
            "TLS verification DISABLED for cluster '%s' (insecure-skip-tls-verify "
            "is set in its configuration)",
            endpoint.name,
        )
    elif trust.ca_pem:
        context = ssl.create_default_context(cadata=trust.ca_pem.decode("ascii"))
    else:
        context = ssl.create_default_context()

    if isinstance(endpoint.credential, ClientCertificate):
        if not hasattr(os, "memfd_create"):
            raise ConnectError(
                endpoint.name,
                "client certificates need anonymous memory files (memfd_create), "
                "which this platform does not provide",
            )
        _load_client_certificate(context, endpoint.credential)
    return context


def _is_tls_failure(exc: BaseException) -> bool:
    """Whether *exc* or anything in its cause chain is a TLS error."""

    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (aiohttp.ClientSSLError, ssl.SSLError)):
            return True
        if isinstance(getattr(current, "os_error", None), ssl.SSLError):
            return True
        current = current.__cause__ or current.__context__
    return False


def _connection_dropped(exc: BaseException) -> bool:
    """Whether the peer closed or reset the connection under us.

    Under TLS 1.3 a server verifies the client certificate after the client
    considers the handshake done, so a rejection shows up as a dropped
    connection on the first read rather than as a handshake error.
    """

    if isinstance(exc, aiohttp.ClientConnectorError):
        return isinstance(exc.os_error, (ConnectionResetError, BrokenPipeError))
    return isinstance(
        exc, (aiohttp.ServerDisconnectedError, aiohttp.ClientOSError, ConnectionResetError)
    )


def _status_message(body: bytes, fallback: str) -> Tuple[str, str]:
    """Extract ``(message, reason)`` from a Kubernetes ``Status`` body."""

    try:
        status = json.loads(body)
    except (ValueError, TypeError):
        text = body.decode("utf-8", errors="replace").strip()
        return text or fallback, fallback
    if isinstance(status, dict):
        return status.get("message") or fallback, status.get("reason") or fallback
    return fallback, fallback


# --------------------------------------------------------------------------- #
# Session
# --------------------------------------------------------------------------- #


class ClusterSession:
    """One authenticated transport bound to one cluster endpoint."""

    def __init__(
        self,
        endpoint: ClusterEndpoint,
        http: aiohttp.ClientSession,
        ssl_context: Optional[ssl.SSLContext],
        settings: Settings,
        token: Optional[str] = None,
    ) -> None:
        self.endpoint = endpoint
        self.settings = settings
        self._http = http
        self._ssl: Union[ssl.SSLContext, bool] = ssl_context if ssl_context is not None else True
        self._token = token
        self._closed = False

    @property
    def name(self) -> str:
        return self.endpoint.name

    @property
    def closed(self) -> bool:
        return self._closed

    @classmethod
    async def connect(
        cls, endpoint: ClusterEndpoint, settings: Optional[Settings] = None, verify: bool = False
    ) -> "ClusterSession":
        """Build a session for *endpoint*.

        With ``verify`` the server is contacted once (``/version``) so that
        TLS and authentication problems surface immediately.
        """

        settings = settings or Settings()
        if endpoint.load_error:
            raise ConnectError(endpoint.name, f"credential unusable: {endpoint.load_error}")
        parsed = urlparse(endpoint.server)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConnectError(endpoint.name, f"invalid server URL '{endpoint.server}'")

        try:
            ssl_context = build_ssl_context(endpoint)
        except (ssl.SSLError, ValueError) as exc:
            raise ConnectError(endpoint.name, f"cannot build TLS context: {exc}") from exc

        token: Optional[str] = None
        if isinstance(endpoint.credential, BearerToken):
            token = endpoint.credential.token
        elif endpoint.token_source is not None:
            try:
                token = (await endpoint.token_source.fetch()).token
            except LoadError as exc:
                raise ConnectError(endpoint.name, str(exc)) from exc

        connector = aiohttp.TCPConnector(
            limit=settings.worker_budget + settings.stream_budget,
            ssl=ssl_context if ssl_context is not None else True,
        )
        http = aiohttp.ClientSession(
            connector=connector,
            headers={
                "Accept": "application/json",
                "User-Agent": f"kubenav/{__version__}",
            },
        )
        session = cls(endpoint, http, ssl_context, settings, token)
        logger.debug("Session created for cluster '%s' (%s)", endpoint.name, endpoint.server)

        if verify:
            try:
                await session.get_json("/version")
            except RequestError as exc:
                await session.close()
                if isinstance(exc, AuthenticationFailed):
                    raise
                raise ConnectError(endpoint.name, str(exc)) from exc
        return session

    # ------------------------------------------------------------------ #
    # Authentication
    # ------------------------------------------------------------------ #

    def rotate_token(self, token: str) -> None:
        """Use *token* for subsequent requests without touching the transport."""

        if not token.strip():
            raise ValueError("token must not be empty")
        self._token = token.strip()

    async def _refresh_token(self) -> bool:
        source = self.endpoint.token_source
        if source is None:
            return False
        try:
            self.rotate_token((await source.fetch()).token)
        except LoadError as exc:
            logger.warning("Token refresh for '%s' failed: %s", self.name, exc)
            return False
        logger.debug("Token refreshed for cluster '%s'", self.name)
        return True

    def _headers(self) -> Dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def _url(self, path: str) -> str:
        return f"{self.endpoint.server}{path}"

    def _check_status(self, status: int, body: bytes) -> None:
        if 200 <= status < 300:
            return
        message, reason = _status_message(body, f"HTTP {status}")
        if status == 401:
            if isinstance(self.endpoint.credential, ClientCertificate):
                message = f"client certificate rejected: {message}"
            raise AuthenticationFailed(self.name, message)
        if status == 403:
            raise Forbidden(message, status=status, reason=reason)
        if status == 404:
            raise NotFound(message, status=status, reason=reason)
        raise RequestError(message, status=status, reason=reason)

    def _transport_error(self, exc: BaseException) -> Exception:
        """Map an aiohttp failure onto the kubenav error taxonomy."""

        if isinstance(exc, aiohttp.ClientConnectorCertificateError):
            return ConnectError(self.name, f"server certificate verification failed: {exc}")
        presents_certificate = isinstance(self.endpoint.credential, ClientCertificate)
        if _is_tls_failure(exc):
            if presents_certificate:
                return AuthenticationFailed(
                    self.name, f"TLS handshake rejected the client certificate: {exc}"
                )
            return ConnectError(self.name, f"TLS failure: {exc}")
        if presents_certificate and self._ssl is not True and _connection_dropped(exc):
            return AuthenticationFailed(
                self.name, f"server dropped the connection after the TLS handshake: {exc}"
            )
        if isinstance(exc, asyncio.TimeoutError):
            return RequestError(f"{self.name}: request timed out", transient=True)
        return RequestError(f"{self.name}: {exc}", transient=True)

    async def _send(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        params: Params,
    ) -> Response:
        debug.log_request(
            self.name, {"method": method, "path": path, "params": params, "body": body}
        )
        try:
            async with self._http.request(
                method,
                self._url(path),
                json=body,
                params=params,
                headers=self._headers(),
                ssl=self._ssl,
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout),
            ) as resp:
                payload = await resp.read()
                response = Response(resp.status, dict(resp.headers), payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise self._transport_error(exc) from exc

        debug.log_response(self.name, {"status": response.status, "bytes": len(payload)})
        self._check_status(response.status, payload)
        return response

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Params = None,
    ) -> Response:
        """Send one request.

        Read verbs are retried on transient transport errors with exponential
        backoff; mutating verbs are sent exactly once.
        """

        if self._closed:
            raise RequestError(f"{self.name}: session is closed")
        method = method.upper()
        retries = self.settings.retry_budget if method in READ_METHODS else 0
        attempt = 0
        refreshed = False
        while True:
            try:
                return await self._send(method, path, body, params)
            except AuthenticationFailed:
                if refreshed or not await self._refresh_token():
                    raise
                refreshed = True
            except RequestError as exc:
                if not exc.transient or attempt >= retries:
                    raise
                delay = self.settings.retry_backoff * (2**attempt)
                attempt += 1
                logger.debug(
                    "Retrying %s %s on '%s' in %.2fs (%d/%d): %s",
                    method, path, self.name, delay, attempt, retries, exc,
                )
                await asyncio.sleep(delay)

    async def get_json(self, path: str, params: Params = None) -> Dict[str, Any]:
        return (await self.request("GET", path, params=params)).json()

    async def delete(self, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return (await self.request("DELETE", path, body=body)).json()

    # ------------------------------------------------------------------ #
    # Streams
    # ------------------------------------------------------------------ #

    async def _open_response(self, path: str, params: Params) -> aiohttp.ClientResponse:
        try:
            resp = await self._http.get(
                self._url(path),
                params=params,
                headers=self._headers(),
                ssl=self._ssl,
                timeout=aiohttp.ClientTimeout(
                    total=None, sock_connect=self.settings.request_timeout
                ),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise self._transport_error(exc) from exc
        if resp.status >= 300:
            payload = await resp.read()
            resp.release()
            self._check_status(resp.status, payload)
        return resp

    async def open_stream(
        self, target: ObjectReference, path: str, params: Params = None
    ) -> LogStream:
        """Open a long-lived line stream (logs)."""

        if self._closed:
            raise RequestError(f"{self.name}: session is closed")
        attempt = 0
        while True:
            try:
                response = await self._open_response(path, params)
                return LogStream(target, response)
            except RequestError as exc:
                if not exc.transient or attempt >= self.settings.retry_budget:
                    raise
                await asyncio.sleep(self.settings.retry_backoff * (2**attempt))
                attempt += 1

    async def open_channel(
        self, path: str, params: Params = None, protocols: Iterable[str] = ()
    ) -> aiohttp.ClientWebSocketResponse:
        """Open a websocket channel (exec, port-forward). Never retried."""

        if self._closed:
            raise RequestError(f"{self.name}: session is closed")
        debug.log_request(self.name, {"method": "WS", "path": path, "params": params})
        try:
            return await self._http.ws_connect(
                self._url(path),
                params=params,
                protocols=tuple(protocols),
                headers=self._headers(),
                ssl=self._ssl,
                autoping=True,
            )
        except aiohttp.WSServerHandshakeError as exc:
            self._check_status(exc.status, exc.message.encode())
            raise RequestError(f"{self.name}: websocket handshake failed: {exc.message}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise self._transport_error(exc) from exc

    async def open_exec(
        self, target: ObjectReference, params: List[Tuple[str, str]], input_data: Optional[bytes]
    ) -> ExecStream:
        ws = await self.open_channel(f"{target.path}/exec", params, EXEC_PROTOCOLS)
        return ExecStream(target, ws, input_data)

    def port_forward(
        self, target: ObjectReference, mappings: List[Tuple[int, int]], address: str = "127.0.0.1"
    ) -> PortForwardStream:
        return PortForwardStream(
            target, self.open_channel, f"{target.path}/portforward", mappings, address
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._http.close()
        logger.debug("Session for cluster '%s' closed", self.name)
