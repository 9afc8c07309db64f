"""Tests for ClusterSession against an in-process API server."""

import asyncio
import datetime
import ipaddress
import logging
import os
import socket
import ssl
from types import SimpleNamespace

import pytest
import pytest_asyncio
from aiohttp import test_utils, web
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kubenav.navigation.objects import ObjectReference
from kubenav.session.cluster import ClusterSession, build_ssl_context
from kubenav.session.credentials import BearerToken, CredentialStore, TrustPolicy
from kubenav.session.endpoint import ClusterEndpoint, ExecTokenSource
from kubenav.shared.config import Settings
from kubenav.shared.errors import (
    AuthenticationFailed,
    ConnectError,
    Forbidden,
    NotFound,
    RequestError,
)


SETTINGS = Settings(retry_budget=2, retry_backoff=0.01, request_timeout=0.2)


class FakeApiServer:
    """Tiny API server that records requests and can stall or reject them."""

    def __init__(self):
        self.hits = {}
        self.auth_headers = []
        self.stall_first = 0
        self.secret_auth = []

    async def _stall(self, key):
        self.hits[key] = self.hits.get(key, 0) + 1
        if self.hits[key] <= self.stall_first:
            await asyncio.sleep(1)

    async def version(self, request):
        self.auth_headers.append(request.headers.get("Authorization"))
        await self._stall("version")
        return web.json_response({"gitVersion": "v1.30.0"})

    async def delete_pod(self, request):
        await self._stall("delete")
        return web.json_response({"kind": "Status", "status": "Success"})

    async def missing(self, request):
        return web.json_response(
            {"kind": "Status", "reason": "NotFound", "message": 'pods "ghost" not found'},
            status=404,
        )

    async def secret(self, request):
        self.secret_auth.append(request.headers.get("Authorization"))
        if request.headers.get("Authorization") != "Bearer good":
            return web.json_response({"kind": "Status", "message": "Unauthorized"}, status=401)
        return web.json_response({"kind": "Secret"})

    async def forbidden(self, request):
        return web.json_response({"kind": "Status", "message": "nope"}, status=403)

    async def logs(self, request):
        response = web.StreamResponse()
        await response.prepare(request)
        for line in (b"first\n", b"second\n"):
            await response.write(line)
        await response.write_eof()
        return response

    def app(self):
        app = web.Application()
        app.router.add_get("/version", self.version)
        app.router.add_delete("/api/v1/namespaces/default/pods/web", self.delete_pod)
        app.router.add_get("/api/v1/namespaces/default/pods/ghost", self.missing)
        app.router.add_get("/api/v1/namespaces/default/secrets/s", self.secret)
        app.router.add_get("/api/v1/nodes", self.forbidden)
        app.router.add_get("/api/v1/namespaces/default/pods/web/log", self.logs)
        return app


@pytest_asyncio.fixture
async def api():
    fake = FakeApiServer()
    server = test_utils.TestServer(fake.app())
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


async def _session(api, credential=None):
    endpoint = ClusterEndpoint(
        name="local", server=api.url, credential=credential or BearerToken("good")
    )
    return await ClusterSession.connect(endpoint, SETTINGS)


@pytest.mark.asyncio
async def test_reads_are_retried_after_timeouts(api):
    api.stall_first = 1
    session = await _session(api)
    try:
        body = await session.get_json("/version")
    finally:
        await session.close()

    assert body["gitVersion"] == "v1.30.0"
    assert api.hits["version"] == 2


@pytest.mark.asyncio
async def test_deletes_are_never_retried(api):
    api.stall_first = 1
    session = await _session(api)
    try:
        with pytest.raises(RequestError) as excinfo:
            await session.delete("/api/v1/namespaces/default/pods/web")
    finally:
        await session.close()

    assert excinfo.value.transient
    assert api.hits["delete"] == 1


@pytest.mark.asyncio
async def test_bearer_token_is_sent_and_rotated(api):
    session = await _session(api)
    try:
        await session.get_json("/version")
        session.rotate_token("bad")
        with pytest.raises(AuthenticationFailed):
            await session.get_json("/api/v1/namespaces/default/secrets/s")
        session.rotate_token("good")
        assert (await session.get_json("/api/v1/namespaces/default/secrets/s"))["kind"] == "Secret"
    finally:
        await session.close()

    assert api.auth_headers == ["Bearer good"]


@pytest.mark.asyncio
async def test_status_bodies_map_to_errors(api):
    session = await _session(api)
    try:
        with pytest.raises(NotFound) as excinfo:
            await session.get_json("/api/v1/namespaces/default/pods/ghost")
        with pytest.raises(Forbidden):
            await session.get_json("/api/v1/nodes")
    finally:
        await session.close()

    assert excinfo.value.status == 404
    assert excinfo.value.reason == "NotFound"
    assert 'pods "ghost" not found' in str(excinfo.value)


@pytest.mark.asyncio
async def test_log_stream_yields_lines(api):
    session = await _session(api)
    target = ObjectReference("local", "Pod", "default", "web")
    try:
        stream = await session.open_stream(target, f"{target.path}/log", {"follow": "true"})
        lines = [chunk.data async for chunk in stream]
        assert stream.closed
        with pytest.raises(RuntimeError):
            stream.__aiter__()
    finally:
        await session.close()

    assert lines == ["first", "second"]


@pytest.mark.asyncio
async def test_verified_connect_and_close_twice(api):
    endpoint = ClusterEndpoint(name="local", server=api.url)
    session = await ClusterSession.connect(endpoint, SETTINGS, verify=True)
    await session.close()
    await session.close()

    assert session.closed
    with pytest.raises(RequestError):
        await session.get_json("/version")


@pytest.mark.asyncio
async def test_connect_rejects_unusable_endpoints():
    with pytest.raises(ConnectError):
        await ClusterSession.connect(
            ClusterEndpoint(name="broken", server="https://x:6443", load_error="MalformedPem: bad")
        )
    with pytest.raises(ConnectError):
        await ClusterSession.connect(ClusterEndpoint(name="bad-url", server="ftp://nowhere"))


def test_skip_verify_is_logged(caplog):
    endpoint = ClusterEndpoint(
        name="lab", server="https://lab:6443", trust=TrustPolicy(insecure_skip_verify=True)
    )

    with caplog.at_level(logging.WARNING, logger="kubenav.session"):
        context = build_ssl_context(endpoint)

    assert context.verify_mode == ssl.CERT_NONE
    assert not context.check_hostname
    assert any("lab" in record.getMessage() for record in caplog.records)
    assert build_ssl_context(ClusterEndpoint(name="plain", server="http://plain:8080")) is None


@pytest.mark.asyncio
async def test_exec_plugin_token_is_refreshed_once_on_401(api, tmp_path):
    counter = tmp_path / "calls"
    script = (
        'n=$(cat "$COUNTER" 2>/dev/null || echo 0); n=$((n + 1)); echo "$n" > "$COUNTER"; '
        'if [ "$n" -ge 2 ]; then t=good; else t=stale; fi; '
        'printf \'{"status": {"token": "%s"}}\' "$t"'
    )
    endpoint = ClusterEndpoint(
        name="local",
        server=api.url,
        token_source=ExecTokenSource(
            command="sh", args=("-c", script), env=(("COUNTER", str(counter)),)
        ),
    )
    session = await ClusterSession.connect(endpoint, SETTINGS)
    try:
        body = await session.get_json("/api/v1/namespaces/default/secrets/s")
    finally:
        await session.close()

    assert body["kind"] == "Secret"
    assert api.secret_auth == ["Bearer stale", "Bearer good"]
    assert counter.read_text().strip() == "2"


# --------------------------------------------------------------------------- #
# Mutual TLS
# --------------------------------------------------------------------------- #


def _issue(common_name, issuer=None, ca=False, ip=None, usage=None):
    key = ec.generate_private_key(ec.SECP256R1())
    issuer_cert, issuer_key = issuer if issuer else (None, key)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_cert.subject if issuer_cert else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    )
    if ca:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    if ip:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.IPAddress(ipaddress.ip_address(ip))]),
            critical=False,
        )
    if usage:
        builder = builder.add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
    return builder.sign(issuer_key, hashes.SHA256()), key


def _cert_pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def _key_pem(key):
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@pytest_asyncio.fixture
async def mtls(tmp_path):
    """An HTTPS server that requires a client certificate from ``client_ca``."""

    server_ca = _issue("server-ca", ca=True)
    client_ca = _issue("client-ca", ca=True)
    rogue_ca = _issue("rogue-ca", ca=True)
    server_cert, server_key = _issue(
        "127.0.0.1", issuer=server_ca, ip="127.0.0.1", usage=ExtendedKeyUsageOID.SERVER_AUTH
    )
    cert_file = tmp_path / "server.pem"
    key_file = tmp_path / "server-key.pem"
    cert_file.write_bytes(_cert_pem(server_cert))
    key_file.write_bytes(_key_pem(server_key))

    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(str(cert_file), str(key_file))
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_verify_locations(cadata=_cert_pem(client_ca[0]).decode())

    hits = []

    async def whoami(request):
        hits.append(request.path)
        peer = request.transport.get_extra_info("peercert") or {}
        subject = dict(pair[0] for pair in peer.get("subject", ()))
        return web.json_response({"cn": subject.get("commonName")})

    app = web.Application()
    app.router.add_get("/whoami", whoami)
    runner = web.AppRunner(app)
    await runner.setup()
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    site = web.SockSite(runner, sock, ssl_context=context)
    await site.start()
    try:
        yield SimpleNamespace(
            url=f"https://127.0.0.1:{sock.getsockname()[1]}",
            server_ca=server_ca,
            client_ca=client_ca,
            rogue_ca=rogue_ca,
            hits=hits,
        )
    finally:
        await runner.cleanup()


def _mtls_endpoint(mtls, issuer, trust_anchor=None):
    cert, key = _issue("good" if issuer is mtls.client_ca else "bad", issuer=issuer,
                       usage=ExtendedKeyUsageOID.CLIENT_AUTH)
    return ClusterEndpoint(
        name="secure",
        server=mtls.url,
        trust=TrustPolicy(ca_pem=_cert_pem((trust_anchor or mtls.server_ca)[0])),
        credential=CredentialStore().load_pem(_cert_pem(cert) + _key_pem(key)),
    )


@pytest.mark.asyncio
async def test_client_certificate_is_presented_over_pinned_ca(mtls):
    session = await ClusterSession.connect(_mtls_endpoint(mtls, mtls.client_ca), SETTINGS)
    try:
        body = await session.get_json("/whoami")
    finally:
        await session.close()

    assert body == {"cn": "good"}


@pytest.mark.asyncio
async def test_rejected_client_certificate_is_not_retried(mtls):
    settings = Settings(retry_budget=3, retry_backoff=5.0, request_timeout=5.0)
    session = await ClusterSession.connect(_mtls_endpoint(mtls, mtls.rogue_ca), settings)
    try:
        with pytest.raises(AuthenticationFailed):
            await asyncio.wait_for(session.get_json("/whoami"), timeout=4)
    finally:
        await session.close()

    assert mtls.hits == []


@pytest.mark.asyncio
async def test_server_outside_pinned_ca_is_refused(mtls):
    endpoint = _mtls_endpoint(mtls, mtls.client_ca, trust_anchor=mtls.rogue_ca)
    session = await ClusterSession.connect(endpoint, SETTINGS)
    try:
        with pytest.raises(ConnectError) as excinfo:
            await session.get_json("/whoami")
    finally:
        await session.close()

    assert not isinstance(excinfo.value, AuthenticationFailed)
    assert "certificate verification failed" in str(excinfo.value)
    assert mtls.hits == []


def test_client_certificate_needs_memory_files(monkeypatch, mtls_identity):
    monkeypatch.delattr(os, "memfd_create", raising=False)

    with pytest.raises(ConnectError, match="memfd_create"):
        build_ssl_context(
            ClusterEndpoint(name="secure", server="https://secure:6443", credential=mtls_identity)
        )


@pytest.fixture
def mtls_identity():
    cert, key = _issue("someone")
    return CredentialStore().load_pem(_cert_pem(cert) + _key_pem(key))
