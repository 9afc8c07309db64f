"""Cluster endpoint definitions fed to the session layer at startup."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from kubenav.session.credentials import (
    Anonymous,
    BearerToken,
    Credential,
    CredentialStore,
    TrustPolicy,
)
from kubenav.shared.errors import LoadError
from kubenav.shared.utils import run_subprocess_with_cancellation


@dataclass(frozen=True)
class ExecTokenSource:
    """A kubeconfig ``exec`` credential plugin that yields bearer tokens."""

    command: str
    args: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    api_version: str = "client.authentication.k8s.io/v1beta1"

    async def fetch(self) -> BearerToken:
        """Run the plugin and return the token from its ExecCredential."""

        exec_info = {
            "apiVersion": self.api_version,
            "kind": "ExecCredential",
            "spec": {"interactive": False},
        }
        env = dict(self.env)
        env["KUBERNETES_EXEC_INFO"] = json.dumps(exec_info)
        try:
            result = await run_subprocess_with_cancellation(
                [self.command, *self.args], env=env
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise LoadError(f"credential plugin '{self.command}' not runnable: {exc}") from exc

        if result["returncode"] != 0:
            raise LoadError(
                f"credential plugin '{self.command}' failed: {result['stderr'].strip()}"
            )
        try:
            status = json.loads(result["stdout"]).get("status") or {}
        except json.JSONDecodeError as exc:
            raise LoadError(
                f"credential plugin '{self.command}' returned invalid JSON"
            ) from exc
        token = status.get("token")
        if not token:
            raise LoadError(f"credential plugin '{self.command}' returned no token")
        return CredentialStore().load_token(token)


@dataclass(frozen=True)
class ClusterEndpoint:
    """Everything needed to open a session against one API server.

    Endpoints are immutable; two endpoints never share mutable state.
    ``load_error`` records credential material that failed to load, which
    makes the endpoint visible but unusable.
    """

    name: str
    server: str
    trust: TrustPolicy = field(default_factory=TrustPolicy)
    credential: Credential = field(default_factory=Anonymous)
    token_source: Optional[ExecTokenSource] = None
    default_namespace: Optional[str] = None
    load_error: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.load_error is None

    def describe(self) -> Dict[str, str]:
        """Summary suitable for listings; never includes secret material."""

        if isinstance(self.credential, BearerToken):
            auth = "token"
        elif isinstance(self.credential, Anonymous):
            auth = "exec" if self.token_source else "anonymous"
        else:
            auth = f"certificate ({self.credential.subject})"
        if self.trust.insecure_skip_verify:
            tls = "INSECURE (verification disabled)"
        elif self.trust.ca_pem:
            tls = "pinned CA"
        else:
            tls = "system trust"
        return {
            "name": self.name,
            "server": self.server,
            "auth": auth,
            "tls": tls,
            "namespace": self.default_namespace or "",
            "error": self.load_error or "",
        }
