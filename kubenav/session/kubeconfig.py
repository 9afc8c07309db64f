"""Build cluster endpoints from a kubeconfig file.

Each context becomes one :class:`ClusterEndpoint` named after the context.
Credential problems are recorded on the endpoint instead of aborting the
whole bootstrap, so one broken user entry never hides the other clusters.
"""

from __future__ import annotations

import base64
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from kubenav.session.credentials import (
    Anonymous,
    Credential,
    CredentialStore,
    TrustPolicy,
)
from kubenav.session.endpoint import ClusterEndpoint, ExecTokenSource
from kubenav.shared.errors import LoadError


def _named(entries: Optional[List[Dict[str, Any]]], inner: str) -> Dict[str, Dict[str, Any]]:
    result: Dict[str, Dict[str, Any]] = {}
    for entry in entries or []:
        name = entry.get("name")
        if name:
            result[name] = entry.get(inner) or {}
    return result


class KubeconfigLoader:
    """Parse one kubeconfig file into endpoints."""

    def __init__(
        self,
        path: str,
        passphrases: Optional[Dict[str, str]] = None,
        store: Optional[CredentialStore] = None,
    ) -> None:
        self.path = Path(os.path.expanduser(path))
        self.passphrases = passphrases or {}
        self.store = store or CredentialStore()

    def _read_material(self, section: Dict[str, Any], key: str) -> Optional[bytes]:
        """Return ``<key>-data`` (base64) or the contents of the ``<key>`` file."""

        data = section.get(f"{key}-data")
        if data:
            try:
                # Line breaks from folded YAML are allowed, anything else is not.
                return base64.b64decode("".join(str(data).split()), validate=True)
            except ValueError as exc:
                raise LoadError(f"{key}-data is not valid base64") from exc
        file_name = section.get(key)
        if file_name:
            file_path = Path(os.path.expanduser(file_name))
            if not file_path.is_absolute():
                file_path = self.path.parent / file_path
            try:
                return file_path.read_bytes()
            except OSError as exc:
                raise LoadError(f"cannot read {key} '{file_path}': {exc}") from exc
        return None

    def _trust(self, cluster: Dict[str, Any]) -> TrustPolicy:
        ca = self._read_material(cluster, "certificate-authority")
        return self.store.load_trust(
            ca, insecure_skip_verify=cluster.get("insecure-skip-tls-verify") is True
        )

    def _credential(self, user_name: str, user: Dict[str, Any]) -> Credential:
        cert = self._read_material(user, "client-certificate")
        if cert is not None:
            if b"-----BEGIN" not in cert:
                # A non-PEM client certificate is a PKCS#12 container.
                return self.store.load_pkcs12(cert, self.passphrases.get(user_name, ""))
            key = self._read_material(user, "client-key")
            material = cert if key is None else cert + b"\n" + key
            return self.store.load_pem(material, self.passphrases.get(user_name))

        token = user.get("token")
        if token is None and user.get("tokenFile"):
            try:
                token = Path(os.path.expanduser(user["tokenFile"])).read_text()
            except OSError as exc:
                raise LoadError(f"cannot read tokenFile: {exc}") from exc
        if token is not None:
            return self.store.load_token(token)
        return Anonymous()

    def _token_source(self, user: Dict[str, Any]) -> Optional[ExecTokenSource]:
        spec = user.get("exec")
        if not spec:
            return None
        if not spec.get("command"):
            raise LoadError("exec credential plugin has no command")
        env = tuple(
            (item["name"], str(item.get("value", "")))
            for item in spec.get("env") or []
            if item.get("name")
        )
        return ExecTokenSource(
            command=spec["command"],
            args=tuple(str(a) for a in spec.get("args") or []),
            env=env,
            api_version=spec.get(
                "apiVersion", "client.authentication.k8s.io/v1beta1"
            ),
        )

    def load(self) -> List[ClusterEndpoint]:
        with open(self.path, "r") as f:
            kubeconfig = yaml.safe_load(f) or {}
        if not isinstance(kubeconfig, dict):
            raise ValueError(f"{self.path} is not a kubeconfig mapping")

        clusters = _named(kubeconfig.get("clusters"), "cluster")
        users = _named(kubeconfig.get("users"), "user")

        endpoints: List[ClusterEndpoint] = []
        for context_name, context in _named(kubeconfig.get("contexts"), "context").items():
            cluster = clusters.get(context.get("cluster", ""))
            if cluster is None or not cluster.get("server"):
                endpoints.append(
                    ClusterEndpoint(
                        name=context_name,
                        server="",
                        load_error=f"cluster '{context.get('cluster')}' not defined",
                    )
                )
                continue

            user_name = context.get("user", "")
            user = users.get(user_name, {})
            try:
                endpoint = ClusterEndpoint(
                    name=context_name,
                    server=cluster["server"].rstrip("/"),
                    trust=self._trust(cluster),
                    credential=self._credential(user_name, user),
                    token_source=self._token_source(user),
                    default_namespace=context.get("namespace"),
                )
            except LoadError as exc:
                endpoint = ClusterEndpoint(
                    name=context_name,
                    server=cluster["server"].rstrip("/"),
                    default_namespace=context.get("namespace"),
                    load_error=f"{type(exc).__name__}: {exc}",
                )
            endpoints.append(endpoint)
        return endpoints

    def current_context(self) -> Optional[str]:
        with open(self.path, "r") as f:
            kubeconfig = yaml.safe_load(f) or {}
        return kubeconfig.get("current-context") or None


def load_endpoints(
    path: str, passphrases: Optional[Dict[str, str]] = None
) -> List[ClusterEndpoint]:
    """Convenience wrapper returning the endpoints defined in *path*."""

    return KubeconfigLoader(path, passphrases).load()
