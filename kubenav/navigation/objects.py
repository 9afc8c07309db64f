"""Resource kinds known to kubenav and immutable references to objects."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from kubenav.shared.errors import UnknownKind


@dataclass(frozen=True)
class ResourceKind:
    """How to address one resource type on the API server."""

    kind: str
    plural: str
    group_path: str = "/api/v1"
    namespaced: bool = True
    aliases: Tuple[str, ...] = ()

    def collection_path(self, namespace: Optional[str]) -> str:
        if self.namespaced and namespace:
            return f"{self.group_path}/namespaces/{quote(namespace)}/{self.plural}"
        return f"{self.group_path}/{self.plural}"

    def object_path(self, namespace: Optional[str], name: str) -> str:
        return f"{self.collection_path(namespace)}/{quote(name)}"


KINDS: Tuple[ResourceKind, ...] = (
    ResourceKind("Pod", "pods", aliases=("pod", "po")),
    ResourceKind("Node", "nodes", namespaced=False, aliases=("node", "no")),
    ResourceKind("Namespace", "namespaces", namespaced=False, aliases=("namespace", "ns")),
    ResourceKind("Service", "services", aliases=("service", "svc")),
    ResourceKind("ConfigMap", "configmaps", aliases=("configmap", "cm")),
    ResourceKind("Secret", "secrets", aliases=("secret",)),
    ResourceKind("Event", "events", aliases=("event", "ev")),
    ResourceKind(
        "PersistentVolumeClaim", "persistentvolumeclaims", aliases=("persistentvolumeclaim", "pvc")
    ),
    ResourceKind(
        "PersistentVolume", "persistentvolumes", namespaced=False, aliases=("persistentvolume", "pv")
    ),
    ResourceKind("Deployment", "deployments", "/apis/apps/v1", aliases=("deployment", "deploy")),
    ResourceKind("ReplicaSet", "replicasets", "/apis/apps/v1", aliases=("replicaset", "rs")),
    ResourceKind("StatefulSet", "statefulsets", "/apis/apps/v1", aliases=("statefulset", "sts")),
    ResourceKind("DaemonSet", "daemonsets", "/apis/apps/v1", aliases=("daemonset", "ds")),
    ResourceKind("Job", "jobs", "/apis/batch/v1", aliases=("job",)),
    ResourceKind("CronJob", "cronjobs", "/apis/batch/v1", aliases=("cronjob", "cj")),
    ResourceKind(
        "Ingress", "ingresses", "/apis/networking.k8s.io/v1", aliases=("ingress", "ing")
    ),
)

_BY_NAME: Dict[str, ResourceKind] = {}
for _kind in KINDS:
    for _alias in (_kind.plural, _kind.kind.lower(), *_kind.aliases):
        _BY_NAME[_alias] = _kind


def lookup_kind(name: str) -> ResourceKind:
    """Return the kind for a plural, singular or short name."""

    try:
        return _BY_NAME[name.lower()]
    except KeyError:
        raise UnknownKind(f"unknown resource kind '{name}'") from None


@dataclass(frozen=True)
class ObjectReference:
    """One object as seen in a listing; never mutated after construction."""

    cluster: str
    kind: str
    namespace: Optional[str]
    name: str
    resource_version: str = ""
    fetched_at: float = field(default_factory=time.monotonic, compare=False)
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def resource(self) -> ResourceKind:
        return lookup_kind(self.kind)

    @property
    def path(self) -> str:
        return self.resource.object_path(self.namespace, self.name)

    @property
    def label(self) -> str:
        if self.namespace:
            return f"{self.cluster}/{self.namespace}/{self.name}"
        return f"{self.cluster}/{self.name}"

    @classmethod
    def from_item(
        cls, cluster: str, kind: ResourceKind, item: Dict[str, Any], fetched_at: float
    ) -> "ObjectReference":
        metadata = item.get("metadata") or {}
        return cls(
            cluster=cluster,
            kind=kind.kind,
            namespace=metadata.get("namespace") if kind.namespaced else None,
            name=metadata.get("name", ""),
            resource_version=str(metadata.get("resourceVersion", "")),
            fetched_at=fetched_at,
            raw=item,
        )
