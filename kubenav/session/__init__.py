"""Credential loading and authenticated cluster sessions."""

from .credentials import (
    Anonymous,
    BearerToken,
    ClientCertificate,
    Credential,
    CredentialStore,
    TrustPolicy,
)
from .endpoint import ClusterEndpoint, ExecTokenSource
from .registry import SessionRegistry

__all__ = [
    "Anonymous",
    "BearerToken",
    "ClientCertificate",
    "Credential",
    "CredentialStore",
    "TrustPolicy",
    "ClusterEndpoint",
    "ExecTokenSource",
    "SessionRegistry",
]
