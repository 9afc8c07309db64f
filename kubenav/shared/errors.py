"""Error taxonomy shared across kubenav.

Every failure the core reports derives from :class:`KubenavError`. The
REPL decides how to present them; the core never exits the process.
"""

from __future__ import annotations

from typing import Optional


class KubenavError(RuntimeError):
    """Base class for all kubenav errors."""


# --------------------------------------------------------------------------- #
# Credential material
# --------------------------------------------------------------------------- #


class LoadError(KubenavError):
    """Credential material could not be turned into a credential."""


class MalformedPem(LoadError):
    """PEM input is unparseable or has the wrong number of blocks."""


class MalformedPkcs12(LoadError):
    """Input is not a usable PKCS#12 container."""


class InvalidPassphrase(LoadError):
    """The passphrase did not decrypt the key material."""


class UnsupportedAlgorithm(LoadError):
    """The container uses a cipher or digest we cannot handle."""


class KeyMismatch(LoadError):
    """No certificate in the input matches the private key."""


class EmptyToken(LoadError):
    """A bearer token was configured but is empty."""


# --------------------------------------------------------------------------- #
# Sessions and requests
# --------------------------------------------------------------------------- #


class ConnectError(KubenavError):
    """A cluster session could not be established."""

    def __init__(self, cluster: str, message: str):
        super().__init__(f"{cluster}: {message}")
        self.cluster = cluster


class RequestError(KubenavError):
    """An API request failed."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        reason: str = "",
        transient: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.reason = reason
        self.transient = transient


class AuthenticationFailed(ConnectError, RequestError):
    """The server rejected the presented credential."""

    def __init__(self, cluster: str, message: str):
        ConnectError.__init__(self, cluster, message)
        self.status = 401
        self.reason = "Unauthorized"
        self.transient = False


class Forbidden(RequestError):
    """The credential is valid but not allowed to perform the request."""


class NotFound(RequestError):
    """The requested object does not exist."""


class FetchError(KubenavError):
    """A listing could not be refreshed from the API server."""


# --------------------------------------------------------------------------- #
# Resolution
# --------------------------------------------------------------------------- #


class ResolveError(KubenavError):
    """A selector or name could not be mapped to objects."""


class StaleSelection(ResolveError):
    """Index selector used after the listing it refers to was superseded."""


class NoMatch(ResolveError):
    """A name or pattern matched nothing."""


class UnknownKind(ResolveError):
    """The resource kind is not known."""


class UnknownCluster(ResolveError):
    """The cluster name is not configured."""


class NoCluster(ResolveError):
    """The operation needs an active cluster."""


# --------------------------------------------------------------------------- #
# Dispatch
# --------------------------------------------------------------------------- #


class DispatchError(KubenavError):
    """User input error detected before any operation started."""


class UnknownVerb(DispatchError):
    """No command is registered under the given verb."""


class UsageError(DispatchError):
    """Arguments did not parse for the given verb."""


class NoTarget(DispatchError):
    """The verb needs a target and none was given or selected."""


class AmbiguousInput(DispatchError):
    """Input was supplied for a range of more than one target."""


class SingleTargetRequired(DispatchError):
    """The verb only operates on exactly one target."""


class StreamBudgetExceeded(DispatchError):
    """More follow streams were requested than the stream budget allows."""


class OperationFailed(KubenavError):
    """A per-target operation finished but reported failure."""
