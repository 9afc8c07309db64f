"""Normalise raw credential material into in-memory credential records.

Three input shapes are accepted: PEM (certificate chain plus one private
key), PKCS#12 containers and bearer tokens. Each is converted into one of the
frozen :data:`Credential` variants. Loading either fully succeeds or raises a
:class:`~kubenav.shared.errors.LoadError`; nothing is written to disk.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import pyasn1.error
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm as _CryptoUnsupported
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from pyasn1.codec.ber import decoder as ber_decoder
from pyasn1.type import univ

from kubenav.shared.errors import (
    EmptyToken,
    InvalidPassphrase,
    KeyMismatch,
    LoadError,
    MalformedPem,
    MalformedPkcs12,
    UnsupportedAlgorithm,
)

_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\r?\n(.*?)-----END \1-----", re.DOTALL
)
_CERT_LABELS = {b"CERTIFICATE"}
_KEY_LABELS = {
    b"PRIVATE KEY",
    b"RSA PRIVATE KEY",
    b"EC PRIVATE KEY",
    b"ENCRYPTED PRIVATE KEY",
}


# --------------------------------------------------------------------------- #
# Credential variants
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class BearerToken:
    """A token sent as ``Authorization: Bearer`` on every request."""

    token: str = field(repr=False)


@dataclass(frozen=True)
class ClientCertificate:
    """A certificate chain (leaf first, DER) and its PKCS#8 DER private key."""

    chain: Tuple[bytes, ...]
    key_der: bytes = field(repr=False)
    passphrase: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def leaf(self) -> x509.Certificate:
        return x509.load_der_x509_certificate(self.chain[0])

    @property
    def subject(self) -> str:
        return self.leaf.subject.rfc4514_string()

    def chain_pem(self) -> bytes:
        return b"".join(
            x509.load_der_x509_certificate(der).public_bytes(
                serialization.Encoding.PEM
            )
            for der in self.chain
        )

    def key_pem(self) -> bytes:
        key = serialization.load_der_private_key(self.key_der, password=None)
        return key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


@dataclass(frozen=True)
class Anonymous:
    """No credential is presented."""


Credential = Union[BearerToken, ClientCertificate, Anonymous]


@dataclass(frozen=True)
class TrustPolicy:
    """How the server certificate of one cluster is validated.

    ``ca_pem`` pins trust anchors, ``insecure_skip_verify`` disables
    validation entirely, and neither means the system trust store.
    """

    ca_pem: Optional[bytes] = field(default=None, repr=False)
    insecure_skip_verify: bool = False

    def __post_init__(self) -> None:
        if self.ca_pem and self.insecure_skip_verify:
            raise ValueError(
                "A cluster cannot both pin a CA bundle and skip verification"
            )


# --------------------------------------------------------------------------- #
# Helpers
# --------------------------------------------------------------------------- #


def _spki(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _pkcs8_der(private_key) -> bytes:
    return private_key.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def _check_asn1_sequence(raw: bytes) -> None:
    """Reject input that cannot be an ASN.1 SEQUENCE.

    The BER decoder is used because PKCS#12 files written by some tools use
    indefinite lengths; DER input decodes the same way.
    """

    if not raw:
        raise MalformedPkcs12("PKCS#12 data is empty")
    try:
        container, _ = ber_decoder.decode(raw)
    except pyasn1.error.PyAsn1Error as exc:
        raise MalformedPkcs12(f"PKCS#12 data is not valid ASN.1: {exc}") from exc
    if container.tagSet != univ.Sequence.tagSet:
        raise MalformedPkcs12("PKCS#12 data must start with an ASN.1 SEQUENCE")


def _pem_blocks(raw: bytes) -> List[Tuple[bytes, bytes]]:
    return [(m.group(1), m.group(0)) for m in _PEM_BLOCK.finditer(raw)]


def _key_is_encrypted(label: bytes, block: bytes) -> bool:
    return label == b"ENCRYPTED PRIVATE KEY" or b"Proc-Type: 4,ENCRYPTED" in block


def _load_pem_key(label: bytes, block: bytes, passphrase: Optional[str]):
    encrypted = _key_is_encrypted(label, block)
    password = passphrase.encode() if (encrypted and passphrase is not None) else None
    try:
        return serialization.load_pem_private_key(block, password=password)
    except TypeError as exc:
        # Raised when the key is encrypted but no password was supplied.
        raise InvalidPassphrase("private key is encrypted; passphrase required") from exc
    except _CryptoUnsupported as exc:
        raise UnsupportedAlgorithm(f"unsupported private key: {exc}") from exc
    except ValueError as exc:
        if encrypted:
            raise InvalidPassphrase("could not decrypt private key") from exc
        raise MalformedPem(f"unparseable private key: {exc}") from exc


def _order_chain(certs: List[x509.Certificate], private_key) -> Tuple[bytes, ...]:
    """Put the certificate matching *private_key* first, keep the rest in order."""

    key_spki = _spki(private_key.public_key())
    leaf_index = None
    for idx, cert in enumerate(certs):
        if _spki(cert.public_key()) == key_spki:
            leaf_index = idx
            break
    if leaf_index is None:
        raise KeyMismatch("no certificate matches the private key")

    ordered = [certs[leaf_index]] + [
        c for i, c in enumerate(certs) if i != leaf_index
    ]
    return tuple(c.public_bytes(serialization.Encoding.DER) for c in ordered)


# --------------------------------------------------------------------------- #
# Store
# --------------------------------------------------------------------------- #


class CredentialStore:
    """Convert raw credential inputs into :data:`Credential` values."""

    FORMATS = ("pem", "pkcs12", "token")

    def load(
        self,
        raw: Union[bytes, str],
        fmt: Optional[str] = None,
        passphrase: Optional[str] = None,
    ) -> Credential:
        """Load *raw* material of format *fmt* (auto-detected when ``None``)."""

        if isinstance(raw, str):
            raw = raw.encode()
        if fmt is None:
            fmt = "pem" if b"-----BEGIN" in raw else "pkcs12"
        if fmt == "pem":
            return self.load_pem(raw, passphrase)
        if fmt == "pkcs12":
            return self.load_pkcs12(raw, passphrase or "")
        if fmt == "token":
            return self.load_token(raw.decode("utf-8", errors="strict"))
        raise LoadError(f"unknown credential format '{fmt}'")

    def load_pem(self, raw: bytes, passphrase: Optional[str] = None) -> ClientCertificate:
        blocks = _pem_blocks(raw)
        cert_blocks = [b for label, b in blocks if label in _CERT_LABELS]
        key_blocks = [(label, b) for label, b in blocks if label in _KEY_LABELS]

        if not cert_blocks:
            raise MalformedPem("no certificate found in PEM input")
        if len(key_blocks) != 1:
            raise MalformedPem(
                f"expected exactly one private key in PEM input, found {len(key_blocks)}"
            )

        try:
            certs = [x509.load_pem_x509_certificate(b) for b in cert_blocks]
        except ValueError as exc:
            raise MalformedPem(f"unparseable certificate: {exc}") from exc

        label, block = key_blocks[0]
        private_key = _load_pem_key(label, block, passphrase)
        chain = _order_chain(certs, private_key)
        return ClientCertificate(
            chain=chain, key_der=_pkcs8_der(private_key), passphrase=passphrase
        )

    def load_pkcs12(self, raw: bytes, passphrase: str = "") -> ClientCertificate:
        _check_asn1_sequence(raw)

        # An empty passphrase may mean either "empty password" or "no password"
        # depending on the tool that produced the container.
        attempts: List[Optional[bytes]] = [passphrase.encode()]
        if passphrase == "":
            attempts.append(None)

        loaded = None
        last_error: Optional[Exception] = None
        for password in attempts:
            try:
                loaded = pkcs12.load_key_and_certificates(raw, password)
                break
            except _CryptoUnsupported as exc:
                raise UnsupportedAlgorithm(
                    f"PKCS#12 container uses an unsupported algorithm: {exc}"
                ) from exc
            except (ValueError, TypeError) as exc:
                last_error = exc
        if loaded is None:
            raise InvalidPassphrase("could not decrypt PKCS#12 container") from last_error

        private_key, certificate, additional = loaded
        if private_key is None:
            raise MalformedPkcs12("PKCS#12 container holds no private key")
        certs = ([certificate] if certificate is not None else []) + list(additional or [])
        if not certs:
            raise MalformedPkcs12("PKCS#12 container holds no certificate")

        chain = _order_chain(certs, private_key)
        return ClientCertificate(
            chain=chain, key_der=_pkcs8_der(private_key), passphrase=passphrase
        )

    def load_token(self, token: str) -> BearerToken:
        token = token.strip()
        if not token:
            raise EmptyToken("bearer token is empty")
        return BearerToken(token=token)

    def load_trust(
        self, ca_pem: Optional[Union[bytes, str]] = None, insecure_skip_verify: bool = False
    ) -> TrustPolicy:
        """Build the TLS trust policy for one cluster."""

        if insecure_skip_verify:
            if ca_pem:
                raise LoadError(
                    "certificate-authority and insecure-skip-tls-verify are mutually exclusive"
                )
            return TrustPolicy(insecure_skip_verify=True)
        if not ca_pem:
            return TrustPolicy()

        if isinstance(ca_pem, str):
            ca_pem = ca_pem.encode()
        cert_blocks = [b for label, b in _pem_blocks(ca_pem) if label in _CERT_LABELS]
        if not cert_blocks:
            raise MalformedPem("CA bundle contains no certificates")
        try:
            for block in cert_blocks:
                x509.load_pem_x509_certificate(block)
        except ValueError as exc:
            raise MalformedPem(f"unparseable CA certificate: {exc}") from exc
        return TrustPolicy(ca_pem=b"\n".join(cert_blocks) + b"\n")


def public_key_der(credential: ClientCertificate) -> bytes:
    """Re-derive the SubjectPublicKeyInfo of the credential's private key."""

    key = serialization.load_der_private_key(credential.key_der, password=None)
    return _spki(key.public_key())


def leaf_public_key_der(credential: ClientCertificate) -> bytes:
    return _spki(credential.leaf.public_key())
