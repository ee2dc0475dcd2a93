"""TLS-layer seam for the trust chain verifier.

TrustManager exposes the verifier through the callback contract TLS stacks
use for trust decisions (``check_server_trusted`` / ``check_client_trusted``
plus the accepted issuers list). The helpers below wire an anchor list into
an ``ssl.SSLContext`` and into ``httpx`` clients.

The stdlib ``ssl`` module performs its own chain validation during the
handshake and offers no per-handshake callback. create_ssl_context()
therefore loads the same trust material into the context, and
verify_peer() runs the full ordered-anchor decision over the peer chain of
an established connection.
"""

from __future__ import annotations

import logging
import ssl
from typing import TYPE_CHECKING, Any

import httpx
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.serialization import Encoding

from tlsanchor.services.verifier import (
    ChainUsage,
    PinnedCertificate,
    SystemRoots,
    Verifier,
    VerificationOutcome,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tlsanchor.services.pins import CertificatePinner
    from tlsanchor.services.verifier import TrustAnchorSpec

logger = logging.getLogger(__name__)

_AUTH_TYPES = (
    (rsa.RSAPublicKey, "RSA"),
    (ec.EllipticCurvePublicKey, "EC"),
    (dsa.DSAPublicKey, "DSA"),
    (ed25519.Ed25519PublicKey, "Ed25519"),
    (ed448.Ed448PublicKey, "Ed448"),
)


class TrustManager:
    """Trust-decision callbacks backed by a Verifier.

    Optionally enforces a CertificatePinner after the verifier accepted a
    server chain, when the caller passes the hostname.

    Example:
        manager = TrustManager(build_verifier([PinnedCertificate(cert)]))
        manager.check_server_trusted([peer_der], "RSA")
    """

    def __init__(self, verifier: Verifier, *, pinner: CertificatePinner | None = None) -> None:
        self._verifier = verifier
        self._pinner = pinner

    @property
    def verifier(self) -> Verifier:
        return self._verifier

    def check_server_trusted(
        self,
        chain: Sequence[x509.Certificate | bytes],
        auth_type: str,
        *,
        hostname: str | None = None,
    ) -> VerificationOutcome:
        """Decide whether a server's chain is trusted.

        Args:
            chain: Peer certificates, leaf first.
            auth_type: Authentication type of the peer key, such as ``RSA``
                or ``ECDHE_RSA``. Logged with the decision.
            hostname: Server hostname for pin checks.

        Raises:
            ValueError: If ``auth_type`` is empty.
            CertificateTrustError: If the chain is empty, malformed,
                rejected by every anchor, or fails hostname pinning.
        """
        outcome = self._check(chain, auth_type, ChainUsage.SERVER)
        if self._pinner is not None and hostname is not None:
            self._pinner.check(hostname, list(outcome.path))
        return outcome

    def check_client_trusted(
        self,
        chain: Sequence[x509.Certificate | bytes],
        auth_type: str,
    ) -> VerificationOutcome:
        """Decide whether a client's chain is trusted."""
        return self._check(chain, auth_type, ChainUsage.CLIENT)

    def accepted_issuers(self) -> list[bytes]:
        """DER encodings of every certificate the verifier trusts as an issuer."""
        return sorted(cert.public_bytes(Encoding.DER) for cert in self._verifier.accepted_issuers())

    def _check(
        self,
        chain: Sequence[x509.Certificate | bytes],
        auth_type: str,
        usage: ChainUsage,
    ) -> VerificationOutcome:
        if not auth_type:
            msg = "auth_type must not be empty"
            raise ValueError(msg)
        outcome = self._verifier.verify(chain, usage)
        logger.debug(
            "%s chain trusted via %s (auth_type=%s)",
            usage.value.capitalize(),
            outcome.anchor_name,
            auth_type,
        )
        return outcome


def create_ssl_context(anchors: Sequence[TrustAnchorSpec]) -> ssl.SSLContext:
    """Build a client SSL context that trusts the given anchors.

    Pinned certificates are loaded from memory. A SystemRoots anchor adds
    its explicit roots, its CA file, or the platform default store. When no
    SystemRoots anchor is present hostname checking is disabled, since
    pinned identities are trusted by key, not by name.

    Raises:
        TypeError: If an element is not a SystemRoots or PinnedCertificate.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_REQUIRED

    pinned_pem: list[str] = []
    has_system_roots = False
    for anchor in anchors:
        if isinstance(anchor, PinnedCertificate):
            pinned_pem.append(anchor.certificate.public_bytes(Encoding.PEM).decode("ascii"))
        elif isinstance(anchor, SystemRoots):
            has_system_roots = True
            if anchor.roots is not None:
                context.load_verify_locations(
                    cadata="".join(
                        root.public_bytes(Encoding.PEM).decode("ascii") for root in anchor.roots
                    )
                )
            elif anchor.ca_file is not None:
                context.load_verify_locations(cafile=anchor.ca_file)
            else:
                context.load_default_certs(ssl.Purpose.SERVER_AUTH)
        else:
            msg = f"Unsupported trust anchor: {anchor!r}"
            raise TypeError(msg)

    if pinned_pem:
        context.load_verify_locations(cadata="".join(pinned_pem))
    if not has_system_roots:
        context.check_hostname = False

    logger.debug(
        "Created SSL context: pinned=%d, system_roots=%s, check_hostname=%s",
        len(pinned_pem),
        has_system_roots,
        context.check_hostname,
    )
    return context


def peer_chain(ssl_object: ssl.SSLObject | ssl.SSLSocket) -> list[bytes]:
    """DER encodings of the peer's certificates, leaf first.

    Uses the full unverified chain where the interpreter exposes it and
    falls back to the leaf alone.
    """
    get_chain = getattr(ssl_object, "get_unverified_chain", None)
    if get_chain is not None:
        chain = get_chain()
        if chain:
            return [bytes(cert) for cert in chain]
    leaf = ssl_object.getpeercert(binary_form=True)
    return [leaf] if leaf else []


def peer_auth_type(leaf_der: bytes | None) -> str:
    """Authentication type for a peer leaf, named after its key algorithm.

    Returns ``RSA``, ``EC``, ``DSA``, ``Ed25519`` or ``Ed448``, and
    ``UNKNOWN`` when there is no leaf or its key type is not recognized.
    """
    if not leaf_der:
        return "UNKNOWN"
    try:
        public_key = x509.load_der_x509_certificate(leaf_der).public_key()
    except (ValueError, UnsupportedAlgorithm):
        # The verifier reports undecodable chains with the element index
        return "UNKNOWN"
    for key_type, name in _AUTH_TYPES:
        if isinstance(public_key, key_type):
            return name
    return "UNKNOWN"


def verify_peer(
    ssl_object: ssl.SSLObject | ssl.SSLSocket,
    trust_manager: TrustManager,
    *,
    server: bool = True,
    hostname: str | None = None,
) -> VerificationOutcome:
    """Run the trust manager over the peer chain of an established connection.

    Args:
        ssl_object: Connected TLS socket or object.
        trust_manager: Trust manager to consult.
        server: True when the peer is the server.
        hostname: Server hostname for pin checks.

    Raises:
        CertificateTrustError: If the peer chain is not trusted.
    """
    chain = peer_chain(ssl_object)
    auth_type = peer_auth_type(chain[0] if chain else None)
    if server:
        return trust_manager.check_server_trusted(chain, auth_type, hostname=hostname)
    return trust_manager.check_client_trusted(chain, auth_type)


def create_pinned_client(anchors: Sequence[TrustAnchorSpec], **kwargs: Any) -> httpx.Client:
    """Create an httpx client that trusts only the given anchors.

    Extra keyword arguments are passed to ``httpx.Client``.
    """
    return httpx.Client(verify=create_ssl_context(anchors), **kwargs)


def create_pinned_async_client(
    anchors: Sequence[TrustAnchorSpec],
    **kwargs: Any,
) -> httpx.AsyncClient:
    """Async variant of create_pinned_client()."""
    return httpx.AsyncClient(verify=create_ssl_context(anchors), **kwargs)
