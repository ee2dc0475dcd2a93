"""Per-session pinned TLS identities.

A PinnedSession bundles a freshly issued identity with the verifier, trust
manager and SSL context built around it. One session backs one client; the
identity is discarded with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from tlsanchor.services.issuer import IssuancePolicy, KeyPair, issue_certificate
from tlsanchor.services.pins import public_key_pin
from tlsanchor.services.trust_manager import TrustManager, create_ssl_context
from tlsanchor.services.verifier import (
    PinnedCertificate,
    SystemRoots,
    Verifier,
    build_verifier,
)

if TYPE_CHECKING:
    import ssl

    from cryptography import x509

    from tlsanchor.services.providers import ProviderRegistry
    from tlsanchor.services.verifier import TrustAnchorSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PinnedSession:
    """Identity and trust configuration for one TLS client session."""

    key_pair: KeyPair
    certificate: x509.Certificate
    anchors: tuple[TrustAnchorSpec, ...]
    verifier: Verifier = field(repr=False)
    trust_manager: TrustManager = field(repr=False)
    ssl_context: ssl.SSLContext = field(repr=False)

    @property
    def public_key_pin(self) -> str:
        return public_key_pin(self.certificate)

    def client(self, **kwargs: Any) -> httpx.Client:
        """Create an httpx client bound to this session's SSL context."""
        return httpx.Client(verify=self.ssl_context, **kwargs)

    def async_client(self, **kwargs: Any) -> httpx.AsyncClient:
        """Create an httpx async client bound to this session's SSL context."""
        return httpx.AsyncClient(verify=self.ssl_context, **kwargs)


def create_pinned_session(
    policy: IssuancePolicy | None = None,
    *,
    trust_system_roots: bool = False,
    system_ca_file: str | None = None,
    providers: ProviderRegistry | None = None,
    observe_pins: bool = False,
) -> PinnedSession:
    """Issue a fresh identity and build a trust configuration pinned to it.

    The pinned certificate is always the first anchor; system roots, when
    enabled, are the fallback.

    Raises:
        IssuanceFailure: If the identity cannot be issued.
    """
    key_pair, certificate = issue_certificate(policy, providers=providers)

    anchors: list[TrustAnchorSpec] = [PinnedCertificate(certificate)]
    if trust_system_roots:
        anchors.append(SystemRoots(ca_file=system_ca_file))

    verifier = build_verifier(anchors, observe_pins=observe_pins)
    session = PinnedSession(
        key_pair=key_pair,
        certificate=certificate,
        anchors=tuple(anchors),
        verifier=verifier,
        trust_manager=TrustManager(verifier),
        ssl_context=create_ssl_context(anchors),
    )
    logger.info(
        "Created pinned session: pin=%s, trust_system_roots=%s",
        session.public_key_pin,
        trust_system_roots,
    )
    return session
