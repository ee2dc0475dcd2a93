"""tlsanchor service layer.

- Certificate issuer: ephemeral self-signed identities
- Crypto providers: ordered backends with fallback
- Trust chain verifier: ordered pinned / system-root anchors
- Pins: sha256/ pin extraction and hostname pinning
- Trust manager: TLS-layer seam, SSL contexts and httpx clients
- Sessions: per-client pinned identities
"""

from tlsanchor.services.issuer import (
    IssuancePolicy,
    KeyPair,
    SubjectAttributes,
    issue_certificate,
    issue_certificate_async,
)
from tlsanchor.services.pins import (
    CertificatePinner,
    PinObservation,
    certificate_pin,
    public_key_pin,
)
from tlsanchor.services.providers import (
    CryptographyProvider,
    CryptoProvider,
    ProviderRegistry,
    first_success,
)
from tlsanchor.services.session import PinnedSession, create_pinned_session
from tlsanchor.services.trust_manager import (
    TrustManager,
    create_pinned_async_client,
    create_pinned_client,
    create_ssl_context,
    verify_peer,
)
from tlsanchor.services.verifier import (
    ChainUsage,
    PinnedCertificate,
    SystemRoots,
    TrustAnchorSpec,
    VerificationOutcome,
    Verifier,
    build_verifier,
    verify_chain,
)

__all__ = [
    "CertificatePinner",
    "ChainUsage",
    "CryptoProvider",
    "CryptographyProvider",
    "IssuancePolicy",
    "KeyPair",
    "PinObservation",
    "PinnedCertificate",
    "PinnedSession",
    "ProviderRegistry",
    "SubjectAttributes",
    "SystemRoots",
    "TrustAnchorSpec",
    "TrustManager",
    "VerificationOutcome",
    "Verifier",
    "build_verifier",
    "certificate_pin",
    "create_pinned_async_client",
    "create_pinned_client",
    "create_pinned_session",
    "create_ssl_context",
    "first_success",
    "issue_certificate",
    "issue_certificate_async",
    "public_key_pin",
    "verify_chain",
    "verify_peer",
]
