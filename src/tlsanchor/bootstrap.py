"""One-time host initialization for tlsanchor.

Hosts call initialize() once at startup, before issuing certificates or
building verifiers. It:
- Sets up logging
- Registers host-supplied crypto providers and applies the preferred one
- Returns a Runtime bundling settings and the provider registry

Nothing here is global: the returned Runtime is passed to whatever needs
it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tlsanchor.core.settings import get_settings
from tlsanchor.services.issuer import IssuancePolicy, issue_certificate
from tlsanchor.services.providers import ProviderRegistry
from tlsanchor.services.session import create_pinned_session
from tlsanchor.services.verifier import anchors_from_settings, build_verifier

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cryptography import x509

    from tlsanchor.core.config import Settings
    from tlsanchor.services.issuer import KeyPair
    from tlsanchor.services.providers import CryptoProvider
    from tlsanchor.services.session import PinnedSession
    from tlsanchor.services.verifier import Verifier

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True, slots=True)
class Runtime:
    """Settings and provider registry for one host process."""

    settings: Settings
    providers: ProviderRegistry

    def policy(self) -> IssuancePolicy:
        """Issuance policy described by the settings."""
        return IssuancePolicy.from_settings(self.settings.issuance)

    def issue(self, policy: IssuancePolicy | None = None) -> tuple[KeyPair, x509.Certificate]:
        """Issue a certificate with this runtime's providers."""
        return issue_certificate(policy or self.policy(), providers=self.providers)

    def verifier(self, pinned: Iterable[x509.Certificate] = ()) -> Verifier:
        """Build a verifier from the settings, pinned certificates first."""
        anchors = anchors_from_settings(self.settings.verifier, pinned)
        return build_verifier(anchors, observe_pins=self.settings.verifier.observe_pins)

    def session(self, policy: IssuancePolicy | None = None) -> PinnedSession:
        """Create a pinned session from the settings."""
        return create_pinned_session(
            policy or self.policy(),
            trust_system_roots=self.settings.verifier.trust_system_roots,
            system_ca_file=self.settings.verifier.system_ca_file,
            providers=self.providers,
            observe_pins=self.settings.verifier.observe_pins,
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging in the format used across tlsanchor."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def initialize(
    settings: Settings | None = None,
    *,
    providers: Iterable[CryptoProvider] = (),
    setup_logging: bool = True,
) -> Runtime:
    """Initialize tlsanchor for a host process.

    Args:
        settings: Settings to use. Loaded from the environment when None.
        providers: Host crypto providers, most preferred first.
        setup_logging: Configure root logging from the settings.

    Returns:
        Runtime for issuing certificates and building verifiers.

    Raises:
        ProviderUnavailable: If the configured preferred provider is not
            among the registered ones.
    """
    settings = settings or get_settings()
    if setup_logging:
        configure_logging(settings.log_level)

    registry = ProviderRegistry(providers)
    preferred = settings.issuance.preferred_provider
    if preferred:
        registry.prefer(preferred)

    available = [p.name for p in registry.candidates() if p.is_available()]
    logger.info(
        "tlsanchor initialized: environment=%s, providers=%s, available=%s",
        settings.environment.value,
        registry.names,
        available,
    )
    return Runtime(settings=settings, providers=registry)
