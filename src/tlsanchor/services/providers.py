"""Pluggable cryptographic providers with ordered fallback.

A provider implements the three primitives certificate issuance needs:
RSA key generation, certificate signing, and the final DER conversion of a
signed certificate. Providers are kept in an ordered ProviderRegistry; the
first_success() combinator tries each candidate in turn and returns the
first result. The platform default provider (backed by ``cryptography``)
is always the last resort.

Hosts register preferred providers once, at initialization (see
tlsanchor.bootstrap). Availability is a runtime capability query
(``is_available()``) rather than global process state.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, TypeVar

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from tlsanchor.core.errors import ProviderAttempt, ProviderChainError, ProviderUnavailable

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from cryptography.hazmat.primitives import hashes

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PROVIDER_NAME = "cryptography"

# F4, the only exponent accepted by the default backend for new keys
RSA_PUBLIC_EXPONENT = 65537


class CryptoProvider(ABC):
    """Backend for the primitives used by certificate issuance."""

    name: str = "abstract"

    def is_available(self) -> bool:
        """Report whether this provider can serve requests right now."""
        return True

    @abstractmethod
    def generate_rsa_key(self, key_bits: int) -> rsa.RSAPrivateKey:
        """Generate an RSA private key of ``key_bits`` bits."""

    @abstractmethod
    def sign_certificate(
        self,
        builder: x509.CertificateBuilder,
        private_key: rsa.RSAPrivateKey,
        algorithm: hashes.HashAlgorithm,
    ) -> x509.Certificate:
        """Sign a to-be-signed certificate body."""

    @abstractmethod
    def load_certificate(self, der: bytes) -> x509.Certificate:
        """Convert DER bytes into a certificate object."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


class CryptographyProvider(CryptoProvider):
    """Platform default provider backed by the ``cryptography`` package."""

    name = DEFAULT_PROVIDER_NAME

    def generate_rsa_key(self, key_bits: int) -> rsa.RSAPrivateKey:
        return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=key_bits)

    def sign_certificate(
        self,
        builder: x509.CertificateBuilder,
        private_key: rsa.RSAPrivateKey,
        algorithm: hashes.HashAlgorithm,
    ) -> x509.Certificate:
        return builder.sign(private_key, algorithm)

    def load_certificate(self, der: bytes) -> x509.Certificate:
        return x509.load_der_x509_certificate(der)


class ProviderRegistry:
    """Ordered collection of cryptographic providers.

    Order defines preference. The default provider is kept at the end of
    ``candidates()`` even if a host never registers it explicitly, so a
    registry can always fall back to the platform implementation. The only
    way to move it forward is ``prefer()`` with its name.

    Example:
        registry = ProviderRegistry()
        registry.register(HsmProvider(), position=0)
        key = first_success(
            registry.candidates(),
            "key_generation",
            lambda p: p.generate_rsa_key(2048),
        )
    """

    def __init__(
        self,
        providers: Iterable[CryptoProvider] = (),
        *,
        default: CryptoProvider | None = None,
    ) -> None:
        self._default = default or CryptographyProvider()
        self._default_first = False
        self._providers: list[CryptoProvider] = []
        for provider in providers:
            self.register(provider)

    @property
    def default(self) -> CryptoProvider:
        """The last-resort provider."""
        return self._default

    @property
    def names(self) -> list[str]:
        """Provider names in preference order, default last."""
        return [p.name for p in self.candidates()]

    def register(self, provider: CryptoProvider, position: int | None = None) -> None:
        """Register a provider, replacing any provider with the same name.

        Args:
            provider: The provider to add.
            position: Insert position (0 = most preferred). Appends when None.
        """
        if provider.name == self._default.name:
            self._default = provider
            logger.debug("Replaced default crypto provider with %r", provider)
            return
        self.unregister(provider.name)
        if position is None:
            self._providers.append(provider)
        else:
            self._providers.insert(position, provider)
        logger.debug("Registered crypto provider %s at position %s", provider.name, position)

    def unregister(self, name: str) -> bool:
        """Remove a provider by name. Returns True if one was removed."""
        before = len(self._providers)
        self._providers = [p for p in self._providers if p.name != name]
        return len(self._providers) != before

    def get(self, name: str) -> CryptoProvider | None:
        """Look up a provider by name."""
        for provider in self.candidates():
            if provider.name == name:
                return provider
        return None

    def prefer(self, name: str) -> None:
        """Move a registered provider to the front of the order.

        Raises:
            ProviderUnavailable: If no provider with that name is registered.
        """
        provider = self.get(name)
        if provider is None:
            raise ProviderUnavailable(name, "not registered")
        if provider is self._default:
            self._default_first = True
            return
        self._default_first = False
        self.register(provider, position=0)

    def candidates(self) -> list[CryptoProvider]:
        """Providers in the order they should be tried."""
        if self._default_first:
            return [self._default, *self._providers]
        return [*self._providers, self._default]

    def __len__(self) -> int:
        return len(self._providers) + 1


def first_success(
    providers: Iterable[CryptoProvider],
    operation: str,
    func: Callable[[CryptoProvider], T],
) -> T:
    """Run ``func`` against each provider in order until one succeeds.

    Providers that report themselves unavailable are skipped with a
    diagnostic. Any exception from ``func`` marks that provider as failed
    for this operation and moves on to the next one.

    Args:
        providers: Candidate providers, most preferred first.
        operation: Operation name for diagnostics.
        func: Callable performing the operation with a given provider.

    Returns:
        The first successful result.

    Raises:
        ProviderChainError: If every provider was unavailable or failed.
    """
    attempts: list[ProviderAttempt] = []
    last_error: BaseException | None = None

    for provider in providers:
        try:
            if not provider.is_available():
                raise ProviderUnavailable(provider.name)
            result = func(provider)
        except ProviderUnavailable as e:
            logger.warning("%s; trying next provider for %s", e, operation)
            attempts.append(ProviderAttempt(provider.name, operation, e.reason))
            last_error = e
            continue
        except Exception as e:
            logger.warning(
                "Provider %s failed for %s: %s; trying next provider",
                provider.name,
                operation,
                e,
            )
            attempts.append(ProviderAttempt(provider.name, operation, f"{type(e).__name__}: {e}"))
            last_error = e
            continue

        if attempts:
            logger.warning(
                "Falling back to %s provider for %s after %d failed attempt(s)",
                provider.name,
                operation,
                len(attempts),
            )
        return result

    raise ProviderChainError(operation, attempts) from last_error
