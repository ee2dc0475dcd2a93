"""Exception hierarchy for tlsanchor.

Provider fallback is the only condition recovered locally. Every other
failure reaches the caller as one of the typed exceptions below; nothing
here is retried automatically.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tlsanchor.services.verifier import VerificationOutcome


class TlsAnchorError(Exception):
    """Base exception for tlsanchor errors."""

    pass


@dataclass(frozen=True, slots=True)
class ProviderAttempt:
    """One provider's try at an operation.

    Attributes:
        provider: Name of the provider that was tried.
        operation: Operation name (e.g. "key_generation").
        error: Human-readable failure description.
    """

    provider: str
    operation: str
    error: str

    def __str__(self) -> str:
        return f"{self.provider}: {self.error}"


class ProviderUnavailable(TlsAnchorError):
    """Raised when a cryptographic provider cannot serve a request.

    Recovered locally by falling back to the next provider. Only surfaces
    as a diagnostic log line.
    """

    def __init__(self, provider: str, reason: str = "not available") -> None:
        super().__init__(f"Provider {provider!r} unavailable: {reason}")
        self.provider = provider
        self.reason = reason


class ProviderChainError(TlsAnchorError):
    """Raised when every candidate provider failed the same operation."""

    def __init__(self, operation: str, attempts: list[ProviderAttempt]) -> None:
        details = "; ".join(str(a) for a in attempts) or "no providers configured"
        super().__init__(f"All providers failed for {operation}: {details}")
        self.operation = operation
        self.attempts = attempts


class IssuanceError(TlsAnchorError):
    """Base exception for certificate issuance errors."""

    pass


class InvalidPolicyError(IssuanceError, ValueError):
    """Raised when an issuance policy is rejected at construction."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class IssuanceFailure(IssuanceError):
    """Raised when key generation, signing, or assembly failed on all providers.

    Fatal for the issuing call. The original error is chained as
    ``__cause__``; ``attempts`` lists every provider that was tried.
    """

    def __init__(self, step: str, attempts: list[ProviderAttempt] | None = None) -> None:
        super().__init__(f"Certificate issuance failed during {step}")
        self.step = step
        self.attempts = attempts or []


class CertificateTrustError(TlsAnchorError):
    """Base exception for trust decisions on a presented chain."""

    pass


class EmptyChainError(CertificateTrustError):
    """Raised when verification is invoked without any certificate."""

    def __init__(self) -> None:
        super().__init__("Empty certificate chain")


class MalformedChainError(CertificateTrustError):
    """Raised when a chain element is not a decodable X.509 certificate."""

    def __init__(self, index: int, reason: str) -> None:
        super().__init__(f"Malformed certificate at chain index {index}: {reason}")
        self.index = index
        self.reason = reason


class ChainRejectedError(CertificateTrustError):
    """Raised when no trust anchor accepted the chain.

    ``outcome`` holds every anchor attempt; ``reason`` is the last
    anchor's rejection reason.
    """

    def __init__(self, outcome: VerificationOutcome) -> None:
        super().__init__(f"Certificate chain rejected: {outcome.reason}")
        self.outcome = outcome

    @property
    def reason(self) -> str | None:
        return self.outcome.reason


class PinMismatchError(CertificateTrustError):
    """Raised when none of a hostname's configured pins match the chain."""

    def __init__(self, hostname: str, peer_pins: list[str], configured: list[str]) -> None:
        super().__init__(
            f"Certificate pinning failure for {hostname}: "
            f"peer pins {', '.join(peer_pins)} not in {', '.join(configured)}"
        )
        self.hostname = hostname
        self.peer_pins = peer_pins
        self.configured = configured


class PathValidationError(CertificateTrustError):
    """Raised by path validation when a chain does not reach a trust root.

    Verifier anchors convert this into a rejection; callers of
    ``Verifier.verify`` never see it directly.
    """

    pass
