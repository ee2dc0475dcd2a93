"""Certificate issuer for ephemeral, self-signed TLS identities.

This module generates an RSA key pair and a self-signed X.509 certificate
per call:
- Policy-controlled validity window, subject and signature algorithm
- Critical BasicConstraints (not a CA) and critical KeyUsage
  (digitalSignature, keyEncipherment) on every certificate
- Random serial numbers from a CSPRNG

IMPORTANT: Nothing is persisted. The private key lives only in the returned
KeyPair; it is never written to a file, keystore or log. Every step runs
through the provider chain (see tlsanchor.services.providers), so a missing
preferred provider degrades to the platform default without changing the
resulting certificate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, TypeVar

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from cryptography.x509 import NameOID

from tlsanchor.core.config import MAX_VALIDITY, MIN_RSA_KEY_BITS, SignatureAlgorithm
from tlsanchor.core.errors import IssuanceFailure, InvalidPolicyError, ProviderChainError
from tlsanchor.services.providers import ProviderRegistry, first_success

if TYPE_CHECKING:
    from collections.abc import Callable

    from cryptography.hazmat.primitives.asymmetric import rsa

    from tlsanchor.core.config import IssuanceSettings
    from tlsanchor.services.providers import CryptoProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

# RFC 5280 upper bound for a common name
MAX_COMMON_NAME_LENGTH = 64


@dataclass(frozen=True, slots=True)
class SubjectAttributes:
    """Distinguished name attributes for an issued certificate.

    Subject and issuer are identical for self-signed certificates, so
    these attributes describe both.

    Attributes:
        common_name: CN, required.
        organization: O, required.
        organizational_unit: OU, optional.
        locality: L, optional.
        country: C, optional two-letter code.
    """

    common_name: str
    organization: str
    organizational_unit: str | None = None
    locality: str | None = None
    country: str | None = None

    def __post_init__(self) -> None:
        if not self.common_name or not self.common_name.strip():
            raise InvalidPolicyError("Common name must not be empty", field="common_name")
        if len(self.common_name) > MAX_COMMON_NAME_LENGTH:
            raise InvalidPolicyError(
                f"Common name must be at most {MAX_COMMON_NAME_LENGTH} characters",
                field="common_name",
            )
        if not self.organization or not self.organization.strip():
            raise InvalidPolicyError("Organization must not be empty", field="organization")
        if self.country is not None and (len(self.country) != 2 or not self.country.isalpha()):
            raise InvalidPolicyError("Country must be a two-letter code", field="country")

    def to_name(self) -> x509.Name:
        """Build the X.509 name, most specific attribute first."""
        attributes = [
            x509.NameAttribute(NameOID.COMMON_NAME, self.common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
        ]
        if self.organizational_unit:
            attributes.append(
                x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit)
            )
        if self.locality:
            attributes.append(x509.NameAttribute(NameOID.LOCALITY_NAME, self.locality))
        if self.country:
            attributes.append(x509.NameAttribute(NameOID.COUNTRY_NAME, self.country.upper()))
        return x509.Name(attributes)


def _ephemeral_subject() -> SubjectAttributes:
    return SubjectAttributes(
        common_name="Dynamic Certificate",
        organization="PinningApp",
        organizational_unit="Security",
        locality="Temporary",
        country="US",
    )


@dataclass(frozen=True, slots=True)
class IssuancePolicy:
    """What to issue: key size, validity, subject and signature algorithm.

    Validity must be a positive whole number of seconds (X.509 times have
    one-second resolution) and at most 366 days, so that
    ``not_after - not_before`` always equals it exactly.
    """

    key_bits: int = 2048
    validity: timedelta = timedelta(days=1)
    subject: SubjectAttributes = field(default_factory=_ephemeral_subject)
    signature_algorithm: SignatureAlgorithm = SignatureAlgorithm.SHA256_WITH_RSA

    def __post_init__(self) -> None:
        if self.key_bits < MIN_RSA_KEY_BITS:
            raise InvalidPolicyError(
                f"RSA keys must be at least {MIN_RSA_KEY_BITS} bits, got {self.key_bits}",
                field="key_bits",
            )
        if not isinstance(self.validity, timedelta):
            raise InvalidPolicyError(
                f"Validity must be a timedelta, got {self.validity!r}", field="validity"
            )
        if self.validity <= timedelta(0):
            raise InvalidPolicyError("Validity must be positive", field="validity")
        if self.validity > MAX_VALIDITY:
            raise InvalidPolicyError(
                f"Validity must not exceed {MAX_VALIDITY.days} days", field="validity"
            )
        if self.validity.microseconds:
            raise InvalidPolicyError(
                "Validity must be a whole number of seconds", field="validity"
            )
        if not isinstance(self.signature_algorithm, SignatureAlgorithm):
            raise InvalidPolicyError(
                f"Unsupported signature algorithm: {self.signature_algorithm!r}",
                field="signature_algorithm",
            )

    @classmethod
    def ephemeral(cls) -> IssuancePolicy:
        """One-day identity for local test servers."""
        return cls()

    @classmethod
    def long_lived(cls) -> IssuancePolicy:
        """One-year identity for longer-lived pinned certificates."""
        return cls(
            validity=timedelta(days=365),
            subject=SubjectAttributes(
                common_name="DynamicSecurityCert",
                organization="PinningApp",
                locality="Local",
                country="US",
            ),
        )

    @classmethod
    def from_settings(cls, settings: IssuanceSettings) -> IssuancePolicy:
        """Build a policy from the issuance section of the settings."""
        return cls(
            key_bits=settings.key_bits,
            validity=settings.validity,
            subject=SubjectAttributes(
                common_name=settings.common_name,
                organization=settings.organization,
                organizational_unit=settings.organizational_unit,
                locality=settings.locality,
                country=settings.country,
            ),
            signature_algorithm=settings.signature_algorithm,
        )


@dataclass(frozen=True, slots=True)
class KeyPair:
    """RSA key pair owned by the caller of issue_certificate().

    The private key is excluded from repr so the pair can be logged or
    shown in tracebacks without exposing key material.
    """

    private_key: rsa.RSAPrivateKey = field(repr=False)

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    @property
    def key_bits(self) -> int:
        return self.private_key.key_size

    def public_key_der(self) -> bytes:
        """DER-encoded SubjectPublicKeyInfo of the public half."""
        return self.public_key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _run_step(
    step: str,
    candidates: list[CryptoProvider],
    func: Callable[[CryptoProvider], T],
) -> T:
    try:
        return first_success(candidates, step, func)
    except ProviderChainError as e:
        logger.error("Certificate issuance failed during %s: %s", step, e)
        raise IssuanceFailure(step, e.attempts) from e


def _check_assembled(
    certificate: x509.Certificate,
    key_pair: KeyPair,
    policy: IssuancePolicy,
    not_before: datetime,
) -> None:
    """Reject anything a provider returned that breaks the certificate invariants."""
    if certificate.public_key().public_bytes(
        Encoding.DER, PublicFormat.SubjectPublicKeyInfo
    ) != key_pair.public_key_der():
        msg = "certificate public key does not match the generated key pair"
        raise ValueError(msg)
    if certificate.not_valid_before_utc != not_before:
        msg = "certificate not_before differs from the requested start"
        raise ValueError(msg)
    if certificate.not_valid_after_utc - certificate.not_valid_before_utc != policy.validity:
        msg = "certificate validity differs from the policy"
        raise ValueError(msg)
    # Self-signed: the signature must verify with the embedded public key
    certificate.verify_directly_issued_by(certificate)


def issue_certificate(
    policy: IssuancePolicy | None = None,
    *,
    providers: ProviderRegistry | None = None,
    clock: Callable[[], datetime] | None = None,
) -> tuple[KeyPair, x509.Certificate]:
    """Generate a key pair and a self-signed certificate for it.

    This is a blocking, CPU-bound call (RSA key generation plus one
    signature). Event-loop callers should use issue_certificate_async().

    Args:
        policy: What to issue. Defaults to IssuancePolicy.ephemeral().
        providers: Provider registry to use. Defaults to the platform
            default provider only.
        clock: Source of the current UTC time (for tests).

    Returns:
        The key pair and the finished certificate.

    Raises:
        IssuanceFailure: If key generation, signing, or certificate
            assembly failed on every provider.
    """
    policy = policy or IssuancePolicy.ephemeral()
    registry = providers or ProviderRegistry()
    candidates = registry.candidates()

    def generate(provider: CryptoProvider) -> rsa.RSAPrivateKey:
        private_key = provider.generate_rsa_key(policy.key_bits)
        if private_key.key_size != policy.key_bits:
            msg = (
                f"provider returned a {private_key.key_size}-bit key, "
                f"policy requires {policy.key_bits} bits"
            )
            raise ValueError(msg)
        return private_key

    private_key = _run_step("key_generation", candidates, generate)
    key_pair = KeyPair(private_key=private_key)

    not_before = (clock or _utcnow)().replace(microsecond=0)
    not_after = not_before + policy.validity

    try:
        name = policy.subject.to_name()
        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key_pair.public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
        )
    except (ValueError, TypeError) as e:
        logger.error("Could not assemble certificate body: %s", e)
        raise IssuanceFailure("assembly") from e

    hash_algorithm = policy.signature_algorithm.hash_algorithm()

    # A provider whose output fails the self-check counts as failed, so the
    # next provider gets a chance
    def sign(provider: CryptoProvider) -> x509.Certificate:
        signed = provider.sign_certificate(builder, private_key, hash_algorithm)
        _check_assembled(signed, key_pair, policy, not_before)
        return signed

    signed = _run_step("signing", candidates, sign)
    der = signed.public_bytes(Encoding.DER)

    def convert(provider: CryptoProvider) -> x509.Certificate:
        loaded = provider.load_certificate(der)
        _check_assembled(loaded, key_pair, policy, not_before)
        return loaded

    certificate = _run_step("certificate_conversion", candidates, convert)

    logger.debug(
        "Issued certificate: serial=%x, subject=%s, not_after=%s, key_bits=%d",
        certificate.serial_number,
        certificate.subject.rfc4514_string(),
        not_after.isoformat(),
        key_pair.key_bits,
    )
    return key_pair, certificate


async def issue_certificate_async(
    policy: IssuancePolicy | None = None,
    *,
    providers: ProviderRegistry | None = None,
    timeout: float | None = None,
) -> tuple[KeyPair, x509.Certificate]:
    """Run issue_certificate() in a worker thread.

    Key generation is not cancellable; on timeout the worker keeps running
    and its result is discarded.

    Args:
        policy: What to issue.
        providers: Provider registry to use.
        timeout: Seconds to wait before giving up, or None to wait forever.

    Raises:
        TimeoutError: If the deadline passed before issuance finished.
        IssuanceFailure: As issue_certificate().
    """
    work = asyncio.to_thread(issue_certificate, policy, providers=providers)
    if timeout is None:
        return await work
    return await asyncio.wait_for(work, timeout=timeout)
