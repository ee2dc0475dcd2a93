"""Certificate and public-key pins in ``sha256/<base64>`` form.

The pin format matches common pinning tooling, so operators can cross-check
a logged pin against one derived with openssl:

    openssl x509 -in cert.pem -pubkey -noout \\
      | openssl pkey -pubin -outform der \\
      | openssl dgst -sha256 -binary | openssl base64

CertificatePinner restricts named hosts to a set of public-key pins, on top
of whatever trust decision the verifier already made.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from tlsanchor.core.errors import EmptyChainError, PinMismatchError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from cryptography import x509

logger = logging.getLogger(__name__)

PIN_PREFIX = "sha256/"
_SHA256_DIGEST_SIZE = 32


def format_pin(digest: bytes) -> str:
    """Render a SHA-256 digest as ``sha256/<base64>``."""
    return PIN_PREFIX + base64.b64encode(digest).decode("ascii")


def public_key_pin(certificate: x509.Certificate) -> str:
    """SHA-256 pin of the certificate's DER-encoded SubjectPublicKeyInfo."""
    spki = certificate.public_key().public_bytes(
        Encoding.DER, PublicFormat.SubjectPublicKeyInfo
    )
    return format_pin(hashlib.sha256(spki).digest())


def certificate_pin(certificate: x509.Certificate) -> str:
    """SHA-256 pin of the full DER-encoded certificate."""
    return format_pin(hashlib.sha256(certificate.public_bytes(Encoding.DER)).digest())


def validate_pin(pin: str) -> str:
    """Check that ``pin`` is a well-formed ``sha256/<base64>`` string.

    Raises:
        ValueError: If the prefix, encoding or digest length is wrong.
    """
    if not pin.startswith(PIN_PREFIX):
        msg = f"Pins must start with {PIN_PREFIX!r}: {pin!r}"
        raise ValueError(msg)
    try:
        digest = base64.b64decode(pin[len(PIN_PREFIX) :], validate=True)
    except binascii.Error as e:
        msg = f"Invalid base64 in pin: {pin!r}"
        raise ValueError(msg) from e
    if len(digest) != _SHA256_DIGEST_SIZE:
        msg = f"Pin digest must be {_SHA256_DIGEST_SIZE} bytes: {pin!r}"
        raise ValueError(msg)
    return pin


@dataclass(frozen=True, slots=True)
class PinObservation:
    """Pins extracted from a presented leaf certificate.

    Attributes:
        subject: RFC 4514 subject of the leaf.
        issuer: RFC 4514 issuer of the leaf.
        public_key_pin: ``sha256/`` pin of the leaf's SubjectPublicKeyInfo.
        certificate_pin: ``sha256/`` pin of the leaf's full DER encoding.
    """

    subject: str
    issuer: str
    public_key_pin: str
    certificate_pin: str

    def to_dict(self) -> dict[str, str]:
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "public_key_pin": self.public_key_pin,
            "certificate_pin": self.certificate_pin,
        }


def observe(certificate: x509.Certificate) -> PinObservation:
    """Extract both pins from a certificate."""
    return PinObservation(
        subject=certificate.subject.rfc4514_string(),
        issuer=certificate.issuer.rfc4514_string(),
        public_key_pin=public_key_pin(certificate),
        certificate_pin=certificate_pin(certificate),
    )


@dataclass(frozen=True, slots=True)
class PinRule:
    """Pins that apply to hostnames matching ``pattern``.

    Patterns are an exact hostname, ``*.example.com`` (exactly one extra
    label) or ``**.example.com`` (any number of extra labels, including
    none).
    """

    pattern: str
    pins: tuple[str, ...]

    def __post_init__(self) -> None:
        pattern = self.pattern.lower().rstrip(".")
        if not pattern or pattern in {"*", "**"}:
            msg = f"Invalid hostname pattern: {self.pattern!r}"
            raise ValueError(msg)
        if not self.pins:
            msg = f"At least one pin is required for {pattern!r}"
            raise ValueError(msg)
        object.__setattr__(self, "pattern", pattern)
        object.__setattr__(self, "pins", tuple(validate_pin(p) for p in self.pins))

    def matches(self, hostname: str) -> bool:
        host = hostname.lower().rstrip(".")
        pattern = self.pattern
        if pattern.startswith("**."):
            suffix = pattern[3:]
            return host == suffix or host.endswith("." + suffix)
        if pattern.startswith("*."):
            suffix = pattern[2:]
            if not host.endswith("." + suffix):
                return False
            label = host[: -len(suffix) - 1]
            return bool(label) and "." not in label
        return host == pattern


class CertificatePinner:
    """Restrict hostnames to known public-key pins.

    A chain passes when any certificate in it has a public-key pin listed
    for the hostname. Hostnames without any rule are not constrained.

    Example:
        pinner = CertificatePinner()
        pinner.add("jsonplaceholder.typicode.com", "sha256/eU8uhA6QAxYsY/...=")
        pinner.check("jsonplaceholder.typicode.com", peer_chain)
    """

    def __init__(self, rules: Iterable[PinRule] = ()) -> None:
        self._rules: list[PinRule] = list(rules)

    def add(self, pattern: str, *pins: str) -> CertificatePinner:
        """Add pins for a hostname pattern. Returns self for chaining.

        Raises:
            ValueError: If the pattern is empty or any pin is malformed.
        """
        self._rules.append(PinRule(pattern=pattern, pins=pins))
        return self

    @property
    def rules(self) -> list[PinRule]:
        return list(self._rules)

    def find_matching_pins(self, hostname: str) -> list[str]:
        """All pins configured for ``hostname``, in rule order."""
        pins: list[str] = []
        for rule in self._rules:
            if rule.matches(hostname):
                pins.extend(p for p in rule.pins if p not in pins)
        return pins

    def check(self, hostname: str, chain: Sequence[x509.Certificate]) -> None:
        """Check a verified peer chain against the pins for ``hostname``.

        Raises:
            EmptyChainError: If ``chain`` is empty.
            PinMismatchError: If pins are configured and none matches.
        """
        if not chain:
            raise EmptyChainError()
        configured = self.find_matching_pins(hostname)
        if not configured:
            return

        peer_pins = [public_key_pin(cert) for cert in chain]
        if any(pin in configured for pin in peer_pins):
            return

        logger.warning(
            "Certificate pinning failure for %s: peer pins %s",
            hostname,
            ", ".join(peer_pins),
        )
        raise PinMismatchError(hostname, peer_pins, configured)
