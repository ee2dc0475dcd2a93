"""Trust chain verifier built from an ordered list of trust anchors.

Covers the trust decision a TLS client makes on every handshake:
- Pinned certificate anchors: only chains that reach one specific
  certificate are trusted
- System roots anchors: chains that reach the platform root store (or an
  explicit CA bundle) are trusted
- Observation mode: the leaf's ``sha256/`` pins are logged before any
  decision, for pin discovery

Anchors are tried in the configured order and the first one that accepts
wins. Put pinned anchors before system roots so a deliberately pinned
identity takes precedence over coincidental system trust.

Any exception raised while an anchor evaluates the chain counts as that
anchor rejecting it. Input that is not a certificate at all (wrong type,
undecodable DER) fails fast with MalformedChainError before any anchor runs.
"""

from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import ExtendedKeyUsageOID, ExtensionOID, NameOID

from tlsanchor.core.errors import (
    ChainRejectedError,
    EmptyChainError,
    MalformedChainError,
    PathValidationError,
)
from tlsanchor.services.pins import PinObservation, certificate_pin, observe

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from tlsanchor.core.config import VerifierSettings

logger = logging.getLogger(__name__)

# Longest path (leaf + intermediates + anchor) the validator will walk
MAX_PATH_DEPTH = 8


class ChainUsage(str, Enum):
    """Which side of the connection presented the chain."""

    CLIENT = "client"
    SERVER = "server"

    @property
    def extended_key_usage(self) -> x509.ObjectIdentifier:
        if self is ChainUsage.CLIENT:
            return ExtendedKeyUsageOID.CLIENT_AUTH
        return ExtendedKeyUsageOID.SERVER_AUTH


# ---------------------------------------------------------------------------
# Trust anchor specs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SystemRoots:
    """Trust the platform root store.

    Attributes:
        roots: Explicit root certificates. When None, roots are loaded from
            ``ca_file`` or the platform default verify paths.
        ca_file: PEM bundle to load instead of the platform default.
    """

    roots: tuple[x509.Certificate, ...] | None = None
    ca_file: str | None = None

    @property
    def name(self) -> str:
        return "system_roots"

    def load_roots(self) -> tuple[x509.Certificate, ...]:
        """Resolve the root certificates this anchor trusts."""
        if self.roots is not None:
            return tuple(self.roots)
        return load_system_roots(self.ca_file)


@dataclass(frozen=True, slots=True)
class PinnedCertificate:
    """Trust only chains rooted at one specific certificate."""

    certificate: x509.Certificate

    @property
    def name(self) -> str:
        return f"pinned:{certificate_pin(self.certificate)}"

    def load_roots(self) -> tuple[x509.Certificate, ...]:
        return (self.certificate,)


TrustAnchorSpec = SystemRoots | PinnedCertificate


def load_system_roots(ca_file: str | None = None) -> tuple[x509.Certificate, ...]:
    """Load root certificates from a PEM bundle or the platform store.

    Args:
        ca_file: PEM bundle path. Uses OpenSSL's default CA file when None,
            and falls back to the certificates the default SSL context
            has loaded when that file does not exist.

    Returns:
        Parsed root certificates.
    """
    if ca_file is None:
        default_file = ssl.get_default_verify_paths().cafile
        if default_file and Path(default_file).is_file():
            ca_file = default_file

    if ca_file is not None:
        roots = tuple(x509.load_pem_x509_certificates(Path(ca_file).read_bytes()))
        logger.debug("Loaded %d system roots from %s", len(roots), ca_file)
        return roots

    context = ssl.create_default_context()
    roots_list = []
    for der in context.get_ca_certs(binary_form=True):
        try:
            roots_list.append(x509.load_der_x509_certificate(der))
        except ValueError as e:
            logger.debug("Skipping unparsable system root: %s", e)
    logger.debug("Loaded %d system roots from default SSL context", len(roots_list))
    return tuple(roots_list)


def anchors_from_settings(
    settings: VerifierSettings,
    pinned: Iterable[x509.Certificate] = (),
) -> list[TrustAnchorSpec]:
    """Build the anchor list described by the verifier settings.

    Pinned certificates come first, followed by the system roots when
    ``trust_system_roots`` is enabled.
    """
    anchors: list[TrustAnchorSpec] = [PinnedCertificate(cert) for cert in pinned]
    if settings.trust_system_roots:
        anchors.append(SystemRoots(ca_file=settings.system_ca_file))
    return anchors


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AnchorAttempt:
    """One anchor's decision on a presented chain."""

    anchor: str
    accepted: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class VerificationOutcome:
    """Result of verifying a chain against the configured anchors.

    Attributes:
        accepted: Whether an anchor accepted the chain.
        usage: Which side presented the chain.
        anchor: The accepting anchor, None when rejected.
        reason: The last anchor's rejection reason, None when accepted.
        attempts: Every anchor decision, in the order they were tried.
        pins: Leaf pins when the verifier runs in observation mode.
        path: The validated path, leaf first, ending at the trust root.
    """

    accepted: bool
    usage: ChainUsage
    anchor: TrustAnchorSpec | None = None
    reason: str | None = None
    attempts: tuple[AnchorAttempt, ...] = ()
    pins: PinObservation | None = None
    path: tuple[x509.Certificate, ...] = field(default=(), repr=False)

    @property
    def anchor_name(self) -> str | None:
        return self.anchor.name if self.anchor is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "accepted": self.accepted,
            "usage": self.usage.value,
            "anchor": self.anchor_name,
            "reason": self.reason,
            "attempts": [
                {"anchor": a.anchor, "accepted": a.accepted, "reason": a.reason}
                for a in self.attempts
            ],
            "pins": self.pins.to_dict() if self.pins else None,
        }


# ---------------------------------------------------------------------------
# Path validation
# ---------------------------------------------------------------------------


def _der(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(Encoding.DER)


def _describe(certificate: x509.Certificate) -> str:
    return certificate.subject.rfc4514_string() or f"serial {certificate.serial_number:x}"


def _check_validity(certificate: x509.Certificate, at: datetime) -> None:
    if at < certificate.not_valid_before_utc:
        msg = f"Certificate {_describe(certificate)} is not yet valid"
        raise PathValidationError(msg)
    if at >= certificate.not_valid_after_utc:
        msg = f"Certificate {_describe(certificate)} has expired"
        raise PathValidationError(msg)


def _check_usage(leaf: x509.Certificate, usage: ChainUsage) -> None:
    try:
        eku = leaf.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return
    if usage.extended_key_usage in eku or ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE in eku:
        return
    msg = f"Certificate {_describe(leaf)} is not valid for {usage.value} authentication"
    raise PathValidationError(msg)


# Extensions the validator understands well enough to accept when critical
HANDLED_CRITICAL_EXTENSIONS = frozenset(
    {
        ExtensionOID.BASIC_CONSTRAINTS,
        ExtensionOID.KEY_USAGE,
        ExtensionOID.EXTENDED_KEY_USAGE,
        ExtensionOID.SUBJECT_ALTERNATIVE_NAME,
        ExtensionOID.NAME_CONSTRAINTS,
        ExtensionOID.CERTIFICATE_POLICIES,
        ExtensionOID.SUBJECT_KEY_IDENTIFIER,
        ExtensionOID.AUTHORITY_KEY_IDENTIFIER,
    }
)


def _check_critical_extensions(certificate: x509.Certificate) -> None:
    for extension in certificate.extensions:
        if extension.critical and extension.oid not in HANDLED_CRITICAL_EXTENSIONS:
            msg = (
                f"Certificate {_describe(certificate)} has unhandled critical extension "
                f"{extension.oid.dotted_string}"
            )
            raise PathValidationError(msg)


def _domain_matches(host: str, constraint: str) -> bool:
    host = host.lower().rstrip(".")
    constraint = constraint.lower().rstrip(".")
    if not constraint:
        return True
    if constraint.startswith("."):
        return host.endswith(constraint)
    return host == constraint or host.endswith("." + constraint)


def _email_matches(address: str, constraint: str) -> bool:
    if "@" in constraint:
        return address.lower() == constraint.lower()
    domain = address.rpartition("@")[2].lower()
    constraint = constraint.lower()
    if constraint.startswith("."):
        return domain.endswith(constraint)
    return domain == constraint


def _uri_matches(uri: str, constraint: str) -> bool:
    host = urlsplit(uri).hostname
    if not host:
        return False
    if constraint.startswith("."):
        return host.lower().endswith(constraint.lower())
    return host.lower() == constraint.lower()


def _ip_matches(address: Any, network: Any) -> bool:
    return address.version == network.version and address in network


def _directory_matches(name: x509.Name, constraint: x509.Name) -> bool:
    return name.rdns[: len(constraint.rdns)] == constraint.rdns


_NAME_MATCHERS: dict[type, Callable[[Any, Any], bool]] = {
    x509.DNSName: lambda name, subtree: _domain_matches(name.value, subtree.value),
    x509.RFC822Name: lambda name, subtree: _email_matches(name.value, subtree.value),
    x509.UniformResourceIdentifier: lambda name, subtree: _uri_matches(name.value, subtree.value),
    x509.IPAddress: lambda name, subtree: _ip_matches(name.value, subtree.value),
    x509.DirectoryName: lambda name, subtree: _directory_matches(name.value, subtree.value),
}


def _looks_like_hostname(value: Any) -> bool:
    return isinstance(value, str) and value.isascii() and "." in value and " " not in value


def _constrained_names(certificate: x509.Certificate, *, is_leaf: bool) -> list[x509.GeneralName]:
    """Every name of ``certificate`` that name constraints apply to."""
    names: list[x509.GeneralName] = []
    subject = certificate.subject
    if subject.rdns:
        names.append(x509.DirectoryName(subject))
    for attribute in subject.get_attributes_for_oid(NameOID.EMAIL_ADDRESS):
        if isinstance(attribute.value, str) and attribute.value.isascii():
            names.append(x509.RFC822Name(attribute.value))
    try:
        names.extend(
            certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        )
    except x509.ExtensionNotFound:
        pass
    # Leaf without DNS alternative names: the common name is its host name
    if is_leaf and not any(isinstance(name, x509.DNSName) for name in names):
        for attribute in subject.get_attributes_for_oid(NameOID.COMMON_NAME):
            if _looks_like_hostname(attribute.value):
                names.append(x509.DNSName(attribute.value))
    return names


def _show_name(name: x509.GeneralName) -> str:
    if isinstance(name, x509.DirectoryName):
        return f"DirName:{name.value.rfc4514_string()}"
    return f"{type(name).__name__}:{name.value}"


def _constraint_violation(
    name: x509.GeneralName,
    constraints: x509.NameConstraints,
) -> str | None:
    permitted = [s for s in constraints.permitted_subtrees or () if type(s) is type(name)]
    excluded = [s for s in constraints.excluded_subtrees or () if type(s) is type(name)]
    if not permitted and not excluded:
        return None
    matcher = _NAME_MATCHERS.get(type(name))
    if matcher is None:
        return f"{type(name).__name__} names cannot be checked against name constraints"
    if any(matcher(name, subtree) for subtree in excluded):
        return f"{_show_name(name)} is excluded"
    if permitted and not any(matcher(name, subtree) for subtree in permitted):
        return f"{_show_name(name)} is not permitted"
    return None


def _check_name_constraints(path: Sequence[x509.Certificate]) -> None:
    """Apply every CA's name constraints to the certificates below it."""
    for ca_index in range(1, len(path)):
        ca = path[ca_index]
        try:
            constraints = ca.extensions.get_extension_for_class(x509.NameConstraints).value
        except x509.ExtensionNotFound:
            continue
        for index, certificate in enumerate(path[:ca_index]):
            # Self-issued intermediates are exempt
            if index > 0 and certificate.subject == certificate.issuer:
                continue
            for name in _constrained_names(certificate, is_leaf=index == 0):
                violation = _constraint_violation(name, constraints)
                if violation is not None:
                    msg = (
                        f"Certificate {_describe(certificate)} violates name constraints "
                        f"of {_describe(ca)}: {violation}"
                    )
                    raise PathValidationError(msg)


def _finish_path(path: list[x509.Certificate]) -> tuple[x509.Certificate, ...]:
    for certificate in path:
        _check_critical_extensions(certificate)
    _check_name_constraints(path)
    return tuple(path)


def _issuer_refusal(
    candidate: x509.Certificate,
    *,
    is_anchor: bool,
    ca_below: int,
) -> str | None:
    """Why ``candidate`` may not issue certificates, or None if it may."""
    try:
        constraints = candidate.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        # v1 trust anchors carry no extensions at all
        if is_anchor and candidate.version == x509.Version.v1:
            return None
        return f"issuer {_describe(candidate)} has no basic constraints"
    if not constraints.ca:
        return f"issuer {_describe(candidate)} is not a CA"
    if constraints.path_length is not None and ca_below > constraints.path_length:
        return f"issuer {_describe(candidate)} path length constraint exceeded"
    try:
        key_usage = candidate.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return None
    if not key_usage.key_cert_sign:
        return f"issuer {_describe(candidate)} may not sign certificates"
    return None


def _find_issuer(
    certificate: x509.Certificate,
    candidates: Iterable[x509.Certificate],
    *,
    is_anchor: bool,
    ca_below: int,
    refusals: list[str],
) -> x509.Certificate | None:
    for candidate in candidates:
        if candidate.subject != certificate.issuer:
            continue
        refusal = _issuer_refusal(candidate, is_anchor=is_anchor, ca_below=ca_below)
        if refusal is not None:
            refusals.append(refusal)
            continue
        try:
            certificate.verify_directly_issued_by(candidate)
        except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
            refusals.append(f"signature of {_describe(certificate)} does not verify")
            continue
        return candidate
    return None


def validate_path(
    chain: Sequence[x509.Certificate],
    roots: Sequence[x509.Certificate],
    *,
    usage: ChainUsage = ChainUsage.SERVER,
    at: datetime | None = None,
) -> tuple[x509.Certificate, ...]:
    """Validate that ``chain`` reaches one of ``roots``.

    The leaf is ``chain[0]``; the remaining elements are untrusted
    intermediates in any order. A chain element that is byte-identical to
    a root is trusted directly. Otherwise every link must have a matching
    issuer name, a verifying signature and an issuer allowed to sign
    certificates. Every certificate on the path must be inside its
    validity window at ``at`` and carry no critical extension outside
    HANDLED_CRITICAL_EXTENSIONS. Name constraints of every CA on the path
    (trust root included) apply to the subject and alternative names of
    the certificates it issued, directly or through intermediates.

    Returns:
        The validated path, leaf first, ending at the root.

    Raises:
        PathValidationError: If no valid path to a root exists.
    """
    if not chain:
        raise EmptyChainError()
    at = at or datetime.now(UTC)
    root_ders = {_der(root) for root in roots}
    intermediates = list(chain[1:])

    _check_usage(chain[0], usage)

    path: list[x509.Certificate] = []
    seen: set[bytes] = set()
    current = chain[0]
    refusals: list[str] = []

    while len(path) < MAX_PATH_DEPTH:
        der = _der(current)
        if der in seen:
            msg = f"Certificate chain loops at {_describe(current)}"
            raise PathValidationError(msg)
        seen.add(der)
        _check_validity(current, at)
        path.append(current)

        if der in root_ders:
            return _finish_path(path)

        ca_below = len(path) - 1
        issuer = _find_issuer(
            current, roots, is_anchor=True, ca_below=ca_below, refusals=refusals
        )
        if issuer is not None:
            _check_validity(issuer, at)
            path.append(issuer)
            return _finish_path(path)

        issuer = _find_issuer(
            current, intermediates, is_anchor=False, ca_below=ca_below, refusals=refusals
        )
        if issuer is None:
            detail = f": {refusals[-1]}" if refusals else ""
            msg = f"No trusted issuer found for {_describe(current)}{detail}"
            raise PathValidationError(msg)
        current = issuer

    msg = f"Certificate chain exceeds maximum depth of {MAX_PATH_DEPTH}"
    raise PathValidationError(msg)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _ResolvedAnchor:
    spec: TrustAnchorSpec
    roots: tuple[x509.Certificate, ...]

    @property
    def name(self) -> str:
        return self.spec.name


def _coerce_chain(chain: Sequence[x509.Certificate | bytes]) -> list[x509.Certificate]:
    certificates: list[x509.Certificate] = []
    for index, item in enumerate(chain):
        if isinstance(item, x509.Certificate):
            certificates.append(item)
        elif isinstance(item, bytes | bytearray | memoryview):
            try:
                certificates.append(x509.load_der_x509_certificate(bytes(item)))
            except ValueError as e:
                raise MalformedChainError(index, str(e)) from e
        else:
            raise MalformedChainError(index, f"unsupported type {type(item).__name__}")
    return certificates


class Verifier:
    """Ordered-anchor trust verifier.

    Built by build_verifier(). Stateless apart from its configuration, so a
    single instance can serve every handshake of one TLS context.
    """

    def __init__(
        self,
        anchors: Sequence[_ResolvedAnchor],
        *,
        observe_pins: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._anchors = tuple(anchors)
        self._observe_pins = observe_pins
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def anchors(self) -> tuple[TrustAnchorSpec, ...]:
        return tuple(a.spec for a in self._anchors)

    @property
    def observe_pins(self) -> bool:
        return self._observe_pins

    def accepted_issuers(self) -> frozenset[x509.Certificate]:
        """Union of every anchor's trusted certificates."""
        return frozenset(root for anchor in self._anchors for root in anchor.roots)

    def verify(
        self,
        chain: Sequence[x509.Certificate | bytes],
        usage: ChainUsage = ChainUsage.SERVER,
    ) -> VerificationOutcome:
        """Decide whether a presented chain is trusted.

        Args:
            chain: Presented certificates, leaf first. DER bytes are accepted.
            usage: Which side of the connection presented the chain.

        Returns:
            An accepted VerificationOutcome naming the accepting anchor.

        Raises:
            EmptyChainError: If ``chain`` is empty.
            MalformedChainError: If an element is not a decodable certificate.
            ChainRejectedError: If every anchor rejected the chain.
        """
        if not chain:
            raise EmptyChainError()
        certificates = _coerce_chain(chain)

        pins = None
        if self._observe_pins:
            pins = observe(certificates[0])
            logger.info("%s: %s", usage.value.capitalize(), pins.subject)
            logger.info("Issuer: %s", pins.issuer)
            logger.info("Public key pin (SHA-256): %s", pins.public_key_pin)
            logger.info("Certificate pin (SHA-256): %s", pins.certificate_pin)

        at = self._clock()
        attempts: list[AnchorAttempt] = []
        for anchor in self._anchors:
            try:
                path = validate_path(certificates, anchor.roots, usage=usage, at=at)
            except Exception as e:
                reason = str(e) or type(e).__name__
                attempts.append(AnchorAttempt(anchor.name, accepted=False, reason=reason))
                logger.debug("Trust anchor %s rejected chain: %s", anchor.name, reason)
                continue

            attempts.append(AnchorAttempt(anchor.name, accepted=True))
            logger.debug(
                "Trust anchor %s accepted chain for %s",
                anchor.name,
                _describe(certificates[0]),
            )
            return VerificationOutcome(
                accepted=True,
                usage=usage,
                anchor=anchor.spec,
                attempts=tuple(attempts),
                pins=pins,
                path=path,
            )

        reason = attempts[-1].reason if attempts else "No trust anchors configured"
        outcome = VerificationOutcome(
            accepted=False,
            usage=usage,
            reason=reason,
            attempts=tuple(attempts),
            pins=pins,
        )
        logger.warning(
            "Certificate validation failed for %s with all %d trust anchor(s): %s",
            _describe(certificates[0]),
            len(attempts),
            reason,
        )
        raise ChainRejectedError(outcome)


def build_verifier(
    anchors: Sequence[TrustAnchorSpec],
    *,
    observe_pins: bool = False,
    clock: Callable[[], datetime] | None = None,
) -> Verifier:
    """Compose trust anchors into a Verifier.

    System roots are resolved once, here, so later verifications never
    touch the filesystem.

    Args:
        anchors: Anchor specs in fallback order.
        observe_pins: Log the leaf's ``sha256/`` pins on every verify().
        clock: Source of the current UTC time (for tests).

    Raises:
        TypeError: If an element is not a SystemRoots or PinnedCertificate.
    """
    resolved: list[_ResolvedAnchor] = []
    for spec in anchors:
        if not isinstance(spec, SystemRoots | PinnedCertificate):
            msg = f"Unsupported trust anchor: {spec!r}"
            raise TypeError(msg)
        resolved.append(_ResolvedAnchor(spec=spec, roots=spec.load_roots()))

    logger.debug(
        "Built verifier with anchors [%s], observe_pins=%s",
        ", ".join(a.name for a in resolved),
        observe_pins,
    )
    return Verifier(resolved, observe_pins=observe_pins, clock=clock)


def verify_chain(
    chain: Sequence[x509.Certificate | bytes],
    anchors: Sequence[TrustAnchorSpec],
    usage: ChainUsage = ChainUsage.SERVER,
    *,
    observe_pins: bool = False,
) -> VerificationOutcome:
    """Build a one-off verifier from ``anchors`` and verify ``chain`` with it.

    Raises:
        EmptyChainError, MalformedChainError, ChainRejectedError: As
            Verifier.verify().
    """
    return build_verifier(anchors, observe_pins=observe_pins).verify(chain, usage)
