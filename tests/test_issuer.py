"""Tests for the ephemeral certificate issuer.

Tests cover:
- Validity window, serial number and subject of issued certificates
- Mandatory critical extensions and self-signature
- Policy validation
- Provider fallback and issuance failures
- Async issuance
"""

import asyncio
import logging
import time
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from cryptography.x509 import NameOID

from factories import BrokenProvider, ReusedKeyProvider, UnavailableProvider
from tlsanchor.core.config import IssuanceSettings, SignatureAlgorithm
from tlsanchor.core.errors import (
    IssuanceError,
    IssuanceFailure,
    InvalidPolicyError,
    ProviderChainError,
)
from tlsanchor.services.issuer import (
    IssuancePolicy,
    KeyPair,
    SubjectAttributes,
    issue_certificate,
    issue_certificate_async,
)
from tlsanchor.services.providers import ProviderRegistry

FIXED_NOW = datetime(2026, 3, 1, 12, 30, 15, 987654, tzinfo=UTC)


def _fixed_clock() -> datetime:
    return FIXED_NOW


# ---------------------------------------------------------------------------
# Issued certificate contents
# ---------------------------------------------------------------------------


class TestIssuedCertificate:
    """Tests for the certificate produced by issue_certificate()."""

    def test_default_key_is_rsa_2048(self, identity):
        """Test that the default policy generates an RSA 2048 key with F4."""
        key_pair, certificate = identity

        assert key_pair.key_bits == 2048
        assert key_pair.public_key.public_numbers().e == 65537
        assert certificate.public_key().public_numbers() == key_pair.public_key.public_numbers()

    def test_subject_equals_issuer(self, certificate):
        """Test that issued certificates are self-issued."""
        assert certificate.subject == certificate.issuer

    def test_subject_attributes(self, certificate):
        """Test that every configured attribute appears in the subject."""
        subject = certificate.subject

        assert subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == (
            "Dynamic Certificate"
        )
        assert subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "PinningApp"
        assert subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)[0].value == (
            "Security"
        )
        assert subject.get_attributes_for_oid(NameOID.LOCALITY_NAME)[0].value == "Temporary"
        assert subject.get_attributes_for_oid(NameOID.COUNTRY_NAME)[0].value == "US"

    def test_self_signature_verifies(self, certificate):
        """Test that the signature verifies with the embedded public key."""
        certificate.verify_directly_issued_by(certificate)

    def test_default_signature_algorithm_is_sha256(self, certificate):
        """Test that SHA256withRSA is the default signature algorithm."""
        assert isinstance(certificate.signature_hash_algorithm, hashes.SHA256)

    def test_serial_is_positive(self, certificate):
        """Test that the serial number is positive and fits 20 octets."""
        assert certificate.serial_number > 0
        assert certificate.serial_number.bit_length() <= 159

    def test_basic_constraints_critical_not_ca(self, certificate):
        """Test that BasicConstraints is critical and marks a non-CA."""
        ext = certificate.extensions.get_extension_for_class(x509.BasicConstraints)

        assert ext.critical is True
        assert ext.value.ca is False

    def test_key_usage_critical(self, certificate):
        """Test that KeyUsage is critical with exactly the two TLS bits set."""
        ext = certificate.extensions.get_extension_for_class(x509.KeyUsage)

        assert ext.critical is True
        assert ext.value.digital_signature is True
        assert ext.value.key_encipherment is True
        assert ext.value.key_cert_sign is False
        assert ext.value.crl_sign is False
        assert ext.value.content_commitment is False
        assert ext.value.data_encipherment is False
        assert ext.value.key_agreement is False

    def test_extensions_appear_once(self, certificate):
        """Test that the certificate carries each extension exactly once."""
        oids = [ext.oid for ext in certificate.extensions]

        assert sorted(o.dotted_string for o in oids) == sorted(
            [
                x509.oid.ExtensionOID.BASIC_CONSTRAINTS.dotted_string,
                x509.oid.ExtensionOID.KEY_USAGE.dotted_string,
            ]
        )

    def test_public_key_der_is_spki(self, identity):
        """Test that KeyPair.public_key_der() matches the certificate SPKI."""
        key_pair, certificate = identity
        spki = certificate.public_key().public_bytes(
            Encoding.DER, PublicFormat.SubjectPublicKeyInfo
        )

        assert key_pair.public_key_der() == spki

    def test_key_pair_repr_hides_private_key(self, identity):
        """Test that the private key never shows up in repr."""
        key_pair, _ = identity

        assert "private_key" not in repr(key_pair)
        assert repr(key_pair) == "KeyPair()"


# ---------------------------------------------------------------------------
# Validity window
# ---------------------------------------------------------------------------


class TestValidity:
    """Tests for the issued validity window."""

    @pytest.mark.parametrize(
        "validity",
        [
            timedelta(seconds=1),
            timedelta(hours=1),
            timedelta(days=1),
            timedelta(days=365),
            timedelta(days=366),
            timedelta(days=2, hours=3, minutes=4, seconds=5),
        ],
    )
    def test_validity_is_exact(self, fast_registry, validity):
        """Test that not_after - not_before equals the policy validity."""
        policy = IssuancePolicy(validity=validity)

        _, certificate = issue_certificate(policy, providers=fast_registry, clock=_fixed_clock)

        assert certificate.not_valid_after_utc - certificate.not_valid_before_utc == validity

    def test_not_before_is_issuance_time_truncated(self, fast_registry):
        """Test that not_before is the clock time truncated to whole seconds."""
        _, certificate = issue_certificate(providers=fast_registry, clock=_fixed_clock)

        assert certificate.not_valid_before_utc == FIXED_NOW.replace(microsecond=0)

    def test_default_clock_is_now(self, fast_registry):
        """Test that without a clock the window starts at the current time."""
        before = datetime.now(UTC).replace(microsecond=0)
        _, certificate = issue_certificate(providers=fast_registry)
        after = datetime.now(UTC)

        assert before <= certificate.not_valid_before_utc <= after

    def test_long_lived_policy_is_one_year(self, fast_registry):
        """Test the 365-day profile and its subject."""
        _, certificate = issue_certificate(
            IssuancePolicy.long_lived(), providers=fast_registry, clock=_fixed_clock
        )

        assert certificate.not_valid_after_utc - certificate.not_valid_before_utc == timedelta(
            days=365
        )
        subject = certificate.subject
        assert subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == (
            "DynamicSecurityCert"
        )
        assert subject.get_attributes_for_oid(NameOID.LOCALITY_NAME)[0].value == "Local"
        assert subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME) == []


# ---------------------------------------------------------------------------
# Uniqueness and options
# ---------------------------------------------------------------------------


class TestUniqueness:
    """Tests for per-call uniqueness."""

    def test_serials_unique_across_many_calls(self, fast_registry):
        """Test that 1000 issuances produce 1000 distinct serial numbers."""
        serials = {
            issue_certificate(providers=fast_registry)[1].serial_number for _ in range(1000)
        }

        assert len(serials) == 1000

    def test_fresh_key_per_call(self, identity, twin_identity):
        """Test that two default issuances use different keys."""
        assert identity[0].public_key_der() != twin_identity[0].public_key_der()
        assert identity[1].serial_number != twin_identity[1].serial_number


class TestSignatureAlgorithm:
    """Tests for the signature algorithm option."""

    @pytest.mark.parametrize(
        ("algorithm", "expected"),
        [
            (SignatureAlgorithm.SHA384_WITH_RSA, hashes.SHA384),
            (SignatureAlgorithm.SHA512_WITH_RSA, hashes.SHA512),
        ],
    )
    def test_alternative_algorithms(self, fast_registry, algorithm, expected):
        """Test that the configured hash is used for the self-signature."""
        policy = IssuancePolicy(signature_algorithm=algorithm)

        _, certificate = issue_certificate(policy, providers=fast_registry)

        assert isinstance(certificate.signature_hash_algorithm, expected)
        certificate.verify_directly_issued_by(certificate)


# ---------------------------------------------------------------------------
# Policy validation
# ---------------------------------------------------------------------------


class TestIssuancePolicy:
    """Tests for IssuancePolicy and SubjectAttributes validation."""

    def test_ephemeral_defaults(self):
        """Test the ephemeral profile defaults."""
        policy = IssuancePolicy.ephemeral()

        assert policy.key_bits == 2048
        assert policy.validity == timedelta(days=1)
        assert policy.subject.common_name == "Dynamic Certificate"
        assert policy.subject.organizational_unit == "Security"
        assert policy.signature_algorithm == SignatureAlgorithm.SHA256_WITH_RSA

    @pytest.mark.parametrize(
        ("kwargs", "field"),
        [
            ({"key_bits": 1024}, "key_bits"),
            ({"validity": timedelta(0)}, "validity"),
            ({"validity": timedelta(seconds=-5)}, "validity"),
            ({"validity": timedelta(days=367)}, "validity"),
            ({"validity": timedelta(seconds=1, microseconds=500)}, "validity"),
            ({"validity": 86400}, "validity"),
            ({"signature_algorithm": "SHA1withRSA"}, "signature_algorithm"),
        ],
    )
    def test_invalid_policy(self, kwargs, field):
        """Test that invalid policies are rejected at construction."""
        with pytest.raises(InvalidPolicyError) as exc_info:
            IssuancePolicy(**kwargs)

        assert exc_info.value.field == field

    @pytest.mark.parametrize(
        ("kwargs", "field"),
        [
            ({"common_name": ""}, "common_name"),
            ({"common_name": "   "}, "common_name"),
            ({"common_name": "x" * 65}, "common_name"),
            ({"organization": ""}, "organization"),
            ({"country": "USA"}, "country"),
            ({"country": "1A"}, "country"),
        ],
    )
    def test_invalid_subject(self, kwargs, field):
        """Test that invalid subject attributes are rejected."""
        values = {"common_name": "test", "organization": "org", **kwargs}

        with pytest.raises(InvalidPolicyError) as exc_info:
            SubjectAttributes(**values)

        assert exc_info.value.field == field

    def test_invalid_policy_is_value_error(self):
        """Test that policy errors can be caught as ValueError."""
        with pytest.raises(ValueError):
            IssuancePolicy(key_bits=512)

    def test_subject_name_order(self):
        """Test that names are built CN, O, OU, L, C."""
        name = SubjectAttributes(
            common_name="cn",
            organization="o",
            organizational_unit="ou",
            locality="l",
            country="de",
        ).to_name()

        assert [attr.oid for attr in name] == [
            NameOID.COMMON_NAME,
            NameOID.ORGANIZATION_NAME,
            NameOID.ORGANIZATIONAL_UNIT_NAME,
            NameOID.LOCALITY_NAME,
            NameOID.COUNTRY_NAME,
        ]
        assert name.get_attributes_for_oid(NameOID.COUNTRY_NAME)[0].value == "DE"

    def test_optional_attributes_omitted(self):
        """Test that unset optional attributes are left out of the name."""
        name = SubjectAttributes(common_name="cn", organization="o").to_name()

        assert len(list(name)) == 2

    def test_from_settings(self):
        """Test building a policy from IssuanceSettings."""
        settings = IssuanceSettings(
            key_bits=3072,
            validity=timedelta(hours=2),
            common_name="svc",
            organization="Acme",
            organizational_unit=None,
            locality=None,
            country="de",
            signature_algorithm=SignatureAlgorithm.SHA384_WITH_RSA,
        )

        policy = IssuancePolicy.from_settings(settings)

        assert policy.key_bits == 3072
        assert policy.validity == timedelta(hours=2)
        assert policy.subject.common_name == "svc"
        assert policy.subject.organizational_unit is None
        assert policy.subject.country == "DE"
        assert policy.signature_algorithm == SignatureAlgorithm.SHA384_WITH_RSA


# ---------------------------------------------------------------------------
# Provider fallback and failures
# ---------------------------------------------------------------------------


class TestProviderFallback:
    """Tests for issuance through the provider chain."""

    def test_unavailable_provider_falls_back(self, reused_provider, caplog):
        """Test that an unavailable preferred provider is skipped with a diagnostic."""
        caplog.set_level(logging.WARNING, logger="tlsanchor")
        registry = ProviderRegistry([UnavailableProvider()], default=reused_provider)

        key_pair, certificate = issue_certificate(providers=registry)

        certificate.verify_directly_issued_by(certificate)
        assert key_pair.key_bits == 2048
        assert "offline-hsm" in caplog.text
        assert "Falling back to reused provider for key_generation" in caplog.text

    def test_broken_provider_falls_back(self, reused_provider, caplog):
        """Test that a failing provider is skipped for every step."""
        caplog.set_level(logging.WARNING, logger="tlsanchor")
        registry = ProviderRegistry([BrokenProvider()], default=reused_provider)

        _, certificate = issue_certificate(providers=registry)

        certificate.verify_directly_issued_by(certificate)
        for step in ("key_generation", "signing", "certificate_conversion"):
            assert f"Falling back to reused provider for {step}" in caplog.text

    def test_fallback_result_matches_direct_issuance(self, reused_provider):
        """Test that falling back does not change the issued certificate."""
        direct = ProviderRegistry(default=reused_provider)
        fallback = ProviderRegistry([UnavailableProvider()], default=reused_provider)

        _, first = issue_certificate(providers=direct, clock=_fixed_clock)
        _, second = issue_certificate(providers=fallback, clock=_fixed_clock)

        assert first.subject == second.subject
        assert first.not_valid_before_utc == second.not_valid_before_utc
        assert first.not_valid_after_utc == second.not_valid_after_utc
        assert first.public_key().public_numbers() == second.public_key().public_numbers()

    def test_all_providers_fail(self, caplog):
        """Test that issuance fails when every provider fails key generation."""
        caplog.set_level(logging.ERROR, logger="tlsanchor")
        registry = ProviderRegistry([BrokenProvider("first")], default=BrokenProvider("last"))

        with pytest.raises(IssuanceFailure) as exc_info:
            issue_certificate(providers=registry)

        error = exc_info.value
        assert error.step == "key_generation"
        assert [a.provider for a in error.attempts] == ["first", "last"]
        assert isinstance(error.__cause__, ProviderChainError)
        assert isinstance(error.__cause__.__cause__, RuntimeError)
        assert "last key generation exploded" in str(error.__cause__.__cause__)
        assert "Certificate issuance failed during key_generation" in caplog.text

    def test_issuance_failure_is_issuance_error(self):
        """Test that IssuanceFailure is catchable as IssuanceError."""
        registry = ProviderRegistry(default=UnavailableProvider())

        with pytest.raises(IssuanceError):
            issue_certificate(providers=registry)

    def test_wrong_key_size_from_provider(self, reused_provider):
        """Test that a provider ignoring the requested size is rejected."""
        registry = ProviderRegistry(default=reused_provider)

        with pytest.raises(IssuanceFailure) as exc_info:
            issue_certificate(IssuancePolicy(key_bits=3072), providers=registry)

        error = exc_info.value
        assert error.step == "key_generation"
        assert [a.provider for a in error.attempts] == ["reused"]
        assert "2048-bit key" in error.attempts[0].reason
        assert isinstance(error.__cause__, ProviderChainError)

    def test_wrong_key_size_falls_back(self, identity, caplog):
        """Test that a wrong-size key from the preferred provider falls back to the default."""
        caplog.set_level(logging.WARNING, logger="tlsanchor")
        preferred = ReusedKeyProvider(identity[0].private_key)
        registry = ProviderRegistry([preferred])

        key_pair, certificate = issue_certificate(IssuancePolicy(key_bits=3072), providers=registry)

        assert preferred.calls == ["key_generation"]
        assert key_pair.key_bits == 3072
        assert certificate.public_key().key_size == 3072
        assert "Falling back to cryptography provider for key_generation" in caplog.text

    def test_provider_returning_foreign_certificate(self, identity, twin_certificate):
        """Test that a certificate not matching the generated key is rejected."""

        class SwappingProvider(ReusedKeyProvider):
            def load_certificate(self, der):
                return twin_certificate

        registry = ProviderRegistry(default=SwappingProvider(identity[0].private_key))

        with pytest.raises(IssuanceFailure) as exc_info:
            issue_certificate(providers=registry)

        error = exc_info.value
        assert error.step == "certificate_conversion"
        assert [a.provider for a in error.attempts] == ["reused"]
        assert isinstance(error.__cause__.__cause__, ValueError)

    def test_foreign_certificate_falls_back(self, identity, twin_certificate, reused_provider):
        """Test that a bad certificate from the preferred provider falls back to the default."""

        class SwappingProvider(ReusedKeyProvider):
            name = "swapping"

            def load_certificate(self, der):
                return twin_certificate

        registry = ProviderRegistry(
            [SwappingProvider(identity[0].private_key)], default=reused_provider
        )

        key_pair, certificate = issue_certificate(providers=registry)

        assert certificate != twin_certificate
        assert certificate.public_key().public_numbers() == key_pair.public_key.public_numbers()

    def test_signature_with_foreign_key_falls_back(self, identity, twin_identity, reused_provider):
        """Test that a provider signing with the wrong key is skipped for signing."""
        foreign_key = twin_identity[0].private_key

        class ForeignSigningProvider(ReusedKeyProvider):
            name = "foreign-signer"

            def sign_certificate(self, builder, private_key, algorithm):
                return builder.sign(foreign_key, algorithm)

        registry = ProviderRegistry(
            [ForeignSigningProvider(identity[0].private_key)], default=reused_provider
        )

        _, certificate = issue_certificate(providers=registry)

        certificate.verify_directly_issued_by(certificate)


# ---------------------------------------------------------------------------
# Async issuance
# ---------------------------------------------------------------------------


class SlowProvider(ReusedKeyProvider):
    """Provider that blocks during key generation."""

    def generate_rsa_key(self, key_bits):
        time.sleep(0.5)
        return super().generate_rsa_key(key_bits)


class TestAsyncIssuance:
    """Tests for issue_certificate_async()."""

    async def test_issues_in_worker_thread(self, fast_registry):
        """Test that async issuance returns a valid identity."""
        key_pair, certificate = await issue_certificate_async(providers=fast_registry)

        assert isinstance(key_pair, KeyPair)
        certificate.verify_directly_issued_by(certificate)

    async def test_concurrent_issuance(self, fast_registry):
        """Test that concurrent issuances produce distinct certificates."""
        results = await asyncio.gather(
            *(issue_certificate_async(providers=fast_registry, timeout=30) for _ in range(5))
        )

        assert len({cert.serial_number for _, cert in results}) == 5

    async def test_timeout(self, identity):
        """Test that a deadline shorter than key generation raises TimeoutError."""
        registry = ProviderRegistry(default=SlowProvider(identity[0].private_key))

        with pytest.raises(TimeoutError):
            await issue_certificate_async(providers=registry, timeout=0.01)

    async def test_failure_propagates(self):
        """Test that issuance failures surface from the worker thread."""
        registry = ProviderRegistry(default=BrokenProvider())

        with pytest.raises(IssuanceFailure):
            await issue_certificate_async(providers=registry)
