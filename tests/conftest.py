"""Pytest configuration and shared fixtures.

RSA key generation is slow, so issued identities used across many tests are
session-scoped. Tests that need a fresh identity issue their own.
"""

from datetime import timedelta

import pytest

from factories import ReusedKeyProvider, make_ca, make_leaf
from tlsanchor.services.issuer import IssuancePolicy, SubjectAttributes, issue_certificate
from tlsanchor.services.providers import ProviderRegistry


# ---------------------------------------------------------------------------
# Issued identities
# ---------------------------------------------------------------------------
@pytest.fixture(scope="session")
def dynamic_policy() -> IssuancePolicy:
    """One-day policy with the local-test subject."""
    return IssuancePolicy(
        validity=timedelta(days=1),
        subject=SubjectAttributes(
            common_name="Dynamic Certificate",
            organization="PinningApp",
            organizational_unit="Security",
            locality="Temporary",
            country="US",
        ),
    )


@pytest.fixture(scope="session")
def identity(dynamic_policy):
    """A (KeyPair, Certificate) pair issued once per test session."""
    return issue_certificate(dynamic_policy)


@pytest.fixture(scope="session")
def twin_identity(dynamic_policy):
    """An independently issued identity with the same subject as ``identity``."""
    return issue_certificate(dynamic_policy)


@pytest.fixture(scope="session")
def certificate(identity):
    return identity[1]


@pytest.fixture(scope="session")
def twin_certificate(twin_identity):
    return twin_identity[1]


# ---------------------------------------------------------------------------
# Stand-in system root store
# ---------------------------------------------------------------------------
@pytest.fixture(scope="session")
def root_ca():
    """(key, certificate) of a test root CA."""
    return make_ca("Test Root CA")


@pytest.fixture(scope="session")
def server_chain(root_ca):
    """Chain [leaf] for a server certificate issued directly by ``root_ca``."""
    _, leaf = make_leaf(root_ca, "api.example.test")
    return [leaf]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------
@pytest.fixture
def reused_provider(identity) -> ReusedKeyProvider:
    """Provider that reuses the session identity's 2048-bit key."""
    return ReusedKeyProvider(identity[0].private_key)


@pytest.fixture
def fast_registry(reused_provider) -> ProviderRegistry:
    """Registry whose only provider is ``reused_provider``."""
    return ProviderRegistry(default=reused_provider)
