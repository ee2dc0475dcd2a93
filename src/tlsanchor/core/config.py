"""Configuration management for tlsanchor.

This module provides centralized configuration using Pydantic Settings.
Configuration covers the defaults for certificate issuance and the trust
anchors a verifier is built from.

All configuration is loaded from environment variables with the TLSANCHOR_
prefix. Nested settings use double underscore as delimiter (e.g.,
TLSANCHOR_ISSUANCE__KEY_BITS).

Example:
    export TLSANCHOR_ISSUANCE__VALIDITY=P1D
    export TLSANCHOR_VERIFIER__TRUST_SYSTEM_ROOTS=true
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, Self

from cryptography.hazmat.primitives import hashes
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Longest validity accepted for an issued identity
MAX_VALIDITY = timedelta(days=366)

MIN_RSA_KEY_BITS = 2048


class Environment(str, Enum):
    """Deployment environment.

    Production disables pin observation logging.
    """

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class SignatureAlgorithm(str, Enum):
    """Signature algorithm used to self-sign issued certificates."""

    SHA256_WITH_RSA = "SHA256withRSA"
    SHA384_WITH_RSA = "SHA384withRSA"
    SHA512_WITH_RSA = "SHA512withRSA"

    def hash_algorithm(self) -> hashes.HashAlgorithm:
        """Return the hash instance to pass to the signer."""
        if self is SignatureAlgorithm.SHA384_WITH_RSA:
            return hashes.SHA384()
        if self is SignatureAlgorithm.SHA512_WITH_RSA:
            return hashes.SHA512()
        return hashes.SHA256()


class IssuanceSettings(BaseSettings):
    """Defaults for certificate issuance.

    The defaults describe an ephemeral local-test identity: RSA 2048,
    valid for one day.
    """

    model_config = SettingsConfigDict(
        env_prefix="TLSANCHOR_ISSUANCE__",
        extra="ignore",
    )

    key_bits: Annotated[int, Field(ge=MIN_RSA_KEY_BITS, le=16384)] = Field(
        default=2048,
        description="RSA key size in bits",
    )
    validity: timedelta = Field(
        default=timedelta(days=1),
        description="Certificate validity window (seconds or ISO 8601 duration)",
    )
    common_name: str = Field(
        default="Dynamic Certificate",
        description="Subject common name (CN)",
    )
    organization: str = Field(
        default="PinningApp",
        description="Subject organization (O)",
    )
    organizational_unit: str | None = Field(
        default="Security",
        description="Subject organizational unit (OU), optional",
    )
    locality: str | None = Field(
        default="Temporary",
        description="Subject locality (L), optional",
    )
    country: str | None = Field(
        default="US",
        description="Subject two-letter country code (C), optional",
    )
    signature_algorithm: SignatureAlgorithm = Field(
        default=SignatureAlgorithm.SHA256_WITH_RSA,
        description="Signature algorithm for self-signing",
    )
    preferred_provider: str | None = Field(
        default=None,
        description="Name of the crypto provider to try first",
    )

    @field_validator("validity")
    @classmethod
    def validate_validity(cls, v: timedelta) -> timedelta:
        """Require a positive, whole-second validity of at most 366 days."""
        if v <= timedelta(0):
            msg = "Validity must be positive"
            raise ValueError(msg)
        if v > MAX_VALIDITY:
            msg = f"Validity must not exceed {MAX_VALIDITY.days} days"
            raise ValueError(msg)
        if v.microseconds:
            msg = "Validity must be a whole number of seconds"
            raise ValueError(msg)
        return v

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str | None) -> str | None:
        """Country names in X.509 are exactly two letters."""
        if v is not None and (len(v) != 2 or not v.isalpha()):
            msg = "Country must be a two-letter code"
            raise ValueError(msg)
        return v.upper() if v else v


class VerifierSettings(BaseSettings):
    """Trust anchors and observation mode for built verifiers."""

    model_config = SettingsConfigDict(
        env_prefix="TLSANCHOR_VERIFIER__",
        extra="ignore",
    )

    trust_system_roots: bool = Field(
        default=False,
        description="Fall back to the system root store after pinned anchors",
    )
    system_ca_file: str | None = Field(
        default=None,
        description="PEM bundle to use instead of the platform default root store",
    )
    observe_pins: bool = Field(
        default=False,
        description="Log sha256/ pins of every presented leaf certificate",
    )


class Settings(BaseSettings):
    """Main tlsanchor configuration container.

    Loads all configuration from environment variables with TLSANCHOR_
    prefix. Nested settings use double underscore delimiter.

    Example environment variables:
        TLSANCHOR_ENVIRONMENT=staging
        TLSANCHOR_LOG_LEVEL=DEBUG
        TLSANCHOR_ISSUANCE__KEY_BITS=3072
        TLSANCHOR_VERIFIER__OBSERVE_PINS=true
    """

    model_config = SettingsConfigDict(
        env_prefix="TLSANCHOR_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_default=True,
    )

    environment: Environment = Field(
        default=Environment.DEV,
        description="Deployment environment (dev, staging, production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    issuance: IssuanceSettings = Field(default_factory=IssuanceSettings)
    verifier: VerifierSettings = Field(default_factory=VerifierSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and check the logging level name."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            msg = f"Log level must be one of: {', '.join(sorted(allowed))}"
            raise ValueError(msg)
        return v.upper()

    @model_validator(mode="after")
    def validate_production_constraints(self) -> Self:
        """Enforce production environment constraints."""
        if self.is_production:
            if self.verifier.observe_pins:
                msg = "Pin observation logging is not allowed in production environment"
                raise ValueError(msg)
            if self.issuance.key_bits < 3072:
                logger.warning(
                    "Issuing %d-bit RSA keys in production. "
                    "Consider TLSANCHOR_ISSUANCE__KEY_BITS=3072 or higher.",
                    self.issuance.key_bits,
                )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    def get_policy_snapshot(self) -> dict[str, Any]:
        """Generate a snapshot of the effective configuration for logging.

        Returns:
            Dictionary containing non-sensitive configuration values.
        """
        return {
            "environment": self.environment.value,
            "issuance": {
                "key_bits": self.issuance.key_bits,
                "validity_seconds": int(self.issuance.validity.total_seconds()),
                "signature_algorithm": self.issuance.signature_algorithm.value,
                "preferred_provider": self.issuance.preferred_provider,
            },
            "verifier": {
                "trust_system_roots": self.verifier.trust_system_roots,
                "system_ca_file": self.verifier.system_ca_file,
                "observe_pins": self.verifier.observe_pins,
            },
        }

    def get_policy_hash(self) -> str:
        """Compute a SHA-256 hex digest of the configuration snapshot."""
        snapshot_json = json.dumps(self.get_policy_snapshot(), sort_keys=True)
        return hashlib.sha256(snapshot_json.encode()).hexdigest()


class ConfigValidationError(Exception):
    """Raised when configuration validation fails.

    This exception should cause fast failure at startup to prevent
    running with invalid configuration.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


def validate_settings(settings: Settings) -> None:
    """Perform runtime validation that Pydantic cannot express declaratively.

    Args:
        settings: Settings instance to validate.

    Raises:
        ConfigValidationError: If validation fails.
    """
    ca_file = settings.verifier.system_ca_file
    if ca_file is not None and not ca_file.strip():
        raise ConfigValidationError(
            "System CA file must not be blank. Unset TLSANCHOR_VERIFIER__SYSTEM_CA_FILE.",
            field="verifier.system_ca_file",
        )
    if ca_file and not settings.verifier.trust_system_roots:
        logger.warning(
            "System CA file %s is configured but system roots are not trusted; ignoring it",
            ca_file,
        )

    logger.info(
        "Configuration validated. Policy hash: %s",
        settings.get_policy_hash(),
    )
