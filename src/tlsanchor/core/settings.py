"""Singleton settings accessor for tlsanchor configuration.

Usage:
    from tlsanchor.core.settings import get_settings

    settings = get_settings()
    policy = IssuancePolicy.from_settings(settings.issuance)

The settings are loaded once and cached. To reload settings (e.g., in tests),
use clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from tlsanchor.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached application settings.

    Settings are loaded from environment variables on first call and
    cached for subsequent calls.

    Returns:
        Validated Settings instance.

    Raises:
        SystemExit: If settings cannot be loaded or fail validation.
    """
    try:
        logger.debug("Loading tlsanchor settings from environment")
        settings = Settings()
        validate_settings(settings)

        logger.info(
            "Configuration loaded: environment=%s, key_bits=%d, validity=%s, policy_hash=%s",
            settings.environment.value,
            settings.issuance.key_bits,
            settings.issuance.validity,
            settings.get_policy_hash()[:16] + "...",
        )
        return settings

    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e

    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Use this function in tests to reset settings between test cases,
    or when configuration needs to be reloaded.
    """
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")
