"""tlsanchor core module.

Shared components used across all services:
- Configuration management
- Exception hierarchy
"""

from tlsanchor.core.config import (
    ConfigValidationError,
    Environment,
    IssuanceSettings,
    Settings,
    SignatureAlgorithm,
    VerifierSettings,
)
from tlsanchor.core.settings import (
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "ConfigValidationError",
    "Environment",
    "IssuanceSettings",
    "Settings",
    "SignatureAlgorithm",
    "VerifierSettings",
    "clear_settings_cache",
    "get_settings",
]
