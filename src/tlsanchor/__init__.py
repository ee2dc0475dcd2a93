"""tlsanchor - ephemeral TLS identities and layered trust verification.

Issues short-lived, self-signed TLS certificates in memory and builds an
ordered trust-verification chain (pinned certificates, system roots) that a
TLS client consults on every handshake.

Note: Private keys and certificates are never persisted. Each session gets a
fresh identity that lives as long as the TLS context embedding it.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
