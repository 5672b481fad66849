"""
Error taxonomy for ctxvault.

Validation failures are raised before any I/O.  Capability degradation
(embedding model or vector index unavailable) is never surfaced to callers
as an exception: it is logged and reported as a note on the response.
"""


class VaultError(Exception):
    """Base class for all ctxvault errors."""


class ValidationError(VaultError, ValueError):
    """Malformed or oversized input, or out-of-range configuration."""


class NotFoundError(VaultError, LookupError):
    """Unknown entry id or identity key."""


class VaultIOError(VaultError, OSError):
    """Vault file-system failure (missing root, permissions, ...)."""


class CapabilityDegraded(VaultError):
    """Embedding or vector search unavailable.  Caught internally."""


class ConsistencyWarning(UserWarning):
    """Stored file paths do not match the configured vault root."""
