"""
Error types.

What a caller can rely on:
- Any CortexError from store/relate/validate/delete means the primary
  record did NOT change.
- A ConsistencyWarning means the primary change happened but a secondary
  index (vector index, index metadata) is stale. It is a warning, never a
  failure.
"""


class CortexError(Exception):
    """Base class for every error raised by Cortex."""


class NotFoundError(CortexError):
    """A memory or relation with the given ID does not exist."""

    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} not found: {item_id}")


class ValidationError(CortexError, ValueError):
    """Input was rejected before anything was written."""


class StorageError(CortexError):
    """SQLite or the vector index failed to open, migrate, read or write."""


class ProviderError(CortexError):
    """The embedding provider could not produce a vector."""


class ConfigError(CortexError):
    """Configuration is missing or invalid."""


class ConsistencyWarning(UserWarning):
    """A secondary write failed after the primary write succeeded."""
