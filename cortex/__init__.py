"""
Cortex - External memory for AI agents.

Store short pieces of technical knowledge, evolve them by topic key,
connect them with typed relations, and recall them by meaning + keywords.
"""

__version__ = "0.1.0"

from cortex.config import Config, load_config
from cortex.engine import Engine
from cortex.errors import (
    ConfigError,
    ConsistencyWarning,
    CortexError,
    NotFoundError,
    ProviderError,
    StorageError,
    ValidationError,
)
from cortex.types import (
    ListOptions,
    Memory,
    MemoryType,
    Metadata,
    RecallOptions,
    Relation,
    RelationType,
    ScoredMemory,
    StoreOptions,
    TrustLevel,
)


__all__ = [
    "__version__",
    "Config",
    "load_config",
    "Engine",
    "CortexError",
    "ConfigError",
    "ConsistencyWarning",
    "NotFoundError",
    "ProviderError",
    "StorageError",
    "ValidationError",
    "ListOptions",
    "Memory",
    "MemoryType",
    "Metadata",
    "RecallOptions",
    "Relation",
    "RelationType",
    "ScoredMemory",
    "StoreOptions",
    "TrustLevel",
]
