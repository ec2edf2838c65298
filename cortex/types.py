"""
Core data structures.

A Memory is one piece of knowledge. A Relation is a typed, directed arrow
between two memories. The option classes configure a single call; nothing
in Cortex reads global flags.
"""

from datetime import datetime
from typing import Optional
from dataclasses import dataclass, field, asdict
from enum import Enum

from cortex.errors import ValidationError


# =============================================================================
# ENUMS
# =============================================================================

class _ParseableEnum(str, Enum):
    """str-backed enum that rejects unknown values with ValidationError."""

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValidationError(
                f"invalid {cls._label()}: {value!r} (valid: {valid})"
            ) from None

    @classmethod
    def _label(cls) -> str:
        return cls.__name__


class TrustLevel(_ParseableEnum):
    """Validation state of a memory. Gates default search visibility."""
    PROPOSED = "proposed"      # Agent suggested, not validated
    VALIDATED = "validated"    # Human confirmed or used successfully
    PROVEN = "proven"          # Multiple successful uses
    DISPUTED = "disputed"      # Someone questioned it
    OBSOLETE = "obsolete"      # No longer applies

    @classmethod
    def _label(cls) -> str:
        return "trust level"


class MemoryType(_ParseableEnum):
    """What kind of knowledge a memory holds."""
    GENERAL = "general"
    ERROR = "error"            # Something that failed
    PATTERN = "pattern"        # Reusable solution
    DECISION = "decision"      # Why something was chosen
    CONTEXT = "context"        # Project state/info
    PROCEDURE = "procedure"    # How to do something

    @classmethod
    def _label(cls) -> str:
        return "memory type"


class RelationType(_ParseableEnum):
    """How two memories are connected (A <type> B)."""
    CAUSES = "causes"
    SOLVES = "solves"
    REPLACES = "replaces"
    REQUIRES = "requires"
    RELATED_TO = "related_to"
    PART_OF = "part_of"
    CONTRADICTS = "contradicts"

    @classmethod
    def _label(cls) -> str:
        return "relation type"


DEFAULT_RECALL_TRUST = (TrustLevel.VALIDATED, TrustLevel.PROVEN)


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class Metadata:
    """Optional extra information about a memory."""
    source: Optional[str] = None    # Where this came from ("cli", "agent:claude")
    project: Optional[str] = None   # Which project it belongs to
    author: Optional[str] = None    # Who created it (human/agent)
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Compact form for storage: empty fields are omitted."""
        data = {}
        for key in ("source", "project", "author"):
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.extra:
            data["extra"] = dict(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Metadata":
        data = data or {}
        return cls(
            source=data.get("source") or None,
            project=data.get("project") or None,
            author=data.get("author") or None,
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class Memory:
    """A single piece of stored knowledge."""
    id: str
    content: str
    type: MemoryType = MemoryType.GENERAL
    topic_key: Optional[str] = None     # e.g. "react/hooks/rules"
    tags: list = field(default_factory=list)
    trust: TrustLevel = TrustLevel.PROPOSED
    metadata: Metadata = field(default_factory=Metadata)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    access_count: int = 0

    @property
    def project(self) -> Optional[str]:
        return self.metadata.project

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "type": self.type.value,
            "topic_key": self.topic_key,
            "tags": list(self.tags),
            "trust": self.trust.value,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "access_count": self.access_count,
        }


@dataclass
class Relation:
    """A directed connection: from_id <type> to_id."""
    id: str
    from_id: str
    to_id: str
    type: RelationType
    note: Optional[str] = None
    created_at: Optional[datetime] = None

    def direction(self, memory_id: str) -> Optional[str]:
        """'outgoing' if memory_id is the source, 'incoming' if the target."""
        if memory_id == self.from_id:
            return "outgoing"
        if memory_id == self.to_id:
            return "incoming"
        return None

    def other_end(self, memory_id: str) -> str:
        return self.to_id if memory_id == self.from_id else self.from_id

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass
class ScoredMemory:
    """A memory with its hybrid relevance score."""
    memory: Memory
    score: float
    match_type: str = "hybrid"

    def to_dict(self) -> dict:
        return {
            "memory": self.memory.to_dict(),
            "score": round(self.score, 4),
            "match_type": self.match_type,
        }


# =============================================================================
# PER-CALL OPTIONS
# =============================================================================

def _clean_tags(tags) -> Optional[list]:
    """Strip, drop empties and de-duplicate while preserving order."""
    if tags is None:
        return None
    seen = set()
    cleaned = []
    for tag in tags:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.add(tag)
            cleaned.append(tag)
    return cleaned


@dataclass
class StoreOptions:
    """How a memory is stored.

    type/trust/tags left as None mean "not supplied": a new memory gets the
    defaults, an evolved memory (same topic_key) keeps its current values.
    """
    topic_key: Optional[str] = None
    tags: Optional[list] = None
    type: Optional[MemoryType] = None
    trust: Optional[TrustLevel] = None
    project: Optional[str] = None
    source: Optional[str] = None
    author: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.type is not None:
            self.type = MemoryType.parse(self.type)
        if self.trust is not None:
            self.trust = TrustLevel.parse(self.trust)
        self.tags = _clean_tags(self.tags)
        if self.topic_key is not None:
            self.topic_key = self.topic_key.strip() or None


@dataclass
class ListOptions:
    """Filters for listing memories. Empty filters match everything."""
    types: list = field(default_factory=list)
    trust_levels: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    project: Optional[str] = None
    topic_key_prefix: Optional[str] = None
    limit: int = 20

    def __post_init__(self):
        self.types = [MemoryType.parse(t) for t in self.types]
        self.trust_levels = [TrustLevel.parse(t) for t in self.trust_levels]
        self.tags = _clean_tags(self.tags) or []


@dataclass
class RecallOptions:
    """How memories are searched.

    trust_levels defaults to validated + proven: proposed, disputed and
    obsolete memories stay hidden unless asked for.
    """
    limit: int = 5
    min_score: float = 0.3
    types: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    trust_levels: list = field(default_factory=lambda: list(DEFAULT_RECALL_TRUST))
    project: Optional[str] = None
    topic_key_prefix: Optional[str] = None

    def __post_init__(self):
        if self.limit is None or self.limit <= 0:
            self.limit = 5
        if self.min_score is None:
            self.min_score = 0.3
        self.types = [MemoryType.parse(t) for t in self.types]
        self.trust_levels = [TrustLevel.parse(t) for t in self.trust_levels]
        if not self.trust_levels:
            self.trust_levels = list(DEFAULT_RECALL_TRUST)
        self.tags = _clean_tags(self.tags) or []

    def matches(self, memory: Memory) -> bool:
        """Apply every filter to a memory fetched from SQLite.

        Trust is checked again here because the vector index only holds a
        copy of it, which can be stale.
        """
        if memory.trust not in self.trust_levels:
            return False
        if self.types and memory.type not in self.types:
            return False
        if self.tags and not set(self.tags) & set(memory.tags):
            return False
        if self.project and memory.project != self.project:
            return False
        if self.topic_key_prefix and not (
            memory.topic_key or ""
        ).startswith(self.topic_key_prefix):
            return False
        return True
