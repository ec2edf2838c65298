"""
Engine - the public face of Cortex.

Every operation a caller (CLI, MCP server, script) needs goes through here:

    with Engine.open(config) as engine:
        memory = engine.store("Use WAL mode for SQLite", StoreOptions(type="pattern"))
        engine.validate(memory.id)
        results = engine.recall("sqlite concurrency")

The engine owns the store and the embedding provider and releases them on
every exit path.
"""

from __future__ import annotations

import warnings
from contextlib import contextmanager
from typing import Iterator, Optional

from cortex.config import Config
from cortex.embeddings import EmbeddingProvider, create_provider
from cortex.errors import ConfigError, ConsistencyWarning, NotFoundError, ValidationError
from cortex.graph import RelatedMemory, RelationGraph
from cortex.log import get_logger
from cortex.retrieval import Retriever
from cortex.storage import MemoryStore
from cortex.types import (
    ListOptions,
    Memory,
    MemoryType,
    Metadata,
    RecallOptions,
    Relation,
    ScoredMemory,
    StoreOptions,
    TrustLevel,
)
from cortex.util import generate_id, now

logger = get_logger("engine")


class Engine:
    """Coordinates storage, embeddings, recall and relations."""

    def __init__(self, config: Config, provider: Optional[EmbeddingProvider] = None):
        """Open the store and set up the embedding provider.

        Args:
            config: Fully resolved configuration
            provider: Embedding provider to use instead of the configured one

        Raises:
            ConfigError: Unknown provider, missing credentials, or a provider
                whose vector width differs from embedding_dimensions.
            StorageError: The store couldn't be opened.
        """
        self.config = config

        self.repo = MemoryStore(
            config.database_path,
            vector_dir=config.vector_dir,
            dimensions=config.embedding_dimensions,
        )
        try:
            self.provider = provider or create_provider(config)
            if self.provider.dimensions != config.embedding_dimensions:
                raise ConfigError(
                    f"embedding provider {self.provider.model} produces "
                    f"{self.provider.dimensions}-dimensional vectors, "
                    f"embedding_dimensions is {config.embedding_dimensions}"
                )
        except Exception:
            self.repo.close()
            raise

        self.graph = RelationGraph(self.repo)
        self.retriever = Retriever(self.repo, self.provider)

    @classmethod
    @contextmanager
    def open(
        cls,
        config: Config,
        provider: Optional[EmbeddingProvider] = None,
    ) -> Iterator["Engine"]:
        """Scoped engine: closed on every exit path, errors included."""
        engine = cls(config, provider=provider)
        try:
            yield engine
        finally:
            engine.close()

    def close(self) -> None:
        self.repo.close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # STORE (lifecycle)
    # =========================================================================

    def store(self, content: str, options: Optional[StoreOptions] = None) -> Memory:
        """Save a new memory, or evolve the one that owns options.topic_key.

        Evolving keeps id and created_at, replaces content, and only changes
        tags/type/trust when they were given.

        The embedding is written after the memory and is best-effort: if the
        provider or vector index fails, the memory is still saved and a
        ConsistencyWarning is issued.

        Raises:
            ValidationError: Empty content.
            StorageError: The memory row couldn't be written.
        """
        options = options or StoreOptions()
        if not content or not content.strip():
            raise ValidationError("memory content is empty")

        existing = None
        if options.topic_key:
            existing = self.repo.get_memory_by_topic_key(options.topic_key)

        timestamp = now()
        if existing is not None:
            memory = existing
            memory.content = content
            memory.updated_at = timestamp
            if options.tags is not None:
                memory.tags = options.tags
            if options.type is not None:
                memory.type = options.type
            if options.trust is not None:
                memory.trust = options.trust
        else:
            memory = Memory(
                id=generate_id(),
                content=content,
                type=options.type or MemoryType.GENERAL,
                topic_key=options.topic_key,
                tags=options.tags or [],
                trust=options.trust or TrustLevel.PROPOSED,
                metadata=Metadata(
                    source=options.source,
                    project=options.project or self.config.default_project,
                    author=options.author,
                    extra=dict(options.extra),
                ),
                created_at=timestamp,
                updated_at=timestamp,
                access_count=0,
            )

        self.repo.save_memory(memory)
        logger.info(
            f"{'Updated' if existing else 'Stored'} memory {memory.id}"
            + (f" (topic {memory.topic_key})" if memory.topic_key else "")
        )

        self._embed(memory)
        return memory

    def _embed(self, memory: Memory) -> bool:
        """Embed one memory; failures warn instead of raising."""
        try:
            vector = self.provider.embed(memory.content)
            self.repo.save_embedding(memory.id, vector, self.provider.model)
        except Exception as e:
            message = f"memory {memory.id} saved without embedding: {e}"
            logger.warning(message)
            warnings.warn(message, ConsistencyWarning, stacklevel=3)
            return False
        return True

    def reindex(self, batch_size: int = 100, force: bool = False) -> int:
        """Embed memories that vector search can't see yet.

        Picks up memories whose earlier embedding failed, whose vector came
        from another model, or that lack a vector index entry. With
        force=True every memory is re-embedded.

        Returns:
            Number of memories embedded.

        Raises:
            ProviderError: A batch failed to embed (earlier batches are kept).
            StorageError: Reading the store failed.
        """
        if force:
            pending = self.repo.list_memories(ListOptions(limit=0))
        else:
            pending = self.repo.memories_missing_embeddings(model=self.provider.model)

        if not pending:
            return 0

        logger.info(f"Re-embedding {len(pending)} memories with {self.provider.model}")
        done = 0
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            vectors = self.provider.embed_batch([m.content for m in batch])
            for memory, vector in zip(batch, vectors):
                self.repo.save_embedding(memory.id, vector, self.provider.model)
                done += 1
            logger.info(f"  Progress: {done}/{len(pending)}")
        return done

    # =========================================================================
    # READ
    # =========================================================================

    def recall(self, query: str, options: Optional[RecallOptions] = None) -> list[ScoredMemory]:
        """Hybrid search. See cortex.retrieval for the scoring rules."""
        return self.retriever.recall(query, options or RecallOptions())

    def get(self, memory_id: str) -> Memory:
        """Raises NotFoundError if there is no such memory."""
        memory = self.repo.get_memory(memory_id)
        if memory is None:
            raise NotFoundError("memory", memory_id)
        return memory

    def list(self, options: Optional[ListOptions] = None) -> list[Memory]:
        return self.repo.list_memories(options or ListOptions())

    def stats(self) -> dict:
        return self.repo.stats()

    # =========================================================================
    # MUTATE
    # =========================================================================

    def delete(self, memory_id: str) -> None:
        """Delete a memory, its relations, its vector and index entries.

        Raises:
            NotFoundError: No memory with this ID.
        """
        if not self.repo.delete_memory(memory_id):
            raise NotFoundError("memory", memory_id)
        logger.info(f"Deleted memory {memory_id}")

    def validate(self, memory_id: str, trust: Optional[TrustLevel] = None) -> Memory:
        """Change a memory's trust level (default: promote to validated).

        Raises:
            ValidationError: Unknown trust level (nothing written).
            NotFoundError: No memory with this ID.
        """
        trust = TrustLevel.parse(trust) if trust is not None else TrustLevel.VALIDATED
        memory = self.repo.update_trust(memory_id, trust)
        logger.info(f"Memory {memory_id} trust -> {trust.value}")
        return memory

    # =========================================================================
    # RELATIONS
    # =========================================================================

    def relate(self, from_id: str, to_id: str, relation_type, note: Optional[str] = None) -> Relation:
        return self.graph.relate(from_id, to_id, relation_type, note)

    def get_relations(self, memory_id: str) -> list[Relation]:
        return self.graph.get_relations(memory_id)

    def unrelate(self, relation_id: str) -> None:
        self.graph.unrelate(relation_id)

    def related(
        self,
        memory_id: str,
        depth: int = 2,
        relation_types: Optional[list] = None,
    ) -> list[RelatedMemory]:
        return self.graph.related(memory_id, depth=depth, relation_types=relation_types)
