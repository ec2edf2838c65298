"""
Recall - hybrid semantic + keyword search.

One vector query and one keyword query per search:

    similarity = clamp(1 - distance / 2, 0, 1)
    score      = 0.7 * similarity + (0.15 if keyword hit else 0)

The keyword boost is added on top rather than folded into the 0.7, so a
strong semantic match that also hits keywords can score above 0.7.

Results keep vector-search order. The blended score decides what passes
min_score, not the final order.
"""

from cortex.embeddings import EmbeddingProvider
from cortex.errors import CortexError, ProviderError
from cortex.log import get_logger
from cortex.storage import MemoryStore
from cortex.types import RecallOptions, ScoredMemory

logger = get_logger("retrieval")

SEMANTIC_WEIGHT = 0.7
KEYWORD_BOOST = 0.15
CANDIDATE_MULTIPLIER = 2  # fetch 2x limit from each index


def similarity_from_distance(distance: float) -> float:
    """Map L2 distance between unit vectors (0..2) to similarity (1..0)."""
    return min(1.0, max(0.0, 1.0 - distance / 2.0))


def hybrid_score(distance: float, keyword_hit: bool) -> float:
    score = similarity_from_distance(distance) * SEMANTIC_WEIGHT
    if keyword_hit:
        score += KEYWORD_BOOST
    return score


class Retriever:
    """Runs recall queries against the store."""

    def __init__(self, store: MemoryStore, provider: EmbeddingProvider):
        self.store = store
        self.provider = provider

    def recall(self, query: str, options: RecallOptions) -> list[ScoredMemory]:
        """Search for memories by meaning, boosted by keyword matches.

        Raises:
            ProviderError: The query couldn't be embedded.
            StorageError: Vector search failed.
        """
        candidates = options.limit * CANDIDATE_MULTIPLIER

        try:
            query_vector = self.provider.embed(query)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"failed to embed query: {e}") from e

        vector_hits = self.store.vector_search(
            query_vector, candidates, trust_levels=options.trust_levels
        )

        # Keyword index is only a boost; without it recall still works
        try:
            keyword_ids = set(self.store.keyword_search(query, candidates))
        except CortexError as e:
            logger.warning(f"Keyword search failed, continuing without boost: {e}")
            keyword_ids = set()

        results = []
        seen = set()
        for memory_id, distance in vector_hits:
            if memory_id in seen:
                continue
            seen.add(memory_id)

            memory = self.store.get_memory(memory_id)
            if memory is None or not options.matches(memory):
                continue

            score = hybrid_score(distance, memory_id in keyword_ids)
            if score < options.min_score:
                continue

            try:
                self.store.increment_access_count(memory_id)
            except CortexError as e:
                logger.warning(f"Failed to bump access count for {memory_id}: {e}")

            results.append(ScoredMemory(memory=memory, score=score))

        return results[:options.limit]
