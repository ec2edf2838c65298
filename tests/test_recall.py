#!/usr/bin/env python3
"""
Recall Tests

Validates hybrid semantic + keyword search:
1. Scoring formula (distance -> similarity, additive keyword boost)
2. Result order follows vector rank, not the blended score
3. Trust gating (validated + proven by default)
4. limit / min_score / type / tag / project / topic filters
5. Failure handling: provider errors raise, keyword and access-count
   errors degrade
"""

import pytest

from cortex.errors import ConsistencyWarning, ProviderError, StorageError
from cortex.retrieval import (
    KEYWORD_BOOST,
    SEMANTIC_WEIGHT,
    hybrid_score,
    similarity_from_distance,
)
from cortex.types import RecallOptions, StoreOptions, TrustLevel


VALIDATED = StoreOptions(trust="validated")


class RejectingUpdates:
    """Vector collection whose metadata updates always fail."""

    def __init__(self, collection):
        self._collection = collection

    def update(self, *args, **kwargs):
        raise RuntimeError("vector index unavailable")

    def __getattr__(self, name):
        return getattr(self._collection, name)


class TestScoringFormula:
    """The arithmetic behind the score."""

    def test_similarity_bounds(self):
        assert similarity_from_distance(0.0) == 1.0
        assert similarity_from_distance(1.0) == 0.5
        assert similarity_from_distance(2.0) == 0.0
        assert similarity_from_distance(3.5) == 0.0

    def test_boost_is_additive(self):
        assert hybrid_score(0.0, False) == pytest.approx(SEMANTIC_WEIGHT)
        assert hybrid_score(0.0, True) == pytest.approx(SEMANTIC_WEIGHT + KEYWORD_BOOST)
        assert hybrid_score(2.0, True) == pytest.approx(KEYWORD_BOOST)


class TestOrdering:
    """Vector rank decides order; the blended score only filters."""

    def test_keyword_boost_does_not_reorder(self, engine, embedder):
        """B outscores A after the boost but still comes second."""
        embedder.pin("alpha", [1, 0, 0, 0])
        embedder.pin("first entry", [0.8, 0.6, 0, 0])
        embedder.pin("alpha beta", [0.6, 0.8, 0, 0])
        a = engine.store("first entry", VALIDATED)
        b = engine.store("alpha beta", VALIDATED)

        results = engine.recall("alpha", RecallOptions(min_score=0.0))

        assert [r.memory.id for r in results] == [a.id, b.id]
        assert results[0].score == pytest.approx(0.4786, abs=1e-3)
        assert results[1].score == pytest.approx(0.5370, abs=1e-3)
        assert results[1].score > results[0].score

    def test_exact_match_scores_high(self, engine):
        memory = engine.store("connection pool exhausted", VALIDATED)
        results = engine.recall("connection pool exhausted")

        assert results[0].memory.id == memory.id
        assert results[0].score == pytest.approx(SEMANTIC_WEIGHT + KEYWORD_BOOST, abs=1e-3)
        assert results[0].match_type == "hybrid"


class TestTrustGating:
    """Default recall only sees validated and proven memories."""

    @pytest.fixture
    def mixed(self, engine, embedder):
        embedder.pin("query", [1, 0])
        ids = {}
        for trust in TrustLevel:
            content = f"memory {trust.value}"
            embedder.pin(content, [1, 0])
            ids[trust] = engine.store(content, StoreOptions(trust=trust)).id
        return ids

    def test_default_levels(self, engine, mixed):
        found = {r.memory.id for r in engine.recall("query")}
        assert found == {mixed[TrustLevel.VALIDATED], mixed[TrustLevel.PROVEN]}

    def test_explicit_levels(self, engine, mixed):
        options = RecallOptions(trust_levels=["proposed", "disputed"])
        found = {r.memory.id for r in engine.recall("query", options)}
        assert found == {mixed[TrustLevel.PROPOSED], mixed[TrustLevel.DISPUTED]}

    def test_empty_levels_fall_back_to_default(self):
        assert RecallOptions(trust_levels=[]).trust_levels == [
            TrustLevel.VALIDATED, TrustLevel.PROVEN,
        ]

    def test_validation_makes_memory_visible(self, engine, embedder):
        memory = engine.store("hidden until checked")
        assert engine.recall("hidden until checked") == []

        engine.validate(memory.id)
        assert [r.memory.id for r in engine.recall("hidden until checked")] == [memory.id]

    def test_stale_index_trust_does_not_leak(self, engine, monkeypatch):
        """A demotion that never reached the vector index still hides the memory."""
        memory = engine.store("legacy approach", VALIDATED)
        monkeypatch.setattr(engine.repo, "collection", RejectingUpdates(engine.repo.collection))

        with pytest.warns(ConsistencyWarning):
            engine.validate(memory.id, "obsolete")

        assert engine.get(memory.id).trust == TrustLevel.OBSOLETE
        assert engine.recall("legacy approach") == []


class TestLimitsAndFilters:
    """limit, min_score and the per-field filters."""

    def test_limit(self, engine):
        for i in range(8):
            engine.store(f"deploy pipeline step {i}", VALIDATED)
        assert len(engine.recall("deploy pipeline", RecallOptions(limit=3, min_score=0.0))) == 3

    def test_nonpositive_limit_uses_default(self):
        assert RecallOptions(limit=0).limit == 5
        assert RecallOptions(limit=-2).limit == 5
        assert RecallOptions(limit=None).limit == 5

    def test_min_score(self, engine, embedder):
        embedder.pin("query", [1, 0])
        embedder.pin("close", [1, 0])
        embedder.pin("orthogonal", [0, 1])
        close = engine.store("close", VALIDATED)
        engine.store("orthogonal", VALIDATED)

        # orthogonal: 0.7 * (1 - sqrt(2)/2) ~= 0.205, below the 0.3 default
        assert [r.memory.id for r in engine.recall("query")] == [close.id]
        assert len(engine.recall("query", RecallOptions(min_score=0.0))) == 2

    def test_explicit_zero_min_score_kept(self):
        assert RecallOptions(min_score=0.0).min_score == 0.0
        assert RecallOptions(min_score=None).min_score == 0.3

    def test_type_filter(self, engine):
        engine.store("cache stampede", StoreOptions(trust="validated", type="error"))
        fix = engine.store("cache stampede fix", StoreOptions(trust="validated", type="pattern"))

        results = engine.recall("cache stampede", RecallOptions(types=["pattern"]))
        assert [r.memory.id for r in results] == [fix.id]

    def test_tag_filter_any_of(self, engine):
        a = engine.store("retry policy", StoreOptions(trust="validated", tags=["http"]))
        b = engine.store("retry backoff", StoreOptions(trust="validated", tags=["grpc"]))
        engine.store("retry budget", StoreOptions(trust="validated", tags=["db"]))

        options = RecallOptions(tags=["http", "grpc"], min_score=0.0)
        assert {r.memory.id for r in engine.recall("retry", options)} == {a.id, b.id}

    def test_project_and_topic_filters(self, engine):
        a = engine.store("timeouts", StoreOptions(
            trust="validated", project="api", topic_key="net/timeouts",
        ))
        engine.store("timeouts", StoreOptions(
            trust="validated", project="web", topic_key="net/timeouts-web",
        ))
        engine.store("timeouts", StoreOptions(
            trust="validated", project="api", topic_key="db/timeouts",
        ))

        options = RecallOptions(project="api", topic_key_prefix="net/")
        assert [r.memory.id for r in engine.recall("timeouts", options)] == [a.id]

    def test_access_count_bumped_for_returned(self, engine, embedder):
        embedder.pin("query", [1, 0])
        embedder.pin("returned", [1, 0])
        embedder.pin("filtered", [0, 1])
        returned = engine.store("returned", VALIDATED)
        filtered = engine.store("filtered", VALIDATED)

        engine.recall("query")

        assert engine.get(returned.id).access_count == 1
        assert engine.get(filtered.id).access_count == 0

    def test_empty_store(self, engine):
        assert engine.recall("anything") == []


class TestFailureHandling:
    """What recall does when a dependency fails."""

    def test_provider_error_raised(self, engine, embedder):
        engine.store("x", VALIDATED)
        embedder.fail = True
        with pytest.raises(ProviderError):
            engine.recall("x")

    def test_unexpected_provider_error_wrapped(self, engine, monkeypatch):
        def broken(text):
            raise RuntimeError("socket closed")

        monkeypatch.setattr(engine.provider, "embed", broken)
        with pytest.raises(ProviderError, match="socket closed"):
            engine.recall("x")

    def test_vector_search_error_raised(self, engine, monkeypatch):
        def broken(*args, **kwargs):
            raise StorageError("index corrupt")

        monkeypatch.setattr(engine.repo, "vector_search", broken)
        with pytest.raises(StorageError):
            engine.recall("x")

    def test_keyword_failure_drops_boost_only(self, engine, monkeypatch):
        memory = engine.store("graceful degradation", VALIDATED)

        def broken(*args, **kwargs):
            raise StorageError("fts unavailable")

        monkeypatch.setattr(engine.repo, "keyword_search", broken)
        results = engine.recall("graceful degradation")

        assert [r.memory.id for r in results] == [memory.id]
        assert results[0].score == pytest.approx(SEMANTIC_WEIGHT, abs=1e-3)

    def test_access_count_failure_keeps_results(self, engine, monkeypatch):
        memory = engine.store("best effort counter", VALIDATED)

        def broken(*args, **kwargs):
            raise StorageError("database is locked")

        monkeypatch.setattr(engine.repo, "increment_access_count", broken)
        results = engine.recall("best effort counter")

        assert [r.memory.id for r in results] == [memory.id]
        assert engine.get(memory.id).access_count == 0
