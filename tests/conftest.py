"""
Shared test fixtures.

Real SQLite + real ChromaDB in a temp directory, with a deterministic
embedding provider instead of a network call. FakeEmbedder hashes words
into a small unit vector, so texts sharing words end up close together,
and `pin()` lets a test place a text at an exact vector.
"""

import hashlib
import math
import shutil
import tempfile
from pathlib import Path

import pytest

from cortex.config import Config
from cortex.embeddings import EmbeddingProvider
from cortex.engine import Engine
from cortex.errors import ProviderError
from cortex.storage import MemoryStore


DIMENSIONS = 16


class FakeEmbedder(EmbeddingProvider):
    """Bag-of-words hashing embedder. Same text -> same unit vector."""

    def __init__(self, dimensions: int = DIMENSIONS, model: str = "fake-embedder"):
        self._dimensions = dimensions
        self._model = model
        self.pinned = {}
        self.calls = 0
        self.fail = False

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def pin(self, text: str, vector: list[float]) -> None:
        """Embed `text` as `vector` (zero-padded, normalized) from now on."""
        padded = list(vector) + [0.0] * (self._dimensions - len(vector))
        self.pinned[text] = _normalize(padded)

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise ProviderError("embedding service unavailable")
        if text in self.pinned:
            return list(self.pinned[text])
        vector = [0.0] * self._dimensions
        for word in text.lower().split():
            digest = hashlib.sha256(word.encode()).digest()
            vector[digest[0] % self._dimensions] += 1.0
        return _normalize(vector)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if self.fail:
            raise ProviderError("embedding service unavailable")
        return [self.embed(t) for t in texts]


def _normalize(vector):
    norm = math.sqrt(sum(x * x for x in vector)) or 1.0
    return [x / norm for x in vector]


@pytest.fixture
def temp_data_dir():
    """Create a temporary directory for test data."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    # Cleanup after test
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def config(temp_data_dir):
    return Config(
        data_dir=str(temp_data_dir / ".cortex"),
        embedding_provider="openai",
        openai_api_key="sk-test",
        embedding_dimensions=DIMENSIONS,
    )


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def engine(config, embedder):
    """Fresh engine for each test, closed afterwards."""
    with Engine.open(config, provider=embedder) as eng:
        yield eng


@pytest.fixture
def memory_store(temp_data_dir):
    """Bare repository, for tests below the engine."""
    store = MemoryStore(temp_data_dir / "cortex.db", dimensions=DIMENSIONS)
    yield store
    store.close()
