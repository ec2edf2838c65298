"""
Embedding providers - text in, numbers out.

An embedding is a list of floats that captures what a text means.
Similar meanings end up close together, which is what vector search uses.

The engine only depends on the EmbeddingProvider interface. Two real
providers are included:
- OpenAIEmbeddingProvider: hosted, text-embedding-3-small (1536d) by default
- SentenceTransformerProvider: local model, no API key, lazily loaded
"""

from abc import ABC, abstractmethod

from cortex.config import Config, DEFAULT_OPENAI_MODEL, DEFAULT_DIMENSIONS
from cortex.errors import ConfigError, ProviderError
from cortex.log import get_logger

logger = get_logger("embeddings")

DEFAULT_LOCAL_MODEL = "all-mpnet-base-v2"


class EmbeddingProvider(ABC):
    """What the engine needs from an embedding backend."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Embed one text. Raises ProviderError on any failure."""

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts in one call. All-or-nothing."""

    @property
    @abstractmethod
    def model(self) -> str:
        """Identifier stored next to every cached vector."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Fixed vector length."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the OpenAI API."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_OPENAI_MODEL,
        dimensions: int = DEFAULT_DIMENSIONS,
        timeout: float = 30.0,
        client=None,
    ):
        if not api_key and client is None:
            raise ConfigError("OpenAI API key required")
        if client is None:
            from openai import OpenAI
            client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._client = client
        self._model = model
        self._dimensions = dimensions

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _request(self, texts: list[str]) -> list[list[float]]:
        kwargs = {"input": texts, "model": self._model}
        # Only the text-embedding-3 family accepts a dimensions override
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions
        try:
            response = self._client.embeddings.create(**kwargs)
        except Exception as e:
            raise ProviderError(f"openai embedding error: {e}") from e

        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise ProviderError(
                f"openai returned {len(data)} embeddings for {len(texts)} inputs"
            )
        return [list(d.embedding) for d in data]

    def embed(self, text: str) -> list[float]:
        return self._request([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._request(list(texts))


class SentenceTransformerProvider(EmbeddingProvider):
    """Local embeddings via sentence-transformers.

    The model (~420MB for all-mpnet-base-v2) downloads on first use, so it
    is only loaded when the first embedding is requested.
    """

    def __init__(self, model_name: str = DEFAULT_LOCAL_MODEL):
        self._model_name = model_name
        self._encoder = None

    @property
    def encoder(self):
        if self._encoder is None:
            try:
                from sentence_transformers import SentenceTransformer
                self._encoder = SentenceTransformer(self._model_name)
            except Exception as e:
                raise ProviderError(f"failed to load {self._model_name}: {e}") from e
            logger.info(f"Loaded local embedding model {self._model_name}")
        return self._encoder

    @property
    def model(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self.encoder.get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        encoder = self.encoder
        try:
            # Unit-length vectors keep L2 distance within [0, 2]
            vectors = encoder.encode(list(texts), normalize_embeddings=True)
        except Exception as e:
            raise ProviderError(f"local embedding error: {e}") from e
        return vectors.tolist()


def create_provider(config: Config) -> EmbeddingProvider:
    """Build the provider selected by the configuration.

    Raises:
        ConfigError: Unknown provider name or missing credentials.
    """
    name = config.embedding_provider
    if name in ("openai", ""):
        return OpenAIEmbeddingProvider(
            api_key=config.openai_api_key,
            model=config.embedding_model or DEFAULT_OPENAI_MODEL,
            dimensions=config.embedding_dimensions,
            timeout=config.request_timeout,
        )
    if name in ("sentence-transformers", "local"):
        return SentenceTransformerProvider(config.embedding_model or DEFAULT_LOCAL_MODEL)
    raise ConfigError(f"unknown embedding provider: {name}")
