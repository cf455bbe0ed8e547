"""
Embedding Service Module

Provides an abstraction layer for embedding generation over named providers:
- local: Sentence Transformers (all-MiniLM-L6-v2), 384 dimensions
- openai: OpenAI (text-embedding-3-small), 1536 dimensions

Every provider declares its dimension up front in EMBEDDING_PROVIDERS, so a
document's provider tag fully determines the shape of its chunk vectors.
Vectors from different providers are never compared.

Batch contract:
- output order matches input order
- one bad item fails the whole batch; nothing is silently dropped
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional

from huggingface_hub import login

from config.settings import get_settings, EmbeddingConfig
from ragcore.errors import EmbeddingError, InvalidInputError
from ragcore.retry import with_retry_and_timeout

if hf_token := os.getenv("HF_TOKEN"):
    login(token=hf_token)

# Configure logging
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a named embedding provider."""

    name: str
    vendor: str
    dimension: int


EMBEDDING_PROVIDERS: Dict[str, ProviderSpec] = {
    "local": ProviderSpec(name="local", vendor="sentence-transformers", dimension=384),
    "openai": ProviderSpec(name="openai", vendor="openai", dimension=1536),
}


def get_provider_spec(name: str) -> ProviderSpec:
    """Look up a provider, raising ValueError for unknown names."""
    try:
        return EMBEDDING_PROVIDERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown embedding provider: {name}. "
            f"Known providers: {list(EMBEDDING_PROVIDERS.keys())}"
        ) from None


class BaseEmbeddingProvider(ABC):
    """
    Abstract base class for embedding providers.

    All embedding providers must implement:
    - embed_text: Embed a single text string
    - embed_batch: Embed multiple texts, preserving order
    - dimension / model_name properties
    """

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        pass

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the dimension of embeddings produced."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        pass


class LocalEmbeddingProvider(BaseEmbeddingProvider):
    """
    Local embedding provider using Sentence Transformers.

    The model is loaded lazily on first use.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", dimension: int = 384):
        self._model_name = model_name
        self._dimension = dimension
        self._model = None
        self._lock = Lock()

        logger.info(f"Initializing LocalEmbeddingProvider with model: {model_name}")

    def _load_model(self):
        """Lazy load the model (only when first needed)."""
        with self._lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                logger.info(f"Loading sentence-transformers model: {self._model_name}")
                self._model = SentenceTransformer(self._model_name)
                logger.info(
                    f"Model loaded. Embedding dimension: "
                    f"{self._model.get_sentence_embedding_dimension()}"
                )
        return self._model

    def embed_text(self, text: str) -> List[float]:
        model = self._load_model()
        embedding = model.encode(text, convert_to_numpy=True)
        return embedding.tolist()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        sentence-transformers returns rows in input order.
        """
        if not texts:
            return []

        model = self._load_model()
        logger.debug(f"Embedding batch of {len(texts)} texts")

        embeddings = model.encode(
            texts,
            convert_to_numpy=True,
            show_progress_bar=len(texts) > 10,
            batch_size=32,
        )
        return embeddings.tolist()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """
    OpenAI embedding provider using the embeddings API.

    Considerations:
    - Requires API key
    - Requires internet connection
    """

    # Model dimensions mapping
    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    # OpenAI accepts up to 2048 inputs per request
    REQUEST_BATCH_SIZE = 100

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
    ):
        self._model_name = model_name
        self._api_key = api_key
        self._client = None

        if model_name not in self.MODEL_DIMENSIONS:
            logger.warning(
                f"Unknown model {model_name}, assuming 1536 dimensions. "
                f"Known models: {list(self.MODEL_DIMENSIONS.keys())}"
            )

        logger.info(f"Initializing OpenAIEmbeddingProvider with model: {model_name}")

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            from openai import OpenAI

            api_key = self._api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError(
                    "OpenAI API key not found. Set OPENAI_API_KEY environment "
                    "variable or pass api_key parameter."
                )

            self._client = OpenAI(api_key=api_key)
            logger.info("OpenAI client initialized")

        return self._client

    def embed_text(self, text: str) -> List[float]:
        client = self._get_client()
        response = client.embeddings.create(input=text, model=self._model_name)
        return response.data[0].embedding

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts using OpenAI API.

        Responses carry an index per item; rows are re-sorted by it so the
        output order always matches the input order.
        """
        if not texts:
            return []

        client = self._get_client()
        logger.debug(f"Embedding batch of {len(texts)} texts via OpenAI")

        all_embeddings = []
        for i in range(0, len(texts), self.REQUEST_BATCH_SIZE):
            batch = texts[i:i + self.REQUEST_BATCH_SIZE]

            response = client.embeddings.create(input=batch, model=self._model_name)

            sorted_data = sorted(response.data, key=lambda x: x.index)
            if len(sorted_data) != len(batch):
                raise EmbeddingError(
                    f"OpenAI returned {len(sorted_data)} embeddings for {len(batch)} inputs"
                )
            all_embeddings.extend(item.embedding for item in sorted_data)

        return all_embeddings

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self._model_name, 1536)

    @property
    def model_name(self) -> str:
        return self._model_name


class EmbeddingService:
    """
    Unified embedding interface over all registered providers.

    There is no "current" provider: every call names the provider it wants,
    normally the one recorded on the document being ingested or queried.

    Example:
        service = EmbeddingService()
        vectors = service.embed_documents(["text1", "text2"], provider="local")
        query_vector = service.embed_query("How do refunds work?", provider="local")
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        providers: Optional[Dict[str, BaseEmbeddingProvider]] = None,
    ):
        """
        Initialize the embedding service.

        Args:
            config: Optional EmbeddingConfig instance
            providers: Pre-built provider instances by name (mostly for tests)
        """
        self.config = config or get_settings().embedding
        self._providers: Dict[str, BaseEmbeddingProvider] = dict(providers or {})
        self._lock = Lock()

        logger.info(
            f"EmbeddingService initialized, default provider={self.config.default_provider}"
        )

    @property
    def default_provider(self) -> str:
        return self.config.default_provider

    def get_provider(self, name: str) -> BaseEmbeddingProvider:
        """Return the cached provider instance for ``name``, creating it once."""
        with self._lock:
            if name in self._providers:
                return self._providers[name]

            spec = get_provider_spec(name)
            if name == "local":
                provider = LocalEmbeddingProvider(
                    model_name=self.config.local_model,
                    dimension=spec.dimension,
                )
            else:
                provider = OpenAIEmbeddingProvider(
                    model_name=self.config.openai_model,
                    api_key=self.config.openai_api_key,
                )
            self._providers[name] = provider
            return provider

    def dimension(self, provider: str) -> int:
        return get_provider_spec(provider).dimension

    def _check_vectors(self, vectors: List[List[float]], expected: int, provider: str) -> None:
        dimension = get_provider_spec(provider).dimension
        if len(vectors) != expected:
            raise EmbeddingError(
                f"Provider {provider} returned {len(vectors)} vectors for {expected} inputs"
            )
        for position, vector in enumerate(vectors):
            if len(vector) != dimension:
                raise EmbeddingError(
                    f"Provider {provider} returned a {len(vector)}-dim vector at "
                    f"position {position}, expected {dimension}"
                )

    def _call(self, fn, label: str):
        return with_retry_and_timeout(
            fn,
            timeout=self.config.timeout,
            label=label,
            max_retries=self.config.max_retries,
        )

    def embed_documents(self, texts: List[str], provider: str) -> List[List[float]]:
        """
        Embed a batch of chunk texts with the named provider.

        Raises:
            InvalidInputError: If any text is empty (the whole batch fails)
            EmbeddingError: If the provider returns the wrong count or dimension
        """
        if not texts:
            return []

        for position, text in enumerate(texts):
            if not text or not text.strip():
                raise InvalidInputError(f"Cannot embed empty text at position {position}")

        impl = self.get_provider(provider)
        vectors: List[List[float]] = []
        batch_size = max(1, self.config.batch_size)
        for i in range(0, len(texts), batch_size):
            batch = texts[i:i + batch_size]
            result = self._call(lambda b=batch: impl.embed_batch(b), f"embed_batch[{provider}]")
            self._check_vectors(result, len(batch), provider)
            vectors.extend(result)

        logger.debug(f"Embedded {len(vectors)} texts with provider {provider}")
        return vectors

    def embed_query(self, text: str, provider: str) -> List[float]:
        """Embed a user query with the named provider."""
        if not text or not text.strip():
            raise InvalidInputError("Cannot embed empty text")

        impl = self.get_provider(provider)
        vector = self._call(lambda: impl.embed_text(text), f"embed_query[{provider}]")
        self._check_vectors([vector], 1, provider)
        return vector
