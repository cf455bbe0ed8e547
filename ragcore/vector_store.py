"""
Vector Store Module

Stores chunk vectors with metadata and answers nearest-neighbour queries
restricted to a document scope and a single embedding provider.

Backends:
- FAISS: Local, in-memory, one inner-product index per provider, optional
  persistence to a directory
- MongoDB Atlas: `$vectorSearch` with a filter on document id and provider

Both backends report cosine similarity in [-1, 1] and order hits by
descending similarity, ties broken by ascending chunk index (then document
id) so results are deterministic.

Schema (stored per chunk):
- document_id, chunk_index: identity of the chunk
- embedding_provider: provider tag (vectors are only compared within one)
- text: Original text content
- embedding: Vector representation
- metadata: Additional info (filename, offsets, etc.)
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np

from config.settings import get_settings, VectorStoreConfig
from ragcore.chunker import Chunk
from ragcore.embeddings import get_provider_spec
from ragcore.errors import InvalidInputError, ProviderMismatchError

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class SearchHit:
    """A single nearest-neighbour result."""

    document_id: str
    chunk_index: int
    similarity: float
    text: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.document_id}:{self.chunk_index}"

    def __repr__(self) -> str:
        return (
            f"SearchHit(document_id='{self.document_id}', "
            f"chunk_index={self.chunk_index}, similarity={self.similarity:.4f})"
        )


def _hit_order(hit: SearchHit) -> Tuple[float, int, str]:
    return (-hit.similarity, hit.chunk_index, hit.document_id)


def _validate_items(document_id: str, provider: str, chunks: List[Chunk]) -> int:
    """Check chunks belong to the document and match the provider dimension."""
    dimension = get_provider_spec(provider).dimension
    for chunk in chunks:
        if chunk.document_id != document_id:
            raise InvalidInputError(
                f"Chunk {chunk.key} does not belong to document {document_id}"
            )
        if chunk.embedding is None:
            raise InvalidInputError(f"Chunk {chunk.key} has no embedding")
        if chunk.embedding_provider not in (None, provider):
            raise ProviderMismatchError(
                f"Chunk {chunk.key} was embedded with {chunk.embedding_provider}, "
                f"not {provider}"
            )
        if len(chunk.embedding) != dimension:
            raise ProviderMismatchError(
                f"Chunk {chunk.key} has {len(chunk.embedding)} dimensions, "
                f"provider {provider} uses {dimension}"
            )
    return dimension


class BaseVectorIndex(ABC):
    """
    Abstract base class for vector indexes.

    All implementations must provide:
    - upsert: Replace all vectors of a document/provider pair
    - search: Scoped, provider-filtered nearest neighbours
    - delete_document: Remove a document's vectors
    - count: Number of stored vectors
    """

    @abstractmethod
    def upsert(self, document_id: str, provider: str, chunks: List[Chunk]) -> int:
        """
        Replace all vectors for ``(document_id, provider)`` with ``chunks``.

        Returns:
            Number of vectors stored
        """
        pass

    @abstractmethod
    def search(
        self,
        query_vector: List[float],
        document_ids: Iterable[str],
        provider: str,
        top_k: int,
    ) -> List[SearchHit]:
        """
        Find the ``top_k`` nearest chunks among ``document_ids``.

        An empty scope returns an empty list, not an error.
        """
        pass

    @abstractmethod
    def delete_document(self, document_id: str, provider: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def count(self) -> int:
        pass


class _ProviderIndex:
    """Rows and FAISS index for one embedding provider."""

    def __init__(self, dimension: int):
        import faiss

        self.dimension = dimension
        self.rows: List[Dict[str, Any]] = []
        self.vectors = np.zeros((0, dimension), dtype=np.float32)
        self.index = faiss.IndexFlatIP(dimension)

    def rebuild(self) -> None:
        import faiss

        self.index = faiss.IndexFlatIP(self.dimension)
        if len(self.rows):
            self.index.add(self.vectors)


class FAISSVectorIndex(BaseVectorIndex):
    """
    FAISS-based vector index for local development.

    FAISS only stores vectors, so chunk rows are kept alongside in the same
    order. Upserts and deletes rebuild the provider's flat index; flat
    indexes are cheap to rebuild at this scale.
    """

    def __init__(self, index_path: Optional[str] = None):
        """
        Initialize FAISS vector index.

        Args:
            index_path: Directory to save/load indexes (optional)
        """
        self.index_path = Path(index_path) if index_path else None
        self._indexes: Dict[str, _ProviderIndex] = {}
        self._lock = Lock()

        if self.index_path and self.index_path.exists():
            self._load()

        logger.info(f"FAISSVectorIndex initialized: index_path={index_path}")

    @staticmethod
    def _normalize(vectors: np.ndarray) -> np.ndarray:
        """Normalize vectors for cosine similarity."""
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1  # Avoid division by zero
        return vectors / norms

    def _provider_index(self, provider: str) -> _ProviderIndex:
        if provider not in self._indexes:
            self._indexes[provider] = _ProviderIndex(get_provider_spec(provider).dimension)
        return self._indexes[provider]

    def _remove_rows(self, store: _ProviderIndex, document_id: str) -> int:
        keep = [i for i, row in enumerate(store.rows) if row["document_id"] != document_id]
        removed = len(store.rows) - len(keep)
        if removed:
            store.rows = [store.rows[i] for i in keep]
            store.vectors = store.vectors[keep]
        return removed

    def upsert(self, document_id: str, provider: str, chunks: List[Chunk]) -> int:
        _validate_items(document_id, provider, chunks)

        with self._lock:
            store = self._provider_index(provider)
            self._remove_rows(store, document_id)

            if chunks:
                vectors = self._normalize(
                    np.array([c.embedding for c in chunks], dtype=np.float32)
                )
                store.vectors = np.vstack([store.vectors, vectors]).astype(np.float32)
                store.rows.extend(
                    {
                        "document_id": c.document_id,
                        "chunk_index": c.chunk_index,
                        "text": c.text,
                        "metadata": c.metadata,
                    }
                    for c in chunks
                )
            store.rebuild()

            if self.index_path:
                self._save(provider, store)

        logger.info(
            f"Upserted {len(chunks)} vectors for document {document_id} ({provider})"
        )
        return len(chunks)

    def search(
        self,
        query_vector: List[float],
        document_ids: Iterable[str],
        provider: str,
        top_k: int,
    ) -> List[SearchHit]:
        scope = set(document_ids)
        if not scope or top_k <= 0:
            return []

        dimension = get_provider_spec(provider).dimension
        if len(query_vector) != dimension:
            raise ProviderMismatchError(
                f"Query vector has {len(query_vector)} dimensions, "
                f"provider {provider} uses {dimension}"
            )

        with self._lock:
            store = self._indexes.get(provider)
            if store is None or store.index.ntotal == 0:
                return []

            query = self._normalize(np.array([query_vector], dtype=np.float32))
            # Scope filtering happens after scoring, so score every vector
            scores, indices = store.index.search(query, store.index.ntotal)

            hits = []
            for score, idx in zip(scores[0], indices[0]):
                if idx < 0:  # FAISS returns -1 for not found
                    continue
                row = store.rows[idx]
                if row["document_id"] not in scope:
                    continue
                hits.append(SearchHit(
                    document_id=row["document_id"],
                    chunk_index=row["chunk_index"],
                    similarity=float(score),
                    text=row["text"],
                    metadata=dict(row["metadata"]),
                ))

        hits.sort(key=_hit_order)
        logger.debug(f"Search returned {min(len(hits), top_k)} of {len(hits)} in-scope hits")
        return hits[:top_k]

    def delete_document(self, document_id: str, provider: Optional[str] = None) -> int:
        deleted = 0
        with self._lock:
            for name, store in self._indexes.items():
                if provider is not None and name != provider:
                    continue
                removed = self._remove_rows(store, document_id)
                if removed:
                    store.rebuild()
                    if self.index_path:
                        self._save(name, store)
                deleted += removed

        if deleted:
            logger.info(f"Deleted {deleted} vectors for document {document_id}")
        return deleted

    def count(self) -> int:
        with self._lock:
            return sum(len(store.rows) for store in self._indexes.values())

    def _save(self, provider: str, store: _ProviderIndex) -> None:
        """Save one provider's index and rows to disk."""
        import faiss

        self.index_path.mkdir(parents=True, exist_ok=True)
        faiss.write_index(store.index, str(self.index_path / f"{provider}.faiss"))

        metadata_path = self.index_path / f"{provider}.json"
        with open(metadata_path, "w", encoding="utf-8") as f:
            json.dump({"dimension": store.dimension, "rows": store.rows}, f)

        logger.debug(f"Saved FAISS index for {provider} to {self.index_path}")

    def _load(self) -> None:
        """Load every provider index found in the directory."""
        import faiss

        for index_file in sorted(self.index_path.glob("*.faiss")):
            provider = index_file.stem
            metadata_path = index_file.with_suffix(".json")
            if not metadata_path.exists():
                logger.warning(f"Skipping {index_file.name}: no row metadata")
                continue

            with open(metadata_path, "r", encoding="utf-8") as f:
                metadata = json.load(f)

            store = _ProviderIndex(metadata["dimension"])
            store.index = faiss.read_index(str(index_file))
            store.rows = metadata["rows"]
            if store.index.ntotal:
                store.vectors = store.index.reconstruct_n(0, store.index.ntotal)
            self._indexes[provider] = store

            logger.info(f"Loaded FAISS index for {provider} with {store.index.ntotal} vectors")


class MongoDBVectorIndex(BaseVectorIndex):
    """
    MongoDB Atlas Vector Store for production use.

    Each provider's vectors live under their own field (``embedding_<provider>``)
    with their own Atlas vector index (``<vector_index>_<provider>``), since an
    Atlas vector field has a single fixed dimension.

    Requires:
    - MongoDB Atlas cluster with Vector Search enabled
    - One vector search index per provider (see vector_index_definition)
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        database: Optional[str] = None,
        collection: Optional[str] = None,
        vector_index: Optional[str] = None,
        config: Optional[VectorStoreConfig] = None,
    ):
        config = config or get_settings().vector_store

        self.uri = uri or config.mongodb_uri
        self.database_name = database or config.mongodb_database
        self.collection_name = collection or config.mongodb_collection
        self.vector_index = vector_index or config.mongodb_vector_index

        self._client = None
        self._collection = None

        logger.info(
            f"MongoDBVectorIndex initialized: db={self.database_name}, "
            f"collection={self.collection_name}"
        )

    def _connect(self):
        """Establish connection to MongoDB."""
        if self._collection is not None:
            return self._collection

        if not self.uri:
            raise ValueError(
                "MongoDB URI not configured. Set MONGODB_URI environment variable."
            )

        from pymongo import MongoClient

        self._client = MongoClient(self.uri)
        self._collection = self._client[self.database_name][self.collection_name]
        self._client.admin.command("ping")

        logger.info("Connected to MongoDB Atlas")
        return self._collection

    @staticmethod
    def embedding_path(provider: str) -> str:
        return f"embedding_{provider}"

    def index_name(self, provider: str) -> str:
        return f"{self.vector_index}_{provider}"

    def upsert(self, document_id: str, provider: str, chunks: List[Chunk]) -> int:
        _validate_items(document_id, provider, chunks)
        collection = self._connect()

        collection.delete_many({"document_id": document_id, "embedding_provider": provider})
        if not chunks:
            return 0

        path = self.embedding_path(provider)
        documents = [
            {
                "_id": f"{provider}:{chunk.key}",
                "document_id": chunk.document_id,
                "chunk_index": chunk.chunk_index,
                "embedding_provider": provider,
                "text": chunk.text,
                "metadata": chunk.metadata,
                path: chunk.embedding,
            }
            for chunk in chunks
        ]
        result = collection.insert_many(documents)

        logger.info(
            f"Upserted {len(result.inserted_ids)} vectors for document "
            f"{document_id} ({provider}) in MongoDB"
        )
        return len(result.inserted_ids)

    def search(
        self,
        query_vector: List[float],
        document_ids: Iterable[str],
        provider: str,
        top_k: int,
    ) -> List[SearchHit]:
        scope = sorted(set(document_ids))
        if not scope or top_k <= 0:
            return []

        collection = self._connect()
        pipeline = [
            {
                "$vectorSearch": {
                    "index": self.index_name(provider),
                    "path": self.embedding_path(provider),
                    "queryVector": query_vector,
                    "numCandidates": top_k * 10,  # Over-fetch for filtering
                    "limit": top_k,
                    "filter": {
                        "document_id": {"$in": scope},
                        "embedding_provider": provider,
                    },
                }
            },
            {
                "$project": {
                    "_id": 0,
                    "document_id": 1,
                    "chunk_index": 1,
                    "text": 1,
                    "metadata": 1,
                    "score": {"$meta": "vectorSearchScore"},
                }
            },
        ]

        hits = [
            SearchHit(
                document_id=doc["document_id"],
                chunk_index=doc["chunk_index"],
                # Atlas cosine scores are (1 + cos) / 2
                similarity=2.0 * float(doc.get("score", 0.0)) - 1.0,
                text=doc.get("text", ""),
                metadata=doc.get("metadata", {}),
            )
            for doc in collection.aggregate(pipeline)
        ]
        hits.sort(key=_hit_order)

        logger.debug(f"MongoDB search returned {len(hits)} results")
        return hits[:top_k]

    def delete_document(self, document_id: str, provider: Optional[str] = None) -> int:
        collection = self._connect()
        query: Dict[str, Any] = {"document_id": document_id}
        if provider is not None:
            query["embedding_provider"] = provider
        result = collection.delete_many(query)
        logger.info(f"Deleted {result.deleted_count} vectors for document {document_id}")
        return result.deleted_count

    def count(self) -> int:
        return self._connect().count_documents({})

    def vector_index_definition(self, provider: str) -> Dict[str, Any]:
        """
        Atlas vector search index definition for one provider.

        This usually needs to be created via the Atlas UI or CLI.
        """
        definition = {
            "fields": [
                {
                    "type": "vector",
                    "path": self.embedding_path(provider),
                    "numDimensions": get_provider_spec(provider).dimension,
                    "similarity": "cosine",
                },
                {"type": "filter", "path": "document_id"},
                {"type": "filter", "path": "embedding_provider"},
            ]
        }

        logger.info(
            f"To create the vector index '{self.index_name(provider)}', "
            f"use the following definition in Atlas:\n"
            f"{json.dumps(definition, indent=2)}"
        )
        return definition


def create_vector_index(config: Optional[VectorStoreConfig] = None) -> BaseVectorIndex:
    """Build the configured vector index backend."""
    config = config or get_settings().vector_store

    if config.provider == "faiss":
        return FAISSVectorIndex(index_path=config.faiss_index_path)
    if config.provider == "mongodb":
        return MongoDBVectorIndex(config=config)
    raise ValueError(f"Unknown vector store provider: {config.provider}")
