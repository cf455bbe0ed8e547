"""
Feedback Score Module

Reads the per-user thumbs up/down aggregate for document chunks and exposes
it as a normalized score in [-1, 1] for reranking.

The aggregate itself (counts and precomputed normalized score per user,
document and chunk) is maintained outside the core; this module only reads
it. Lookups never fail a query: any store error degrades to an empty map,
and retrieval falls back to pure-similarity ranking.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from config.settings import DatabaseConfig, get_settings

# Configure logging
logger = logging.getLogger(__name__)

ChunkRef = Tuple[str, int]


def feedback_key(document_id: str, chunk_index: int) -> str:
    """Map key for a chunk: ``"documentId:chunkIndex"``."""
    return f"{document_id}:{chunk_index}"


def normalized_feedback_score(positive: int, negative: int, total: int) -> float:
    """(positive - negative) / total, clamped to [-1, 1]; 0 when total is 0."""
    if total <= 0:
        return 0.0
    return max(-1.0, min(1.0, (positive - negative) / total))


@dataclass(frozen=True)
class FeedbackScore:
    """Aggregated feedback for one chunk, scoped to one user."""

    document_id: str
    chunk_index: int
    user_id: str
    positive_count: int = 0
    negative_count: int = 0
    total_count: int = 0
    normalized_score: float = 0.0

    @property
    def key(self) -> str:
        return feedback_key(self.document_id, self.chunk_index)

    @classmethod
    def from_row(cls, row: Dict[str, Any], user_id: str) -> "FeedbackScore":
        """
        Build a score from a stored aggregate row.

        Raises:
            KeyError, TypeError, ValueError: for malformed rows
        """
        positive = int(row.get("positive_count") or 0)
        negative = int(row.get("negative_count") or 0)
        total = int(row.get("total_count") or 0)

        stored = row.get("normalized_score")
        if stored is None or isinstance(stored, bool):
            score = normalized_feedback_score(positive, negative, total)
        else:
            score = float(stored)
            if math.isnan(score):
                raise ValueError("normalized_score is NaN")
            score = max(-1.0, min(1.0, score)) if total > 0 else 0.0

        return cls(
            document_id=str(row["document_id"]),
            chunk_index=int(row["chunk_index"]),
            user_id=user_id,
            positive_count=positive,
            negative_count=negative,
            total_count=total,
            normalized_score=score,
        )


class BaseFeedbackStore(ABC):
    """Read access to the feedback aggregate."""

    @abstractmethod
    def rows_for(self, user_id: str, document_ids: Sequence[str]) -> Iterable[Dict[str, Any]]:
        """Return raw aggregate rows for ``user_id`` within ``document_ids``."""
        pass


class InMemoryFeedbackStore(BaseFeedbackStore):
    """
    In-memory aggregate for development and tests.

    ``record`` plays the role of the external process that folds feedback
    events into the aggregate.
    """

    def __init__(self):
        self._rows: Dict[Tuple[str, str, int], Dict[str, Any]] = {}
        self._lock = Lock()

    def record(self, user_id: str, document_id: str, chunk_index: int, positive: bool) -> None:
        with self._lock:
            row = self._rows.setdefault(
                (user_id, document_id, chunk_index),
                {
                    "user_id": user_id,
                    "document_id": document_id,
                    "chunk_index": chunk_index,
                    "positive_count": 0,
                    "negative_count": 0,
                    "total_count": 0,
                },
            )
            row["positive_count" if positive else "negative_count"] += 1
            row["total_count"] += 1
            row["normalized_score"] = normalized_feedback_score(
                row["positive_count"], row["negative_count"], row["total_count"]
            )

    def put_row(self, row: Dict[str, Any]) -> None:
        """Insert a raw row as-is."""
        with self._lock:
            key = (row.get("user_id"), row.get("document_id"), row.get("chunk_index"))
            self._rows[key] = dict(row)

    def rows_for(self, user_id: str, document_ids: Sequence[str]) -> List[Dict[str, Any]]:
        wanted = set(document_ids)
        with self._lock:
            return [
                dict(row)
                for row in self._rows.values()
                if row.get("user_id") == user_id and row.get("document_id") in wanted
            ]


class MongoDBFeedbackStore(BaseFeedbackStore):
    """Feedback aggregate stored in a MongoDB collection."""

    PROJECTION = {
        "_id": 0,
        "document_id": 1,
        "chunk_index": 1,
        "positive_count": 1,
        "negative_count": 1,
        "total_count": 1,
        "normalized_score": 1,
    }

    def __init__(self, config: DatabaseConfig, collection=None):
        self.config = config
        self._collection = collection

    def _connect(self):
        if self._collection is None:
            if not self.config.mongodb_uri:
                raise ValueError(
                    "MongoDB URI not configured. Set MONGODB_URI environment variable."
                )
            from pymongo import MongoClient

            client = MongoClient(self.config.mongodb_uri)
            self._collection = client[self.config.mongodb_database][self.config.feedback_collection]
        return self._collection

    def rows_for(self, user_id: str, document_ids: Sequence[str]) -> List[Dict[str, Any]]:
        collection = self._connect()
        cursor = collection.find(
            {"user_id": user_id, "document_id": {"$in": list(document_ids)}},
            self.PROJECTION,
        )
        return list(cursor)


class FeedbackScorer:
    """
    Looks up feedback scores for retrieved chunks.

    Example:
        scorer = FeedbackScorer(InMemoryFeedbackStore())
        scores = scorer.scores_for("user-1", [("doc-1", 0), ("doc-1", 3)])
        score = scores.get("doc-1:3")  # None means neutral
    """

    def __init__(self, store: BaseFeedbackStore):
        self.store = store

    def scores_for(self, user_id: str, chunks: Sequence[ChunkRef]) -> Dict[str, FeedbackScore]:
        """
        Return scores for the requested chunks that have feedback.

        Only the requesting user's own rows are read. Missing keys mean a
        neutral score with zero votes. Malformed rows are skipped, and a
        failing store yields an empty map.
        """
        if not chunks:
            return {}

        wanted = {feedback_key(doc_id, idx) for doc_id, idx in chunks}
        document_ids = sorted({doc_id for doc_id, _ in chunks})

        try:
            rows = list(self.store.rows_for(user_id, document_ids))
        except Exception as e:
            logger.warning(f"Feedback lookup failed, continuing without feedback: {e}")
            return {}

        scores: Dict[str, FeedbackScore] = {}
        for row in rows:
            try:
                if row.get("user_id", user_id) != user_id:
                    continue
                score = FeedbackScore.from_row(row, user_id)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed feedback row {row!r}: {e}")
                continue
            if score.key in wanted:
                scores[score.key] = score

        logger.debug(f"Found feedback for {len(scores)}/{len(wanted)} chunks")
        return scores


def create_feedback_store(config: Optional[DatabaseConfig] = None) -> BaseFeedbackStore:
    """Build the configured feedback backend."""
    config = config or get_settings().database
    if config.backend == "mongodb":
        return MongoDBFeedbackStore(config)
    return InMemoryFeedbackStore()
