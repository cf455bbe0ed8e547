"""
Retriever Module

Per-query retrieval state machine:

    classify -> [decompose] -> search -> rerank -> finalize

- Conversational queries and empty scopes short-circuit to zero contexts:
  no vector search, no feedback lookup, no reranking.
- The vector search over-fetches (top_k x over_fetch_factor, capped at
  max_fetch) so reranking can reorder without starving the result set.
- Feedback only nudges: combined = similarity + weight x normalized score,
  applied once a chunk has at least min_feedback_count votes. With the
  default weight of 0.15 feedback can swap near neighbours but cannot lift a
  weak match over a strong one.
- Ties on the combined score keep the original similarity order.
- Complex queries with a decomposer search once per sub-query; results are
  merged per chunk keeping the best score, then capped at
  max_complex_contexts.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from config.settings import get_settings, RetrievalConfig
from ragcore.classifier import ClassificationResult, QueryCategory, QueryClassifier
from ragcore.decomposer import Decomposition, QueryDecomposer
from ragcore.deadline import Deadline
from ragcore.documents import Document, DocumentStatus
from ragcore.embeddings import EmbeddingService
from ragcore.feedback import FeedbackScore, FeedbackScorer
from ragcore.sessions import Source
from ragcore.vector_store import BaseVectorIndex, SearchHit

logger = logging.getLogger(__name__)


@dataclass
class RetrievedContext:
    """
    A chunk selected for the prompt, with its ranking signals.

    Attributes:
        similarity: Cosine similarity from the vector search
        feedback_score: Normalized feedback in [-1, 1] (0 when absent)
        feedback_count: Votes behind feedback_score
        score: Combined rerank score
        similarity_rank: 0-based position in the similarity ranking
        sub_query: Sub-query that retrieved it (complex queries only)
    """

    document_id: str
    chunk_index: int
    text: str
    filename: str
    similarity: float
    feedback_score: float = 0.0
    feedback_count: int = 0
    score: float = 0.0
    similarity_rank: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    sub_query: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.document_id}:{self.chunk_index}"

    def to_source(self, preview_length: int = 150) -> Source:
        return Source(
            document_id=self.document_id,
            filename=self.filename,
            chunk_index=self.chunk_index,
            score=self.score,
            preview=self.text[:preview_length] + "...",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "filename": self.filename,
            "similarity": self.similarity,
            "feedback_score": self.feedback_score,
            "feedback_count": self.feedback_count,
            "score": self.score,
            "similarity_rank": self.similarity_rank,
            "sub_query": self.sub_query,
        }


@dataclass
class RetrievalResult:
    """
    Outcome of one retrieval.

    Attributes:
        category: Query category that gated retrieval
        contexts: Final ranked contexts (possibly empty)
        searched: Whether the vector index was queried
        reranked: Whether the rerank stage ran
        decomposition: Sub-query plan, set for decomposed complex queries
    """

    category: QueryCategory
    contexts: List[RetrievedContext] = field(default_factory=list)
    searched: bool = False
    reranked: bool = False
    classification: Optional[ClassificationResult] = None
    decomposition: Optional[Decomposition] = None

    @property
    def sub_queries(self) -> List[str]:
        return list(self.decomposition.sub_queries) if self.decomposition else []

    @property
    def synthesis_instruction(self) -> Optional[str]:
        return self.decomposition.synthesis_instruction if self.decomposition else None


def fetch_limit(top_k: int, over_fetch_factor: int, max_fetch: int) -> int:
    """Candidates to request: top_k x factor, capped, never below top_k."""
    return max(top_k, min(top_k * over_fetch_factor, max_fetch))


def rerank(
    hits: Sequence[SearchHit],
    feedback: Mapping[str, FeedbackScore],
    filenames: Mapping[str, str],
    feedback_weight: float = 0.15,
    min_feedback_count: int = 2,
) -> List[RetrievedContext]:
    """
    Combine similarity with feedback and sort.

    ``hits`` must already be in similarity order; their position becomes the
    tie-breaker.
    """
    contexts = []
    for rank, hit in enumerate(hits):
        score = feedback.get(hit.key)
        normalized = score.normalized_score if score else 0.0
        count = score.total_count if score else 0

        combined = hit.similarity
        if count >= min_feedback_count:
            combined += feedback_weight * normalized

        contexts.append(RetrievedContext(
            document_id=hit.document_id,
            chunk_index=hit.chunk_index,
            text=hit.text,
            filename=filenames.get(hit.document_id) or hit.metadata.get("filename", ""),
            similarity=hit.similarity,
            feedback_score=normalized,
            feedback_count=count,
            score=combined,
            similarity_rank=rank,
            metadata=hit.metadata,
        ))

    contexts.sort(key=lambda c: (-c.score, c.similarity_rank))
    return contexts


def scope_documents(documents: Sequence[Document], provider: str) -> List[Document]:
    """Processed documents embedded with ``provider``."""
    return [
        d for d in documents
        if d.status == DocumentStatus.PROCESSED and d.embedding_provider == provider
    ]


class Retriever:
    """
    Orchestrates classification, vector search and feedback reranking.

    Example:
        retriever = Retriever(classifier, embeddings, index, FeedbackScorer(store))
        result = retriever.retrieve(
            "How long do refunds take?",
            user_id="user-1",
            documents=user_documents,
            provider="local",
        )
        for ctx in result.contexts:
            print(ctx.filename, ctx.score)
    """

    def __init__(
        self,
        classifier: QueryClassifier,
        embedding_service: EmbeddingService,
        vector_index: BaseVectorIndex,
        feedback_scorer: FeedbackScorer,
        config: Optional[RetrievalConfig] = None,
        decomposer: Optional[QueryDecomposer] = None,
    ):
        self.classifier = classifier
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.feedback_scorer = feedback_scorer
        self.config = config or get_settings().retrieval
        self.decomposer = decomposer

        logger.info(
            f"Retriever initialized: top_k={self.config.top_k}, "
            f"over_fetch={self.config.over_fetch_factor}, "
            f"feedback_weight={self.config.feedback_weight}, "
            f"decomposition={'on' if decomposer else 'off'}"
        )

    def retrieve(
        self,
        query: str,
        user_id: str,
        documents: Sequence[Document],
        provider: str,
        top_k: Optional[int] = None,
        history: Optional[List[Dict[str, str]]] = None,
        category: Optional[QueryCategory] = None,
        deadline: Optional[Deadline] = None,
    ) -> RetrievalResult:
        """
        Retrieve ranked contexts for ``query``.

        Complex queries go through the decomposer when one is configured:
        every sub-query is searched and reranked with ``top_k``, then the
        results are merged by chunk (best score wins) and capped at
        max_complex_contexts.

        Args:
            query: The user's question
            user_id: Requesting user (scopes the feedback lookup)
            documents: Already-authorized documents the query may search
            provider: Active embedding provider; other documents are skipped
            top_k: Final number of contexts (default from config)
            history: Sanitized conversation history, for classification
            category: Pre-computed category; skips classification when given
            deadline: End-to-end query budget
        """
        top_k = top_k or self.config.top_k
        deadline = deadline or Deadline.none()

        classification = None
        if category is None:
            deadline.check("classification")
            classification = self.classifier.classify(query, history, deadline=deadline)
            category = classification.category

        result = RetrievalResult(category=category, classification=classification)

        if not category.is_knowledge_seeking:
            logger.info("Conversational query, skipping retrieval")
            return result

        scope = scope_documents(documents, provider)
        if not scope:
            logger.info(f"No processed documents for provider {provider}, skipping retrieval")
            return result

        if category == QueryCategory.COMPLEX and self.decomposer is not None:
            deadline.check("decomposition")
            result.decomposition = self.decomposer.decompose(query, deadline=deadline)
            result.contexts = self._merge_sub_queries(
                result, user_id, scope, provider, top_k, deadline
            )
            return result

        result.contexts = self._search(query, user_id, scope, provider, top_k, deadline, result)
        return result

    def _merge_sub_queries(
        self,
        result: RetrievalResult,
        user_id: str,
        scope: Sequence[Document],
        provider: str,
        top_k: int,
        deadline: Deadline,
    ) -> List[RetrievedContext]:
        """Search every sub-query in order and keep each chunk's best score."""
        sub_queries = result.decomposition.sub_queries
        merged: Dict[str, RetrievedContext] = {}
        for sub_query in sub_queries:
            for ctx in self._search(sub_query, user_id, scope, provider, top_k, deadline, result):
                ctx.sub_query = sub_query
                best = merged.get(ctx.key)
                if best is None or ctx.score > best.score:
                    merged[ctx.key] = ctx

        ranked = sorted(merged.values(), key=lambda c: (-c.score, -c.similarity))
        kept = ranked[:self.config.max_complex_contexts]
        logger.info(
            f"Merged {len(merged)} distinct contexts from {len(sub_queries)} sub-queries, "
            f"kept {len(kept)}"
        )
        return kept

    def _search(
        self,
        query: str,
        user_id: str,
        scope: Sequence[Document],
        provider: str,
        top_k: int,
        deadline: Deadline,
        result: RetrievalResult,
    ) -> List[RetrievedContext]:
        """Embed, over-fetch, rerank and truncate for one query."""
        deadline.check("retrieval")
        query_vector = self.embedding_service.embed_query(query, provider)

        limit = fetch_limit(top_k, self.config.over_fetch_factor, self.config.max_fetch)
        hits = self.vector_index.search(
            query_vector,
            document_ids=[d.id for d in scope],
            provider=provider,
            top_k=limit,
        )
        result.searched = True

        if not hits:
            logger.info("Vector search returned no hits")
            return []

        feedback = self.feedback_scorer.scores_for(
            user_id, [(h.document_id, h.chunk_index) for h in hits]
        )
        filenames = {d.id: d.filename for d in scope}
        contexts = rerank(
            hits,
            feedback,
            filenames,
            feedback_weight=self.config.feedback_weight,
            min_feedback_count=self.config.min_feedback_count,
        )
        result.reranked = True

        logger.info(
            f"Retrieved {min(len(contexts), top_k)} contexts from {len(hits)} candidates "
            f"({len(feedback)} with feedback)"
        )
        return contexts[:top_k]
