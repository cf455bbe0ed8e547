"""
RAG Chain Module

Orchestrates the query pipeline under one end-to-end deadline:

    validate -> sanitize -> classify -> retrieve -> build prompt
             -> generate -> evaluate -> shape message payload

Design Rationale:
- Retrieval and evaluation are skipped for conversational queries
- Only optional enrichment degrades: a failing feedback store means plain
  similarity ranking, a failing grader means a 0 check score. Failures on
  the primary path (embedding, search, generation) surface as RAGError
  with a machine-readable kind.
- The deadline is checked before classification, retrieval, generation and
  evaluation; running out raises DeadlineExceeded (kind "timeout")
- The answer keeps its [N] markers; sources[N - 1] is what [N] cites

RAG Pipeline Flow:
    User Query -> Classify -> (knowledge-seeking) Embed -> Vector Search
    -> Feedback Rerank -> Build Prompt [Context + Question] -> LLM
    -> Evaluate -> Answer with Sources
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from config.settings import get_settings, PipelineConfig
from ragcore.citations import cited_indices, insert_citation_placeholders
from ragcore.classifier import QueryCategory
from ragcore.deadline import Deadline
from ragcore.documents import Document
from ragcore.errors import InvalidInputError, RAGError
from ragcore.evaluator import EvaluationResult, Evaluator
from ragcore.llm_service import Generator
from ragcore.prompt_builder import PromptBuilder
from ragcore.retriever import RetrievalResult, RetrievedContext, Retriever
from ragcore.security import (
    sanitize_conversation_history,
    sanitize_for_prompt,
    validate_message_length,
)
from ragcore.sessions import Source

logger = logging.getLogger(__name__)


@dataclass
class RAGAnswer:
    """
    Complete response from the RAG chain.

    Attributes:
        content: The generated answer, with [N] citation markers
        sources: Ordered sources; [N] resolves to sources[N - 1]
        model: Model that generated the answer
        category: Query category
        evaluation: Post-hoc quality scores
        contexts: The ranked contexts behind the sources
        metadata: Latency, usage and retrieval flags
    """

    content: str
    sources: List[Source]
    model: str
    category: QueryCategory
    evaluation: EvaluationResult
    contexts: List[RetrievedContext] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def cited_sources(self) -> List[Source]:
        """Sources actually referenced by an in-range marker."""
        return [
            self.sources[index - 1]
            for index in cited_indices(self.content)
            if index <= len(self.sources)
        ]

    def content_with_placeholders(self) -> str:
        """Answer text ready for rendering; see ragcore.citations."""
        return insert_citation_placeholders(self.content, len(self.sources))

    def to_message_payload(self) -> Dict[str, Any]:
        """Shape the answer for message persistence."""
        return {
            "role": "assistant",
            "content": self.content,
            "sources": [s.to_dict() for s in self.sources],
            "model": self.model,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.to_message_payload(),
            "category": self.category.value,
            "evaluation": self.evaluation.to_dict(),
            "metadata": self.metadata,
        }


class RAGChain:
    """
    Main RAG chain: one call per user query.

    Example:
        chain = RAGChain(retriever, PromptBuilder(), generator, evaluator)
        answer = chain.answer(
            "What is the refund window?",
            user_id="user-1",
            documents=repository.list_for_user("user-1"),
            provider="local",
        )
        print(answer.content)
        print(answer.to_message_payload()["sources"])
    """

    def __init__(
        self,
        retriever: Retriever,
        prompt_builder: PromptBuilder,
        generator: Generator,
        evaluator: Evaluator,
        config: Optional[PipelineConfig] = None,
        preview_length: Optional[int] = None,
    ):
        settings = get_settings()
        self.retriever = retriever
        self.prompt_builder = prompt_builder
        self.generator = generator
        self.evaluator = evaluator
        self.config = config or settings.pipeline
        self.preview_length = preview_length or settings.retrieval.preview_length

    def answer(
        self,
        query: str,
        user_id: str,
        documents: Sequence[Document],
        provider: str,
        history: Optional[List[Dict[str, Any]]] = None,
        deadline: Optional[Deadline] = None,
        top_k: Optional[int] = None,
        instructions: Optional[str] = None,
    ) -> RAGAnswer:
        """
        Answer ``query`` from the user's documents.

        Args:
            query: Raw user message
            user_id: Requesting user, already authorized for ``documents``
            documents: Document scope for retrieval
            provider: Active embedding provider
            history: Client-supplied conversation history (sanitized here)
            deadline: End-to-end budget (default from PipelineConfig)
            top_k: Final number of contexts
            instructions: Optional synthesis instruction for the prompt; overrides
                the one planned for a decomposed complex query

        Raises:
            InvalidInputError: empty or oversized query
            DeadlineExceeded: the budget ran out
            RAGError: any other pipeline failure, with its kind
        """
        error = validate_message_length(query)
        if error:
            raise InvalidInputError(error)

        if deadline is None:
            deadline = Deadline.after(self.config.deadline_seconds)

        clean_query = sanitize_for_prompt(query)
        clean_history = sanitize_conversation_history(history)
        started = time.monotonic()

        try:
            return self._run(
                clean_query, user_id, documents, provider,
                clean_history, deadline, top_k, instructions, started,
            )
        except RAGError:
            raise
        except Exception as e:
            logger.exception("Query pipeline failed")
            raise RAGError(f"Query pipeline failed: {e}") from e

    def _run(
        self,
        query: str,
        user_id: str,
        documents: Sequence[Document],
        provider: str,
        history: List[Dict[str, str]],
        deadline: Deadline,
        top_k: Optional[int],
        instructions: Optional[str],
        started: float,
    ) -> RAGAnswer:
        retrieval: RetrievalResult = self.retriever.retrieve(
            query,
            user_id=user_id,
            documents=documents,
            provider=provider,
            top_k=top_k,
            history=history,
            deadline=deadline,
        )
        contexts = retrieval.contexts

        prompt = self.prompt_builder.build(
            query,
            contexts,
            history=history,
            instructions=instructions or retrieval.synthesis_instruction,
            category=retrieval.category,
        )

        deadline.check("generation")
        response = self.generator.generate(
            prompt.system_prompt, prompt.user_prompt, deadline=deadline
        )

        deadline.check("evaluation")
        evaluation = self.evaluator.evaluate(
            query, response.content, contexts, retrieval.category, deadline=deadline
        )

        latency_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Answered {retrieval.category.value} query with {len(contexts)} contexts "
            f"in {latency_ms:.0f}ms (overall {evaluation.overall:.2f})"
        )

        return RAGAnswer(
            content=response.content,
            sources=[ctx.to_source(self.preview_length) for ctx in contexts],
            model=response.model,
            category=retrieval.category,
            evaluation=evaluation,
            contexts=list(contexts),
            metadata={
                "latency_ms": round(latency_ms, 2),
                "searched": retrieval.searched,
                "reranked": retrieval.reranked,
                "classification_fallback": bool(
                    retrieval.classification and retrieval.classification.fallback
                ),
                "sub_queries": retrieval.sub_queries,
                "usage": response.usage,
            },
        )
