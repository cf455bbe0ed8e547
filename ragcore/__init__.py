"""
ragcore - Grounded document Q&A core

This package contains the RAG components:
- DocumentChunker: Offset-tracked, overlapping document segmentation
- EmbeddingService: Named embedding providers (local vs cloud)
- FAISSVectorIndex / MongoDBVectorIndex: Provider-scoped vector search
- FeedbackScorer: Per-user thumbs up/down scores for reranking
- QueryClassifier: conversational / simple / complex routing
- QueryDecomposer: 2-4 sub-queries for complex questions
- Retriever: Over-fetch, feedback rerank, truncate
- PromptBuilder: Injection-resistant prompt assembly
- Generator: LLM calls under retry and timeout policy
- Evaluator: Parallel faithfulness / relevance / completeness grading
- Citations: [N] marker placeholders and rendering
- RAGChain / RAGAgent: End-to-end pipeline and public API
"""

from .chunker import DocumentChunker, Chunk, TextSpan
from .embeddings import EmbeddingService, EMBEDDING_PROVIDERS
from .vector_store import FAISSVectorIndex, MongoDBVectorIndex, SearchHit, create_vector_index
from .feedback import FeedbackScore, FeedbackScorer, normalized_feedback_score
from .classifier import QueryCategory, QueryClassifier
from .decomposer import Decomposition, QueryDecomposer
from .retriever import Retriever, RetrievedContext, RetrievalResult
from .prompt_builder import PromptBuilder, BuiltPrompt
from .llm_service import Generator, GenerationOptions, LLMResponse, create_llm_provider
from .evaluator import Evaluator, EvaluationResult, CheckResult, parse_check_result
from .citations import Citation, TextNode, insert_citation_placeholders, render_citations
from .documents import Document, DocumentStatus
from .sessions import Message, Source, ChatSession
from .ingestion import DocumentProcessor, ProcessingResult
from .rag_chain import RAGChain, RAGAnswer
from .rag_agent import RAGAgent, create_agent
from .errors import RAGError, PipelineFailure

__all__ = [
    # Ingestion
    "DocumentChunker",
    "Chunk",
    "TextSpan",
    "EmbeddingService",
    "EMBEDDING_PROVIDERS",
    "FAISSVectorIndex",
    "MongoDBVectorIndex",
    "SearchHit",
    "create_vector_index",
    "Document",
    "DocumentStatus",
    "DocumentProcessor",
    "ProcessingResult",
    # Retrieval
    "FeedbackScore",
    "FeedbackScorer",
    "normalized_feedback_score",
    "QueryCategory",
    "QueryClassifier",
    "QueryDecomposer",
    "Decomposition",
    "Retriever",
    "RetrievedContext",
    "RetrievalResult",
    # Generation
    "PromptBuilder",
    "BuiltPrompt",
    "Generator",
    "GenerationOptions",
    "LLMResponse",
    "create_llm_provider",
    "Evaluator",
    "EvaluationResult",
    "CheckResult",
    "parse_check_result",
    "Citation",
    "TextNode",
    "insert_citation_placeholders",
    "render_citations",
    # Pipeline
    "Message",
    "Source",
    "ChatSession",
    "RAGChain",
    "RAGAnswer",
    "RAGAgent",
    "create_agent",
    "RAGError",
    "PipelineFailure",
]
