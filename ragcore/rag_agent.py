"""
RAG Agent Module

Single entry point for the thin external layer (HTTP routes, bots, CLIs).
Wires every component from settings and exposes the operations that layer
needs:

    class RAGAgent:
        def register_document(user_id, filename, storage_path, embedding_provider) -> Document
        def process_document(document_id) -> ProcessingResult
        def query(user_id, question, session_id=None, ...) -> dict
        def search_similar(user_id, query, ...) -> list[dict]

Design Rationale:
- Authorization, rate limiting and uploads stay outside; the agent trusts
  the user_id it is given
- The embedding provider is an explicit argument on every call, defaulting
  to the configured provider; there is no process-wide "current" provider
- Failures come back as {"kind", "message"} dicts, never UI text
"""

import logging
from typing import Any, Dict, List, Optional

from config.settings import get_settings, Settings
from ragcore.chunker import DocumentChunker
from ragcore.classifier import QueryCategory, QueryClassifier
from ragcore.decomposer import QueryDecomposer
from ragcore.documents import BaseDocumentRepository, Document, create_document_repository
from ragcore.embeddings import EmbeddingService
from ragcore.errors import InvalidInputError, RAGError
from ragcore.evaluator import Evaluator
from ragcore.feedback import BaseFeedbackStore, FeedbackScorer, create_feedback_store
from ragcore.ingestion import DocumentProcessor, ProcessingResult
from ragcore.llm_service import Generator, create_llm_provider
from ragcore.prompt_builder import PromptBuilder
from ragcore.rag_chain import RAGAnswer, RAGChain
from ragcore.retriever import Retriever
from ragcore.security import CONVERSATION_HISTORY_MAX
from ragcore.sessions import BaseMessageStore, create_message_store
from ragcore.vector_store import BaseVectorIndex, create_vector_index

logger = logging.getLogger(__name__)


class RAGAgent:
    """
    Main RAG Agent: the public API of the core.

    Example:
        agent = create_agent()
        doc = agent.register_document("user-1", "handbook.pdf", "/uploads/handbook.pdf")
        agent.process_document(doc.id)

        session = agent.messages.create_session("user-1")
        result = agent.query("user-1", "How many vacation days do I get?", session_id=session.id)
        print(result["content"], result["sources"])
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        embedding_service: Optional[EmbeddingService] = None,
        vector_index: Optional[BaseVectorIndex] = None,
        generator: Optional[Generator] = None,
        documents: Optional[BaseDocumentRepository] = None,
        feedback_store: Optional[BaseFeedbackStore] = None,
        messages: Optional[BaseMessageStore] = None,
    ):
        """
        Initialize the RAG Agent.

        Any component not passed in is built from ``settings``.
        """
        settings = settings or get_settings()
        self.settings = settings

        logger.info("Initializing RAG Agent...")

        self.embedding_service = embedding_service or EmbeddingService(settings.embedding)
        self.vector_index = vector_index or create_vector_index(settings.vector_store)
        self.generator = generator or Generator(
            create_llm_provider(config=settings.llm), settings.llm
        )
        self.documents = documents or create_document_repository(settings.database)
        self.messages = messages or create_message_store(settings.database)
        feedback_store = feedback_store or create_feedback_store(settings.database)

        self.processor = DocumentProcessor(
            repository=self.documents,
            chunker=DocumentChunker(config=settings.chunking),
            embedding_service=self.embedding_service,
            vector_index=self.vector_index,
        )
        self.retriever = Retriever(
            classifier=QueryClassifier(self.generator, timeout=settings.evaluation.timeout),
            embedding_service=self.embedding_service,
            vector_index=self.vector_index,
            feedback_scorer=FeedbackScorer(feedback_store),
            config=settings.retrieval,
            decomposer=QueryDecomposer(self.generator, timeout=settings.evaluation.timeout),
        )
        self.chain = RAGChain(
            retriever=self.retriever,
            prompt_builder=PromptBuilder(),
            generator=self.generator,
            evaluator=Evaluator(self.generator, settings.evaluation),
            config=settings.pipeline,
            preview_length=settings.retrieval.preview_length,
        )

        logger.info(
            f"RAG Agent initialized: "
            f"embedding={self.embedding_service.default_provider}, "
            f"llm={self.generator.model_name}, "
            f"vector_store={type(self.vector_index).__name__}"
        )

    # Ingestion

    def register_document(
        self,
        user_id: str,
        filename: str,
        storage_path: str,
        embedding_provider: Optional[str] = None,
    ) -> Document:
        """Record an uploaded file; its provider is fixed from here on."""
        document = Document.new(
            user_id=user_id,
            filename=filename,
            embedding_provider=embedding_provider or self.embedding_service.default_provider,
            storage_path=storage_path,
        )
        self.documents.add(document)
        logger.info(f"Registered document {document.id} ({filename}) for user {user_id}")
        return document

    def process_document(self, document_id: str) -> ProcessingResult:
        return self.processor.process_document(document_id)

    # Query

    def answer(
        self,
        user_id: str,
        question: str,
        provider: Optional[str] = None,
        history: Optional[List[Dict[str, Any]]] = None,
        top_k: Optional[int] = None,
    ) -> RAGAnswer:
        """Run the chain over the user's documents. Raises RAGError."""
        return self.chain.answer(
            question,
            user_id=user_id,
            documents=self.documents.list_for_user(user_id),
            provider=provider or self.embedding_service.default_provider,
            history=history,
            top_k=top_k,
        )

    def query(
        self,
        user_id: str,
        question: str,
        session_id: Optional[str] = None,
        provider: Optional[str] = None,
        history: Optional[List[Dict[str, Any]]] = None,
        top_k: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Answer a question and, with a session, persist both turns.

        Args:
            user_id: Requesting user
            question: Raw user message
            session_id: Chat session to read history from and append to
            provider: Embedding provider (default from config)
            history: Explicit history; otherwise read from the session
            top_k: Number of contexts

        Returns:
            The message payload (role, content, sources, model) plus
            category and evaluation, or {"error": {"kind", "message"}}
        """
        try:
            if session_id is not None:
                if self.messages.get_session(session_id) is None:
                    raise InvalidInputError(f"Unknown chat session: {session_id}")
                if history is None:
                    history = self.messages.history_for_llm(session_id, CONVERSATION_HISTORY_MAX)

            answer = self.answer(user_id, question, provider=provider, history=history, top_k=top_k)
        except RAGError as e:
            logger.error(f"Query error ({e.kind}): {e.message}")
            return {"error": e.to_failure().to_dict()}

        if session_id is not None:
            self.messages.append_message(session_id, "user", question)
            self.messages.append_message(
                session_id,
                "assistant",
                answer.content,
                sources=answer.sources,
                model=answer.model,
                evaluation=None if answer.evaluation.skipped else answer.evaluation.to_dict(),
            )

        return answer.to_dict()

    def search_similar(
        self,
        user_id: str,
        query: str,
        provider: Optional[str] = None,
        top_k: int = 5,
    ) -> List[Dict[str, Any]]:
        """
        Retrieve ranked contexts without generating an answer.

        Classification is bypassed: the query is always treated as a
        knowledge-seeking question.
        """
        result = self.retriever.retrieve(
            query,
            user_id=user_id,
            documents=self.documents.list_for_user(user_id),
            provider=provider or self.embedding_service.default_provider,
            top_k=top_k,
            category=QueryCategory.SIMPLE,
        )
        return [
            {**ctx.to_dict(), "text": ctx.text}
            for ctx in result.contexts
        ]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "vector_index": {
                "backend": type(self.vector_index).__name__,
                "total_chunks": self.vector_index.count(),
            },
            "embedding": {"default_provider": self.embedding_service.default_provider},
            "llm": {"model": self.generator.model_name},
        }


def create_agent(settings: Optional[Settings] = None, **kwargs) -> RAGAgent:
    """
    Create a RAG Agent from settings.

    Args:
        settings: Settings instance (default: environment)
        **kwargs: Component overrides passed to RAGAgent
    """
    return RAGAgent(settings=settings, **kwargs)
