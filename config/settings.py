"""
Configuration settings for the document Q&A core.

This module handles all configuration management using environment variables.
No hardcoded values - everything is configurable via .env file.

Note that the embedding provider here is only a *default* used when
constructing components. Ingestion and retrieval calls always receive the
provider explicitly, so there is no process-wide "current provider".
"""

import os
from dataclasses import dataclass, field
from typing import List, Literal, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


@dataclass
class EmbeddingConfig:
    """Configuration for embedding providers."""

    default_provider: Literal["local", "openai"] = "local"
    local_model: str = "all-MiniLM-L6-v2"
    openai_model: str = "text-embedding-3-small"
    openai_api_key: Optional[str] = None

    batch_size: int = 32
    timeout: float = 30.0  # seconds, per batch call
    max_retries: int = 2


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""

    provider: Literal["ollama", "openai", "gemini", "mistral"] = "ollama"

    # Ollama settings
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1"

    # OpenAI settings
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Gemini settings
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"

    # Mistral settings
    mistral_api_key: Optional[str] = None
    mistral_model: str = "mistral-small-latest"

    # Model used for classification and grading (falls back to the main model)
    grader_model: Optional[str] = None

    # Generation defaults
    temperature: float = 0.7
    max_tokens: int = 2048
    timeout: float = 45.0  # hard timeout per attempt, seconds

    # Retry policy for transient failures
    max_retries: int = 1  # answer generation
    internal_max_retries: int = 2  # classifier / grader calls
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0


@dataclass
class VectorStoreConfig:
    """Configuration for vector store."""

    provider: Literal["faiss", "mongodb"] = "faiss"

    # MongoDB settings
    mongodb_uri: Optional[str] = None
    mongodb_database: str = "ragcore"
    mongodb_collection: str = "chunk_vectors"
    mongodb_vector_index: str = "vector_index"

    # FAISS settings (directory, one index file per embedding provider)
    faiss_index_path: Optional[str] = None


@dataclass
class ChunkingConfig:
    """Configuration for document chunking."""

    chunk_size: int = 1000  # characters per chunk (upper bound)
    chunk_overlap: int = 200  # characters shared with the previous chunk
    separators: List[str] = field(
        default_factory=lambda: ["\n\n", "\n", ". ", " ", ""]
    )


@dataclass
class RetrievalConfig:
    """Configuration for retrieval and feedback-weighted reranking."""

    top_k: int = 5  # contexts handed to the prompt
    over_fetch_factor: int = 2  # candidates = top_k * factor
    max_fetch: int = 20  # hard cap on candidates
    feedback_weight: float = 0.15  # max shift a feedback score can apply
    min_feedback_count: int = 2  # votes needed before feedback counts
    max_complex_contexts: int = 8  # cap after merging sub-query results
    preview_length: int = 150


@dataclass
class EvaluationConfig:
    """Configuration for post-hoc answer evaluation."""

    enabled: bool = True
    max_tokens: int = 256
    timeout: float = 30.0
    context_char_limit: int = 600  # per source, in grading prompts
    answer_char_limit: int = 1500


@dataclass
class DatabaseConfig:
    """Configuration for document, feedback and chat persistence."""

    backend: Literal["memory", "mongodb"] = "memory"
    mongodb_uri: Optional[str] = None
    mongodb_database: str = "ragcore"
    documents_collection: str = "documents"
    feedback_collection: str = "chunk_feedback_scores"
    sessions_collection: str = "chat_sessions"
    messages_collection: str = "messages"


@dataclass
class PipelineConfig:
    """End-to-end query budget."""

    deadline_seconds: float = 60.0


@dataclass
class Settings:
    """
    Main settings class that aggregates all configurations.

    Usage:
        settings = get_settings()
        print(settings.embedding.default_provider)
        print(settings.retrieval.feedback_weight)
    """

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Create Settings instance from environment variables.

        This is the primary way to instantiate Settings.
        """
        embedding = EmbeddingConfig(
            default_provider=os.getenv("EMBEDDING_PROVIDER", "local"),  # type: ignore
            local_model=os.getenv("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            openai_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            batch_size=_env_int("EMBEDDING_BATCH_SIZE", "32"),
            timeout=_env_float("EMBEDDING_TIMEOUT", "30"),
            max_retries=_env_int("EMBEDDING_MAX_RETRIES", "2"),
        )

        llm = LLMConfig(
            provider=os.getenv("LLM_PROVIDER", "ollama"),  # type: ignore
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3.1"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_LLM_MODEL", "gpt-4o-mini"),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            mistral_api_key=os.getenv("MISTRAL_API_KEY"),
            mistral_model=os.getenv("MISTRAL_MODEL", "mistral-small-latest"),
            grader_model=os.getenv("GRADER_MODEL") or None,
            temperature=_env_float("LLM_TEMPERATURE", "0.7"),
            max_tokens=_env_int("LLM_MAX_TOKENS", "2048"),
            timeout=_env_float("LLM_TIMEOUT", "45"),
            max_retries=_env_int("LLM_MAX_RETRIES", "1"),
            internal_max_retries=_env_int("LLM_INTERNAL_MAX_RETRIES", "2"),
            initial_delay=_env_float("LLM_RETRY_INITIAL_DELAY", "2"),
            backoff_multiplier=_env_float("LLM_RETRY_BACKOFF", "2"),
            max_delay=_env_float("LLM_RETRY_MAX_DELAY", "10"),
        )

        vector_store = VectorStoreConfig(
            provider=os.getenv("VECTOR_STORE_PROVIDER", "faiss"),  # type: ignore
            mongodb_uri=os.getenv("MONGODB_URI"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "ragcore"),
            mongodb_collection=os.getenv("MONGODB_VECTOR_COLLECTION", "chunk_vectors"),
            mongodb_vector_index=os.getenv("MONGODB_VECTOR_INDEX", "vector_index"),
            faiss_index_path=os.getenv("FAISS_INDEX_PATH") or None,
        )

        chunking = ChunkingConfig(
            chunk_size=_env_int("CHUNK_SIZE", "1000"),
            chunk_overlap=_env_int("CHUNK_OVERLAP", "200"),
        )

        retrieval = RetrievalConfig(
            top_k=_env_int("TOP_K_RESULTS", "5"),
            over_fetch_factor=_env_int("RETRIEVAL_OVER_FETCH", "2"),
            max_fetch=_env_int("RETRIEVAL_MAX_FETCH", "20"),
            feedback_weight=_env_float("FEEDBACK_WEIGHT", "0.15"),
            min_feedback_count=_env_int("FEEDBACK_MIN_COUNT", "2"),
            max_complex_contexts=_env_int("RETRIEVAL_MAX_COMPLEX_CONTEXTS", "8"),
        )

        evaluation = EvaluationConfig(
            enabled=os.getenv("EVALUATION_ENABLED", "true").lower() == "true",
            timeout=_env_float("EVALUATION_TIMEOUT", "30"),
        )

        database = DatabaseConfig(
            backend=os.getenv("DATABASE_BACKEND", "memory"),  # type: ignore
            mongodb_uri=os.getenv("MONGODB_URI"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "ragcore"),
        )

        pipeline = PipelineConfig(
            deadline_seconds=_env_float("QUERY_DEADLINE_SECONDS", "60"),
        )

        return cls(
            embedding=embedding,
            llm=llm,
            vector_store=vector_store,
            chunking=chunking,
            retrieval=retrieval,
            evaluation=evaluation,
            database=database,
            pipeline=pipeline,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Singleton pattern for settings
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The application settings loaded from environment.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment (useful for testing).

    Returns:
        Settings: Fresh settings instance.
    """
    global _settings
    load_dotenv(override=True)
    _settings = Settings.from_env()
    return _settings
