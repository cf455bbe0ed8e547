"""
Error taxonomy for the RAG core.

Every error carries a short machine-readable ``kind`` so the thin external
layer (HTTP routes, bot handlers) can map failures to status codes without
parsing messages. The core never produces user-facing UI text.

Categories:
- input errors: degrade to a defined default where possible
- transient errors: retried with bounded backoff at the component boundary
- terminal errors: surfaced immediately, never retried
- evaluation-check errors: isolated inside the evaluator (never raised here)
"""

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class PipelineFailure:
    """Structured failure handed to the external layer."""

    kind: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class RAGError(Exception):
    """Base class for all core errors."""

    kind = "internal"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_failure(self) -> PipelineFailure:
        return PipelineFailure(kind=self.kind, message=self.message or str(self))


# Input errors

class InvalidInputError(RAGError):
    kind = "invalid_input"


class EmptyDocumentError(InvalidInputError):
    kind = "empty_document"


# Infrastructure errors

class TransientError(RAGError):
    """Timeouts, 5xx responses, dropped connections. Safe to retry."""

    kind = "transient"


class TerminalError(RAGError):
    """Malformed requests, auth failures. Never retried."""

    kind = "terminal"


class ContentPolicyError(TerminalError):
    kind = "content_policy"


class GenerationError(RAGError):
    kind = "generation_failed"


class GenerationTimeoutError(GenerationError):
    kind = "timeout"


class DeadlineExceeded(RAGError):
    """The end-to-end query budget ran out."""

    kind = "timeout"


class EmbeddingError(RAGError):
    kind = "embedding_failed"


class ProviderMismatchError(RAGError):
    kind = "provider_mismatch"


# Ingestion preconditions

class DocumentNotFoundError(RAGError):
    kind = "not_found"


class DocumentAlreadyProcessedError(RAGError):
    kind = "already_processed"


class DocumentBusyError(RAGError):
    kind = "currently_processing"
