"""
Document Ingestion Module

Serialized per-document pipeline:

    fetch -> claim (uploaded/failed -> processing) -> extract text -> chunk
          -> drop old vectors -> embed -> upsert -> processed

The claim is a compare-and-set on the document status, committed before any
slow work starts, so a second request for the same document is rejected
instead of racing. Any failure after the claim marks the document failed
with the error message; nothing is left in "processing".
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ragcore.chunker import Chunk, DocumentChunker, load_document_text
from ragcore.documents import BaseDocumentRepository, Document, DocumentStatus
from ragcore.embeddings import EmbeddingService
from ragcore.errors import (
    DocumentAlreadyProcessedError,
    DocumentBusyError,
    DocumentNotFoundError,
    EmptyDocumentError,
    InvalidInputError,
    PipelineFailure,
    RAGError,
)
from ragcore.vector_store import BaseVectorIndex

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    """Outcome of process_document. ``failure`` is set iff not successful."""

    success: bool
    document_id: str
    chunks: List[Chunk] = field(default_factory=list)
    failure: Optional[PipelineFailure] = None

    @classmethod
    def failed(cls, document_id: str, error: RAGError) -> "ProcessingResult":
        return cls(success=False, document_id=document_id, failure=error.to_failure())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "documentId": self.document_id}
        if self.success:
            data["chunks"] = [
                {
                    "chunkIndex": c.chunk_index,
                    "startOffset": c.start_offset,
                    "endOffset": c.end_offset,
                    "length": len(c.text),
                }
                for c in self.chunks
            ]
        else:
            data["error"] = self.failure.to_dict()
        return data


def check_processable(document: Optional[Document]) -> Document:
    """
    Status preconditions, for the HTTP layer to run before processing.

    Raises:
        DocumentNotFoundError: no such document
        DocumentAlreadyProcessedError: status is processed
        DocumentBusyError: status is processing
    """
    if document is None:
        raise DocumentNotFoundError("Document not found")
    if document.status == DocumentStatus.PROCESSED:
        raise DocumentAlreadyProcessedError("Document already processed")
    if document.status == DocumentStatus.PROCESSING:
        raise DocumentBusyError("Document is currently being processed")
    return document


class DocumentProcessor:
    """
    Turns an uploaded document into indexed chunks.

    Example:
        processor = DocumentProcessor(repository, DocumentChunker(), embeddings, index)
        result = processor.process_document(document.id)
        if not result.success:
            print(result.failure.kind, result.failure.message)
    """

    def __init__(
        self,
        repository: BaseDocumentRepository,
        chunker: DocumentChunker,
        embedding_service: EmbeddingService,
        vector_index: BaseVectorIndex,
        text_loader: Callable[[str], str] = load_document_text,
    ):
        self.repository = repository
        self.chunker = chunker
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.text_loader = text_loader

    def check_processable(self, document_id: str) -> Document:
        return check_processable(self.repository.get(document_id))

    def process_document(self, document_id: str) -> ProcessingResult:
        """
        Process one document end to end.

        Returns:
            ProcessingResult with the stored chunks, or a structured failure.
            Precondition violations are reported without touching the
            document; failures after the claim also mark it failed.
        """
        try:
            document = self.check_processable(document_id)
        except RAGError as e:
            logger.warning(f"Cannot process document {document_id}: {e.message}")
            return ProcessingResult.failed(document_id, e)

        if not self.repository.try_start_processing(document_id):
            logger.warning(f"Document {document_id} was claimed by another request")
            return ProcessingResult.failed(
                document_id, DocumentBusyError("Document is currently being processed")
            )

        logger.info(f"Processing document {document_id} ({document.filename})")

        try:
            chunks = self._ingest(document)
        except RAGError as e:
            logger.error(f"Processing failed for document {document_id}: {e.message}")
            self.repository.mark_failed(document_id, e.message)
            return ProcessingResult.failed(document_id, e)
        except Exception as e:
            logger.exception(f"Processing failed for document {document_id}")
            self.repository.mark_failed(document_id, str(e) or type(e).__name__)
            return ProcessingResult(
                success=False,
                document_id=document_id,
                failure=PipelineFailure(kind="internal", message=str(e)),
            )

        self.repository.mark_processed(document_id, len(chunks))
        logger.info(f"Document {document_id} processed into {len(chunks)} chunks")
        return ProcessingResult(success=True, document_id=document_id, chunks=chunks)

    def _ingest(self, document: Document) -> List[Chunk]:
        if not document.storage_path:
            raise InvalidInputError(f"Document {document.id} has no stored file")

        text = self.text_loader(document.storage_path)
        spans = self.chunker.chunk_text(text)
        if spans.is_empty:
            raise EmptyDocumentError("No text content could be extracted from document")

        provider = document.embedding_provider
        chunks = self.chunker.build_chunks(
            document.id, spans, provider, metadata={"filename": document.filename}
        )

        # Reprocessing regenerates the chunk set wholesale
        self.vector_index.delete_document(document.id)

        vectors = self.embedding_service.embed_documents([c.text for c in chunks], provider)
        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector

        self.vector_index.upsert(document.id, provider, chunks)
        return chunks
