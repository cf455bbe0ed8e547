"""
Tests for the document ingestion pipeline.

Run with: pytest tests/test_ingestion.py -v
"""

from unittest.mock import Mock

import pytest

from config.settings import ChunkingConfig
from ragcore.chunker import DocumentChunker
from ragcore.documents import Document, DocumentStatus, InMemoryDocumentRepository
from ragcore.errors import (
    DocumentAlreadyProcessedError,
    DocumentBusyError,
    DocumentNotFoundError,
    EmbeddingError,
)
from ragcore.ingestion import DocumentProcessor, check_processable
from ragcore.vector_store import FAISSVectorIndex

TEXT = (
    "Refund policy.\n\n"
    "Customers may request a refund within 30 days of purchase. "
    "Refunds are issued to the original payment method.\n\n"
    "Shipping policy.\n\n"
    "Orders ship within two business days. Express shipping is available."
)


def fake_embed(texts, provider):
    return [[float(len(t) % 7 + 1)] + [0.5] * 383 for t in texts]


@pytest.fixture
def repository():
    return InMemoryDocumentRepository()


@pytest.fixture
def index():
    return FAISSVectorIndex()


@pytest.fixture
def embeddings():
    service = Mock()
    service.embed_documents.side_effect = fake_embed
    return service


@pytest.fixture
def chunker():
    return DocumentChunker(config=ChunkingConfig(chunk_size=80, chunk_overlap=10))


def make_processor(repository, chunker, embeddings, index, text=TEXT):
    return DocumentProcessor(
        repository, chunker, embeddings, index, text_loader=lambda path: text
    )


def add_document(repository, status=DocumentStatus.UPLOADED, provider="local"):
    document = Document.new("u1", "policy.txt", provider, storage_path="/data/policy.txt")
    document.status = status
    return repository.add(document)


class TestCheckProcessable:
    """Tests for the three status preconditions."""

    def test_not_found(self):
        with pytest.raises(DocumentNotFoundError) as exc:
            check_processable(None)
        assert exc.value.kind == "not_found"

    def test_already_processed(self):
        document = Document.new("u1", "a.pdf", "local")
        document.status = DocumentStatus.PROCESSED
        with pytest.raises(DocumentAlreadyProcessedError):
            check_processable(document)

    def test_currently_processing(self):
        document = Document.new("u1", "a.pdf", "local")
        document.status = DocumentStatus.PROCESSING
        with pytest.raises(DocumentBusyError) as exc:
            check_processable(document)
        assert exc.value.kind == "currently_processing"

    @pytest.mark.parametrize("status", [DocumentStatus.UPLOADED, DocumentStatus.FAILED])
    def test_startable(self, status):
        document = Document.new("u1", "a.pdf", "local")
        document.status = status
        assert check_processable(document) is document


class TestDocumentProcessor:
    """Tests for process_document."""

    def test_success(self, repository, chunker, embeddings, index):
        document = add_document(repository)
        processor = make_processor(repository, chunker, embeddings, index)

        result = processor.process_document(document.id)

        assert result.success
        assert result.failure is None
        assert [c.chunk_index for c in result.chunks] == list(range(len(result.chunks)))
        assert all(c.embedding_provider == "local" for c in result.chunks)
        assert all(TEXT[c.start_offset:c.end_offset] == c.text for c in result.chunks)
        assert index.count() == len(result.chunks)

        stored = repository.get(document.id)
        assert stored.status == DocumentStatus.PROCESSED
        assert stored.chunk_count == len(result.chunks)
        embeddings.embed_documents.assert_called_once()
        assert embeddings.embed_documents.call_args.args[1] == "local"

    def test_result_payload(self, repository, chunker, embeddings, index):
        document = add_document(repository)
        result = make_processor(repository, chunker, embeddings, index).process_document(document.id)

        payload = result.to_dict()
        assert payload["success"] is True
        assert payload["documentId"] == document.id
        assert payload["chunks"][0]["chunkIndex"] == 0

    def test_empty_document(self, repository, chunker, embeddings, index):
        document = add_document(repository)
        processor = make_processor(repository, chunker, embeddings, index, text="  \n\n ")

        result = processor.process_document(document.id)

        assert not result.success
        assert result.failure.kind == "empty_document"
        assert repository.get(document.id).status == DocumentStatus.FAILED
        embeddings.embed_documents.assert_not_called()

    def test_blank_runs_are_not_embedded(self, repository, chunker, embedding_service, index):
        text = "Refund policy applies for 30 days." + " \n" * 1200 + "Shipping takes two days."
        document = add_document(repository)
        processor = make_processor(repository, chunker, embedding_service, index, text=text)

        result = processor.process_document(document.id)

        assert result.success
        assert all(c.text.strip() for c in result.chunks)
        assert [c.chunk_index for c in result.chunks] == list(range(len(result.chunks)))
        assert "Refund policy" in result.chunks[0].text
        assert "Shipping takes two days." in result.chunks[-1].text
        assert all(text[c.start_offset:c.end_offset] == c.text for c in result.chunks)
        assert index.count() == len(result.chunks)

    def test_embedding_failure_marks_failed(self, repository, chunker, index):
        document = add_document(repository)
        embeddings = Mock()
        embeddings.embed_documents.side_effect = EmbeddingError("provider down")

        result = make_processor(repository, chunker, embeddings, index).process_document(document.id)

        assert result.failure.kind == "embedding_failed"
        stored = repository.get(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert stored.error_message == "provider down"
        assert index.count() == 0

    def test_unexpected_failure_marks_failed(self, repository, chunker, embeddings, index):
        document = add_document(repository)

        def broken_loader(path):
            raise OSError("disk gone")

        processor = DocumentProcessor(repository, chunker, embeddings, index, text_loader=broken_loader)
        result = processor.process_document(document.id)

        assert result.failure.kind == "internal"
        assert repository.get(document.id).status == DocumentStatus.FAILED

    @pytest.mark.parametrize("status,kind", [
        (DocumentStatus.PROCESSED, "already_processed"),
        (DocumentStatus.PROCESSING, "currently_processing"),
    ])
    def test_preconditions(self, repository, chunker, embeddings, index, status, kind):
        document = add_document(repository, status=status)

        result = make_processor(repository, chunker, embeddings, index).process_document(document.id)

        assert result.failure.kind == kind
        assert repository.get(document.id).status == status
        embeddings.embed_documents.assert_not_called()

    def test_not_found(self, repository, chunker, embeddings, index):
        result = make_processor(repository, chunker, embeddings, index).process_document("nope")
        assert result.failure.kind == "not_found"

    def test_lost_claim(self, chunker, embeddings, index):
        repository = Mock()
        repository.get.return_value = Document.new("u1", "a.txt", "local", "/a.txt")
        repository.try_start_processing.return_value = False

        result = make_processor(repository, chunker, embeddings, index).process_document("doc")

        assert result.failure.kind == "currently_processing"
        repository.mark_failed.assert_not_called()

    def test_retry_after_failure_replaces_vectors(self, repository, chunker, embeddings, index):
        document = add_document(repository, status=DocumentStatus.FAILED)
        processor = make_processor(repository, chunker, embeddings, index)

        first = processor.process_document(document.id)
        repository.mark_failed(document.id, "reprocess")
        second = processor.process_document(document.id)

        assert second.success
        assert index.count() == len(first.chunks) == len(second.chunks)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
