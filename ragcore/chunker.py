"""
Document Chunker Module

Splits extracted document text into overlapping, offset-tracked passages.
Uses LangChain's RecursiveCharacterTextSplitter for the boundary decisions
and recovers exact character offsets into the source text.

Chunking Strategy:
- Recursive Character Splitting: paragraphs, then lines, sentences, words
- Target size: 1000 characters per chunk (upper bound)
- Overlap: up to 200 characters shared with the previous chunk
- Separators are kept and whitespace is not stripped, so every chunk is an
  exact slice of the source and consecutive chunks leave no gaps
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from langchain_text_splitters import RecursiveCharacterTextSplitter
from langchain_community.document_loaders import (
    PyPDFLoader,
    TextLoader,
    Docx2txtLoader,
)

from config.settings import get_settings, ChunkingConfig

# Configure logging
logger = logging.getLogger(__name__)


# Supported file extensions and their loaders
SUPPORTED_EXTENSIONS = {
    ".pdf": PyPDFLoader,
    ".txt": TextLoader,
    ".md": TextLoader,
    ".docx": Docx2txtLoader,
}


@dataclass(frozen=True)
class TextSpan:
    """A slice of the source text: ``source[start_offset:end_offset] == text``."""

    text: str
    start_offset: int
    end_offset: int


@dataclass
class Chunk:
    """
    Represents a single chunk of a document.

    Attributes:
        document_id: Parent document
        chunk_index: Position of this chunk in the document (0-indexed)
        text: The chunk content
        start_offset: Character offset of the first character in the source
        end_offset: Character offset one past the last character
        embedding: Vector embedding (populated during ingestion)
        embedding_provider: Provider tag, always the parent document's provider
        metadata: Additional metadata (filename, etc.)
    """

    document_id: str
    chunk_index: int
    text: str
    start_offset: int
    end_offset: int
    embedding: Optional[List[float]] = None
    embedding_provider: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Feedback key, ``"documentId:chunkIndex"``."""
        return f"{self.document_id}:{self.chunk_index}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert chunk to dictionary for storage."""
        return {
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "text": self.text,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "embedding": self.embedding,
            "embedding_provider": self.embedding_provider,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        """Create Chunk from dictionary."""
        return cls(
            document_id=data["document_id"],
            chunk_index=data["chunk_index"],
            text=data["text"],
            start_offset=data.get("start_offset", 0),
            end_offset=data.get("end_offset", len(data["text"])),
            embedding=data.get("embedding"),
            embedding_provider=data.get("embedding_provider"),
            metadata=data.get("metadata", {}),
        )


class ChunkSequence:
    """
    Lazy, finite, restartable sequence of text spans.

    Nothing is split until the sequence is iterated, and every iteration
    starts again from the beginning of the text.
    """

    def __init__(self, chunker: "DocumentChunker", text: str):
        self._chunker = chunker
        self._text = text

    def __iter__(self) -> Iterator[TextSpan]:
        return self._chunker._iter_spans(self._text)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    @property
    def is_empty(self) -> bool:
        """True when the text has no content worth chunking."""
        return not self._text or not self._text.strip()


class DocumentChunker:
    """
    Splits document text into overlapping spans with exact offsets.

    Example:
        chunker = DocumentChunker()
        spans = chunker.chunk_text(text)
        if spans.is_empty:
            ...  # report an empty document
        chunks = chunker.build_chunks("doc-1", spans, provider="local")
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        config: Optional[ChunkingConfig] = None,
    ):
        """
        Initialize the DocumentChunker.

        Args:
            chunk_size: Maximum characters per chunk (default from config)
            chunk_overlap: Overlap between chunks (default from config)
            config: Optional ChunkingConfig instance
        """
        self.config = config or get_settings().chunking

        self.chunk_size = chunk_size or self.config.chunk_size
        self.chunk_overlap = (
            chunk_overlap if chunk_overlap is not None else self.config.chunk_overlap
        )
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )

        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            length_function=len,
            separators=list(self.config.separators),
            keep_separator=True,
            strip_whitespace=False,
        )

        logger.info(
            f"DocumentChunker initialized: chunk_size={self.chunk_size}, "
            f"overlap={self.chunk_overlap}"
        )

    def chunk_text(self, text: str) -> ChunkSequence:
        """Return the lazy span sequence for ``text``."""
        return ChunkSequence(self, text or "")

    def _iter_spans(self, text: str) -> Iterator[TextSpan]:
        if not text.strip():
            return

        pieces = [piece for piece in self._splitter.split_text(text) if piece]
        for piece, start in zip(pieces, self._locate_pieces(text, pieces)):
            yield TextSpan(text=piece, start_offset=start, end_offset=start + len(piece))

    def _candidate_starts(
        self,
        text: str,
        piece: str,
        prev_start: Optional[int],
        prev_end: int,
        is_last: bool,
    ) -> List[int]:
        """
        Offsets where ``piece`` may sit after the previous span.

        A piece starts inside the previous span's overlap window (no gap),
        after the previous start, and ends past the previous end.
        """
        if prev_start is None:
            low = high = 0
        else:
            low = max(prev_start + 1, prev_end - self.chunk_overlap, prev_end - len(piece) + 1)
            high = prev_end

        starts = []
        position = text.find(piece, low)
        while position != -1 and position <= high:
            if not is_last or position + len(piece) == len(text):
                starts.append(position)
            position = text.find(piece, position + 1)
        return starts

    def _locate_pieces(self, text: str, pieces: List[str]) -> List[int]:
        """
        Recover the source offset of every splitter piece.

        Repetitive text can match a piece at several offsets, so this is a
        depth-first search over the candidate offsets of each piece.
        Dead ends are remembered per (piece, offset), which keeps the search
        linear in practice.
        """
        if not pieces:
            return []

        last = len(pieces) - 1
        dead_ends = set()
        chosen: List[int] = []
        pending = [self._candidate_starts(text, pieces[0], None, 0, last == 0)]

        while pending:
            if not pending[-1]:
                pending.pop()
                if chosen:
                    dead_ends.add((len(chosen) - 1, chosen.pop()))
                continue

            position = len(chosen)
            start = pending[-1].pop(0)
            if (position, start) in dead_ends:
                continue
            chosen.append(start)
            if position == last:
                return chosen

            nxt = position + 1
            pending.append(self._candidate_starts(
                text, pieces[nxt], start, start + len(pieces[position]), nxt == last
            ))

        raise ValueError("Chunk offsets could not be located in source")

    def build_chunks(
        self,
        document_id: str,
        spans: Iterable[TextSpan],
        provider: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[Chunk]:
        """
        Turn spans into Chunk records with zero-based indices.

        Args:
            document_id: Parent document id
            spans: Output of chunk_text
            provider: Embedding provider recorded on the parent document
            metadata: Extra metadata copied onto every chunk

        Returns:
            List of Chunk objects without embeddings
        """
        # Blank spans carry nothing to embed
        kept = [span for span in spans if span.text.strip()]
        chunks = [
            Chunk(
                document_id=document_id,
                chunk_index=index,
                text=span.text,
                start_offset=span.start_offset,
                end_offset=span.end_offset,
                embedding_provider=provider,
                metadata=dict(metadata or {}),
            )
            for index, span in enumerate(kept)
        ]

        total = len(chunks)
        logger.info(
            f"Created {total} chunks for document {document_id} "
            f"(avg {sum(len(c.text) for c in chunks) // max(total, 1)} chars/chunk)"
        )
        return chunks


def load_document_text(file_path: Union[str, Path]) -> str:
    """
    Extract plain text from a PDF, TXT, MD or DOCX file.

    Pages are joined with blank lines so the chunker sees them as paragraphs.

    Raises:
        FileNotFoundError: If the document doesn't exist
        ValueError: If the file type is not supported
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Document not found: {file_path}")

    extension = file_path.suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise ValueError(
            f"Unsupported file type: {extension}. "
            f"Supported types: {list(SUPPORTED_EXTENSIONS.keys())}"
        )

    loader_class = SUPPORTED_EXTENSIONS[extension]
    if loader_class is TextLoader:
        loader = loader_class(str(file_path), encoding="utf-8")
    else:
        loader = loader_class(str(file_path))
    pages = loader.load()

    logger.debug(f"Loaded {len(pages)} pages/sections from {file_path.name}")
    return "\n\n".join(page.page_content for page in pages)
