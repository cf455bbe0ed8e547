"""
Document Repository Module

Document records and their processing status.

Status lifecycle:
    uploaded -> processing -> processed
                          \\-> failed -> processing (retry)

The move into "processing" is a compare-and-set on the status field: it
only succeeds from "uploaded" or "failed", so two concurrent processing
requests for the same document cannot both win.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional

from config.settings import get_settings, DatabaseConfig

logger = logging.getLogger(__name__)


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


# States a document may enter processing from
STARTABLE_STATUSES = (DocumentStatus.UPLOADED, DocumentStatus.FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Document:
    """
    A user's uploaded document.

    Attributes:
        id: Document identifier
        user_id: Owning user
        filename: Display name, used as the citation source label
        status: Processing status
        embedding_provider: Provider tag fixed for the document's lifetime
        storage_path: Where the raw file lives (local path)
        chunk_count: Number of chunks after processing
        error_message: Failure reason when status is failed
    """

    id: str
    user_id: str
    filename: str
    embedding_provider: str
    status: DocumentStatus = DocumentStatus.UPLOADED
    storage_path: Optional[str] = None
    chunk_count: int = 0
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, user_id: str, filename: str, embedding_provider: str, storage_path: Optional[str] = None) -> "Document":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            filename=filename,
            embedding_provider=embedding_provider,
            storage_path=storage_path,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "user_id": self.user_id,
            "filename": self.filename,
            "status": self.status.value,
            "embedding_provider": self.embedding_provider,
            "storage_path": self.storage_path,
            "chunk_count": self.chunk_count,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            id=str(data.get("_id", data.get("id"))),
            user_id=data["user_id"],
            filename=data["filename"],
            status=DocumentStatus(data.get("status", DocumentStatus.UPLOADED.value)),
            embedding_provider=data["embedding_provider"],
            storage_path=data.get("storage_path"),
            chunk_count=data.get("chunk_count", 0) or 0,
            error_message=data.get("error_message"),
            created_at=data.get("created_at") or _utcnow(),
            updated_at=data.get("updated_at") or _utcnow(),
        )


class BaseDocumentRepository(ABC):
    """Persistence for document records."""

    @abstractmethod
    def add(self, document: Document) -> Document:
        pass

    @abstractmethod
    def get(self, document_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[Document]:
        pass

    @abstractmethod
    def try_start_processing(self, document_id: str) -> bool:
        """
        Atomically move a document from uploaded/failed to processing.

        Returns:
            True if this caller now owns processing, False otherwise
        """
        pass

    @abstractmethod
    def mark_processed(self, document_id: str, chunk_count: int) -> None:
        pass

    @abstractmethod
    def mark_failed(self, document_id: str, error_message: str) -> None:
        pass


class InMemoryDocumentRepository(BaseDocumentRepository):
    """Thread-safe in-memory repository."""

    def __init__(self):
        self._documents: Dict[str, Document] = {}
        self._lock = Lock()

    def add(self, document: Document) -> Document:
        with self._lock:
            self._documents[document.id] = replace(document)
        return document

    def get(self, document_id: str) -> Optional[Document]:
        with self._lock:
            document = self._documents.get(document_id)
            return replace(document) if document else None

    def list_for_user(self, user_id: str) -> List[Document]:
        with self._lock:
            return [replace(d) for d in self._documents.values() if d.user_id == user_id]

    def try_start_processing(self, document_id: str) -> bool:
        with self._lock:
            document = self._documents.get(document_id)
            if document is None or document.status not in STARTABLE_STATUSES:
                return False
            document.status = DocumentStatus.PROCESSING
            document.error_message = None
            document.updated_at = _utcnow()
            return True

    def _update(self, document_id: str, **changes) -> None:
        with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                logger.warning(f"Status update for unknown document {document_id}")
                return
            for name, value in changes.items():
                setattr(document, name, value)
            document.updated_at = _utcnow()

    def mark_processed(self, document_id: str, chunk_count: int) -> None:
        self._update(
            document_id,
            status=DocumentStatus.PROCESSED,
            chunk_count=chunk_count,
            error_message=None,
        )

    def mark_failed(self, document_id: str, error_message: str) -> None:
        self._update(document_id, status=DocumentStatus.FAILED, error_message=error_message)


class MongoDBDocumentRepository(BaseDocumentRepository):
    """Document records in a MongoDB collection."""

    def __init__(self, config: Optional[DatabaseConfig] = None, collection=None):
        self.config = config or get_settings().database
        self._collection = collection

    def _connect(self):
        if self._collection is None:
            if not self.config.mongodb_uri:
                raise ValueError(
                    "MongoDB URI not configured. Set MONGODB_URI environment variable."
                )
            from pymongo import MongoClient

            client = MongoClient(self.config.mongodb_uri)
            self._collection = client[self.config.mongodb_database][self.config.documents_collection]
            logger.info("Connected to MongoDB document store")
        return self._collection

    def add(self, document: Document) -> Document:
        self._connect().insert_one(document.to_dict())
        return document

    def get(self, document_id: str) -> Optional[Document]:
        data = self._connect().find_one({"_id": document_id})
        return Document.from_dict(data) if data else None

    def list_for_user(self, user_id: str) -> List[Document]:
        cursor = self._connect().find({"user_id": user_id})
        return [Document.from_dict(data) for data in cursor]

    def try_start_processing(self, document_id: str) -> bool:
        result = self._connect().find_one_and_update(
            {
                "_id": document_id,
                "status": {"$in": [s.value for s in STARTABLE_STATUSES]},
            },
            {
                "$set": {
                    "status": DocumentStatus.PROCESSING.value,
                    "error_message": None,
                    "updated_at": _utcnow(),
                }
            },
        )
        return result is not None

    def mark_processed(self, document_id: str, chunk_count: int) -> None:
        self._connect().update_one(
            {"_id": document_id},
            {
                "$set": {
                    "status": DocumentStatus.PROCESSED.value,
                    "chunk_count": chunk_count,
                    "error_message": None,
                    "updated_at": _utcnow(),
                }
            },
        )

    def mark_failed(self, document_id: str, error_message: str) -> None:
        self._connect().update_one(
            {"_id": document_id},
            {
                "$set": {
                    "status": DocumentStatus.FAILED.value,
                    "error_message": error_message,
                    "updated_at": _utcnow(),
                }
            },
        )


def create_document_repository(config: Optional[DatabaseConfig] = None) -> BaseDocumentRepository:
    """Build the configured document backend."""
    config = config or get_settings().database
    if config.backend == "mongodb":
        return MongoDBDocumentRepository(config)
    return InMemoryDocumentRepository()
