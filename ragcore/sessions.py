"""
Chat Session Module

Append-only message persistence for chat sessions.

Every assistant message carries the ordered sources it may cite, so the
``[N]`` markers in its content resolve to ``sources[N - 1]`` at render time.
Appending a message bumps the session's ``updated_at``.

Usage:
    store = InMemoryMessageStore()
    session = store.create_session(user_id="user-1", title="Refunds")
    store.append_message(session.id, "user", "How long do refunds take?")
    history = store.history_for_llm(session.id)
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from config.settings import get_settings, DatabaseConfig
from ragcore.errors import InvalidInputError

logger = logging.getLogger(__name__)

VALID_ROLES = ("user", "assistant")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Source:
    """A citable source attached to an assistant message."""

    document_id: str
    filename: str
    chunk_index: int
    score: float
    preview: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentId": self.document_id,
            "filename": self.filename,
            "chunkIndex": self.chunk_index,
            "score": self.score,
            "preview": self.preview,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            document_id=data["documentId"],
            filename=data.get("filename", ""),
            chunk_index=int(data["chunkIndex"]),
            score=float(data.get("score", 0.0)),
            preview=data.get("preview", ""),
        )


@dataclass
class Message:
    """
    Represents a single persisted chat message.

    Attributes:
        id: Message identifier
        session_id: Owning chat session
        role: "user" or "assistant"
        content: Message text (may contain [N] citation markers)
        sources: Ordered sources for citation resolution
        model: Model that produced an assistant message
        evaluation: Optional evaluation scores, kept for analytics
        created_at: Creation timestamp
    """

    id: str
    session_id: str
    role: str
    content: str
    sources: List[Source] = field(default_factory=list)
    model: Optional[str] = None
    evaluation: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "sources": [s.to_dict() for s in self.sources],
            "model": self.model,
            "evaluation": self.evaluation,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=str(data.get("_id", data.get("id"))),
            session_id=data["session_id"],
            role=data["role"],
            content=data["content"],
            sources=[Source.from_dict(s) for s in data.get("sources") or []],
            model=data.get("model"),
            evaluation=data.get("evaluation"),
            created_at=data.get("created_at") or _utcnow(),
        )

    def __str__(self) -> str:
        return f"{self.role}: {self.content}"


@dataclass
class ChatSession:
    id: str
    user_id: str
    title: str = "New chat"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSession":
        return cls(
            id=str(data.get("_id", data.get("id"))),
            user_id=data["user_id"],
            title=data.get("title", "New chat"),
            created_at=data.get("created_at") or _utcnow(),
            updated_at=data.get("updated_at") or _utcnow(),
        )


def _validate(role: str, content: str) -> None:
    if role not in VALID_ROLES:
        raise InvalidInputError(f"Invalid message role: {role!r}")
    if not isinstance(content, str):
        raise InvalidInputError("Message content must be a string")


class BaseMessageStore(ABC):
    """Persistence for chat sessions and their messages."""

    @abstractmethod
    def create_session(self, user_id: str, title: str = "New chat") -> ChatSession:
        pass

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[ChatSession]:
        pass

    @abstractmethod
    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: Sequence[Source] = (),
        model: Optional[str] = None,
        evaluation: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """
        Append a message and bump the session's ``updated_at``.

        Returns:
            The persisted Message
        """
        pass

    @abstractmethod
    def list_messages(self, session_id: str) -> List[Message]:
        """Messages in creation order."""
        pass

    def history_for_llm(self, session_id: str, max_messages: int = 50) -> List[Dict[str, str]]:
        """Recent messages as ``{"role", "content"}`` dicts."""
        messages = self.list_messages(session_id)[-max_messages:]
        return [{"role": m.role, "content": m.content} for m in messages]


class InMemoryMessageStore(BaseMessageStore):
    """Thread-safe in-memory message store."""

    def __init__(self):
        self._sessions: Dict[str, ChatSession] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._lock = threading.Lock()

    def create_session(self, user_id: str, title: str = "New chat") -> ChatSession:
        session = ChatSession(id=str(uuid.uuid4()), user_id=user_id, title=title)
        with self._lock:
            self._sessions[session.id] = session
            self._messages[session.id] = []
        logger.debug(f"Created chat session {session.id}")
        return replace(session)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: Sequence[Source] = (),
        model: Optional[str] = None,
        evaluation: Optional[Dict[str, Any]] = None,
    ) -> Message:
        _validate(role, content)
        message = Message(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            content=content,
            sources=list(sources),
            model=model,
            evaluation=evaluation,
        )

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise InvalidInputError(f"Unknown chat session: {session_id}")
            self._messages[session_id].append(message)
            session.updated_at = message.created_at

        logger.debug(f"Appended {role} message to session {session_id}")
        return message

    def list_messages(self, session_id: str) -> List[Message]:
        with self._lock:
            return list(self._messages.get(session_id, []))


class MongoDBMessageStore(BaseMessageStore):
    """Sessions and messages in two MongoDB collections."""

    def __init__(self, config: Optional[DatabaseConfig] = None, database=None):
        self.config = config or get_settings().database
        self._db = database

    def _connect(self):
        if self._db is None:
            if not self.config.mongodb_uri:
                raise ValueError(
                    "MongoDB URI not configured. Set MONGODB_URI environment variable."
                )
            from pymongo import MongoClient

            client = MongoClient(self.config.mongodb_uri)
            self._db = client[self.config.mongodb_database]
            logger.info("Connected to MongoDB message store")
        return self._db

    @property
    def _sessions(self):
        return self._connect()[self.config.sessions_collection]

    @property
    def _messages(self):
        return self._connect()[self.config.messages_collection]

    def create_session(self, user_id: str, title: str = "New chat") -> ChatSession:
        session = ChatSession(id=str(uuid.uuid4()), user_id=user_id, title=title)
        self._sessions.insert_one(session.to_dict())
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        data = self._sessions.find_one({"_id": session_id})
        return ChatSession.from_dict(data) if data else None

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: Sequence[Source] = (),
        model: Optional[str] = None,
        evaluation: Optional[Dict[str, Any]] = None,
    ) -> Message:
        _validate(role, content)
        message = Message(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            content=content,
            sources=list(sources),
            model=model,
            evaluation=evaluation,
        )

        self._messages.insert_one(message.to_dict())
        self._sessions.update_one(
            {"_id": session_id},
            {"$set": {"updated_at": message.created_at}},
        )
        return message

    def list_messages(self, session_id: str) -> List[Message]:
        cursor = self._messages.find({"session_id": session_id}).sort("created_at", 1)
        return [Message.from_dict(data) for data in cursor]


def create_message_store(config: Optional[DatabaseConfig] = None) -> BaseMessageStore:
    """Build the configured message backend."""
    config = config or get_settings().database
    if config.backend == "mongodb":
        return MongoDBMessageStore(config)
    return InMemoryMessageStore()
