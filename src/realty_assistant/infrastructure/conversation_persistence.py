from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Dict, List, Optional, Protocol
import logging
import os
import uuid

from ..config import AuditSettings
from ..domain.chat_models import ChatMessage, ConversationEntry, ConversationSession


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"


@dataclass(frozen=True)
class SaveResult:
    success: bool
    canonical_id: Optional[str] = None


class ConversationPersistence(Protocol):
    async def save(
        self,
        user_id: str,
        messages: List[ChatMessage],
        canonical_id: Optional[str] = None,
        session_token: Optional[str] = None,
        title: Optional[str] = None,
    ) -> SaveResult: ...

    async def load_history(self, user_id: str, id_or_token: Optional[str] = None) -> List[ConversationEntry]: ...

    async def list_sessions(self, user_id: str) -> List[ConversationSession]: ...

    async def delete_session(self, user_id: str, conversation_id: str) -> bool: ...

    async def clear_history(self, user_id: str) -> bool: ...


def generate_title(first_message: Optional[str]) -> str:
    """Derive a sidebar title from the opening user message."""
    text = (first_message or "").strip()
    if not text:
        return "New Chat"
    if len(text) > 50:
        return text[:50] + "..."
    return text


@dataclass
class _Record:
    canonical_id: str
    user_id: str
    session_token: Optional[str]
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[ConversationEntry] = field(default_factory=list)


class InMemoryConversationPersistence:
    """Process-local stand-in for the audit function.

    Used for local development and tests when AZURE_FUNCTION_URL is not set.
    Canonical ids are UUIDs; lookups accept either the canonical id or the
    client session token it was first saved under.
    """

    def __init__(self) -> None:
        self._records: Dict[str, _Record] = {}
        self._by_token: Dict[str, str] = {}
        self._lock = RLock()

    def _resolve(self, user_id: str, id_or_token: str) -> Optional[_Record]:
        rec = self._records.get(id_or_token)
        if rec is None:
            cid = self._by_token.get(id_or_token)
            rec = self._records.get(cid) if cid else None
        if rec is None or rec.user_id != user_id:
            return None
        return rec

    async def save(
        self,
        user_id: str,
        messages: List[ChatMessage],
        canonical_id: Optional[str] = None,
        session_token: Optional[str] = None,
        title: Optional[str] = None,
    ) -> SaveResult:
        entries = [ConversationEntry.from_message(m) for m in messages]
        now = datetime.now(timezone.utc)
        with self._lock:
            rec = None
            if canonical_id:
                rec = self._resolve(user_id, canonical_id)
            if rec is None and session_token:
                rec = self._resolve(user_id, session_token)
            if rec is None:
                first_user = next((e.content for e in entries if e.role == "user"), None)
                rec = _Record(
                    canonical_id=str(uuid.uuid4()),
                    user_id=user_id,
                    session_token=session_token,
                    title=title or generate_title(first_user),
                    created_at=now,
                    updated_at=now,
                )
                self._records[rec.canonical_id] = rec
                if session_token:
                    self._by_token.setdefault(session_token, rec.canonical_id)
            elif title and rec.title in (DEFAULT_TITLE, "New Chat"):
                rec.title = title
            rec.messages = entries
            rec.updated_at = now
            return SaveResult(True, rec.canonical_id)

    async def load_history(self, user_id: str, id_or_token: Optional[str] = None) -> List[ConversationEntry]:
        with self._lock:
            if id_or_token is None:
                out: List[ConversationEntry] = []
                recs = sorted(
                    (r for r in self._records.values() if r.user_id == user_id),
                    key=lambda r: r.created_at,
                )
                for rec in recs:
                    out.extend(rec.messages)
                return out
            rec = self._resolve(user_id, id_or_token)
            return list(rec.messages) if rec else []

    async def list_sessions(self, user_id: str) -> List[ConversationSession]:
        with self._lock:
            out: List[ConversationSession] = []
            for rec in self._records.values():
                if rec.user_id != user_id:
                    continue
                last = rec.messages[-1].content if rec.messages else ""
                out.append(
                    ConversationSession(
                        id=rec.canonical_id,
                        conversation_id=rec.session_token or rec.canonical_id,
                        title=rec.title,
                        last_message_time=rec.updated_at,
                        message_count=len(rec.messages),
                        last_message=last[:100],
                    )
                )
            return out

    async def delete_session(self, user_id: str, conversation_id: str) -> bool:
        with self._lock:
            rec = self._resolve(user_id, conversation_id)
            if rec is None:
                return False
            self._records.pop(rec.canonical_id, None)
            # Token mappings are kept so a token is never re-bound to a new record.
            return True

    async def clear_history(self, user_id: str) -> bool:
        with self._lock:
            for cid in [cid for cid, rec in self._records.items() if rec.user_id == user_id]:
                self._records.pop(cid, None)
            return True


_persistence_singleton: Optional[ConversationPersistence] = None


def get_conversation_persistence() -> ConversationPersistence:
    global _persistence_singleton
    if _persistence_singleton is not None:
        return _persistence_singleton
    settings = AuditSettings.from_env()
    impl = (os.getenv("REALTY_PERSISTENCE_IMPL") or "").lower()
    if not impl:
        impl = "function" if settings.base_url else "memory"
    if impl == "function":
        if settings.base_url:
            from .audit_client import AuditFunctionClient

            _persistence_singleton = AuditFunctionClient(settings)
            return _persistence_singleton
        logger.warning("REALTY_PERSISTENCE_IMPL=function but AZURE_FUNCTION_URL is not set; using in-memory persistence")
    _persistence_singleton = InMemoryConversationPersistence()
    return _persistence_singleton


def reset_conversation_persistence() -> None:
    global _persistence_singleton
    _persistence_singleton = None
