from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
import logging

from starlette.concurrency import run_in_threadpool

from ..domain.chat_models import ChatMessage, ConversationEntry, ConversationSession, HistoryMessage
from ..infrastructure.conversation_persistence import (
    DEFAULT_TITLE,
    ConversationPersistence,
    get_conversation_persistence,
)
from .document_context import split_user_question
from .document_service import DocumentService, get_document_service
from .session_coordinator import SessionCoordinator, get_session_coordinator, new_session_token


logger = logging.getLogger(__name__)


def _history_message(role: str, content: str, timestamp: Optional[datetime]) -> HistoryMessage:
    if role == "user":
        # Older audit records store the rendered prompt; show only what was typed.
        _, content = split_user_question(content)
    return HistoryMessage(role=role, content=content, timestamp=timestamp)


def _from_entries(entries: List[ConversationEntry]) -> List[HistoryMessage]:
    return [_history_message(e.role, e.content, e.timestamp) for e in entries]


def _from_messages(messages: List[ChatMessage]) -> List[HistoryMessage]:
    return [_history_message(m.role, m.content, m.timestamp) for m in messages]


class ConversationManager:
    """Session listing, history reads and deletes for the chat API.

    Reads degrade to empty results when the audit service fails. Deleting a
    session removes its documents first, then the audit record.
    """

    def __init__(
        self,
        coordinator: Optional[SessionCoordinator] = None,
        persistence: Optional[ConversationPersistence] = None,
        documents: Optional[DocumentService] = None,
    ) -> None:
        self._coordinator = coordinator or get_session_coordinator()
        self._persistence = persistence or get_conversation_persistence()
        self._documents = documents or get_document_service()

    async def list_sessions(self, user_id: str) -> List[ConversationSession]:
        try:
            sessions = await self._persistence.list_sessions(user_id)
        except Exception:
            logger.exception("Listing sessions failed for %s", user_id)
            return []
        return sorted(sessions, key=lambda s: s.last_message_time, reverse=True)

    def create_session(self, user_id: str, title: Optional[str] = None) -> ConversationSession:
        token = new_session_token(user_id)
        if title and title.strip():
            self._coordinator.set_title(token, title.strip())
        return ConversationSession(
            id=token,
            conversation_id=token,
            title=(title or "").strip() or DEFAULT_TITLE,
            last_message_time=datetime.now(timezone.utc),
            message_count=0,
            last_message="",
        )

    async def get_messages(self, user_id: str, session_id: str) -> List[HistoryMessage]:
        lookup = self._coordinator.canonical_id_for(session_id) or session_id
        try:
            entries = await self._persistence.load_history(user_id, lookup)
        except Exception:
            logger.exception("Loading session %s failed for %s", session_id, user_id)
            entries = []
        if entries:
            return _from_entries(entries)
        # Not saved yet (or the audit service is down): serve the live cache if it holds this session.
        cached = await self._coordinator.snapshot(user_id, session_id)
        return _from_messages(cached)

    def _related_ids(self, session_id: str) -> List[str]:
        ids = [session_id]
        canonical = self._coordinator.canonical_id_for(session_id)
        if canonical:
            ids.append(canonical)
        ids.extend(self._coordinator.tokens_for(session_id))
        return list(dict.fromkeys(ids))

    async def delete_session(self, user_id: str, session_id: str) -> bool:
        """Delete a session and its documents. False means nothing was found."""
        ids = self._related_ids(session_id)
        removed_docs = 0
        for cid in ids:
            removed_docs += await run_in_threadpool(self._documents.delete_conversation_documents, user_id, cid)
        was_loaded = self._coordinator.loaded_token(user_id) in ids

        target = self._coordinator.canonical_id_for(session_id) or session_id
        try:
            removed_record = await self._persistence.delete_session(user_id, target)
        except Exception:
            logger.exception("Deleting session %s failed for %s", session_id, user_id)
            removed_record = False

        await self._coordinator.forget_session(user_id, ids)
        logger.info(
            "Deleted session %s for %s (record=%s, documents=%d)", session_id, user_id, removed_record, removed_docs
        )
        return removed_record or removed_docs > 0 or was_loaded

    async def get_legacy_history(self, user_id: str) -> List[HistoryMessage]:
        try:
            entries = await self._persistence.load_history(user_id)
        except Exception:
            logger.exception("Loading history failed for %s", user_id)
            entries = []
        if entries:
            return _from_entries(entries)
        return _from_messages(await self._coordinator.snapshot(user_id))

    async def clear_legacy_history(self, user_id: str) -> None:
        try:
            cleared = await self._persistence.clear_history(user_id)
            if not cleared:
                logger.warning("Audit service did not clear history for %s", user_id)
        except Exception:
            logger.exception("Clearing history failed for %s", user_id)
        await self._coordinator.clear_user(user_id)


_manager_singleton: Optional[ConversationManager] = None


def get_conversation_manager() -> ConversationManager:
    global _manager_singleton
    if _manager_singleton is None:
        _manager_singleton = ConversationManager()
    return _manager_singleton
