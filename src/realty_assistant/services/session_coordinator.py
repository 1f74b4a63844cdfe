from __future__ import annotations

"""Per-user conversation state.

The coordinator keeps, for each user, the messages of the conversation that
is currently loaded, which client session token that is, and the assistant
replies still being generated. It also remembers which canonical id the
audit service assigned to each client session token.

Locking:
- Each user's cache has its own ``asyncio.Lock``; users never wait on each other.
- The token -> canonical id map is only ever written with ``dict.setdefault``,
  so the first id recorded for a token is the one that stays.

Replies are anchored to the user message they answer. A reply that finishes
after the user has already sent another message is inserted right after its
own question, not at the end of the list.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
import asyncio
import logging
import uuid

from ..domain.chat_models import ChatMessage
from ..infrastructure.conversation_persistence import ConversationPersistence, get_conversation_persistence


logger = logging.getLogger(__name__)

CONTEXT_WINDOW = 10


def new_session_token(user_id: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"conv_{user_id}_{now:%Y%m%d%H%M%S}{now.microsecond // 100:04d}"


@dataclass
class InFlightStreamBuffer:
    user_id: str
    token: str
    anchor_id: str
    generation: int
    base: List[ChatMessage]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _parts: List[str] = field(default_factory=list)

    def append(self, text: str) -> None:
        if text:
            self._parts.append(text)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def provisional(self) -> ChatMessage:
        return ChatMessage(id=self.id, content=self.text, role="assistant", timestamp=self.started_at)


@dataclass
class UserChatCache:
    messages: List[ChatMessage] = field(default_factory=list)
    loaded_token: Optional[str] = None
    # Bumped on every clear/replace so replies started earlier can tell.
    generation: int = 0
    streams: List[InFlightStreamBuffer] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def replace(self, messages: List[ChatMessage]) -> None:
        self.messages = list(messages)
        self.generation += 1
        self.streams.clear()

    def clear(self) -> None:
        self.replace([])

    def view(self) -> List[ChatMessage]:
        """Messages plus non-empty provisional replies at their anchors."""
        pending: Dict[str, List[ChatMessage]] = {}
        for buf in self.streams:
            if buf.text:
                pending.setdefault(buf.anchor_id, []).append(buf.provisional())
        if not pending:
            return list(self.messages)
        out: List[ChatMessage] = []
        for msg in self.messages:
            out.append(msg)
            out.extend(pending.get(msg.id, []))
        return out


@dataclass(frozen=True)
class TurnResult:
    reply: Optional[ChatMessage]
    transcript: List[ChatMessage]
    committed: bool


class SessionCoordinator:
    def __init__(
        self,
        persistence: Optional[ConversationPersistence] = None,
        context_window: int = CONTEXT_WINDOW,
    ) -> None:
        self._persistence = persistence or get_conversation_persistence()
        self._context_window = context_window
        self._caches: Dict[str, UserChatCache] = {}
        self._canonical: Dict[str, str] = {}
        self._titles: Dict[str, str] = {}

    def _cache(self, user_id: str) -> UserChatCache:
        cache = self._caches.get(user_id)
        if cache is None:
            cache = self._caches.setdefault(user_id, UserChatCache())
        return cache

    # --- session resolution ---

    async def resolve_and_restore(self, user_id: str, client_token: Optional[str]) -> str:
        """Make ``client_token``'s conversation the loaded one for ``user_id``.

        Returns the token in use (synthesized when the client sent none).
        A synthesized token starts an empty conversation. Restore failures
        are logged and the current cache is kept.
        """
        cache = self._cache(user_id)
        if not client_token:
            token = new_session_token(user_id)
            async with cache.lock:
                # Never carry the previous conversation into the new session.
                cache.clear()
                cache.loaded_token = token
            return token

        token = client_token
        async with cache.lock:
            if cache.loaded_token == token and cache.messages:
                return token
            lookup = self._canonical.get(token) or token
            try:
                entries = await self._persistence.load_history(user_id, lookup)
            except Exception:
                logger.warning("History restore failed for %s (%s); keeping cache", user_id, lookup, exc_info=True)
                if not cache.messages:
                    # Nothing to mix up; later requests for this token use the cache.
                    cache.loaded_token = token
                return token
            if entries:
                cache.replace([e.to_message() for e in entries])
            else:
                cache.clear()
            cache.loaded_token = token
            logger.debug("Loaded %d messages for %s session %s", len(cache.messages), user_id, token)
        return token

    async def append_and_get_context(self, user_id: str, message: ChatMessage) -> List[ChatMessage]:
        cache = self._cache(user_id)
        async with cache.lock:
            cache.messages.append(message)
            return cache.view()[-self._context_window:]

    # --- replies ---

    async def begin_reply(self, user_id: str, token: str, anchor: ChatMessage) -> InFlightStreamBuffer:
        cache = self._cache(user_id)
        async with cache.lock:
            buf = InFlightStreamBuffer(
                user_id=user_id,
                token=token,
                anchor_id=anchor.id,
                generation=cache.generation,
                base=list(cache.messages),
            )
            cache.streams.append(buf)
            return buf

    async def finish_reply(self, buffer: InFlightStreamBuffer, text: Optional[str] = None) -> TurnResult:
        """Commit the reply held by ``buffer``.

        ``text`` overrides the buffered text. An empty reply is not committed.
        If the user's cache was cleared or switched to another conversation
        since the reply started, the cache is left alone and the transcript
        is rebuilt from what the reply was based on.
        """
        content = buffer.text if text is None else text
        reply = ChatMessage(content=content, role="assistant") if content else None
        cache = self._cache(buffer.user_id)
        async with cache.lock:
            if buffer in cache.streams:
                cache.streams.remove(buffer)
            if buffer.generation != cache.generation:
                transcript = list(buffer.base) + ([reply] if reply else [])
                return TurnResult(reply, transcript, False)
            if reply is not None:
                idx = next((i for i, m in enumerate(cache.messages) if m.id == buffer.anchor_id), None)
                if idx is None:
                    cache.messages.append(reply)
                else:
                    cache.messages.insert(idx + 1, reply)
            return TurnResult(reply, list(cache.messages), reply is not None)

    # --- canonical ids ---

    def record_canonical_id(self, token: str, canonical_id: str) -> str:
        return self._canonical.setdefault(token, canonical_id)

    def canonical_id_for(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return self._canonical.get(token)

    def tokens_for(self, canonical_id: str) -> List[str]:
        return [t for t, cid in list(self._canonical.items()) if cid == canonical_id]

    # --- titles for sessions created before their first message ---

    def set_title(self, token: str, title: str) -> None:
        self._titles[token] = title

    def title_for(self, token: Optional[str]) -> Optional[str]:
        return self._titles.get(token) if token else None

    # --- inspection and invalidation ---

    async def snapshot(self, user_id: str, token: Optional[str] = None) -> List[ChatMessage]:
        cache = self._cache(user_id)
        async with cache.lock:
            if token is not None and cache.loaded_token != token:
                return []
            return list(cache.messages)

    def loaded_token(self, user_id: str) -> Optional[str]:
        cache = self._caches.get(user_id)
        return cache.loaded_token if cache else None

    async def forget_session(self, user_id: str, ids: List[str]) -> None:
        """Drop the cached conversation if it is one of ``ids``. Canonical mappings stay."""
        cache = self._cache(user_id)
        async with cache.lock:
            if cache.loaded_token and cache.loaded_token in ids:
                cache.clear()
                cache.loaded_token = None
        for token in ids:
            self._titles.pop(token, None)

    async def clear_user(self, user_id: str) -> None:
        cache = self._cache(user_id)
        async with cache.lock:
            cache.clear()
            cache.loaded_token = None


_coordinator_singleton: Optional[SessionCoordinator] = None


def get_session_coordinator() -> SessionCoordinator:
    global _coordinator_singleton
    if _coordinator_singleton is None:
        _coordinator_singleton = SessionCoordinator()
    return _coordinator_singleton
