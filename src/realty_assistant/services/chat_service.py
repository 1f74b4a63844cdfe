from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Set, Tuple
import asyncio
import logging
import uuid

import anyio

from ..domain.chat_models import ChatMessage, ChatRequest, ChatResponse
from ..infrastructure.conversation_persistence import ConversationPersistence, get_conversation_persistence
from ..observability.metrics import AUDIT_SAVES, GENERATION_FAILURES
from .chat_ai import ResponseGenerator, get_response_generator
from .document_context import DocumentContextService, get_document_context_service
from .session_coordinator import (
    InFlightStreamBuffer,
    SessionCoordinator,
    TurnResult,
    get_session_coordinator,
)


logger = logging.getLogger(__name__)
LOG = logging.getLogger("realty.audit")

APOLOGY = (
    "I'm sorry, I'm having trouble generating a response right now. "
    "Please try again in a moment."
)


@dataclass
class PreparedTurn:
    user_id: str
    token: str
    user_message: ChatMessage
    buffer: InFlightStreamBuffer
    turns: List[Tuple[str, str]]


@dataclass
class StreamTurn:
    """Filled in by the relay once the stream ends."""

    user_id: str
    token: str
    result: Optional[TurnResult] = None


class ChatService:
    def __init__(
        self,
        coordinator: Optional[SessionCoordinator] = None,
        persistence: Optional[ConversationPersistence] = None,
        generator: Optional[ResponseGenerator] = None,
        documents: Optional[DocumentContextService] = None,
    ) -> None:
        self._coordinator = coordinator or get_session_coordinator()
        self._persistence = persistence or get_conversation_persistence()
        self._generator = generator or get_response_generator()
        self._documents = documents or get_document_context_service()
        self._pending_saves: Set[asyncio.Task] = set()

    @property
    def coordinator(self) -> SessionCoordinator:
        return self._coordinator

    def build_turns(self, user_id: str, messages: List[ChatMessage]) -> List[Tuple[str, str]]:
        turns: List[Tuple[str, str]] = []
        for msg in messages:
            if msg.role == "user":
                content = self._documents.filter_deleted_references(msg.content, msg.document_ids, user_id)
            else:
                content = msg.content
            if content:
                turns.append((msg.role, content))
        return turns

    async def _prepare(self, user_id: str, request: ChatRequest) -> PreparedTurn:
        # Fails fast (before touching history) when the LLM is not configured.
        self._generator.ensure_ready()
        token = await self._coordinator.resolve_and_restore(user_id, request.conversation_id)
        user_message = ChatMessage.user(request.message, request.document_ids)
        context = await self._coordinator.append_and_get_context(user_id, user_message)
        buffer = await self._coordinator.begin_reply(user_id, token, user_message)
        return PreparedTurn(
            user_id=user_id,
            token=token,
            user_message=user_message,
            buffer=buffer,
            turns=self.build_turns(user_id, context),
        )

    async def send(self, user_id: str, request: ChatRequest) -> Tuple[ChatResponse, TurnResult]:
        turn = await self._prepare(user_id, request)
        try:
            text = await self._generator.complete(turn.turns)
        except Exception:
            logger.exception("Generation failed for %s session %s", user_id, turn.token)
            GENERATION_FAILURES.labels(mode="send").inc()
            result = await self._coordinator.finish_reply(turn.buffer, "")
            return self._response(APOLOGY, turn.token), result
        result = await self._coordinator.finish_reply(turn.buffer, text)
        reply = result.reply
        if reply is None:
            return self._response("", turn.token), result
        return self._response(reply.content, turn.token, reply), result

    def _response(self, content: str, token: str, reply: Optional[ChatMessage] = None) -> ChatResponse:
        return ChatResponse(
            id=reply.id if reply else uuid.uuid4().hex,
            content=content,
            timestamp=reply.timestamp if reply else datetime.now(timezone.utc),
            is_streaming=False,
            conversation_id=token,
        )

    async def stream(self, user_id: str, request: ChatRequest) -> Tuple[StreamTurn, AsyncIterator[str]]:
        """Start a streamed reply.

        The user message is in history before this returns. The iterator
        yields raw text pieces; when it ends (normally, on error or because
        the client went away) the partial or full reply is committed,
        ``StreamTurn.result`` is set and the audit save is started.
        """
        turn = await self._prepare(user_id, request)
        holder = StreamTurn(user_id=user_id, token=turn.token)
        return holder, self._relay(turn, holder)

    async def _relay(self, turn: PreparedTurn, holder: StreamTurn) -> AsyncIterator[str]:
        buffer = turn.buffer
        try:
            try:
                async with aclosing(self._generator.stream(turn.turns)) as pieces:
                    async for piece in pieces:
                        buffer.append(piece)
                        yield piece
            except Exception:
                logger.exception("Streaming generation failed for %s session %s", turn.user_id, turn.token)
                GENERATION_FAILURES.labels(mode="stream").inc()
                yield ("\n\n" + APOLOGY) if buffer.text else APOLOGY
        finally:
            # Runs on cancellation and client disconnect too; the partial reply is kept and audited.
            with anyio.CancelScope(shield=True):
                holder.result = await self._coordinator.finish_reply(buffer)
                self._schedule_save(turn.user_id, turn.token, holder.result.transcript)

    def _schedule_save(self, user_id: str, token: str, transcript: List[ChatMessage]) -> None:
        # Detached from the response: a dropped connection must not cancel the save.
        task = asyncio.create_task(self.persist_turn(user_id, token, transcript))
        self._pending_saves.add(task)
        task.add_done_callback(self._save_done)

    def _save_done(self, task: asyncio.Task) -> None:
        self._pending_saves.discard(task)
        if task.cancelled():
            LOG.warning("audit_save_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Detached audit save failed", exc_info=exc)

    async def drain_pending_saves(self) -> None:
        """Wait for audit saves started by finished streams (shutdown and tests)."""
        while self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)

    async def persist_turn(self, user_id: str, token: str, transcript: List[ChatMessage]) -> None:
        """Save the conversation to the audit service. Never raises."""
        try:
            canonical = self._coordinator.canonical_id_for(token)
            result = await self._persistence.save(
                user_id,
                transcript,
                canonical,
                token,
                title=self._coordinator.title_for(token),
            )
            AUDIT_SAVES.labels(outcome="ok" if result.success else "failed").inc()
            if not result.success:
                LOG.warning("audit_save_unsuccessful", extra={"user_id": user_id, "session_token": token})
                return
            if result.canonical_id:
                stored = self._coordinator.record_canonical_id(token, result.canonical_id)
                if stored != result.canonical_id:
                    LOG.info(
                        "audit_canonical_id_kept",
                        extra={"session_token": token, "kept": stored, "ignored": result.canonical_id},
                    )
        except Exception:
            AUDIT_SAVES.labels(outcome="error").inc()
            logger.exception("Audit save raised for %s session %s", user_id, token)


_service_singleton: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    global _service_singleton
    if _service_singleton is None:
        _service_singleton = ChatService()
    return _service_singleton


async def drain_chat_service() -> None:
    if _service_singleton is not None:
        await _service_singleton.drain_pending_saves()
