from __future__ import annotations

from typing import List, Optional
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from ...domain.chat_models import (
    ChatRequest,
    ChatResponse,
    ConversationSession,
    CreateSessionRequest,
    HistoryMessage,
    StatusMessage,
)
from ...security.auth import User, get_current_user
from ...services.chat_ai import ResponseGeneratorNotConfigured
from ...services.chat_service import ChatService, get_chat_service
from ...services.conversation_manager import ConversationManager, get_conversation_manager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _not_configured(exc: ResponseGeneratorNotConfigured) -> HTTPException:
    logger.error("Chat request rejected: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="The assistant is not configured. Please contact support.",
    )


@router.post("/message", response_model=ChatResponse)
@router.post("/send", response_model=ChatResponse)
async def send_message(
    body: ChatRequest,
    background: BackgroundTasks,
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> ChatResponse:
    try:
        response, result = await service.send(user.id, body)
    except ResponseGeneratorNotConfigured as exc:
        raise _not_configured(exc)
    # Runs after the response is sent
    background.add_task(service.persist_turn, user.id, response.conversation_id, result.transcript)
    return response


@router.post("/stream")
async def stream_message(
    body: ChatRequest,
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    try:
        holder, pieces = await service.stream(user.id, body)
    except ResponseGeneratorNotConfigured as exc:
        raise _not_configured(exc)
    return StreamingResponse(
        pieces,
        media_type="text/plain",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Conversation-Id": holder.token,
        },
    )


@router.get("/sessions", response_model=List[ConversationSession])
async def list_sessions(
    user: User = Depends(get_current_user),
    manager: ConversationManager = Depends(get_conversation_manager),
) -> List[ConversationSession]:
    return await manager.list_sessions(user.id)


@router.post("/sessions", response_model=ConversationSession, status_code=201)
def create_session(
    body: Optional[CreateSessionRequest] = None,
    user: User = Depends(get_current_user),
    manager: ConversationManager = Depends(get_conversation_manager),
) -> ConversationSession:
    return manager.create_session(user.id, body.title if body else None)


@router.get("/sessions/{session_id}/messages", response_model=List[HistoryMessage])
@router.get("/history/{session_id}", response_model=List[HistoryMessage])
async def get_session_messages(
    session_id: str,
    user: User = Depends(get_current_user),
    manager: ConversationManager = Depends(get_conversation_manager),
) -> List[HistoryMessage]:
    return await manager.get_messages(user.id, session_id)


@router.delete("/sessions/{session_id}", response_model=StatusMessage)
async def delete_session(
    session_id: str,
    user: User = Depends(get_current_user),
    manager: ConversationManager = Depends(get_conversation_manager),
) -> StatusMessage:
    if not await manager.delete_session(user.id, session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return StatusMessage(message="Session deleted")


@router.get("/history", response_model=List[HistoryMessage])
async def get_history(
    user: User = Depends(get_current_user),
    manager: ConversationManager = Depends(get_conversation_manager),
) -> List[HistoryMessage]:
    return await manager.get_legacy_history(user.id)


@router.delete("/history", response_model=StatusMessage)
async def clear_history(
    user: User = Depends(get_current_user),
    manager: ConversationManager = Depends(get_conversation_manager),
) -> StatusMessage:
    await manager.clear_legacy_history(user.id)
    return StatusMessage(message="Chat history cleared")
