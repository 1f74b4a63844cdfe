from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Role = Literal["user", "assistant"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class _CamelModel(BaseModel):
    """JSON uses camelCase (documentIds, conversationId); Python uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=_new_id)
    content: str
    role: Role
    timestamp: datetime = Field(default_factory=_utc_now)
    # Only set on user turns; rendered into the prompt at generation time.
    document_ids: List[str] = Field(default_factory=list)

    @staticmethod
    def user(content: str, document_ids: Optional[List[str]] = None) -> "ChatMessage":
        return ChatMessage(content=content, role="user", document_ids=list(document_ids or []))

    @staticmethod
    def assistant(content: str) -> "ChatMessage":
        return ChatMessage(content=content, role="assistant")


class ChatRequest(_CamelModel):
    message: str = Field(min_length=1)
    document_ids: Optional[List[str]] = None
    conversation_id: Optional[str] = None


class ChatResponse(_CamelModel):
    id: str
    content: str
    timestamp: datetime
    is_streaming: bool = False
    conversation_id: str


class CreateSessionRequest(_CamelModel):
    title: Optional[str] = None


class ConversationSession(_CamelModel):
    id: str
    conversation_id: str
    title: str
    last_message_time: datetime
    message_count: int = 0
    last_message: str = ""


class ConversationEntry(_CamelModel):
    """A message as stored by the audit service."""

    role: Role
    content: str
    timestamp: Optional[datetime] = None
    document_ids: List[str] = Field(default_factory=list)

    def to_message(self) -> ChatMessage:
        return ChatMessage(
            content=self.content,
            role=self.role,
            timestamp=self.timestamp or _utc_now(),
            document_ids=list(self.document_ids),
        )

    @staticmethod
    def from_message(message: ChatMessage) -> "ConversationEntry":
        return ConversationEntry(
            role=message.role,
            content=message.content,
            timestamp=message.timestamp,
            document_ids=list(message.document_ids),
        )


class HistoryMessage(_CamelModel):
    role: Role
    content: str
    timestamp: Optional[datetime] = None


class StatusMessage(BaseModel):
    message: str
