from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from src.realty_assistant.domain.chat_models import ChatMessage, ConversationEntry, ConversationSession
from src.realty_assistant.infrastructure.conversation_persistence import (
    InMemoryConversationPersistence,
    SaveResult,
)
from src.realty_assistant.security.auth import JwtConfig, create_access_token
from src.realty_assistant.services.chat_ai import ResponseGeneratorNotConfigured


def auth_headers(user_id: str, name: str = "Test User") -> Dict[str, str]:
    token = create_access_token(user_id, name=name, cfg=JwtConfig.from_env())
    return {"Authorization": f"Bearer {token}"}


class FakeGenerator:
    """Stands in for the Azure OpenAI generator; records every prompt it gets."""

    def __init__(
        self,
        reply: str = "The property at 12 Main St is leased through 2027.",
        pieces: Optional[Sequence[str]] = None,
        fail: bool = False,
        configured: bool = True,
    ) -> None:
        self.reply = reply
        self.pieces = list(pieces) if pieces is not None else ["The property ", "is leased ", "through 2027."]
        self.fail = fail
        self.configured = configured
        self.calls: List[List[Tuple[str, str]]] = []

    def ensure_ready(self) -> None:
        if not self.configured:
            raise ResponseGeneratorNotConfigured(["AZURE_OPENAI_ENDPOINT"])

    async def complete(self, turns):
        self.calls.append(list(turns))
        if self.fail:
            raise RuntimeError("upstream unavailable")
        return self.reply

    async def stream(self, turns):
        self.calls.append(list(turns))
        for piece in self.pieces:
            yield piece
        if self.fail:
            raise RuntimeError("stream dropped")


class FailingSavePersistence(InMemoryConversationPersistence):
    async def save(self, user_id, messages, canonical_id=None, session_token=None, title=None):
        return SaveResult(False, None)


class ExplodingPersistence:
    """Every call raises, as a misbehaving client would."""

    async def save(self, *args, **kwargs) -> SaveResult:
        raise RuntimeError("audit function timed out")

    async def load_history(self, user_id: str, id_or_token: Optional[str] = None) -> List[ConversationEntry]:
        raise RuntimeError("audit function timed out")

    async def list_sessions(self, user_id: str) -> List[ConversationSession]:
        raise RuntimeError("audit function timed out")

    async def delete_session(self, user_id: str, conversation_id: str) -> bool:
        raise RuntimeError("audit function timed out")

    async def clear_history(self, user_id: str) -> bool:
        raise RuntimeError("audit function timed out")


class ScriptedPersistence(InMemoryConversationPersistence):
    """In-memory persistence with preloaded histories and call counting."""

    def __init__(self, histories: Optional[Dict[str, List[ChatMessage]]] = None) -> None:
        super().__init__()
        self.histories = {k: [ConversationEntry.from_message(m) for m in v] for k, v in (histories or {}).items()}
        self.load_calls: List[Optional[str]] = []

    async def load_history(self, user_id, id_or_token=None):
        self.load_calls.append(id_or_token)
        if id_or_token in self.histories:
            return list(self.histories[id_or_token])
        return await super().load_history(user_id, id_or_token)
