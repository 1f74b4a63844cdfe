from __future__ import annotations

from threading import RLock
from typing import Dict, List, Optional, Protocol

from ..domain.document_models import DocumentRecord


class DocumentRepository(Protocol):
    def add(self, record: DocumentRecord) -> None: ...
    def get(self, document_id: str, owner_user_id: str) -> Optional[DocumentRecord]: ...
    def list_for_user(self, owner_user_id: str) -> List[DocumentRecord]: ...
    def list_for_conversation(self, owner_user_id: str, conversation_id: str) -> List[DocumentRecord]: ...
    def delete(self, document_id: str, owner_user_id: str) -> Optional[DocumentRecord]: ...


class InMemoryDocumentRepository:
    """Document metadata and chunks, keyed by id.

    Every lookup is scoped to the owner: another user's id behaves exactly
    like an unknown id.
    """

    def __init__(self) -> None:
        self._records: Dict[str, DocumentRecord] = {}
        self._lock = RLock()

    def add(self, record: DocumentRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, document_id: str, owner_user_id: str) -> Optional[DocumentRecord]:
        with self._lock:
            rec = self._records.get(document_id)
            if rec is None or rec.owner_user_id != owner_user_id:
                return None
            return rec

    def list_for_user(self, owner_user_id: str) -> List[DocumentRecord]:
        with self._lock:
            recs = [r for r in self._records.values() if r.owner_user_id == owner_user_id]
        return sorted(recs, key=lambda r: r.upload_date, reverse=True)

    def list_for_conversation(self, owner_user_id: str, conversation_id: str) -> List[DocumentRecord]:
        return [r for r in self.list_for_user(owner_user_id) if r.conversation_id == conversation_id]

    def delete(self, document_id: str, owner_user_id: str) -> Optional[DocumentRecord]:
        with self._lock:
            rec = self._records.get(document_id)
            if rec is None or rec.owner_user_id != owner_user_id:
                return None
            return self._records.pop(document_id)


_repo_singleton: Optional[DocumentRepository] = None


def get_document_repository() -> DocumentRepository:
    global _repo_singleton
    if _repo_singleton is None:
        _repo_singleton = InMemoryDocumentRepository()
    return _repo_singleton
