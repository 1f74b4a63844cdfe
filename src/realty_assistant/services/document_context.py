from __future__ import annotations

"""Document context for prompts.

Stored user messages keep only the typed question plus the referenced
document ids. The combined ``Document context / User question`` text is
rendered when a prompt is built, from whichever documents still exist.
Audit records written by older clients may still carry the combined text;
``split_user_question`` is the one place that reads that format back.
"""

from typing import Iterable, List, Optional, Tuple

from ..domain.document_models import DocumentRecord
from ..infrastructure.document_repository import DocumentRepository, get_document_repository


CONTEXT_HEADER = "Document context:\n"
QUESTION_MARKER = "\n\nUser question: "
MAX_CHUNKS_PER_DOCUMENT = 3


def render_user_turn(question: str, context: Optional[str]) -> str:
    if not context:
        return question
    return f"{CONTEXT_HEADER}{context}{QUESTION_MARKER}{question}"


def split_user_question(content: str) -> Tuple[Optional[str], str]:
    """Return ``(context, question)`` for a possibly combined message body."""
    if not content.startswith(CONTEXT_HEADER) or QUESTION_MARKER not in content:
        return None, content
    head, _, question = content.rpartition(QUESTION_MARKER)
    return head[len(CONTEXT_HEADER):], question


def build_context(records: Iterable[DocumentRecord]) -> str:
    parts: List[str] = []
    for rec in records:
        for chunk in rec.chunks[:MAX_CHUNKS_PER_DOCUMENT]:
            parts.append(f"From {rec.original_file_name}: {chunk.content}")
    return "\n\n".join(parts)


class DocumentContextService:
    def __init__(self, repository: Optional[DocumentRepository] = None) -> None:
        self._repo = repository or get_document_repository()

    def _existing(self, document_ids: Iterable[str], owner_user_id: str) -> List[DocumentRecord]:
        out: List[DocumentRecord] = []
        seen = set()
        for doc_id in document_ids:
            if not doc_id or doc_id in seen:
                continue
            seen.add(doc_id)
            rec = self._repo.get(doc_id, owner_user_id)
            if rec is not None:
                out.append(rec)
        return out

    def get_context(self, document_ids: Iterable[str], owner_user_id: str) -> str:
        return build_context(self._existing(document_ids, owner_user_id))

    def filter_deleted_references(
        self,
        original_content: str,
        document_ids: Optional[List[str]],
        owner_user_id: str,
    ) -> str:
        """Render a historical user turn against the documents that still exist.

        No referenced ids: content is returned unchanged. All referenced
        documents gone: only the user question. Otherwise the context block is
        rebuilt from the survivors.
        """
        if not document_ids:
            return original_content
        _, question = split_user_question(original_content)
        survivors = self._existing(document_ids, owner_user_id)
        if not survivors:
            return question
        return render_user_turn(question, build_context(survivors))


_context_singleton: Optional[DocumentContextService] = None


def get_document_context_service() -> DocumentContextService:
    global _context_singleton
    if _context_singleton is None:
        _context_singleton = DocumentContextService()
    return _context_singleton
