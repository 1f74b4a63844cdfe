from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
import logging
import uuid

from ..config import UploadSettings
from ..domain.document_models import DocumentRecord, DocumentSummary, FileUploadResponse
from ..infrastructure.blob_store import BlobStore, get_blob_store
from ..infrastructure.document_repository import DocumentRepository, get_document_repository
from .doc_ingest import ExtractionError, chunk_text, parse_text_from_bytes
from .file_validation import UploadValidationError, validate_upload


logger = logging.getLogger(__name__)


class DocumentService:
    """Upload, look up and delete user documents.

    Methods are synchronous (blob I/O and text extraction block); FastAPI
    runs them in its threadpool.
    """

    def __init__(
        self,
        repository: Optional[DocumentRepository] = None,
        blobs: Optional[BlobStore] = None,
        settings: Optional[UploadSettings] = None,
    ) -> None:
        self._repo = repository or get_document_repository()
        self._blobs = blobs or get_blob_store()
        self._settings = settings

    def upload(
        self,
        file_name: str,
        content_type: Optional[str],
        data: bytes,
        owner_user_id: str,
        conversation_id: Optional[str] = None,
    ) -> FileUploadResponse:
        result = validate_upload(file_name, content_type, len(data), self._settings)
        if not result.is_valid:
            logger.info("Rejected upload %r for %s: %s", file_name, owner_user_id, result.reason)
            raise UploadValidationError(result.reason)

        stored_name = result.secure_file_name or ""
        storage_key = f"{owner_user_id}/{stored_name}"
        self._blobs.put(storage_key, data, content_type)

        try:
            text = parse_text_from_bytes(file_name, content_type or "", data)
        except ExtractionError:
            logger.warning("Text extraction failed for %s; storing without text", file_name, exc_info=True)
            text = ""

        record = DocumentRecord(
            id=uuid.uuid4().hex,
            owner_user_id=owner_user_id,
            conversation_id=conversation_id or None,
            original_file_name=file_name,
            stored_file_name=stored_name,
            content_type=content_type or "application/octet-stream",
            size_bytes=len(data),
            upload_date=datetime.now(timezone.utc),
            storage_key=storage_key,
            extracted_text=text,
            chunks=chunk_text(text),
        )
        self._repo.add(record)
        logger.info(
            "Stored document %s (%s, %d bytes, %d chunks) for %s",
            record.id,
            file_name,
            record.size_bytes,
            len(record.chunks),
            owner_user_id,
        )
        return FileUploadResponse(
            document_id=record.id,
            file_name=file_name,
            file_size=record.size_bytes,
            success=True,
        )

    def get(self, document_id: str, owner_user_id: str) -> Optional[DocumentRecord]:
        return self._repo.get(document_id, owner_user_id)

    def list_for_user(self, owner_user_id: str) -> List[DocumentSummary]:
        return [DocumentSummary.from_record(r) for r in self._repo.list_for_user(owner_user_id)]

    def list_for_conversation(self, owner_user_id: str, conversation_id: str) -> List[DocumentSummary]:
        return [
            DocumentSummary.from_record(r)
            for r in self._repo.list_for_conversation(owner_user_id, conversation_id)
        ]

    def delete(self, document_id: str, owner_user_id: str) -> bool:
        record = self._repo.delete(document_id, owner_user_id)
        if record is None:
            return False
        self._blobs.delete(record.storage_key)
        logger.info("Deleted document %s for %s", document_id, owner_user_id)
        return True

    def delete_conversation_documents(self, owner_user_id: str, conversation_id: str) -> int:
        removed = 0
        for rec in self._repo.list_for_conversation(owner_user_id, conversation_id):
            if self.delete(rec.id, owner_user_id):
                removed += 1
        return removed


_service_singleton: Optional[DocumentService] = None


def get_document_service() -> DocumentService:
    global _service_singleton
    if _service_singleton is None:
        _service_singleton = DocumentService()
    return _service_singleton
