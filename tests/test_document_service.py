import pytest

from src.realty_assistant.config import UploadSettings
from src.realty_assistant.infrastructure.blob_store import InMemoryBlobStore
from src.realty_assistant.infrastructure.document_repository import InMemoryDocumentRepository
from src.realty_assistant.services import doc_ingest
from src.realty_assistant.services.document_service import DocumentService
from src.realty_assistant.services.file_validation import UploadValidationError


def _service():
    repo = InMemoryDocumentRepository()
    blobs = InMemoryBlobStore()
    svc = DocumentService(repo, blobs, UploadSettings(extra_extensions=[".txt"]))
    return svc, repo, blobs


def test_upload_extracts_chunks_and_stores_blob():
    svc, repo, blobs = _service()
    body = ("Suite 400 rent schedule. " * 100).encode("utf-8")

    resp = svc.upload("schedule.txt", "text/plain", body, "u1", "C1")
    assert resp.success and resp.document_id
    assert resp.file_size == len(body)

    record = repo.get(resp.document_id, "u1")
    assert record.conversation_id == "C1"
    assert record.original_file_name == "schedule.txt"
    assert record.stored_file_name != "schedule.txt"
    assert len(record.chunks) == 4
    assert blobs.get(record.storage_key) == body


def test_extraction_failure_still_stores_document(monkeypatch):
    class BrokenReader:
        def __init__(self, _bio):
            raise ValueError("damaged xref table")

    monkeypatch.setattr(doc_ingest, "PdfReader", BrokenReader)
    svc, repo, _ = _service()

    resp = svc.upload("scan.pdf", "application/pdf", b"%PDF-broken", "u1", "C1")
    record = repo.get(resp.document_id, "u1")
    assert record.extracted_text == ""
    assert record.chunks == []


def test_invalid_upload_raises_with_reason_and_stores_nothing():
    svc, repo, blobs = _service()
    with pytest.raises(UploadValidationError) as exc:
        svc.upload("payload.exe", "application/octet-stream", b"MZ", "u1", "C1")
    assert ".exe" in str(exc.value)
    assert repo.list_for_user("u1") == []


def test_listing_is_scoped_by_owner_and_conversation():
    svc, _, _ = _service()
    a = svc.upload("a.txt", "text/plain", b"alpha", "u1", "C1")
    svc.upload("b.txt", "text/plain", b"beta", "u1", "C2")
    svc.upload("c.txt", "text/plain", b"gamma", "u2", "C1")

    assert [d.id for d in svc.list_for_conversation("u1", "C1")] == [a.document_id]
    assert len(svc.list_for_user("u1")) == 2
    assert svc.get(a.document_id, "u2") is None


def test_delete_removes_record_and_blob():
    svc, repo, blobs = _service()
    resp = svc.upload("a.txt", "text/plain", b"alpha", "u1", "C1")
    key = repo.get(resp.document_id, "u1").storage_key

    assert not svc.delete(resp.document_id, "u2")
    assert svc.delete(resp.document_id, "u1")
    assert not blobs.exists(key)
    assert not svc.delete(resp.document_id, "u1")


def test_delete_conversation_documents_only_touches_that_conversation():
    svc, _, _ = _service()
    svc.upload("a.txt", "text/plain", b"alpha", "u1", "C1")
    svc.upload("b.txt", "text/plain", b"beta", "u1", "C1")
    keep = svc.upload("c.txt", "text/plain", b"gamma", "u1", "C2")

    assert svc.delete_conversation_documents("u1", "C1") == 2
    assert [d.id for d in svc.list_for_user("u1")] == [keep.document_id]
