from __future__ import annotations

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse

from ...config import UploadSettings
from ...domain.chat_models import StatusMessage
from ...domain.document_models import DocumentSummary, FileUploadResponse
from ...security.auth import User, get_current_user
from ...services.document_service import DocumentService, get_document_service
from ...services.file_validation import UploadValidationError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/document", tags=["document"])


@router.post("/upload", response_model=FileUploadResponse)
def upload_document(
    file: UploadFile = File(...),
    conversation_id: Optional[str] = Form(None, alias="conversationId"),
    user: User = Depends(get_current_user),
    service: DocumentService = Depends(get_document_service),
):
    file_name = file.filename or ""
    # Read at most one byte past the limit; anything longer is rejected by size anyway.
    data = file.file.read(UploadSettings.from_env().max_bytes + 1)
    try:
        return service.upload(file_name, file.content_type, data, user.id, conversation_id)
    except UploadValidationError as exc:
        body = FileUploadResponse(file_name=file_name, file_size=len(data), success=False, error_message=str(exc))
        return JSONResponse(status_code=400, content=body.model_dump(mode="json", by_alias=True))


@router.get("", response_model=List[DocumentSummary])
def list_documents(
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    user: User = Depends(get_current_user),
    service: DocumentService = Depends(get_document_service),
) -> List[DocumentSummary]:
    if conversation_id is None:
        return service.list_for_user(user.id)
    return service.list_for_conversation(user.id, conversation_id)


@router.get("/{document_id}", response_model=DocumentSummary)
def get_document(
    document_id: str,
    user: User = Depends(get_current_user),
    service: DocumentService = Depends(get_document_service),
) -> DocumentSummary:
    record = service.get(document_id, user.id)
    if record is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return DocumentSummary.from_record(record)


@router.delete("/{document_id}", response_model=StatusMessage)
def delete_document(
    document_id: str,
    user: User = Depends(get_current_user),
    service: DocumentService = Depends(get_document_service),
) -> StatusMessage:
    if not service.delete(document_id, user.id):
        raise HTTPException(status_code=404, detail="Document not found")
    return StatusMessage(message="Document deleted")
