from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DocumentChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    index: int
    content: str
    start_offset: int
    end_offset: int


class DocumentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    owner_user_id: str
    conversation_id: Optional[str] = None
    original_file_name: str
    stored_file_name: str
    content_type: str
    size_bytes: int
    upload_date: datetime
    storage_key: str
    extracted_text: str = ""
    chunks: List[DocumentChunk] = Field(default_factory=list)


class DocumentSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    file_name: str
    content_type: str
    file_size: int
    upload_date: datetime
    conversation_id: Optional[str] = None
    chunk_count: int = 0

    @staticmethod
    def from_record(record: DocumentRecord) -> "DocumentSummary":
        return DocumentSummary(
            id=record.id,
            file_name=record.original_file_name,
            content_type=record.content_type,
            file_size=record.size_bytes,
            upload_date=record.upload_date,
            conversation_id=record.conversation_id,
            chunk_count=len(record.chunks),
        )


class FileUploadResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    document_id: Optional[str] = None
    file_name: str
    file_size: int
    success: bool
    error_message: Optional[str] = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    secure_file_name: Optional[str] = None

    @property
    def reason(self) -> str:
        return "; ".join(self.errors)
