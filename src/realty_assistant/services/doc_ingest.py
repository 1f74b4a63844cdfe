from __future__ import annotations

from typing import List
import io
import logging
import uuid

from docx import Document
from pypdf import PdfReader

from ..domain.document_models import DocumentChunk


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1000
CHUNK_OVERLAP = 200

PDF_TYPES = {"application/pdf"}
DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}


class ExtractionError(Exception):
    pass


def _pdf_text(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    texts: List[str] = []
    for page in reader.pages:
        t = page.extract_text() or ""
        if t:
            texts.append(t)
    return "\n".join(texts)


def _docx_text(data: bytes) -> str:
    doc = Document(io.BytesIO(data))
    paragraphs = [p.text for p in doc.paragraphs if p.text and p.text.strip()]
    return "\n".join(paragraphs)


def parse_text_from_bytes(file_name: str, content_type: str, data: bytes) -> str:
    """Extract plain text from an uploaded document.

    Picks the extractor by declared content type, then by extension. Text-like
    types decode as UTF-8. Raises ExtractionError when the bytes cannot be
    parsed; callers decide whether that is fatal.
    """
    ctype = (content_type or "").lower()
    name = (file_name or "").lower()
    try:
        if ctype in PDF_TYPES or name.endswith(".pdf"):
            return _pdf_text(data)
        if ctype in DOCX_TYPES or name.endswith(".docx"):
            return _docx_text(data)
    except Exception as exc:
        raise ExtractionError(f"Could not extract text from {file_name}: {exc}") from exc
    if ctype.startswith("text/") or name.endswith((".txt", ".md", ".csv")):
        return data.decode("utf-8", errors="replace")
    raise ExtractionError(f"No extractor for content type {content_type!r}")


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[DocumentChunk]:
    """Split text into overlapping windows.

    Windows start every ``chunk_size - overlap`` characters, so the first
    ``chunk_size - overlap`` characters of consecutive chunks tile the text
    without gaps. The last chunk always ends at ``len(text)``; a short tail
    chunk fully inside the previous window's overlap is still emitted.
    """
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")
    chunks: List[DocumentChunk] = []
    step = chunk_size - overlap
    n = len(text)
    start = 0
    while start < n:
        end = min(start + chunk_size, n)
        chunks.append(
            DocumentChunk(
                id=uuid.uuid4().hex,
                index=len(chunks),
                content=text[start:end],
                start_offset=start,
                end_offset=end,
            )
        )
        start += step
    return chunks
