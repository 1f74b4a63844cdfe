from __future__ import annotations

from typing import Dict, List, Optional
import os
import uuid

from ..config import UploadSettings
from ..domain.document_models import ValidationResult


ALLOWED_TYPES: Dict[str, List[str]] = {
    ".pdf": ["application/pdf"],
    ".docx": ["application/vnd.openxmlformats-officedocument.wordprocessingml.document"],
}

# Extensions enabled through REALTY_EXTRA_ALLOWED_EXTENSIONS map to these types
OPTIONAL_TYPES: Dict[str, List[str]] = {
    ".txt": ["text/plain"],
    ".md": ["text/markdown", "text/plain"],
    ".csv": ["text/csv", "text/plain"],
    ".xlsx": ["application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"],
}

MALICIOUS_PATTERNS = ("..", "/", "\\", ":", "*", "?", '"', "<", ">", "|")


class UploadValidationError(ValueError):
    """Raised when an upload is rejected; the message is the user-facing reason."""


def allowed_types(settings: Optional[UploadSettings] = None) -> Dict[str, List[str]]:
    settings = settings or UploadSettings.from_env()
    out = {ext: list(types) for ext, types in ALLOWED_TYPES.items()}
    for ext in settings.extra_extensions:
        out.setdefault(ext, list(OPTIONAL_TYPES.get(ext, ["application/octet-stream"])))
    return out


def _human_size(num_bytes: int) -> str:
    mb = 1024 * 1024
    if num_bytes >= mb:
        return f"{num_bytes / mb:g}MB"
    return f"{num_bytes} byte"


def _filename_errors(file_name: str) -> List[str]:
    errors: List[str] = []
    if not file_name or not file_name.strip():
        return ["File name is required"]
    hits = [p for p in MALICIOUS_PATTERNS if p in file_name]
    if hits:
        errors.append(f"File name contains invalid characters: {' '.join(hits)}")
    if any(ord(ch) < 32 for ch in file_name):
        errors.append("File name contains control characters")
    if len(file_name) > 255:
        errors.append("File name is too long")
    return errors


def validate_upload(
    file_name: str,
    content_type: Optional[str],
    size_bytes: int,
    settings: Optional[UploadSettings] = None,
) -> ValidationResult:
    settings = settings or UploadSettings.from_env()
    types = allowed_types(settings)
    errors: List[str] = []

    if size_bytes <= 0:
        errors.append("File is empty")
    elif size_bytes > settings.max_bytes:
        errors.append(f"File size exceeds the {_human_size(settings.max_bytes)} limit")

    errors.extend(_filename_errors(file_name))

    ext = os.path.splitext(file_name or "")[1].lower()
    if ext not in types:
        errors.append(f"File type '{ext or '(none)'}' is not allowed. Allowed: {', '.join(sorted(types))}")
    else:
        declared = (content_type or "").split(";")[0].strip().lower()
        if declared not in types[ext]:
            errors.append(f"Content type '{declared or '(none)'}' does not match a {ext} file")

    if errors:
        return ValidationResult(is_valid=False, errors=errors)
    return ValidationResult(is_valid=True, secure_file_name=secure_file_name(file_name))


def secure_file_name(file_name: str) -> str:
    ext = os.path.splitext(file_name)[1].lower()
    return f"{uuid.uuid4()}{ext}"
