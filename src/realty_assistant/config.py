from __future__ import annotations

"""Environment-driven settings.

Every external collaborator is configured from environment variables (a
``.env`` file is loaded by the API entrypoint). Missing values never fail
at import time; the component that needs them raises on first use instead.

LLM:
- AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY
- AZURE_OPENAI_DEPLOYMENT_NAME (falls back to AZURE_OPENAI_DEPLOYMENT)
- AZURE_OPENAI_API_VERSION (default 2024-06-01)

Audit function:
- AZURE_FUNCTION_URL, AZURE_FUNCTION_KEY (optional access code)
- REALTY_AUDIT_CONNECT_TIMEOUT / REALTY_AUDIT_READ_TIMEOUT (seconds)

Documents:
- DOCUMENT_STORAGE_CONNECTION_STRING, REALTY_BLOB_STORE_IMPL
- REALTY_MAX_UPLOAD_BYTES, REALTY_EXTRA_ALLOWED_EXTENSIONS
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import os


DEFAULT_API_VERSION = "2024-06-01"
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024

SOURCE_TAG = "RR-Realty-AI"


def _env_str(name: str) -> Optional[str]:
    val = os.getenv(name)
    if val is None:
        return None
    val = val.strip()
    return val or None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_csv(name: str) -> List[str]:
    raw = os.getenv(name) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class LLMSettings:
    endpoint: Optional[str]
    api_key: Optional[str]
    deployment: Optional[str]
    api_version: str = DEFAULT_API_VERSION
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 1.0

    @staticmethod
    def from_env() -> "LLMSettings":
        return LLMSettings(
            endpoint=_env_str("AZURE_OPENAI_ENDPOINT"),
            api_key=_env_str("AZURE_OPENAI_API_KEY"),
            deployment=_env_str("AZURE_OPENAI_DEPLOYMENT_NAME") or _env_str("AZURE_OPENAI_DEPLOYMENT"),
            api_version=_env_str("AZURE_OPENAI_API_VERSION") or DEFAULT_API_VERSION,
        )

    def missing(self) -> List[str]:
        out: List[str] = []
        if not self.endpoint:
            out.append("AZURE_OPENAI_ENDPOINT")
        if not self.api_key:
            out.append("AZURE_OPENAI_API_KEY")
        if not self.deployment:
            out.append("AZURE_OPENAI_DEPLOYMENT_NAME")
        return out

    @property
    def configured(self) -> bool:
        return not self.missing()


@dataclass
class AuditSettings:
    base_url: Optional[str]
    access_code: Optional[str] = None
    connect_timeout: float = 5.0
    read_timeout: float = 30.0

    @staticmethod
    def from_env() -> "AuditSettings":
        base_url = _env_str("AZURE_FUNCTION_URL")
        return AuditSettings(
            base_url=base_url.rstrip("/") if base_url else None,
            access_code=_env_str("AZURE_FUNCTION_KEY"),
            connect_timeout=_env_float("REALTY_AUDIT_CONNECT_TIMEOUT", 5.0),
            read_timeout=_env_float("REALTY_AUDIT_READ_TIMEOUT", 30.0),
        )

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.connect_timeout, self.read_timeout)


@dataclass
class UploadSettings:
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    extra_extensions: List[str] = field(default_factory=list)

    @staticmethod
    def from_env() -> "UploadSettings":
        raw = os.getenv("REALTY_MAX_UPLOAD_BYTES")
        max_bytes = DEFAULT_MAX_UPLOAD_BYTES
        if raw:
            try:
                max_bytes = int(raw) if int(raw) > 0 else DEFAULT_MAX_UPLOAD_BYTES
            except ValueError:
                max_bytes = DEFAULT_MAX_UPLOAD_BYTES
        extras = []
        for ext in _env_csv("REALTY_EXTRA_ALLOWED_EXTENSIONS"):
            ext = ext.lower()
            extras.append(ext if ext.startswith(".") else f".{ext}")
        return UploadSettings(max_bytes=max_bytes, extra_extensions=extras)


def cors_origins() -> List[str]:
    origins = _env_csv("REALTY_CORS_ORIGINS")
    if origins:
        return origins
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "https://testing.rrrealty.ai",
    ]


def environment_name() -> str:
    return (
        os.getenv("REALTY_ENV")
        or os.getenv("ENVIRONMENT")
        or os.getenv("ENV")
        or "development"
    ).lower()
