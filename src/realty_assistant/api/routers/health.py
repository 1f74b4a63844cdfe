from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...config import AuditSettings, LLMSettings, environment_name
from ...security.auth import User, get_current_user


router = APIRouter(prefix="/health", tags=["health"])


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@router.get("")
def health() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": _now(),
        "environment": environment_name(),
        "components": {
            "llm": "configured" if LLMSettings.from_env().configured else "missing-settings",
            "audit": "function" if AuditSettings.from_env().base_url else "in-memory",
        },
    }


@router.get("/auth")
def health_auth(user: User = Depends(get_current_user)) -> Dict[str, Any]:
    return {
        "status": "authenticated" if user.authenticated else "anonymous",
        "timestamp": _now(),
        "userId": user.id,
        "name": user.name,
    }
