from __future__ import annotations

"""HTTP client for the conversation audit function.

The function owns the durable conversation records and assigns canonical
conversation ids on first save. Every call is best-effort: transport errors,
non-2xx responses and malformed payloads are logged and degrade to an empty
or unsuccessful result. Blocking ``requests`` calls run in the Starlette
threadpool so the event loop keeps serving other users.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import logging

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from starlette.concurrency import run_in_threadpool
from urllib3.util.retry import Retry

from ..config import SOURCE_TAG, AuditSettings
from ..domain.chat_models import ChatMessage, ConversationEntry, ConversationSession
from .conversation_persistence import SaveResult


LOG = logging.getLogger("realty.audit")


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET", "DELETE"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _entries_from_payload(payload: Any) -> List[ConversationEntry]:
    # The function returns either a flat message list or a list of conversation
    # documents that each carry a "messages" array.
    if isinstance(payload, dict):
        payload = payload.get("messages") or payload.get("conversations") or []
    if not isinstance(payload, list):
        return []
    raw: List[Dict[str, Any]] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("messages"), list):
            raw.extend(m for m in item["messages"] if isinstance(m, dict))
        else:
            raw.append(item)
    out: List[ConversationEntry] = []
    for item in raw:
        try:
            out.append(ConversationEntry.model_validate(item))
        except ValidationError:
            LOG.warning("audit_entry_skipped", extra={"keys": sorted(item.keys())})
    return out


def _sessions_from_payload(payload: Any) -> Iterable[ConversationSession]:
    if isinstance(payload, dict):
        payload = payload.get("sessions") or []
    if not isinstance(payload, list):
        return []
    out: List[ConversationSession] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        data = dict(item)
        data.setdefault("conversationId", data.get("id"))
        try:
            out.append(ConversationSession.model_validate(data))
        except ValidationError:
            LOG.warning("audit_session_skipped", extra={"keys": sorted(item.keys())})
    return out


class AuditFunctionClient:
    def __init__(self, settings: AuditSettings, session: Optional[requests.Session] = None) -> None:
        if not settings.base_url:
            raise ValueError("AuditFunctionClient requires a base URL")
        self._settings = settings
        self._session = session or _build_session()

    def _url(self, route: str) -> str:
        return f"{self._settings.base_url}/api/{route}"

    def _params(self, **params: Optional[str]) -> Dict[str, str]:
        out = {k: v for k, v in params.items() if v}
        if self._settings.access_code:
            out["code"] = self._settings.access_code
        return out

    # --- blocking calls (run in threadpool) ---

    def _save_sync(
        self,
        user_id: str,
        messages: List[ChatMessage],
        canonical_id: Optional[str],
        session_token: Optional[str],
        title: Optional[str],
    ) -> SaveResult:
        body = {
            "userId": user_id,
            "conversationId": canonical_id,
            "sessionId": session_token,
            "title": title,
            "source": SOURCE_TAG,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "messages": [
                ConversationEntry.from_message(m).model_dump(mode="json", by_alias=True) for m in messages
            ],
        }
        try:
            resp = self._session.post(
                self._url("SaveConversation"),
                params=self._params(),
                json=body,
                timeout=self._settings.timeout,
            )
        except requests.RequestException as exc:
            LOG.warning("audit_save_failed", extra={"user_id": user_id, "error": str(exc)})
            return SaveResult(False, None)
        if resp.status_code >= 400:
            LOG.warning("audit_save_rejected", extra={"user_id": user_id, "status": resp.status_code})
            return SaveResult(False, None)
        assigned = canonical_id
        try:
            data = resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            assigned = data.get("conversationId") or data.get("id") or assigned
        LOG.info("audit_save_ok", extra={"user_id": user_id, "conversation_id": assigned, "messages": len(messages)})
        return SaveResult(True, assigned)

    def _get_json(self, route: str, **params: Optional[str]) -> Any:
        try:
            resp = self._session.get(self._url(route), params=self._params(**params), timeout=self._settings.timeout)
        except requests.RequestException as exc:
            LOG.warning("audit_read_failed", extra={"route": route, "error": str(exc)})
            return None
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            LOG.warning("audit_read_rejected", extra={"route": route, "status": resp.status_code})
            return None
        try:
            return resp.json()
        except ValueError:
            LOG.warning("audit_read_malformed", extra={"route": route})
            return None

    def _delete(self, route: str, **params: Optional[str]) -> bool:
        try:
            resp = self._session.delete(self._url(route), params=self._params(**params), timeout=self._settings.timeout)
        except requests.RequestException as exc:
            LOG.warning("audit_delete_failed", extra={"route": route, "error": str(exc)})
            return False
        if resp.status_code >= 400:
            if resp.status_code != 404:
                LOG.warning("audit_delete_rejected", extra={"route": route, "status": resp.status_code})
            return False
        return True

    # --- async surface ---

    async def save(
        self,
        user_id: str,
        messages: List[ChatMessage],
        canonical_id: Optional[str] = None,
        session_token: Optional[str] = None,
        title: Optional[str] = None,
    ) -> SaveResult:
        return await run_in_threadpool(self._save_sync, user_id, messages, canonical_id, session_token, title)

    async def load_history(self, user_id: str, id_or_token: Optional[str] = None) -> List[ConversationEntry]:
        payload = await run_in_threadpool(
            self._get_json, "GetConversations", userId=user_id, conversationId=id_or_token
        )
        return _entries_from_payload(payload)

    async def list_sessions(self, user_id: str) -> List[ConversationSession]:
        payload = await run_in_threadpool(self._get_json, "GetSessions", userId=user_id)
        return list(_sessions_from_payload(payload))

    async def delete_session(self, user_id: str, conversation_id: str) -> bool:
        return await run_in_threadpool(
            self._delete, "DeleteConversation", userId=user_id, conversationId=conversation_id
        )

    async def clear_history(self, user_id: str) -> bool:
        return await run_in_threadpool(self._delete, "ClearConversations", userId=user_id)
