from __future__ import annotations

from threading import Lock
from typing import Any, AsyncIterator, List, Optional, Sequence
import logging
import time

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import AzureChatOpenAI

from ..config import LLMSettings


logger = logging.getLogger(__name__)
LOG = logging.getLogger("realty.llm")


SYSTEM_PROMPT = (
    "You are the RR Realty AI assistant, a helpful assistant for a commercial real estate company. "
    "Answer questions about properties, leases, market conditions and company documents clearly and "
    "professionally. When document context is provided, ground your answer in it and say so when the "
    "documents do not contain the answer. Do not invent figures, addresses or contract terms."
)


class ResponseGeneratorNotConfigured(RuntimeError):
    def __init__(self, missing: Sequence[str]) -> None:
        super().__init__(f"Response generator is not configured; missing: {', '.join(missing)}")
        self.missing = list(missing)


def to_langchain(system_prompt: str, turns: Sequence[tuple[str, str]]) -> List[BaseMessage]:
    out: List[BaseMessage] = [SystemMessage(content=system_prompt)]
    for role, content in turns:
        if role == "assistant":
            out.append(AIMessage(content=content))
        else:
            out.append(HumanMessage(content=content))
    return out


def _chunk_text(chunk: Any) -> str:
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return ""


class ResponseGenerator:
    """Azure OpenAI chat completions via langchain.

    The client is created on first use so a process without LLM settings
    still starts; the first chat request then fails with
    ResponseGeneratorNotConfigured.
    """

    def __init__(self, settings: Optional[LLMSettings] = None, system_prompt: str = SYSTEM_PROMPT) -> None:
        self._settings = settings or LLMSettings.from_env()
        self.system_prompt = system_prompt
        self._llm: Optional[AzureChatOpenAI] = None
        self._lock = Lock()

    @property
    def settings(self) -> LLMSettings:
        return self._settings

    def _get_llm(self) -> AzureChatOpenAI:
        if self._llm is not None:
            return self._llm
        with self._lock:
            if self._llm is None:
                missing = self._settings.missing()
                if missing:
                    raise ResponseGeneratorNotConfigured(missing)
                s = self._settings
                self._llm = AzureChatOpenAI(
                    azure_endpoint=s.endpoint,
                    api_key=s.api_key,
                    azure_deployment=s.deployment,
                    api_version=s.api_version,
                    max_tokens=s.max_tokens,
                    temperature=s.temperature,
                    top_p=s.top_p,
                )
                LOG.info("llm_client_ready", extra={"deployment": s.deployment, "api_version": s.api_version})
        return self._llm

    def ensure_ready(self) -> None:
        self._get_llm()

    async def complete(self, turns: Sequence[tuple[str, str]]) -> str:
        llm = self._get_llm()
        started = time.perf_counter()
        result = await llm.ainvoke(to_langchain(self.system_prompt, turns))
        LOG.info(
            "llm_complete",
            extra={"turns": len(turns), "elapsed_ms": int((time.perf_counter() - started) * 1000)},
        )
        return _chunk_text(result)

    async def stream(self, turns: Sequence[tuple[str, str]]) -> AsyncIterator[str]:
        llm = self._get_llm()
        started = time.perf_counter()
        produced = 0
        async for chunk in llm.astream(to_langchain(self.system_prompt, turns)):
            text = _chunk_text(chunk)
            if text:
                produced += len(text)
                yield text
        LOG.info(
            "llm_stream_complete",
            extra={"turns": len(turns), "chars": produced, "elapsed_ms": int((time.perf_counter() - started) * 1000)},
        )


_generator_singleton: Optional[ResponseGenerator] = None


def get_response_generator() -> ResponseGenerator:
    global _generator_singleton
    if _generator_singleton is None:
        _generator_singleton = ResponseGenerator()
    return _generator_singleton
