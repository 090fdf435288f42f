"""
LLM Gateway — Single Entry Point for Chat Completions

Every completion in smartdoc (summaries, entities, classification, anomaly
scoring, grounded chat) goes through LLMGateway.complete():

  ┌──────────────────────────────────────────────────────┐
  │  LLMGateway.complete(messages, temperature, ...)     │
  │       │                                              │
  │       ▼                                              │
  │  ChatOpenAI(model, temperature, max_tokens)          │
  │       │   .bind(response_format=json_object)         │
  │       ▼        when json_mode=True                   │
  │  asyncio.wait_for(ainvoke, timeout)                  │
  │       │                                              │
  │       ▼                                              │
  │  str content  (LLMError on failure / timeout)        │
  └──────────────────────────────────────────────────────┘

Contract relied upon by callers: bounded latency (timeout), text output,
and fallibility — every failure surfaces as LLMError so each caller can
decide whether to degrade (enrichment) or propagate (chat).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from smartdoc.core.errors import LLMError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


def _content_to_text(content) -> str:
    """ChatOpenAI returns str content; multi-part content is flattened."""
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class LLMGateway:
    """
    Thin async wrapper over LangChain's ChatOpenAI.

    One instance per process; ChatOpenAI clients are cheap and built per
    call so temperature / max_tokens can vary between callers.
    """

    def __init__(
        self,
        model:       str   = "gpt-4o-mini",
        api_key:     str   = "",
        temperature: float = 0.3,
        max_tokens:  int   = 500,
        timeout:     float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout

    @property
    def model(self) -> str:
        return self._model

    def _build_chat_model(self, model: str, temperature: float, max_tokens: int):
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            model=model,
            api_key=self._api_key or None,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=self._timeout,
            max_retries=1,
        )

    async def complete(
        self,
        messages:    Sequence[BaseMessage],
        *,
        model:       str | None   = None,
        temperature: float | None = None,
        max_tokens:  int | None   = None,
        json_mode:   bool         = False,
    ) -> str:
        """
        Run one chat completion and return the text content.

        Raises:
            LLMError: provider error or timeout.
        """
        model = model or self._model
        temperature = self._temperature if temperature is None else temperature
        max_tokens = max_tokens or self._max_tokens

        llm = self._build_chat_model(model, temperature, max_tokens)
        if json_mode:
            llm = llm.bind(response_format={"type": "json_object"})

        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(llm.ainvoke(list(messages)), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise LLMError(f"Completion timed out after {self._timeout:.0f}s ({model})") from exc
        except Exception as exc:
            raise LLMError(f"Completion failed ({model}): {exc}") from exc

        text = _content_to_text(result.content)
        logger.info(
            "LLMGateway | model=%s json=%s chars=%d latency_ms=%.1f",
            model, json_mode, len(text), (time.perf_counter() - t0) * 1000,
        )
        return text

    @staticmethod
    def build_messages(system_prompt: str, user_prompt: str) -> list[BaseMessage]:
        return [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
