"""
Unit Tests — LLM Gateway
═════════════════════════
Tests for smartdoc/llm/gateway.py

ChatOpenAI is never constructed: _build_chat_model is replaced per test.

Coverage:
  ✅ defaults and per-call overrides reach the chat model
  ✅ json_mode binds response_format=json_object
  ✅ multi-part content flattened to text
  ✅ provider errors and timeouts → LLMError
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, SystemMessage

from smartdoc.core.errors import LLMError
from smartdoc.llm.gateway import LLMGateway


def _gateway_with(ainvoke: AsyncMock, **kwargs) -> tuple[LLMGateway, MagicMock]:
    gateway = LLMGateway(model="gpt-4o-mini", api_key="sk-test", **kwargs)
    chat_model = MagicMock()
    chat_model.ainvoke = ainvoke
    chat_model.bind.return_value = chat_model
    gateway._build_chat_model = MagicMock(return_value=chat_model)
    return gateway, chat_model


MESSAGES = LLMGateway.build_messages("You are terse.", "Say hi.")


@pytest.mark.unit
class TestLLMGateway:

    async def test_returns_text_content(self):
        gateway, chat_model = _gateway_with(AsyncMock(return_value=AIMessage(content="hi")))

        assert await gateway.complete(MESSAGES) == "hi"
        chat_model.ainvoke.assert_awaited_once()
        chat_model.bind.assert_not_called()

    async def test_defaults_and_overrides(self):
        gateway, _ = _gateway_with(
            AsyncMock(return_value=AIMessage(content="ok")), temperature=0.3, max_tokens=500,
        )

        await gateway.complete(MESSAGES)
        await gateway.complete(MESSAGES, model="gpt-4o", temperature=0.0, max_tokens=20)

        first, second = gateway._build_chat_model.call_args_list
        assert first.args == ("gpt-4o-mini", 0.3, 500)
        assert second.args == ("gpt-4o", 0.0, 20)

    async def test_json_mode_binds_response_format(self):
        gateway, chat_model = _gateway_with(AsyncMock(return_value=AIMessage(content="{}")))

        await gateway.complete(MESSAGES, json_mode=True)

        chat_model.bind.assert_called_once_with(response_format={"type": "json_object"})

    async def test_flattens_multipart_content(self):
        content = [{"type": "text", "text": "Hello, "}, "world", {"type": "image_url", "image_url": {}}]
        gateway, _ = _gateway_with(AsyncMock(return_value=AIMessage(content=content)))

        assert await gateway.complete(MESSAGES) == "Hello, world"

    async def test_provider_error_is_llm_error(self):
        gateway, _ = _gateway_with(AsyncMock(side_effect=RuntimeError("502 Bad Gateway")))

        with pytest.raises(LLMError) as exc_info:
            await gateway.complete(MESSAGES)
        assert "502 Bad Gateway" in str(exc_info.value)
        assert exc_info.value.retryable

    async def test_timeout_is_llm_error(self):
        async def slow(_messages):
            await asyncio.sleep(1)

        gateway, _ = _gateway_with(AsyncMock(side_effect=slow), timeout=0.01)

        with pytest.raises(LLMError, match="timed out"):
            await gateway.complete(MESSAGES)

    def test_build_messages(self):
        system, user = MESSAGES
        assert isinstance(system, SystemMessage)
        assert system.content == "You are terse."
        assert user.content == "Say hi."
