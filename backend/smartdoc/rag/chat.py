"""
Document Chat — Grounded Q&A over One Document

chat_with_document():
  1. ownership check (other users' documents look missing)
  2. top-K chunk retrieval for the message
  3. CHAT_PROMPT = system(grounding context) + last N history turns + question
  4. one completion; an empty answer is an LLMError
  5. user turn + assistant turn appended to the log in one transaction

When the caller supplies no history, the stored conversation is used.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from smartdoc.core.errors import LLMError, NoRelevantContentError, NotFoundError
from smartdoc.db.repositories import ChatRepository, DocumentRepository
from smartdoc.llm import prompts
from smartdoc.llm.gateway import LLMGateway
from smartdoc.models.documents import ChatMessage
from smartdoc.rag.retrieval import DEFAULT_TOP_K, RetrievalService

logger = logging.getLogger(__name__)

HISTORY_TURNS        = 5
HISTORY_PAGE_SIZE    = 20
SUGGESTION_COUNT     = 5
SUGGESTION_MAX_TOKENS = 300

_LIST_MARKER = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


@dataclass
class ChatResult:
    response:         str
    retrieved_chunks: list[str] = field(default_factory=list)


def _turn_fields(turn: Any) -> tuple[str, str]:
    if isinstance(turn, dict):
        return str(turn.get("role", "")), str(turn.get("content", ""))
    return str(turn.role), str(turn.content)


def to_history_messages(turns: Iterable[Any]) -> list[BaseMessage]:
    """Prior turns as LangChain messages; unknown roles are dropped."""
    messages: list[BaseMessage] = []
    for turn in turns:
        role, content = _turn_fields(turn)
        if role == "user":
            messages.append(HumanMessage(content=content))
        elif role == "assistant":
            messages.append(AIMessage(content=content))
    return messages


class ChatService:

    def __init__(
        self,
        documents:     DocumentRepository,
        chats:         ChatRepository,
        retrieval:     RetrievalService,
        llm:           LLMGateway,
        top_k:         int = DEFAULT_TOP_K,
        history_turns: int = HISTORY_TURNS,
    ) -> None:
        self._documents = documents
        self._chats = chats
        self._retrieval = retrieval
        self._llm = llm
        self._top_k = top_k
        self._history_turns = history_turns

    async def chat_with_document(
        self,
        message:     str,
        document_id: uuid.UUID,
        user_id:     str,
        history:     Sequence[Any] | None = None,
    ) -> ChatResult:
        await self._documents.get_owned(document_id, user_id)

        try:
            chunks = await self._retrieval.retrieve_relevant_chunks(message, document_id, self._top_k)
        except NotFoundError as exc:
            raise NoRelevantContentError(
                f"Document {document_id} has no searchable content yet"
            ) from exc
        if not chunks:
            raise NoRelevantContentError(f"No relevant content found in document {document_id}")

        if history is None:
            history = await self._chats.recent(document_id, user_id, limit=self._history_turns)
        recent_turns = list(history)[-self._history_turns:] if self._history_turns > 0 else []

        messages = prompts.CHAT_PROMPT.format_messages(
            context=prompts.CONTEXT_SEPARATOR.join(chunks),
            history=to_history_messages(recent_turns),
            question=message,
        )
        answer = (await self._llm.complete(messages)).strip()
        if not answer:
            raise LLMError("Completion returned an empty answer")

        await self._chats.append_exchange(document_id, user_id, message, answer, chunks)
        logger.info(
            "Chat | doc=%s user=%s chunks=%d history=%d answer_chars=%d",
            document_id, user_id, len(chunks), len(recent_turns), len(answer),
        )
        return ChatResult(response=answer, retrieved_chunks=chunks)

    async def get_conversation_history(
        self,
        document_id: uuid.UUID,
        user_id:     str,
        limit:       int = HISTORY_PAGE_SIZE,
    ) -> list[ChatMessage]:
        await self._documents.get_owned(document_id, user_id)
        return await self._chats.recent(document_id, user_id, limit=limit)

    async def clear_conversation_history(self, document_id: uuid.UUID, user_id: str) -> int:
        await self._documents.get_owned(document_id, user_id)
        removed = await self._chats.clear(document_id, user_id)
        logger.info("Chat history cleared | doc=%s user=%s removed=%d", document_id, user_id, removed)
        return removed

    async def generate_suggested_questions(
        self,
        summary:       str,
        document_type: str | None,
        count:         int = SUGGESTION_COUNT,
    ) -> list[str]:
        """Up to ``count`` questions for the document; fixed defaults if the LLM fails."""
        defaults = list(prompts.DEFAULT_SUGGESTED_QUESTIONS[:count])
        if not summary:
            return defaults

        messages = LLMGateway.build_messages(
            prompts.SUGGESTIONS_SYSTEM.format(count=count, document_type=document_type or "document"),
            prompts.SUGGESTIONS_USER.format(summary=summary),
        )
        try:
            raw = await self._llm.complete(messages, max_tokens=SUGGESTION_MAX_TOKENS)
        except Exception as exc:
            logger.warning("Suggested questions unavailable | error=%s", exc)
            return defaults

        questions = [_LIST_MARKER.sub("", line).strip() for line in raw.splitlines()]
        questions = [q for q in questions if q][:count]
        return questions or defaults
