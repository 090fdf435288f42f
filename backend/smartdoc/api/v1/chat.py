"""
Chat API Router

  POST   /documents/{id}/chat            ask a question grounded in the document
  GET    /documents/{id}/chat/history    stored conversation, oldest first
  DELETE /documents/{id}/chat/history    clear the caller's conversation
  GET    /documents/{id}/suggestions     suggested questions from the summary
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Query

from smartdoc.api.dependencies import Chat, CurrentUserId, Documents
from smartdoc.schemas.documents import (
    ChatHistoryItem,
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    SuggestedQuestionsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents/{document_id}", tags=["Chat"])


@router.post(
    "/chat",
    response_model=ChatResponse,
    summary="Chat with a document",
    responses={
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse, "description": "Document has no searchable content yet"},
        502: {"model": ErrorResponse},
    },
)
async def chat_with_document(
    document_id: UUID,
    body:        ChatRequest,
    user_id:     CurrentUserId,
    chat:        Chat,
) -> ChatResponse:
    result = await chat.chat_with_document(
        body.message, document_id, user_id,
        history=body.history,
    )
    return ChatResponse(response=result.response, retrieved_chunks=result.retrieved_chunks)


@router.get(
    "/chat/history",
    response_model=list[ChatHistoryItem],
    summary="Conversation history",
    responses={404: {"model": ErrorResponse}},
)
async def get_history(
    document_id: UUID,
    user_id:     CurrentUserId,
    chat:        Chat,
    limit:       int = Query(20, ge=1, le=200),
) -> list[ChatHistoryItem]:
    messages = await chat.get_conversation_history(document_id, user_id, limit)
    return [ChatHistoryItem.model_validate(message) for message in messages]


@router.delete(
    "/chat/history",
    summary="Clear conversation history",
    responses={404: {"model": ErrorResponse}},
)
async def clear_history(
    document_id: UUID,
    user_id:     CurrentUserId,
    chat:        Chat,
) -> dict:
    removed = await chat.clear_conversation_history(document_id, user_id)
    return {"document_id": str(document_id), "removed": removed}


@router.get(
    "/suggestions",
    response_model=SuggestedQuestionsResponse,
    summary="Suggested questions",
    responses={404: {"model": ErrorResponse}},
)
async def suggested_questions(
    document_id: UUID,
    user_id:     CurrentUserId,
    documents:   Documents,
    chat:        Chat,
) -> SuggestedQuestionsResponse:
    doc = await documents.get_document(document_id, user_id)
    questions = await chat.generate_suggested_questions(doc.summary or "", doc.document_type)
    return SuggestedQuestionsResponse(questions=questions)
