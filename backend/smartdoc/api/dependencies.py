"""
Composed FastAPI Dependencies

Route handlers import from here: the caller's identity and the services
wired onto ``app.state.container`` by the lifespan.

Authentication is an external collaborator. The gateway in front of the API
verifies the caller and forwards the user id in the ``X-User-ID`` header.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, Request

from smartdoc.core.errors import ValidationError
from smartdoc.rag.chat import ChatService
from smartdoc.rag.retrieval import RetrievalService
from smartdoc.services.container import ServiceContainer
from smartdoc.services.documents import DocumentService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise ValidationError("X-User-ID header is required")
    return user_id


def get_document_service(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> DocumentService:
    return container.documents


def get_retrieval_service(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> RetrievalService:
    return container.retrieval


def get_chat_service(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> ChatService:
    return container.chat


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentUserId = Annotated[str, Depends(get_current_user_id)]
Documents     = Annotated[DocumentService, Depends(get_document_service)]
Retrieval     = Annotated[RetrievalService, Depends(get_retrieval_service)]
Chat          = Annotated[ChatService, Depends(get_chat_service)]
