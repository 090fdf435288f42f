"""
Repositories over the async session factory.

Each public method is one short transaction. Callers never hold a session
across an await on an external service (LLM, storage, embeddings).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy import delete, func, select

from smartdoc.core.errors import NotFoundError, ValidationError
from smartdoc.db.session import SessionFactory, transaction
from smartdoc.models.documents import (
    ChatMessage,
    Document,
    DocumentEmbedding,
    DocumentStage,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

# Columns the pipeline is allowed to write through update_fields()
_DERIVED_FIELDS = frozenset(
    {
        "extracted_text",
        "summary",
        "document_type",
        "entities",
        "anomaly_score",
        "anomaly_details",
        "doc_metadata",
    }
)


@dataclass(frozen=True)
class StoredChunk:
    """Flat read model used by similarity ranking."""
    document_id: uuid.UUID
    chunk_index: int
    text:        str
    vector:      list[float]


# ---------------------------------------------------------------------------
# Documents + embeddings
# ---------------------------------------------------------------------------

class DocumentRepository:

    def __init__(self, sessions: SessionFactory) -> None:
        self._sessions = sessions

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(self, **fields: Any) -> Document:
        fields.setdefault("status_stage", DocumentStage.UPLOADED.value)
        fields.setdefault("status_progress", 0)
        fields.setdefault("status_message", "Document uploaded")
        async with transaction(self._sessions) as session:
            doc = Document(**fields)
            session.add(doc)
        logger.info("Document created | doc=%s user=%s type=%s", doc.id, doc.user_id, doc.file_type)
        return doc

    async def get(self, document_id: uuid.UUID) -> Document | None:
        async with self._sessions() as session:
            return await session.get(Document, document_id)

    async def get_owned(self, document_id: uuid.UUID, user_id: str) -> Document:
        """Fetch a document visible to ``user_id``; other users' documents look missing."""
        doc = await self.get(document_id)
        if doc is None or doc.user_id != user_id:
            raise NotFoundError(f"Document {document_id} not found")
        return doc

    async def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Document]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Document)
                .where(Document.user_id == user_id)
                .order_by(Document.created_at.desc(), Document.id)
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def delete(self, document_id: uuid.UUID) -> bool:
        """Remove a document and its embeddings. Chat history is left in place."""
        async with transaction(self._sessions) as session:
            await session.execute(
                delete(DocumentEmbedding).where(DocumentEmbedding.document_id == document_id)
            )
            result = await session.execute(delete(Document).where(Document.id == document_id))
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Status checkpoints
    # ------------------------------------------------------------------

    async def update_status(
        self,
        document_id: uuid.UUID,
        stage:       DocumentStage,
        progress:    int | None = None,
        message:     str | None = None,
        error:       str | None = None,
    ) -> Document:
        """
        Persist a status checkpoint.

        Rules:
          • illegal transitions raise ValidationError
          • progress never decreases while the stage stays ``processing``
          • failed keeps the last checkpoint's progress
          • started_at is set on entering processing, completed_at on
            entering completed or failed
        """
        target = DocumentStage(stage)
        async with transaction(self._sessions) as session:
            doc = await session.get(Document, document_id, with_for_update=True)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found")

            current = doc.stage
            if not can_transition(current, target):
                raise ValidationError(
                    f"Illegal status transition {current.value} -> {target.value} "
                    f"for document {document_id}"
                )

            now = utcnow()
            new_progress = doc.status_progress if progress is None else int(progress)

            if target is DocumentStage.PROCESSING:
                if current is DocumentStage.PROCESSING:
                    if new_progress < doc.status_progress:
                        logger.warning(
                            "Progress regression ignored | doc=%s current=%d requested=%d",
                            document_id, doc.status_progress, new_progress,
                        )
                    new_progress = max(new_progress, doc.status_progress)
                else:
                    doc.status_started_at = now
                    doc.status_completed_at = None
                    doc.status_error = None
            elif target is DocumentStage.FAILED:
                new_progress = doc.status_progress
                doc.status_completed_at = now
                doc.status_error = error or "Processing failed"
            elif target is DocumentStage.COMPLETED:
                doc.status_completed_at = now
                doc.status_error = None
            elif target is DocumentStage.UPLOADED:
                new_progress = 0
                doc.status_started_at = None
                doc.status_completed_at = None
                doc.status_error = None

            doc.status_stage = target.value
            doc.status_progress = max(0, min(100, new_progress))
            doc.status_message = message
            doc.updated_at = now

        logger.debug(
            "Status | doc=%s stage=%s progress=%d message=%s",
            document_id, doc.status_stage, doc.status_progress, message,
        )
        return doc

    async def update_fields(self, document_id: uuid.UUID, **fields: Any) -> None:
        unknown = set(fields) - _DERIVED_FIELDS
        if unknown:
            raise ValidationError(f"Fields not writable by the pipeline: {sorted(unknown)}")
        async with transaction(self._sessions) as session:
            doc = await session.get(Document, document_id)
            if doc is None:
                raise NotFoundError(f"Document {document_id} not found")
            for name, value in fields.items():
                setattr(doc, name, value)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def replace_embeddings(
        self,
        document_id: uuid.UUID,
        records:     Sequence[dict[str, Any]],
    ) -> int:
        """Delete-then-insert in one transaction: readers see the old set or the new one."""
        async with transaction(self._sessions) as session:
            if await session.get(Document, document_id) is None:
                raise NotFoundError(f"Document {document_id} not found")
            await session.execute(
                delete(DocumentEmbedding).where(DocumentEmbedding.document_id == document_id)
            )
            session.add_all(
                DocumentEmbedding(document_id=document_id, **record) for record in records
            )
        logger.info("Embeddings replaced | doc=%s count=%d", document_id, len(records))
        return len(records)

    async def list_embeddings(self, document_id: uuid.UUID) -> list[StoredChunk]:
        async with self._sessions() as session:
            result = await session.execute(
                select(
                    DocumentEmbedding.document_id,
                    DocumentEmbedding.chunk_index,
                    DocumentEmbedding.text,
                    DocumentEmbedding.vector,
                )
                .where(DocumentEmbedding.document_id == document_id)
                .order_by(DocumentEmbedding.chunk_index)
            )
            return [StoredChunk(*row) for row in result.all()]

    async def list_user_embeddings(self, user_id: str) -> list[StoredChunk]:
        """Every chunk of every document owned by ``user_id``."""
        async with self._sessions() as session:
            result = await session.execute(
                select(
                    DocumentEmbedding.document_id,
                    DocumentEmbedding.chunk_index,
                    DocumentEmbedding.text,
                    DocumentEmbedding.vector,
                )
                .join(Document, Document.id == DocumentEmbedding.document_id)
                .where(Document.user_id == user_id)
                .order_by(DocumentEmbedding.document_id, DocumentEmbedding.chunk_index)
            )
            return [StoredChunk(*row) for row in result.all()]

    async def count_embeddings(self, document_id: uuid.UUID) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count())
                .select_from(DocumentEmbedding)
                .where(DocumentEmbedding.document_id == document_id)
            )
            return int(result.scalar_one())


# ---------------------------------------------------------------------------
# Chat log
# ---------------------------------------------------------------------------

class ChatRepository:

    def __init__(self, sessions: SessionFactory) -> None:
        self._sessions = sessions

    async def append_exchange(
        self,
        document_id:       uuid.UUID,
        user_id:           str,
        user_content:      str,
        assistant_content: str,
        context:           Sequence[str],
    ) -> tuple[ChatMessage, ChatMessage]:
        """Persist a user turn and its reply together; the user turn gets the lower id."""
        async with transaction(self._sessions) as session:
            question = ChatMessage(
                document_id=document_id, user_id=user_id,
                role="user", content=user_content, context=[],
            )
            session.add(question)
            await session.flush()
            answer = ChatMessage(
                document_id=document_id, user_id=user_id,
                role="assistant", content=assistant_content, context=list(context),
            )
            session.add(answer)
        return question, answer

    async def recent(self, document_id: uuid.UUID, user_id: str, limit: int = 20) -> list[ChatMessage]:
        """Latest ``limit`` messages, returned oldest first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(ChatMessage)
                .where(ChatMessage.document_id == document_id, ChatMessage.user_id == user_id)
                .order_by(ChatMessage.id.desc())
                .limit(limit)
            )
            rows = list(result.scalars().all())
        rows.reverse()
        return rows

    async def clear(self, document_id: uuid.UUID, user_id: str) -> int:
        async with transaction(self._sessions) as session:
            result = await session.execute(
                delete(ChatMessage).where(
                    ChatMessage.document_id == document_id,
                    ChatMessage.user_id == user_id,
                )
            )
        return int(result.rowcount or 0)

    async def delete_orphans(self) -> int:
        """Drop history whose document no longer exists."""
        async with transaction(self._sessions) as session:
            result = await session.execute(
                delete(ChatMessage).where(
                    ChatMessage.document_id.not_in(select(Document.id))
                )
            )
        return int(result.rowcount or 0)
