"""
SQLAlchemy ORM Models — Documents, Embeddings, Chat Log, Processing Jobs

Portable column types only (sqlalchemy.Uuid / JSON) so the same schema runs
on PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in tests.

Status state machine (documents.status_stage):

    uploaded ──► processing ──► completed
                     │
                     └──────► failed

    completed ─► uploaded     manual resubmission
    failed    ─► uploaded     manual resubmission
    failed    ─► processing   automatic retry attempt of the same job
    failed    ─► failed       error refreshed (terminal failure recorded)

While the stage stays ``processing`` the progress value never decreases.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# SQLite only auto-increments INTEGER PRIMARY KEY columns
_BigIntPK = BigInteger().with_variant(Integer, "sqlite")


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Status stages and legal transitions
# ---------------------------------------------------------------------------

class DocumentStage(str, Enum):
    UPLOADED   = "uploaded"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


ALLOWED_TRANSITIONS: dict[DocumentStage, frozenset[DocumentStage]] = {
    DocumentStage.UPLOADED:   frozenset({DocumentStage.PROCESSING}),
    DocumentStage.PROCESSING: frozenset(
        {DocumentStage.PROCESSING, DocumentStage.COMPLETED, DocumentStage.FAILED}
    ),
    DocumentStage.COMPLETED:  frozenset({DocumentStage.UPLOADED}),
    DocumentStage.FAILED:     frozenset(
        {DocumentStage.UPLOADED, DocumentStage.PROCESSING, DocumentStage.FAILED}
    ),
}


def can_transition(current: DocumentStage | str, target: DocumentStage | str) -> bool:
    return DocumentStage(target) in ALLOWED_TRANSITIONS[DocumentStage(current)]


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file and everything the pipeline derived from it.

    Derived fields (extracted_text, summary, document_type, entities,
    anomaly_*) are written only by pipeline stages.
    """

    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_user_id", "user_id"),
        Index("idx_documents_stage",   "user_id", "status_stage"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # File reference
    filename:      Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type:     Mapped[str] = mapped_column(String(16), nullable=False)
    file_size:     Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    storage_key:   Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    storage_url:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Processing status (flattened value object)
    status_stage:        Mapped[str] = mapped_column(
        String(16), nullable=False, default=DocumentStage.UPLOADED.value
    )
    status_progress:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status_message:      Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_error:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Derived by the pipeline
    extracted_text:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary:         Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_type:   Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    entities:        Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    anomaly_score:   Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    anomaly_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    doc_metadata:    Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    embeddings: Mapped[list["DocumentEmbedding"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentEmbedding.chunk_index",
        lazy="raise",
    )

    @property
    def stage(self) -> DocumentStage:
        return DocumentStage(self.status_stage)

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} user={self.user_id} "
            f"stage={self.status_stage} progress={self.status_progress} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Embedding model: document_embeddings
# ---------------------------------------------------------------------------

class DocumentEmbedding(Base):
    """
    One chunk vector. chunk_index matches the position produced by the
    chunking pass and is unique per document.
    """

    __tablename__ = "document_embeddings"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_embeddings_position"),
        Index("idx_embeddings_document_id", "document_id"),
    )

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    text:        Mapped[str] = mapped_column(Text, nullable=False)
    vector:      Mapped[list[float]] = mapped_column(JSON, nullable=False)
    model:       Mapped[str] = mapped_column(String(64), nullable=False)
    created_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    document: Mapped[Document] = relationship(back_populates="embeddings")

    def __repr__(self) -> str:
        return f"<DocumentEmbedding doc={self.document_id} idx={self.chunk_index} dims={len(self.vector)}>"


# ---------------------------------------------------------------------------
# Chat log: chat_messages
# ---------------------------------------------------------------------------

class ChatMessage(Base):
    """
    Append-only conversation log per (document, user).

    No foreign key to documents: deleting a document leaves its history in
    place until pruned. Ordering is by the monotonic integer id.
    """

    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("idx_chat_document_user", "document_id", "user_id", "id"),
    )

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id:     Mapped[str] = mapped_column(String(128), nullable=False)
    role:        Mapped[str] = mapped_column(String(16), nullable=False)   # user | assistant
    content:     Mapped[str] = mapped_column(Text, nullable=False)
    context:     Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<ChatMessage id={self.id} doc={self.document_id} role={self.role}>"


# ---------------------------------------------------------------------------
# Durable job queue: processing_jobs
# ---------------------------------------------------------------------------

class ProcessingJobRecord(Base):
    """
    Backing row of the processing queue. id is the document id, which
    makes enqueue idempotent at the primary-key level.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        Index("idx_jobs_ready", "state", "available_at"),
    )

    id:           Mapped[str] = mapped_column(String(64), primary_key=True)
    payload:      Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    state:        Mapped[str] = mapped_column(String(16), nullable=False, default="waiting")
    attempts:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    progress:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at:   Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at:   Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<ProcessingJobRecord id={self.id} state={self.state} attempts={self.attempts}>"
