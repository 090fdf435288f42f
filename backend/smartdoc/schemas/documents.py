"""
Pydantic Schemas — Entities, Documents, Jobs, Search, Chat, Errors

Covers both the domain value objects produced by enrichment (Entity) and
the request / response bodies of the /api/v1 surface.

Design decisions:
  - document ids are always server-generated UUIDs.
  - status is returned as a nested object mirroring the persisted checkpoint.
  - errors use one envelope (ErrorResponse) whatever the failing layer.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class EntityType(str, Enum):
    PERSON       = "person"
    ORGANIZATION = "organization"
    LOCATION     = "location"
    DATE         = "date"
    MONEY        = "money"
    EMAIL        = "email"
    PHONE        = "phone"
    ID           = "id"
    OTHER        = "other"


class Entity(BaseModel):
    type:        EntityType
    value:       str = Field(..., min_length=1)
    confidence:  Optional[float] = Field(None, ge=0.0, le=1.0)
    start_index: Optional[int] = Field(None, ge=0)
    end_index:   Optional[int] = Field(None, ge=0)

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        """Out-of-vocabulary labels from the model are kept as ``other``."""
        if isinstance(value, str):
            label = value.strip().lower()
            return label if label in EntityType._value2member_map_ else EntityType.OTHER
        return value

    @field_validator("value", mode="before")
    @classmethod
    def _strip_value(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class DocumentStatus(BaseModel):
    stage:        Literal["uploaded", "processing", "completed", "failed"]
    progress:     int = Field(..., ge=0, le=100)
    message:      Optional[str] = None
    error:        Optional[str] = None
    started_at:   Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:              UUID
    user_id:         str
    filename:        str
    original_name:   str
    file_type:       str
    file_size:       int
    storage_url:     Optional[str] = None
    status:          DocumentStatus
    summary:         Optional[str] = None
    document_type:   Optional[str] = None
    entities:        list[Entity] = Field(default_factory=list)
    anomaly_score:   Optional[float] = None
    anomaly_details: Optional[str] = None
    metadata:        dict[str, Any] = Field(default_factory=dict)
    created_at:      datetime
    updated_at:      datetime

    @classmethod
    def from_document(cls, doc) -> "DocumentResponse":
        return cls(
            id=doc.id,
            user_id=doc.user_id,
            filename=doc.filename,
            original_name=doc.original_name,
            file_type=doc.file_type,
            file_size=doc.file_size,
            storage_url=doc.storage_url,
            status=status_of(doc),
            summary=doc.summary,
            document_type=doc.document_type,
            entities=doc.entities or [],
            anomaly_score=doc.anomaly_score,
            anomaly_details=doc.anomaly_details,
            metadata=doc.doc_metadata or {},
            created_at=doc.created_at,
            updated_at=doc.updated_at,
        )


def status_of(doc) -> DocumentStatus:
    return DocumentStatus(
        stage=doc.status_stage,
        progress=doc.status_progress,
        message=doc.status_message,
        error=doc.status_error,
        started_at=doc.status_started_at,
        completed_at=doc.status_completed_at,
    )


class DocumentStatusResponse(BaseModel):
    """Polled by clients to track processing progress."""
    document_id: UUID
    status:      DocumentStatus


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobStatusResponse(BaseModel):
    id:            str
    state:         Literal["waiting", "active", "completed", "failed"]
    progress:      int
    attempts:      int
    max_attempts:  int
    data:          dict[str, Any]
    failed_reason: Optional[str] = None
    finished_at:   Optional[datetime] = None


# ---------------------------------------------------------------------------
# Search / similarity
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    limit: int = Field(10, ge=1, le=100)


class SearchResultItem(BaseModel):
    document_id: UUID
    score:       float
    snippet:     str


class SearchResponse(BaseModel):
    query:   str
    results: list[SearchResultItem]


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ChatTurn(BaseModel):
    role:    Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)
    history: Optional[list[ChatTurn]] = Field(
        None,
        description="Prior turns; when omitted the stored conversation is used",
    )


class ChatResponse(BaseModel):
    response:         str
    retrieved_chunks: list[str]


class ChatHistoryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:         int
    role:       Literal["user", "assistant"]
    content:    str
    context:    list[str] = Field(default_factory=list)
    created_at: datetime


class SuggestedQuestionsResponse(BaseModel):
    questions: list[str]


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   Optional[str] = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str = Field(..., description="Stable machine-readable code")
    message:    str = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: Optional[str] = Field(None, description="Trace ID for log correlation")
