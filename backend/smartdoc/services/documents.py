"""
Document Service

Owns the document lifecycle outside the pipeline itself:

  create_document()     validate → store blob → insert record (stage=uploaded)
  enqueue_processing()  reset a finished document to uploaded, then enqueue
  get_job_status()      job view for pollers (None when never enqueued)
  cancel_processing()   remove a waiting job
  delete_document()     cancel waiting job → delete blob → delete record
  prune_orphaned_chat_history()

Invariants enforced here:
  - user_id always comes from the caller's verified identity, never the body.
  - storage keys are built server-side: documents/<user_id>/<document_id>.<ext>
  - a document whose job is active cannot be deleted or re-enqueued over.
"""

from __future__ import annotations

import logging
import re
import uuid

from smartdoc.core.errors import (
    ConflictError,
    NotFoundError,
    UnsupportedTypeError,
    ValidationError,
)
from smartdoc.db.repositories import ChatRepository, DocumentRepository
from smartdoc.models.documents import Document, DocumentStage
from smartdoc.processing.extractor import normalize_file_type
from smartdoc.storage.base import ObjectStore
from smartdoc.workers.queue import JobPayload, JobQueue, JobState, ProcessingJob

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024

SUPPORTED_TYPES = frozenset({"pdf", "docx", "png", "jpg", "jpeg", "tif", "tiff", "txt", "md"})

_CONTENT_TYPES: dict[str, str] = {
    "pdf":  "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "tif":  "image/tiff",
    "tiff": "image/tiff",
    "txt":  "text/plain",
    "md":   "text/markdown",
}


# ---------------------------------------------------------------------------
# Filename helpers
# ---------------------------------------------------------------------------

def get_extension(filename: str) -> str:
    """Lowercased extension without the dot ("" when there is none)."""
    parts = filename.rsplit(".", 1)
    return parts[-1].lower() if len(parts) == 2 else ""


def sanitize_filename(filename: str) -> str:
    """Basename only, with characters unsafe in object keys replaced."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200] or "document"


def resolve_file_type(filename: str, content_type: str | None) -> str:
    """Extension first, declared MIME type second."""
    ext = get_extension(filename)
    if ext in SUPPORTED_TYPES:
        return ext
    if content_type:
        declared = normalize_file_type(content_type)
        if declared in SUPPORTED_TYPES:
            return declared
    raise UnsupportedTypeError(
        f"Unsupported file type for '{filename}' "
        f"(supported: {', '.join(sorted(SUPPORTED_TYPES))})"
    )


class DocumentService:

    def __init__(
        self,
        documents:        DocumentRepository,
        chats:            ChatRepository,
        storage:          ObjectStore,
        queue:            JobQueue,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
    ) -> None:
        self._documents = documents
        self._chats = chats
        self._storage = storage
        self._queue = queue
        self._max_upload_bytes = max_upload_bytes

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_document(
        self,
        user_id:       str,
        original_name: str,
        data:          bytes,
        content_type:  str | None = None,
    ) -> Document:
        if not user_id:
            raise ValidationError("user_id is required")
        if not original_name or not original_name.strip():
            raise ValidationError("A filename is required")
        if not data:
            raise ValidationError("File is empty")
        if len(data) > self._max_upload_bytes:
            raise ValidationError(
                f"File exceeds the {self._max_upload_bytes // (1024 * 1024)} MB upload limit"
            )

        file_type = resolve_file_type(original_name, content_type)
        document_id = uuid.uuid4()
        storage_key = f"documents/{user_id}/{document_id}.{file_type}"

        storage_url = await self._storage.put(
            storage_key, data, _CONTENT_TYPES.get(file_type, "application/octet-stream"),
        )
        try:
            doc = await self._documents.create(
                id=document_id,
                user_id=user_id,
                filename=sanitize_filename(original_name),
                original_name=original_name,
                file_type=file_type,
                file_size=len(data),
                storage_key=storage_key,
                storage_url=storage_url,
            )
        except Exception:
            logger.exception("Document insert failed, removing blob | key=%s", storage_key)
            try:
                await self._storage.delete(storage_key)
            except Exception:
                logger.exception("Blob cleanup failed | key=%s", storage_key)
            raise

        logger.info(
            "Document uploaded | doc=%s user=%s type=%s bytes=%d",
            doc.id, user_id, file_type, len(data),
        )
        return doc

    async def get_document(self, document_id: uuid.UUID, user_id: str) -> Document:
        return await self._documents.get_owned(document_id, user_id)

    async def list_documents(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Document]:
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        return await self._documents.list_for_user(user_id, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def enqueue_processing(self, document_id: uuid.UUID, user_id: str) -> ProcessingJob:
        """
        Schedule (or reschedule) processing.

        A job already waiting or active is returned unchanged. A completed
        or failed document is first reset to ``uploaded``.
        """
        doc = await self._documents.get_owned(document_id, user_id)
        job_id = str(doc.id)

        existing = await self._queue.get_status(job_id)
        if existing is not None and existing.state in (JobState.WAITING, JobState.ACTIVE):
            logger.info("Processing already scheduled | doc=%s state=%s", doc.id, existing.state.value)
            return existing

        if doc.stage in (DocumentStage.COMPLETED, DocumentStage.FAILED):
            await self._documents.update_status(
                doc.id, DocumentStage.UPLOADED, message="Queued for reprocessing",
            )

        return await self._queue.enqueue(
            JobPayload(
                document_id=job_id,
                user_id=doc.user_id,
                storage_key=doc.storage_key,
                file_type=doc.file_type,
            )
        )

    async def get_job_status(self, document_id: uuid.UUID, user_id: str) -> ProcessingJob | None:
        await self._documents.get_owned(document_id, user_id)
        return await self._queue.get_status(str(document_id))

    async def cancel_processing(self, document_id: uuid.UUID, user_id: str) -> bool:
        """True when a waiting job was removed; active jobs run to completion."""
        await self._documents.get_owned(document_id, user_id)
        return await self._queue.cancel(str(document_id))

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_document(self, document_id: uuid.UUID, user_id: str) -> None:
        doc = await self._documents.get_owned(document_id, user_id)

        job = await self._queue.get_status(str(doc.id))
        if job is not None and job.state is JobState.ACTIVE:
            raise ConflictError(f"Document {doc.id} is being processed and cannot be deleted yet")
        if job is not None and job.state is JobState.WAITING:
            if not await self._queue.cancel(job.id):
                raise ConflictError(f"Document {doc.id} started processing and cannot be deleted yet")

        try:
            await self._storage.delete(doc.storage_key)
        except NotFoundError:
            logger.warning("Blob already missing | doc=%s key=%s", doc.id, doc.storage_key)

        await self._documents.delete(doc.id)
        logger.info("Document deleted | doc=%s user=%s", doc.id, user_id)

    async def prune_orphaned_chat_history(self) -> int:
        removed = await self._chats.delete_orphans()
        logger.info("Orphaned chat history pruned | removed=%d", removed)
        return removed
