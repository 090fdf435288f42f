"""
Document API Router

  POST   /documents                       multipart upload (+ optional auto-process)
  GET    /documents                       list the caller's documents
  GET    /documents/{id}                  full document with derived fields
  GET    /documents/{id}/status           processing checkpoint (poll this)
  POST   /documents/{id}/process          enqueue / re-enqueue processing
  GET    /documents/{id}/job              job state, attempts, last error
  DELETE /documents/{id}/job              cancel a waiting job
  DELETE /documents/{id}                  delete blob, record and embeddings

Errors raised by the services (SmartDocError) are rendered by the app-level
exception handler; routes never build error bodies themselves.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, File, Query, Response, UploadFile, status

from smartdoc.api.dependencies import CurrentUserId, Documents
from smartdoc.core.errors import ConflictError, NotFoundError
from smartdoc.schemas.documents import (
    DocumentResponse,
    DocumentStatusResponse,
    ErrorResponse,
    JobStatusResponse,
    status_of,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Upload / list / read
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a document",
    description=(
        "Accepts PDF, DOCX, PNG/JPEG/TIFF, TXT or Markdown files up to the configured "
        "size limit. With process=true (default) the document is queued immediately; "
        "poll GET /documents/{id}/status for progress."
    ),
    responses={**_ERRORS, 415: {"model": ErrorResponse}},
)
async def upload_document(
    response:  Response,
    user_id:   CurrentUserId,
    documents: Documents,
    file:      UploadFile = File(..., description="Document file"),
    process:   bool = Query(True, description="Queue processing right after upload"),
) -> DocumentResponse:
    data = await file.read()
    doc = await documents.create_document(
        user_id=user_id,
        original_name=file.filename or "",
        data=data,
        content_type=file.content_type,
    )
    if process:
        await documents.enqueue_processing(doc.id, user_id)
        doc = await documents.get_document(doc.id, user_id)

    response.headers["Location"] = f"/api/v1/documents/{doc.id}"
    return DocumentResponse.from_document(doc)


@router.get("", response_model=list[DocumentResponse], summary="List documents")
async def list_documents(
    user_id:   CurrentUserId,
    documents: Documents,
    limit:     int = Query(50, ge=1, le=200),
    offset:    int = Query(0, ge=0),
) -> list[DocumentResponse]:
    docs = await documents.list_documents(user_id, limit=limit, offset=offset)
    return [DocumentResponse.from_document(doc) for doc in docs]


@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    summary="Get a document",
    responses=_ERRORS,
)
async def get_document(
    document_id: UUID,
    user_id:     CurrentUserId,
    documents:   Documents,
) -> DocumentResponse:
    doc = await documents.get_document(document_id, user_id)
    return DocumentResponse.from_document(doc)


@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll processing status",
    responses=_ERRORS,
)
async def get_document_status(
    document_id: UUID,
    user_id:     CurrentUserId,
    documents:   Documents,
) -> DocumentStatusResponse:
    doc = await documents.get_document(document_id, user_id)
    return DocumentStatusResponse(document_id=doc.id, status=status_of(doc))


# ---------------------------------------------------------------------------
# Processing jobs
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/process",
    response_model=JobStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue (or re-queue) processing",
    responses=_ERRORS,
)
async def process_document(
    document_id: UUID,
    user_id:     CurrentUserId,
    documents:   Documents,
) -> JobStatusResponse:
    job = await documents.enqueue_processing(document_id, user_id)
    return JobStatusResponse(**job.status())


@router.get(
    "/{document_id}/job",
    response_model=JobStatusResponse,
    summary="Get the processing job",
    responses=_ERRORS,
)
async def get_job_status(
    document_id: UUID,
    user_id:     CurrentUserId,
    documents:   Documents,
) -> JobStatusResponse:
    job = await documents.get_job_status(document_id, user_id)
    if job is None:
        raise NotFoundError(f"No processing job for document {document_id}")
    return JobStatusResponse(**job.status())


@router.delete(
    "/{document_id}/job",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Cancel a waiting job",
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
)
async def cancel_job(
    document_id: UUID,
    user_id:     CurrentUserId,
    documents:   Documents,
) -> Response:
    if not await documents.cancel_processing(document_id, user_id):
        # Active, finished or never enqueued: nothing left to cancel
        raise ConflictError(f"No waiting job to cancel for document {document_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document",
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
)
async def delete_document(
    document_id: UUID,
    user_id:     CurrentUserId,
    documents:   Documents,
) -> Response:
    await documents.delete_document(document_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
