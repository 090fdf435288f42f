"""
Document Processing Pipeline
═════════════════════════════

One job = one document, stages strictly in order:

  progress  message                        work
  ────────  ─────────────────────────────  ─────────────────────────────────
    10      Downloading file...            ObjectStore.get(storage_key)
    25      Extracting text...             TextExtractor → clean_text
                                           (< min_text_length → ExtractionError)
                                           persist extracted_text + metadata
    40      Generating summary...          EnrichmentEngine.summarize
    55      Extracting entities...         EnrichmentEngine.extract_entities
    65      Classifying document...        EnrichmentEngine.classify
    75      Detecting anomalies...         EnrichmentEngine.detect_anomalies
    85      Generating embeddings...       chunk_text → embed → store
   100      Processing completed ...       stage = completed

Every checkpoint is committed before its stage starts and mirrored onto the
job row (which doubles as the worker heartbeat). Each external call is
bounded by ``stage_timeout``; a timeout fails the stage like any other
error. Failures are caught once, at the top of run(): the document is
marked failed with the error and progress frozen, then the exception is
re-raised so the queue can apply its retry policy. A run cancelled from
outside (the worker pool's job timeout) is recorded the same way.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, TypeVar

from smartdoc.core.errors import ExtractionError
from smartdoc.db.repositories import DocumentRepository
from smartdoc.models.documents import DocumentStage
from smartdoc.processing.chunking import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    chunk_text,
    clean_text,
    extract_keywords,
    text_stats,
)
from smartdoc.processing.embeddings import EmbeddingClient, EmbeddingStore
from smartdoc.processing.enrichment import EnrichmentEngine
from smartdoc.processing.extractor import TextExtractor
from smartdoc.storage.base import ObjectStore
from smartdoc.workers.queue import FailureOutcome, JobQueue, ProcessingJob

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_TEXT_LENGTH       = 50
STAGE_TIMEOUT_SECONDS = 120.0
SUMMARY_MAX_LENGTH    = 500
MAX_ERROR_LENGTH      = 2000


class DocumentPipeline:

    def __init__(
        self,
        documents:       DocumentRepository,
        storage:         ObjectStore,
        extractor:       TextExtractor,
        enrichment:      EnrichmentEngine,
        embedder:        EmbeddingClient,
        embedding_store: EmbeddingStore,
        queue:           JobQueue | None = None,
        *,
        chunk_size:      int   = DEFAULT_CHUNK_SIZE,
        chunk_overlap:   int   = DEFAULT_CHUNK_OVERLAP,
        min_text_length: int   = MIN_TEXT_LENGTH,
        stage_timeout:   float = STAGE_TIMEOUT_SECONDS,
    ) -> None:
        self._documents = documents
        self._storage = storage
        self._extractor = extractor
        self._enrichment = enrichment
        self._embedder = embedder
        self._embedding_store = embedding_store
        self._queue = queue
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._min_text_length = min_text_length
        self._stage_timeout = stage_timeout

    async def run(self, job: ProcessingJob) -> dict[str, Any]:
        document_id = uuid.UUID(job.payload.document_id)
        t0 = time.monotonic()
        logger.info("Processing | doc=%s job=%s attempt=%d", document_id, job.id, job.attempts)
        try:
            result = await self._run_stages(job, document_id)
        except Exception as exc:
            await self._record_failure(document_id, exc)
            raise
        except asyncio.CancelledError:
            # Job timeout in the worker pool cancels the run mid-stage
            await self._record_failure(document_id, TimeoutError("Processing cancelled before completion"))
            raise

        logger.info(
            "Processing complete | doc=%s chunks=%d elapsed_ms=%.0f",
            document_id, result["chunk_count"], (time.monotonic() - t0) * 1000,
        )
        return result

    async def _run_stages(self, job: ProcessingJob, document_id: uuid.UUID) -> dict[str, Any]:
        payload = job.payload

        # --- Download ---------------------------------------------------
        await self._checkpoint(job, document_id, 10, "Downloading file...")
        buffer = await self._bounded("download", self._storage.get(payload.storage_key))

        # --- Extract + normalize ----------------------------------------
        await self._checkpoint(job, document_id, 25, "Extracting text...")
        extraction = await self._bounded(
            "extract", self._extractor.extract(buffer, payload.file_type)
        )
        text = clean_text(extraction.text)
        if len(text) < self._min_text_length:
            raise ExtractionError(
                f"Insufficient text extracted from document "
                f"({len(text)} characters, minimum {self._min_text_length})"
            )

        metadata = extraction.metadata()
        metadata.update(text_stats(text).to_dict())
        metadata["keywords"] = extract_keywords(text)
        await self._documents.update_fields(
            document_id, extracted_text=text, doc_metadata=metadata,
        )
        logger.info(
            "Text extracted | doc=%s chars=%d format=%s",
            document_id, len(text), extraction.file_type,
        )

        # --- Enrichment -------------------------------------------------
        await self._checkpoint(job, document_id, 40, "Generating summary...")
        summary = await self._bounded(
            "summarize", self._enrichment.summarize(text, SUMMARY_MAX_LENGTH)
        )
        await self._documents.update_fields(document_id, summary=summary)

        await self._checkpoint(job, document_id, 55, "Extracting entities...")
        entities = await self._bounded("entities", self._enrichment.extract_entities(text))
        await self._documents.update_fields(
            document_id,
            entities=[entity.model_dump(mode="json", exclude_none=True) for entity in entities],
        )

        await self._checkpoint(job, document_id, 65, "Classifying document...")
        document_type = await self._bounded("classify", self._enrichment.classify(text))
        await self._documents.update_fields(document_id, document_type=document_type)

        await self._checkpoint(job, document_id, 75, "Detecting anomalies...")
        anomalies = await self._bounded("anomalies", self._enrichment.detect_anomalies(text))
        await self._documents.update_fields(
            document_id, anomaly_score=anomalies.score, anomaly_details=anomalies.details,
        )

        # --- Chunk + embed ----------------------------------------------
        await self._checkpoint(job, document_id, 85, "Generating embeddings...")
        chunks = chunk_text(text, self._chunk_size, self._chunk_overlap)
        vectors = await self._bounded("embed", self._embedder.embed(chunks))
        stored = await self._embedding_store.store_embeddings(document_id, chunks, vectors)

        # --- Done -------------------------------------------------------
        await self._documents.update_status(
            document_id, DocumentStage.COMPLETED, 100, "Processing completed successfully",
        )
        if self._queue is not None:
            await self._queue.report_progress(job.id, 100)

        return {
            "status":        DocumentStage.COMPLETED.value,
            "document_id":   str(document_id),
            "document_type": document_type,
            "entity_count":  len(entities),
            "chunk_count":   stored,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _checkpoint(
        self,
        job:         ProcessingJob,
        document_id: uuid.UUID,
        progress:    int,
        message:     str,
    ) -> None:
        await self._documents.update_status(document_id, DocumentStage.PROCESSING, progress, message)
        if self._queue is not None:
            await self._queue.report_progress(job.id, progress)

    async def _bounded(self, stage: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._stage_timeout)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(
                f"Stage '{stage}' timed out after {self._stage_timeout:.0f}s"
            ) from exc

    async def _record_failure(self, document_id: uuid.UUID, exc: BaseException) -> None:
        message = (str(exc) or type(exc).__name__)[:MAX_ERROR_LENGTH]
        logger.error("Processing failed | doc=%s error=%s", document_id, message, exc_info=exc)
        try:
            await self._documents.update_status(
                document_id, DocumentStage.FAILED, message="Processing failed", error=message,
            )
        except Exception:
            logger.exception("Could not record failure on document | doc=%s", document_id)

    async def on_terminal_failure(
        self,
        job:     ProcessingJob,
        exc:     BaseException,
        outcome: FailureOutcome,
    ) -> None:
        """Queue callback once no attempts remain: final message on the document."""
        document_id = uuid.UUID(job.payload.document_id)
        doc = await self._documents.get(document_id)
        if doc is None:
            return
        await self._documents.update_status(
            document_id,
            DocumentStage.FAILED,
            message=f"Processing failed after {outcome.attempts} attempt(s)",
            error=outcome.error or doc.status_error,
        )
