"""
Embedding Client & Store  —  Batched OpenAI Embeddings, Cosine Ranking
══════════════════════════════════════════════════════════════════════

EmbeddingClient.embed(texts)
  • one API call per EMBEDDING_BATCH_SIZE texts, up to
    MAX_CONCURRENT_BATCHES in flight (semaphore + gather)
  • output order == input order (response items re-sorted by .index)
  • rate-limit errors get a short in-call back-off; anything that still
    fails becomes EmbeddingError and fails the stage, leaving the job-level
    retry policy to decide what happens next

EmbeddingStore.store_embeddings(document_id, chunks, vectors)
  • zips chunks and vectors in index order and replaces the document's
    embedding set wholesale in one transaction (reprocessing never leaves a
    mix of old and new vectors)

cosine_similarity / mean_vector are pure functions used by retrieval.
Vectors are plain lists of floats stored as JSON, ranked in process.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from typing import Sequence

from smartdoc.core.errors import DimensionMismatchError, EmbeddingError, ValidationError
from smartdoc.db.repositories import DocumentRepository

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE   = 100    # texts per OpenAI API call
MAX_CONCURRENT_BATCHES = 4      # concurrent embedding requests
RATE_LIMIT_RETRIES     = 2      # in-call retries on 429 only
RETRY_BASE_DELAY       = 2.0    # seconds, doubles each retry

Vector = list[float]


# ---------------------------------------------------------------------------
# Vector math
# ---------------------------------------------------------------------------

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine of the angle between ``a`` and ``b``, in [-1, 1].

    A zero vector has no direction; its similarity to anything is 0.0.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(
            f"Cannot compare vectors of different dimensions ({len(a)} vs {len(b)})"
        )
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def mean_vector(vectors: Sequence[Sequence[float]]) -> Vector:
    """Component-wise mean (centroid). All vectors must share a dimension."""
    if not vectors:
        raise ValidationError("Cannot average an empty set of vectors")
    dims = len(vectors[0])
    totals = [0.0] * dims
    for vector in vectors:
        if len(vector) != dims:
            raise DimensionMismatchError(
                f"Cannot average vectors of different dimensions ({dims} vs {len(vector)})"
            )
        for i, value in enumerate(vector):
            totals[i] += value
    return [total / len(vectors) for total in totals]


# ---------------------------------------------------------------------------
# OpenAI client
# ---------------------------------------------------------------------------

class EmbeddingClient:
    """
    Stateless embedding client; one instance per process.

    Usage:
        client  = EmbeddingClient(model="text-embedding-3-small", api_key=key)
        vectors = await client.embed(["first chunk", "second chunk"])
    """

    def __init__(
        self,
        model:      str = "text-embedding-3-small",
        dimensions: int | None = None,
        api_key:    str = "",
        batch_size: int = EMBEDDING_BATCH_SIZE,
    ) -> None:
        self._model = model
        self._dimensions = dimensions
        self._api_key = api_key
        self._batch_size = max(1, batch_size)
        self._client = None

    @property
    def model(self) -> str:
        return self._model

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key or None)
        return self._client

    async def embed(self, texts: Sequence[str]) -> list[Vector]:
        """
        Embed ``texts`` preserving order.

        Raises:
            EmbeddingError: any API failure after the rate-limit back-off.
        """
        if not texts:
            return []

        t0 = time.monotonic()
        batches = [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_BATCHES)

        try:
            results = await asyncio.gather(
                *(self._embed_batch(batch, idx, semaphore) for idx, batch in enumerate(batches))
            )
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        vectors = [vector for batch_vectors in results for vector in batch_vectors]
        logger.info(
            "Embeddings | model=%s texts=%d batches=%d elapsed_ms=%.0f",
            self._model, len(texts), len(batches), (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def _embed_batch(
        self,
        batch:     list[str],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
    ) -> list[Vector]:
        from openai import RateLimitError

        last_error: Exception | None = None
        for attempt in range(RATE_LIMIT_RETRIES + 1):
            if attempt > 0:
                delay = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning(
                    "Embedding rate limited | batch=%d attempt=%d delay=%.1fs",
                    batch_idx, attempt, delay,
                )
                await asyncio.sleep(delay)
            async with semaphore:
                try:
                    return await self._call_openai(batch)
                except RateLimitError as exc:
                    last_error = exc
        raise EmbeddingError(
            f"Embedding batch {batch_idx} rate limited after {RATE_LIMIT_RETRIES} retries: {last_error}"
        )

    async def _call_openai(self, batch: list[str]) -> list[Vector]:
        kwargs: dict = {"model": self._model, "input": batch}
        if self._dimensions:
            kwargs["dimensions"] = self._dimensions
        response = await self._get_client().embeddings.create(**kwargs)

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(batch):
            raise EmbeddingError(
                f"Embedding API returned {len(data)} vectors for {len(batch)} inputs"
            )
        return [list(item.embedding) for item in data]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class EmbeddingStore:
    """Writes a document's chunk vectors through the document repository."""

    def __init__(self, documents: DocumentRepository, model: str) -> None:
        self._documents = documents
        self._model = model

    async def store_embeddings(
        self,
        document_id: uuid.UUID,
        chunks:      Sequence[str],
        vectors:     Sequence[Sequence[float]],
    ) -> int:
        if len(chunks) != len(vectors):
            raise ValidationError(
                f"Chunk/vector count mismatch for document {document_id}: "
                f"{len(chunks)} chunks, {len(vectors)} vectors"
            )
        records = [
            {"chunk_index": idx, "text": chunk, "vector": list(vector), "model": self._model}
            for idx, (chunk, vector) in enumerate(zip(chunks, vectors))
        ]
        return await self._documents.replace_embeddings(document_id, records)
