"""
Retrieval — Cosine Ranking over Stored Chunk Vectors

  semantic_search()           query → best chunk per owned document → top N
  retrieve_relevant_chunks()  query → top K chunk texts of one document
  find_similar_documents()    document centroid vs every other owned centroid

The query is embedded once per call; all ranking happens in process over
the JSON vectors persisted by EmbeddingStore. A chunk whose dimension does
not match the query (e.g. written by a different embedding model) is
skipped with a warning rather than failing the whole search.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Sequence

from smartdoc.core.errors import (
    DimensionMismatchError,
    NoRelevantContentError,
    NotFoundError,
    ValidationError,
)
from smartdoc.db.repositories import DocumentRepository, StoredChunk
from smartdoc.processing.embeddings import EmbeddingClient, cosine_similarity, mean_vector

logger = logging.getLogger(__name__)

SNIPPET_LENGTH   = 200
DEFAULT_TOP_K    = 3
DEFAULT_SIMILAR  = 5


@dataclass(frozen=True)
class SearchResult:
    document_id: uuid.UUID
    score:       float
    snippet:     str


def make_snippet(text: str, length: int = SNIPPET_LENGTH) -> str:
    """First ``length`` characters, with an ellipsis only when something was cut."""
    if len(text) <= length:
        return text
    return text[:length] + "..."


class RetrievalService:

    def __init__(
        self,
        documents:      DocumentRepository,
        embedder:       EmbeddingClient,
        snippet_length: int = SNIPPET_LENGTH,
    ) -> None:
        self._documents = documents
        self._embedder = embedder
        self._snippet_length = snippet_length

    async def _embed_query(self, query: str) -> list[float]:
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")
        vectors = await self._embedder.embed([query.strip()])
        return vectors[0]

    def _score(
        self,
        query_vector: Sequence[float],
        chunks:       Iterable[StoredChunk],
    ) -> list[tuple[float, StoredChunk]]:
        scored: list[tuple[float, StoredChunk]] = []
        for chunk in chunks:
            try:
                scored.append((cosine_similarity(query_vector, chunk.vector), chunk))
            except DimensionMismatchError:
                logger.warning(
                    "Skipping chunk with mismatched dimension | doc=%s chunk=%d dims=%d expected=%d",
                    chunk.document_id, chunk.chunk_index, len(chunk.vector), len(query_vector),
                )
        return scored

    # ------------------------------------------------------------------
    # Cross-document search
    # ------------------------------------------------------------------

    async def semantic_search(self, query: str, user_id: str, limit: int = 10) -> list[SearchResult]:
        """Best-matching chunk per document owned by ``user_id``, highest score first."""
        if limit <= 0:
            raise ValidationError("limit must be positive")
        query_vector = await self._embed_query(query)
        chunks = await self._documents.list_user_embeddings(user_id)

        best: dict[uuid.UUID, tuple[float, StoredChunk]] = {}
        for score, chunk in self._score(query_vector, chunks):
            current = best.get(chunk.document_id)
            if current is None or score > current[0]:
                best[chunk.document_id] = (score, chunk)

        ranked = sorted(best.values(), key=lambda item: item[0], reverse=True)[:limit]
        logger.info(
            "Semantic search | user=%s chunks=%d documents=%d returned=%d",
            user_id, len(chunks), len(best), len(ranked),
        )
        return [
            SearchResult(
                document_id=chunk.document_id,
                score=score,
                snippet=make_snippet(chunk.text, self._snippet_length),
            )
            for score, chunk in ranked
        ]

    # ------------------------------------------------------------------
    # Single-document retrieval
    # ------------------------------------------------------------------

    async def retrieve_relevant_chunks(
        self,
        query:       str,
        document_id: uuid.UUID,
        top_k:       int = DEFAULT_TOP_K,
    ) -> list[str]:
        """
        Texts of the ``top_k`` chunks of one document closest to ``query``.

        Raises:
            NotFoundError: the document has no stored embeddings.
        """
        if top_k <= 0:
            raise ValidationError("top_k must be positive")
        chunks = await self._documents.list_embeddings(document_id)
        if not chunks:
            raise NotFoundError(f"No embeddings found for document {document_id}")

        query_vector = await self._embed_query(query)
        ranked = sorted(self._score(query_vector, chunks), key=lambda item: item[0], reverse=True)
        return [chunk.text for _, chunk in ranked[:top_k]]

    # ------------------------------------------------------------------
    # Similar documents
    # ------------------------------------------------------------------

    async def find_similar_documents(
        self,
        document_id: uuid.UUID,
        user_id:     str,
        limit:       int = DEFAULT_SIMILAR,
    ) -> list[SearchResult]:
        """Other owned documents ranked by centroid-to-centroid cosine similarity."""
        if limit <= 0:
            raise ValidationError("limit must be positive")
        await self._documents.get_owned(document_id, user_id)

        grouped: dict[uuid.UUID, list[StoredChunk]] = defaultdict(list)
        for chunk in await self._documents.list_user_embeddings(user_id):
            grouped[chunk.document_id].append(chunk)

        source_chunks = grouped.pop(document_id, [])
        if not source_chunks:
            raise NoRelevantContentError(f"Document {document_id} has no embeddings yet")
        source_centroid = mean_vector([chunk.vector for chunk in source_chunks])

        results: list[SearchResult] = []
        for other_id, chunks in grouped.items():
            try:
                centroid = mean_vector([chunk.vector for chunk in chunks])
                score = cosine_similarity(source_centroid, centroid)
            except DimensionMismatchError:
                logger.warning("Skipping document with mismatched dimensions | doc=%s", other_id)
                continue
            results.append(
                SearchResult(
                    document_id=other_id,
                    score=score,
                    snippet=make_snippet(chunks[0].text, self._snippet_length),
                )
            )

        results.sort(key=lambda result: result.score, reverse=True)
        return results[:limit]
