"""
Unit Tests — Embedding Client, Store & Vector Math
═══════════════════════════════════════════════════
Tests for smartdoc/processing/embeddings.py

The OpenAI client is replaced by a MagicMock so no network call is made.

Coverage:
  ✅ cosine similarity: identity, orthogonal, opposite, zero vector, mismatch
  ✅ mean_vector centroid and its error cases
  ✅ embed(): batching, order preserved by response index, dimensions forwarded
  ✅ embed(): rate-limit back-off, provider errors → EmbeddingError
  ✅ EmbeddingStore replaces a document's vectors wholesale
"""

from __future__ import annotations

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from smartdoc.core.errors import DimensionMismatchError, EmbeddingError, NotFoundError, ValidationError
from smartdoc.processing import embeddings as embeddings_module
from smartdoc.processing.embeddings import (
    EmbeddingClient,
    EmbeddingStore,
    cosine_similarity,
    mean_vector,
)


def _response(vectors_by_index: dict[int, list[float]], reverse: bool = False):
    items = [SimpleNamespace(index=i, embedding=v) for i, v in vectors_by_index.items()]
    if reverse:
        items.reverse()
    return SimpleNamespace(data=items)


def _client_with(create: AsyncMock, **kwargs) -> EmbeddingClient:
    client = EmbeddingClient(model="text-embedding-3-small", api_key="sk-test", **kwargs)
    client._client = MagicMock()
    client._client.embeddings.create = create
    return client


def _echo_create():
    """embeddings.create that returns [len(text), position] per input."""

    async def create(*, model, input, **kwargs):
        return _response({i: [float(len(text)), float(i)] for i, text in enumerate(input)}, reverse=True)

    return AsyncMock(side_effect=create)


def _rate_limit_error():
    from openai import RateLimitError

    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    return RateLimitError(
        "Rate limit reached",
        response=httpx.Response(429, request=request),
        body=None,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Vector math
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestCosineSimilarity:

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 5.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 1.0], [-2.0, -2.0]) == pytest.approx(-1.0)

    def test_scale_invariant(self):
        assert cosine_similarity([1.0, 2.0], [10.0, 20.0]) == pytest.approx(1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])


@pytest.mark.unit
class TestMeanVector:

    def test_centroid(self):
        assert mean_vector([[1.0, 3.0], [3.0, 5.0]]) == [2.0, 4.0]

    def test_empty_input(self):
        with pytest.raises(ValidationError):
            mean_vector([])

    def test_mixed_dimensions(self):
        with pytest.raises(DimensionMismatchError):
            mean_vector([[1.0, 2.0], [1.0]])


# ─────────────────────────────────────────────────────────────────────────────
# EmbeddingClient
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestEmbeddingClient:

    async def test_empty_input_makes_no_call(self):
        create = _echo_create()
        assert await _client_with(create).embed([]) == []
        create.assert_not_awaited()

    async def test_order_follows_response_index(self):
        client = _client_with(_echo_create())

        vectors = await client.embed(["a", "bbb", "cc"])

        assert vectors == [[1.0, 0.0], [3.0, 1.0], [2.0, 2.0]]

    async def test_batches_inputs(self):
        create = _echo_create()
        client = _client_with(create, batch_size=2)
        texts = ["a", "bb", "ccc", "dddd", "eeeee"]

        vectors = await client.embed(texts)

        assert create.await_count == 3
        assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]

    async def test_forwards_dimensions(self):
        create = _echo_create()
        await _client_with(create, dimensions=256).embed(["x"])

        kwargs = create.await_args.kwargs
        assert kwargs["dimensions"] == 256
        assert kwargs["model"] == "text-embedding-3-small"

    async def test_count_mismatch_is_embedding_error(self):
        create = AsyncMock(return_value=_response({0: [1.0]}))

        with pytest.raises(EmbeddingError):
            await _client_with(create).embed(["one", "two"])

    async def test_provider_error_is_wrapped(self):
        create = AsyncMock(side_effect=ConnectionError("connection reset"))

        with pytest.raises(EmbeddingError) as exc_info:
            await _client_with(create).embed(["one"])
        assert "connection reset" in str(exc_info.value)

    async def test_rate_limit_is_retried(self, monkeypatch):
        monkeypatch.setattr(embeddings_module, "RETRY_BASE_DELAY", 0.0)
        create = AsyncMock(side_effect=[_rate_limit_error(), _response({0: [0.5, 0.5]})])

        vectors = await _client_with(create).embed(["one"])

        assert vectors == [[0.5, 0.5]]
        assert create.await_count == 2

    async def test_rate_limit_exhausted(self, monkeypatch):
        monkeypatch.setattr(embeddings_module, "RETRY_BASE_DELAY", 0.0)
        create = AsyncMock(side_effect=_rate_limit_error())

        with pytest.raises(EmbeddingError) as exc_info:
            await _client_with(create).embed(["one"])

        assert "rate limited" in str(exc_info.value)
        assert create.await_count == embeddings_module.RATE_LIMIT_RETRIES + 1


# ─────────────────────────────────────────────────────────────────────────────
# EmbeddingStore
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestEmbeddingStore:

    async def test_stores_chunks_in_order(self, documents_repo, make_document):
        doc = await make_document()
        store = EmbeddingStore(documents_repo, model="fake-embedding")

        count = await store.store_embeddings(doc.id, ["first", "second"], [[1.0, 0.0], [0.0, 1.0]])

        assert count == 2
        stored = await documents_repo.list_embeddings(doc.id)
        assert [(c.chunk_index, c.text, c.vector) for c in stored] == [
            (0, "first", [1.0, 0.0]),
            (1, "second", [0.0, 1.0]),
        ]

    async def test_reprocessing_replaces_previous_set(self, documents_repo, make_document):
        doc = await make_document()
        store = EmbeddingStore(documents_repo, model="fake-embedding")
        await store.store_embeddings(doc.id, ["a", "b", "c"], [[1.0]] * 3)

        await store.store_embeddings(doc.id, ["only"], [[2.0]])

        stored = await documents_repo.list_embeddings(doc.id)
        assert [c.text for c in stored] == ["only"]
        assert await documents_repo.count_embeddings(doc.id) == 1

    async def test_count_mismatch_is_rejected(self, documents_repo, make_document):
        doc = await make_document()
        store = EmbeddingStore(documents_repo, model="fake-embedding")

        with pytest.raises(ValidationError):
            await store.store_embeddings(doc.id, ["a", "b"], [[1.0]])
        assert await documents_repo.count_embeddings(doc.id) == 0

    async def test_unknown_document(self, documents_repo):
        store = EmbeddingStore(documents_repo, model="fake-embedding")
        with pytest.raises(NotFoundError):
            await store.store_embeddings(uuid.uuid4(), ["a"], [[1.0]])
