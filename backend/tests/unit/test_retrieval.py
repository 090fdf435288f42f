"""
Unit Tests — Retrieval Service
═══════════════════════════════
Tests for smartdoc/rag/retrieval.py

Vectors come from the FakeEmbedder (hashed bag-of-words), so chunks that
share words with the query score higher — enough to check ranking without
a real embedding model.

Coverage:
  ✅ semantic search: best chunk per document, descending scores, owner only
  ✅ limit honoured; empty query / bad limit → ValidationError
  ✅ snippets: short text verbatim, long text cut with "..."
  ✅ chunks with a different dimension are skipped, not fatal
  ✅ retrieve_relevant_chunks: top-K of one document, NotFound without vectors
  ✅ find_similar_documents: centroid ranking, source excluded, ownership enforced
"""

from __future__ import annotations

import uuid

import pytest

from smartdoc.core.errors import NoRelevantContentError, NotFoundError, ValidationError
from smartdoc.rag.retrieval import RetrievalService, make_snippet

INVOICE_CHUNKS = [
    "invoice total amount due payment",
    "invoice number reference customer",
]
SECOND_INVOICE_CHUNKS = ["invoice payment total due bank transfer"]
CONTRACT_CHUNKS = ["agreement contractor terminate notice confidential"]


async def _index(repo, embedder, doc, chunks):
    records = [
        {"chunk_index": i, "text": text, "vector": embedder.vector_for(text), "model": embedder.model}
        for i, text in enumerate(chunks)
    ]
    await repo.replace_embeddings(doc.id, records)


@pytest.fixture
def retrieval(documents_repo, fake_embedder) -> RetrievalService:
    return RetrievalService(documents_repo, fake_embedder)


# ─────────────────────────────────────────────────────────────────────────────
# Snippets
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestMakeSnippet:

    def test_short_text_is_verbatim(self):
        assert make_snippet("short chunk") == "short chunk"

    def test_exact_length_has_no_ellipsis(self):
        assert make_snippet("x" * 200) == "x" * 200

    def test_long_text_is_cut(self):
        snippet = make_snippet("y" * 300)
        assert snippet == "y" * 200 + "..."


# ─────────────────────────────────────────────────────────────────────────────
# Semantic search
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSemanticSearch:

    async def test_ranks_best_document_first(
        self, retrieval, documents_repo, fake_embedder, make_document, fakes,
    ):
        invoice = await make_document()
        contract = await make_document()
        foreign = await make_document(user_id=fakes.OTHER_USER)
        await _index(documents_repo, fake_embedder, invoice, INVOICE_CHUNKS)
        await _index(documents_repo, fake_embedder, contract, CONTRACT_CHUNKS)
        await _index(documents_repo, fake_embedder, foreign, INVOICE_CHUNKS)

        results = await retrieval.semantic_search("invoice total due", fakes.TEST_USER)

        ids = [r.document_id for r in results]
        assert ids[0] == invoice.id
        assert foreign.id not in ids
        assert len(ids) == len(set(ids))
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)
        assert results[0].snippet == INVOICE_CHUNKS[0]

    async def test_limit(self, retrieval, documents_repo, fake_embedder, make_document, fakes):
        for chunks in (INVOICE_CHUNKS, SECOND_INVOICE_CHUNKS, CONTRACT_CHUNKS):
            await _index(documents_repo, fake_embedder, await make_document(), chunks)

        results = await retrieval.semantic_search("invoice", fakes.TEST_USER, limit=2)

        assert len(results) == 2

    async def test_no_documents_gives_empty_list(self, retrieval, fakes):
        assert await retrieval.semantic_search("anything", fakes.TEST_USER) == []

    @pytest.mark.parametrize("query", ["", "   "])
    async def test_empty_query_rejected(self, retrieval, fakes, query):
        with pytest.raises(ValidationError):
            await retrieval.semantic_search(query, fakes.TEST_USER)

    async def test_non_positive_limit_rejected(self, retrieval, fakes):
        with pytest.raises(ValidationError):
            await retrieval.semantic_search("invoice", fakes.TEST_USER, limit=0)

    async def test_long_chunk_snippet_is_truncated(
        self, retrieval, documents_repo, fake_embedder, make_document, fakes,
    ):
        doc = await make_document()
        long_chunk = "invoice " * 60
        await _index(documents_repo, fake_embedder, doc, [long_chunk])

        [result] = await retrieval.semantic_search("invoice", fakes.TEST_USER)

        assert result.snippet == long_chunk[:200] + "..."

    async def test_mismatched_dimension_is_skipped(
        self, retrieval, documents_repo, fake_embedder, make_document, fakes,
    ):
        good = await make_document()
        legacy = await make_document()
        await _index(documents_repo, fake_embedder, good, INVOICE_CHUNKS)
        await documents_repo.replace_embeddings(
            legacy.id,
            [{"chunk_index": 0, "text": "old model", "vector": [0.1, 0.2, 0.3], "model": "legacy"}],
        )

        results = await retrieval.semantic_search("invoice", fakes.TEST_USER)

        assert [r.document_id for r in results] == [good.id]


# ─────────────────────────────────────────────────────────────────────────────
# Single-document retrieval
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRetrieveRelevantChunks:

    async def test_returns_top_k_in_score_order(
        self, retrieval, documents_repo, fake_embedder, make_document,
    ):
        doc = await make_document()
        chunks = [
            "agreement contractor terminate notice",
            "invoice total amount due payment",
            "weather forecast sunny afternoon",
        ]
        await _index(documents_repo, fake_embedder, doc, chunks)

        top = await retrieval.retrieve_relevant_chunks("invoice amount due", doc.id, top_k=2)

        assert len(top) == 2
        assert top[0] == "invoice total amount due payment"

    async def test_top_k_larger_than_chunk_count(
        self, retrieval, documents_repo, fake_embedder, make_document,
    ):
        doc = await make_document()
        await _index(documents_repo, fake_embedder, doc, INVOICE_CHUNKS)

        assert len(await retrieval.retrieve_relevant_chunks("invoice", doc.id, top_k=10)) == 2

    async def test_no_embeddings_is_not_found(self, retrieval, fake_embedder, make_document):
        doc = await make_document()

        with pytest.raises(NotFoundError):
            await retrieval.retrieve_relevant_chunks("invoice", doc.id)
        assert fake_embedder.calls == []

    async def test_non_positive_top_k(self, retrieval):
        with pytest.raises(ValidationError):
            await retrieval.retrieve_relevant_chunks("invoice", uuid.uuid4(), top_k=0)


# ─────────────────────────────────────────────────────────────────────────────
# Similar documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestFindSimilarDocuments:

    async def test_ranks_by_centroid_similarity(
        self, retrieval, documents_repo, fake_embedder, make_document, fakes,
    ):
        source = await make_document()
        twin = await make_document()
        unrelated = await make_document()
        foreign = await make_document(user_id=fakes.OTHER_USER)
        await _index(documents_repo, fake_embedder, source, INVOICE_CHUNKS)
        await _index(documents_repo, fake_embedder, twin, SECOND_INVOICE_CHUNKS)
        await _index(documents_repo, fake_embedder, unrelated, CONTRACT_CHUNKS)
        await _index(documents_repo, fake_embedder, foreign, INVOICE_CHUNKS)

        results = await retrieval.find_similar_documents(source.id, fakes.TEST_USER)

        ids = [r.document_id for r in results]
        assert ids[0] == twin.id
        assert source.id not in ids
        assert foreign.id not in ids
        assert set(ids) == {twin.id, unrelated.id}
        assert results[0].snippet == SECOND_INVOICE_CHUNKS[0]

    async def test_limit(self, retrieval, documents_repo, fake_embedder, make_document, fakes):
        source = await make_document()
        await _index(documents_repo, fake_embedder, source, INVOICE_CHUNKS)
        for _ in range(3):
            await _index(documents_repo, fake_embedder, await make_document(), CONTRACT_CHUNKS)

        results = await retrieval.find_similar_documents(source.id, fakes.TEST_USER, limit=2)

        assert len(results) == 2

    async def test_other_users_document_is_not_found(self, retrieval, make_document, fakes):
        doc = await make_document(user_id=fakes.OTHER_USER)

        with pytest.raises(NotFoundError):
            await retrieval.find_similar_documents(doc.id, fakes.TEST_USER)

    async def test_source_without_embeddings(self, retrieval, make_document, fakes):
        doc = await make_document()

        with pytest.raises(NoRelevantContentError):
            await retrieval.find_similar_documents(doc.id, fakes.TEST_USER)
