"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped):
  test_settings → db_engine → sessions → documents_repo / chats_repo / job_queue
  fake_llm, fake_embedder, memory_store      — external collaborators
  container                                  — full ServiceContainer wired to the fakes

Environment strategy:
  - Every test gets its own SQLite file under tmp_path (aiosqlite), with the
    real schema created from the ORM metadata.
  - The LLM, embedding API and object store are replaced by deterministic
    in-process fakes; no network access is needed.
  - Celery is configured with in-memory broker / backend URLs.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # pipeline + API tests
"""

from __future__ import annotations

import json
import os
import re
import uuid
import zlib
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Callable, Sequence

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any smartdoc imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./smartdoc-test.db")
os.environ.setdefault("STORAGE_BACKEND",       "local")
os.environ.setdefault("QUEUE_BACKEND",         "local")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")

from smartdoc.core.config import Settings  # noqa: E402
from smartdoc.core.errors import LLMError, NotFoundError, StorageError  # noqa: E402
from smartdoc.db.repositories import ChatRepository, DocumentRepository  # noqa: E402
from smartdoc.db.session import build_engine, build_session_factory, create_tables  # noqa: E402
from smartdoc.llm.gateway import LLMGateway  # noqa: E402
from smartdoc.processing.embeddings import EmbeddingClient  # noqa: E402
from smartdoc.processing.ocr import OcrEngine, OcrResult  # noqa: E402
from smartdoc.storage.base import ObjectStore  # noqa: E402
from smartdoc.workers.queue import JobQueue, RetryPolicy  # noqa: E402


TEST_USER  = "user-alice"
OTHER_USER = "user-bob"

INVOICE_TEXT = (
    "INVOICE #INV-2024-001\n\n"
    "Acme Corporation, 123 Market Street, Springfield.\n"
    "Bill to: Jane Smith (jane.smith@example.com, 555-123-4567).\n"
    "Invoice date: 03/15/2024. Payment due: 04/15/2024.\n\n"
    "Consulting services for the quarterly platform review: $1,000.00.\n"
    "Travel expenses for the on-site workshop: $250.00.\n"
    "Total amount due: $1,250.00. Please pay by bank transfer within thirty days.\n"
)

CONTRACT_TEXT = (
    "SERVICE AGREEMENT\n\n"
    "This agreement is made between Globex Inc. and Initech LLC. "
    "The contractor will deliver software maintenance services for twelve months. "
    "Either party may terminate the agreement with sixty days written notice. "
    "Confidential information must not be disclosed to third parties.\n"
)


# ─────────────────────────────────────────────────────────────────────────────
# Fakes for external collaborators
# ─────────────────────────────────────────────────────────────────────────────

_CAPABILITY_MARKERS = (
    ("entities",    "Named Entity Recognition"),
    ("classify",    "document classification expert"),
    ("anomalies",   "fraud detection specialist"),
    ("summary",     "professional document analyst"),
    ("suggestions", "generating insightful questions"),
    ("chat",        "answers questions about documents"),
)

DEFAULT_LLM_REPLIES: dict[str, str] = {
    "entities": json.dumps(
        {
            "entities": [
                {"type": "organization", "value": "Acme Corporation"},
                {"type": "person", "value": "Jane Smith"},
                {"type": "money", "value": "$1,250.00"},
            ]
        }
    ),
    "classify":    "invoice",
    "anomalies":   json.dumps({"score": 15, "details": "Line items add up to the stated total."}),
    "summary":     "Invoice from Acme Corporation to Jane Smith for $1,250.00 of consulting and travel.",
    "suggestions": "1. What is the total amount due?\n2. When is payment due?\n3. Who issued the invoice?",
    "chat":        "The total amount due is $1,250.00.",
}


class FakeLLM(LLMGateway):
    """
    Deterministic stand-in for the completion API.

    The capability is recognised from the system prompt; ``replies`` maps a
    capability to a string (returned) or an exception (raised).
    """

    def __init__(self, replies: dict[str, Any] | None = None) -> None:
        super().__init__(model="fake-llm", api_key="")
        self.replies: dict[str, Any] = {**DEFAULT_LLM_REPLIES, **(replies or {})}
        self.calls: list[dict[str, Any]] = []

    @staticmethod
    def capability_of(messages: Sequence[Any]) -> str:
        system = str(messages[0].content) if messages else ""
        for capability, marker in _CAPABILITY_MARKERS:
            if marker in system:
                return capability
        return "unknown"

    async def complete(
        self,
        messages,
        *,
        model=None,
        temperature=None,
        max_tokens=None,
        json_mode=False,
    ) -> str:
        capability = self.capability_of(messages)
        self.calls.append(
            {
                "capability":  capability,
                "messages":    list(messages),
                "temperature": temperature,
                "max_tokens":  max_tokens,
                "json_mode":   json_mode,
            }
        )
        reply = self.replies.get(capability, "")
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def calls_for(self, capability: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["capability"] == capability]


class FakeEmbedder(EmbeddingClient):
    """Hashed bag-of-words vectors: texts sharing words point the same way."""

    def __init__(self, dimensions: int = 64) -> None:
        super().__init__(model="fake-embedding", dimensions=dimensions)
        self.dims = dimensions
        self.calls: list[list[str]] = []
        self.error: Exception | None = None

    def vector_for(self, text: str) -> list[float]:
        vector = [0.0] * self.dims
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            vector[zlib.crc32(token.encode()) % self.dims] += 1.0
        return vector

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [self.vector_for(text) for text in texts]


class MemoryObjectStore(ObjectStore):

    name = "memory"

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_puts = False
        self.fail_deletes = False
        self.failing_gets = 0   # next N gets raise StorageError

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        if self.fail_puts:
            raise StorageError(f"memory store unavailable for {key}")
        self.objects[key] = bytes(data)
        return f"memory://{key}"

    async def get(self, key: str) -> bytes:
        if self.failing_gets > 0:
            self.failing_gets -= 1
            raise StorageError(f"connection reset reading {key}")
        try:
            return self.objects[key]
        except KeyError:
            raise NotFoundError(f"Object not found: {key}") from None

    async def delete(self, key: str) -> None:
        if self.fail_deletes:
            raise StorageError(f"memory store unavailable for {key}")
        self.objects.pop(key, None)


class FakeOcrEngine(OcrEngine):

    name = "fake"

    def __init__(self, text: str = INVOICE_TEXT, confidence: float = 0.93) -> None:
        self.text = text
        self.confidence = confidence

    async def recognize(self, image_bytes: bytes, language: str = "eng") -> OcrResult:
        return OcrResult(text=self.text, confidence=self.confidence, language=language)


# ─────────────────────────────────────────────────────────────────────────────
# Settings + database
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'smartdoc.db'}",
        storage_backend="local",
        local_storage_path=str(tmp_path / "blobs"),
        queue_backend="local",
        job_backoff_base_seconds=0.01,
        job_poll_interval_seconds=0.01,
        rate_limit_max_jobs=100,
        rate_limit_window_seconds=1.0,
        stage_timeout_seconds=10.0,
        embedding_dimensions=64,
    )


@pytest_asyncio.fixture
async def db_engine(test_settings) -> AsyncGenerator[Any, None]:
    engine = build_engine(test_settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def documents_repo(sessions) -> DocumentRepository:
    return DocumentRepository(sessions)


@pytest.fixture
def chats_repo(sessions) -> ChatRepository:
    return ChatRepository(sessions)


@pytest.fixture
def job_queue(sessions) -> JobQueue:
    return JobQueue(sessions, retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01))


# ─────────────────────────────────────────────────────────────────────────────
# Collaborator fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def failing_llm() -> FakeLLM:
    """Every capability raises LLMError."""
    error = LLMError("provider unavailable")
    return FakeLLM({capability: error for capability, _ in _CAPABILITY_MARKERS})


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def memory_store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def container(test_settings, db_engine, memory_store, fake_llm, fake_embedder):
    from smartdoc.services.container import build_container

    return build_container(
        test_settings,
        engine=db_engine,
        storage=memory_store,
        llm=fake_llm,
        embedder=fake_embedder,
        ocr_engine=FakeOcrEngine(),
    )


@pytest.fixture
def make_document(documents_repo) -> Callable[..., Any]:
    """
    Factory fixture: insert a document row directly (no blob, no queue).

    Usage:
        doc = await make_document()
        doc = await make_document(user_id=OTHER_USER, file_type="pdf")
    """

    async def _create(user_id: str = TEST_USER, file_type: str = "txt", **fields: Any):
        document_id = fields.pop("id", None) or uuid.uuid4()
        defaults = dict(
            id=document_id,
            user_id=user_id,
            filename=f"doc-{document_id}.{file_type}",
            original_name=f"Document {document_id}.{file_type}",
            file_type=file_type,
            file_size=1024,
            storage_key=f"documents/{user_id}/{document_id}.{file_type}",
            storage_url=f"memory://documents/{user_id}/{document_id}.{file_type}",
        )
        defaults.update(fields)
        return await documents_repo.create(**defaults)

    return _create


@pytest.fixture
def sample_txt_bytes() -> bytes:
    return INVOICE_TEXT.encode("utf-8")


@pytest.fixture
def fakes() -> SimpleNamespace:
    """Fake classes and sample texts for tests that need custom instances."""
    return SimpleNamespace(
        FakeLLM=FakeLLM,
        FakeEmbedder=FakeEmbedder,
        FakeOcrEngine=FakeOcrEngine,
        MemoryObjectStore=MemoryObjectStore,
        INVOICE_TEXT=INVOICE_TEXT,
        CONTRACT_TEXT=CONTRACT_TEXT,
        TEST_USER=TEST_USER,
        OTHER_USER=OTHER_USER,
    )
