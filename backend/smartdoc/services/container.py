"""
Service wiring.

build_container(settings) assembles every collaborator from configuration
once per process: the API lifespan, the worker runner and each Celery task
run build one and close it on the way out. Tests pass their own engine,
LLM, embedder and object store through the keyword overrides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import aioboto3
from sqlalchemy.ext.asyncio import AsyncEngine

from smartdoc.core.config import Settings
from smartdoc.db.repositories import ChatRepository, DocumentRepository
from smartdoc.db.session import SessionFactory, build_engine, build_session_factory
from smartdoc.llm.gateway import LLMGateway
from smartdoc.processing.embeddings import EmbeddingClient, EmbeddingStore
from smartdoc.processing.enrichment import EnrichmentEngine
from smartdoc.processing.extractor import TextExtractor
from smartdoc.processing.ocr import OcrEngine, build_ocr_engine
from smartdoc.rag.chat import ChatService
from smartdoc.rag.retrieval import RetrievalService
from smartdoc.services.documents import DocumentService
from smartdoc.storage.base import FallbackObjectStore, LocalObjectStore, ObjectStore
from smartdoc.storage.s3 import S3ObjectStore
from smartdoc.workers.pipeline import DocumentPipeline
from smartdoc.workers.pool import RollingWindowRateLimiter, WorkerPool
from smartdoc.workers.queue import JobDispatcher, JobQueue, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings:        Settings
    engine:          AsyncEngine
    sessions:        SessionFactory
    documents_repo:  DocumentRepository
    chats_repo:      ChatRepository
    storage:         ObjectStore
    queue:           JobQueue
    llm:             LLMGateway
    embedder:        EmbeddingClient
    pipeline:        DocumentPipeline
    retrieval:       RetrievalService
    chat:            ChatService
    documents:       DocumentService

    def build_worker_pool(self) -> WorkerPool:
        s = self.settings
        return WorkerPool(
            self.queue,
            self.pipeline.run,
            concurrency=s.max_concurrent_jobs,
            rate_limiter=RollingWindowRateLimiter(s.rate_limit_max_jobs, s.rate_limit_window_seconds),
            poll_interval=s.job_poll_interval_seconds,
            stall_timeout=s.job_stall_timeout_seconds,
            on_terminal_failure=self.pipeline.on_terminal_failure,
        )

    async def aclose(self) -> None:
        await self.engine.dispose()


def build_object_store(settings: Settings) -> ObjectStore:
    local = LocalObjectStore(settings.local_storage_path)
    if settings.storage_backend == "local":
        return local
    if settings.storage_backend != "s3":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend!r}")

    session = aioboto3.Session(
        aws_access_key_id=settings.aws_access_key_id or None,
        aws_secret_access_key=settings.aws_secret_access_key or None,
        region_name=settings.aws_region,
    )
    s3 = S3ObjectStore(
        bucket=settings.s3_bucket,
        region=settings.aws_region,
        endpoint_url=settings.s3_endpoint_url or None,
        session=session,
    )
    return FallbackObjectStore(s3, local) if settings.storage_fallback_enabled else s3


def build_dispatcher(settings: Settings) -> JobDispatcher | None:
    if settings.queue_backend == "local":
        return None
    if settings.queue_backend == "celery":
        from smartdoc.workers.tasks import CeleryDispatcher
        return CeleryDispatcher()
    raise ValueError(f"Unknown queue backend: {settings.queue_backend!r}")


def build_container(
    settings:   Settings,
    *,
    engine:     AsyncEngine | None = None,
    storage:    ObjectStore | None = None,
    llm:        LLMGateway | None = None,
    embedder:   EmbeddingClient | None = None,
    ocr_engine: OcrEngine | None = None,
    dispatcher: JobDispatcher | None = None,
) -> ServiceContainer:
    engine = engine or build_engine(settings)
    sessions = build_session_factory(engine)
    documents_repo = DocumentRepository(sessions)
    chats_repo = ChatRepository(sessions)

    storage = storage or build_object_store(settings)
    queue = JobQueue(
        sessions,
        retry_policy=RetryPolicy(
            max_attempts=settings.job_max_attempts,
            base_delay=settings.job_backoff_base_seconds,
        ),
        dispatcher=dispatcher or build_dispatcher(settings),
    )

    llm = llm or LLMGateway(
        model=settings.llm_model,
        api_key=settings.openai_api_key,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.llm_timeout_seconds,
    )
    embedder = embedder or EmbeddingClient(
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        api_key=settings.openai_api_key,
        batch_size=settings.embedding_batch_size,
    )
    extractor = TextExtractor(
        ocr_engine=ocr_engine or build_ocr_engine(settings.ocr_backend, settings.aws_region),
        ocr_language=settings.ocr_language,
        timeout=settings.stage_timeout_seconds,
    )

    pipeline = DocumentPipeline(
        documents=documents_repo,
        storage=storage,
        extractor=extractor,
        enrichment=EnrichmentEngine(llm),
        embedder=embedder,
        embedding_store=EmbeddingStore(documents_repo, embedder.model),
        queue=queue,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        min_text_length=settings.min_text_length,
        stage_timeout=settings.stage_timeout_seconds,
    )
    retrieval = RetrievalService(documents_repo, embedder, settings.search_snippet_length)
    chat = ChatService(
        documents_repo, chats_repo, retrieval, llm,
        top_k=settings.chat_top_k,
        history_turns=settings.chat_history_turns,
    )
    documents = DocumentService(
        documents_repo, chats_repo, storage, queue,
        max_upload_bytes=settings.max_upload_bytes,
    )

    logger.info(
        "Services ready | storage=%s queue=%s llm=%s embeddings=%s",
        settings.storage_backend, settings.queue_backend, llm.model, embedder.model,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        sessions=sessions,
        documents_repo=documents_repo,
        chats_repo=chats_repo,
        storage=storage,
        queue=queue,
        llm=llm,
        embedder=embedder,
        pipeline=pipeline,
        retrieval=retrieval,
        chat=chat,
        documents=documents,
    )
