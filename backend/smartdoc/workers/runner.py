"""
Local worker entry point (``smartdoc-worker``).

Runs the asyncio WorkerPool against the SQL job queue until SIGINT or
SIGTERM, then lets in-flight jobs finish before exiting.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from smartdoc.core.config import Settings, get_settings
from smartdoc.core.logging_config import configure_logging
from smartdoc.db.session import create_tables
from smartdoc.services.container import build_container

logger = logging.getLogger(__name__)


async def run_worker(settings: Settings, stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()
    container = build_container(settings)
    if settings.db_auto_create:
        await create_tables(container.engine)

    pool = container.build_worker_pool()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    logger.info(
        "Worker starting | env=%s concurrency=%d rate_limit=%d/%.0fs",
        settings.app_env, settings.max_concurrent_jobs,
        settings.rate_limit_max_jobs, settings.rate_limit_window_seconds,
    )
    await pool.start()
    try:
        await stop.wait()
        logger.info("Shutdown requested, draining in-flight jobs")
    finally:
        await pool.stop()
        await container.aclose()


def main() -> None:
    settings = get_settings()
    configure_logging(settings.debug)
    if settings.queue_backend != "local":
        raise SystemExit(
            f"smartdoc-worker runs the local pool; QUEUE_BACKEND={settings.queue_backend!r} "
            "uses `celery -A smartdoc.workers.celery_app worker` instead"
        )
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
