"""Точка входа сервиса: API + процессор очереди + планировщик обслуживания."""
import asyncio
import signal
import sys
from functools import partial

import uvicorn
from loguru import logger
from supabase import create_client

from src.api.app import create_app
from src.config import load_settings
from src.database import SupabaseJobStore, publish_change_event
from src.log_sink import create_supabase_sink
from src.models.execution import ChangeEvent
from src.platforms.web.client import WebFetcher
from src.store import InMemoryJobStore, JobStore
from src.worker.loop import QueueProcessor
from src.worker.scheduler import create_scheduler


async def _log_change_event(event: ChangeEvent) -> None:
    logger.info(f"Change event: competitor {event.competitor_id}, job {event.job_id}, "
                f"diff={event.diff_ratio:.3f}")


async def main() -> None:
    """Собрать все компоненты и работать до SIGTERM/SIGINT."""
    settings = load_settings()

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    if settings.log_level == "DEBUG":
        logger.add("logs/monitor.log", rotation="100 MB", retention="7 days")

    logger.info("Starting competitor monitor")

    store: JobStore
    if settings.job_store_backend == "memory":
        store = InMemoryJobStore(history_limit=settings.history_limit)
        on_change = _log_change_event
        logger.warning("Using in-memory job store: jobs are lost on restart")
    else:
        db = create_client(settings.supabase_url, settings.supabase_service_key.get_secret_value())
        # WARNING+ записи служат операционными алертами
        logger.add(
            create_supabase_sink(db),
            level="WARNING",
            enqueue=True,
            serialize=False,
        )
        store = SupabaseJobStore(db)
        on_change = partial(publish_change_event, db)

    fetcher = WebFetcher(settings.user_agent, request_delay_seconds=settings.request_delay_seconds)
    processor = QueueProcessor.from_settings(store, fetcher, settings, on_change=on_change)

    app = create_app(processor, store, settings)
    config = uvicorn.Config(app, host="0.0.0.0", port=settings.scraper_port, log_level="warning")
    server = uvicorn.Server(config)
    # Сигналы обрабатываем ниже; uvicorn не должен ставить свои.
    server.install_signal_handlers = lambda: None

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    scheduler = create_scheduler(store, processor.in_flight_ids, settings.stuck_job_minutes)
    scheduler.start()
    logger.info("Maintenance scheduler started")

    await processor.start()
    logger.info(f"API server starting on port {settings.scraper_port}")
    server_task = asyncio.create_task(server.serve())

    try:
        await shutdown_event.wait()
    finally:
        server.should_exit = True
        await processor.stop()
        await server_task
        scheduler.shutdown(wait=False)
        await fetcher.aclose()
        logger.info("Competitor monitor stopped gracefully")


if __name__ == "__main__":
    asyncio.run(main())
