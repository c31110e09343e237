"""Выполнение одной задачи: robots, загрузка, извлечение, сравнение."""
import asyncio
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from src.exceptions import FetchTimeoutError, RobotsDisallowedError
from src.models.execution import Snapshot
from src.models.job import ScrapingJob
from src.platforms.base import BaseFetcher
from src.platforms.web.extract import extract_snapshot
from src.store import JobStore
from src.worker.change_detector import ChangeDetector, ChangeResult


@dataclass(frozen=True)
class ExecutionOutcome:
    """Успешное выполнение; сохраняется процессором очереди при записи результата."""

    snapshot: Snapshot
    change: ChangeResult


async def execute_job(
    job: ScrapingJob,
    fetcher: BaseFetcher,
    store: JobStore,
    detector: ChangeDetector,
    now: datetime,
) -> ExecutionOutcome:
    """
    Выполнить захваченную задачу и вернуть новый снимок и вердикт об изменении.
    Здесь ничего не пишется: отменённая на лету задача не должна оставить следов.
    Бросает подклассы MonitorError; всё остальное считается багом.
    """
    config = job.config

    if config.respect_robots_txt and not await fetcher.is_allowed(job.url):
        raise RobotsDisallowedError(job.url)

    # Жёсткий дедлайн покрывает ожидание rate limit и загрузку тела, не только connect/read.
    try:
        page = await asyncio.wait_for(
            fetcher.fetch(job.url, headers=config.headers, timeout_ms=config.timeout_ms),
            timeout=config.timeout_ms / 1000,
        )
    except TimeoutError as e:
        raise FetchTimeoutError(job.url, config.timeout_ms) from e

    snapshot = extract_snapshot(
        page.text,
        config.selectors,
        config.change_detection.ignore_selectors,
        now=now,
    )

    previous = await store.get_snapshot(job.id)
    change = detector.detect(snapshot, previous, config.change_detection.threshold)
    if not config.change_detection.enabled:
        change = ChangeResult(changed=False, diff_ratio=change.diff_ratio)

    logger.debug(
        f"[execute] Job {job.id}: {len(snapshot.text)} chars, "
        f"diff={change.diff_ratio:.3f}, changed={change.changed}"
    )
    return ExecutionOutcome(snapshot=snapshot, change=change)
