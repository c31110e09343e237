"""Процессор очереди: цикл тиков, ограниченное параллельное выполнение, управление задачами."""
import asyncio
import time
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from loguru import logger
from pydantic import ValidationError

from src.config import Settings
from src.database import sanitize_error
from src.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    JobValidationError,
    MonitorError,
    PersistenceError,
)
from src.models.execution import ChangeEvent, JobExecutionResult
from src.models.job import JobCreate, ScrapingJob, build_job_config, ensure_transition
from src.platforms.base import BaseFetcher
from src.store import JobStore
from src.worker.change_detector import ChangeDetector
from src.worker.handlers import ExecutionOutcome, execute_job
from src.worker.metrics import MetricsCollector
from src.worker.retry import RetryPolicy
from src.worker.scheduler import Scheduler, parse_duration, validate_frequency

ChangeSink = Callable[[ChangeEvent], Awaitable[None]]

SHUTDOWN_GRACE_SECONDS = 30
MIN_INTERVAL_MINUTES = 30

# уровень угрозы -> во сколько раз чаще запускаются interval-задачи
_THREAT_MULTIPLIER: dict[str, float] = {"critical": 4, "high": 2, "medium": 1, "low": 0.5}

# (job_type, путь, приоритет, интервал в минутах, порог, селекторы)
_DEFAULT_SITE_JOBS: tuple[tuple[str, str, str, str, float, dict[str, list[str]]], ...] = (
    ("website", "", "medium", "360", 0.05, {"content": ["main", ".content", "#content", "article"]}),
    ("pricing", "/pricing", "high", "180", 0.01, {"pricing": [".price", ".pricing", "[data-price]", ".cost"]}),
    ("products", "/products", "medium", "720", 0.03, {"products": [".product", ".feature", ".service"]}),
    ("jobs", "/careers", "medium", "1440", 0.01, {}),
)
_DEFAULT_SOCIAL_INTERVALS: dict[str, str] = {"linkedin": "480", "twitter": "240"}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class QueueProcessor:
    """
    Захватывает готовые задачи и выполняет их в ограниченном пуле asyncio-задач.

    Глобальный и пользовательские счётчики меняются только под admission lock
    вместе с захватом и освобождаются синхронно при завершении задачи.
    """

    def __init__(
        self,
        store: JobStore,
        fetcher: BaseFetcher,
        *,
        scheduler: Scheduler | None = None,
        retry_policy: RetryPolicy | None = None,
        detector: ChangeDetector | None = None,
        metrics: MetricsCollector | None = None,
        on_change: ChangeSink | None = None,
        poll_interval: float = 5.0,
        max_concurrent: int = 5,
        max_per_user: int = 2,
        default_max_retries: int = 3,
        default_timeout_ms: int = 30_000,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._scheduler = scheduler or Scheduler(store)
        self._retry = retry_policy or RetryPolicy()
        self._detector = detector or ChangeDetector()
        self.metrics = metrics or MetricsCollector(store)
        self._on_change = on_change
        self._poll_interval = poll_interval
        self._max_concurrent = max_concurrent
        self._max_per_user = max_per_user
        self._default_max_retries = default_max_retries
        self._default_timeout_ms = default_timeout_ms
        self._clock = clock

        self._admission_lock = asyncio.Lock()
        # job_id -> user_id выполнений, принадлежащих этому процессу
        self._running: dict[str, str] = {}
        self._per_user: Counter[str] = Counter()
        self._active_tasks: set[asyncio.Task[None]] = set()

        self._shutdown_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._started_monotonic: float | None = None
        self._last_tick_at: datetime | None = None
        self._tick_failures = 0
        self._persistence_errors = 0
        self._last_persistence_error: str | None = None

    @classmethod
    def from_settings(
        cls,
        store: JobStore,
        fetcher: BaseFetcher,
        settings: Settings,
        on_change: ChangeSink | None = None,
    ) -> "QueueProcessor":
        return cls(
            store,
            fetcher,
            scheduler=Scheduler(store, initial_jitter_seconds=settings.initial_jitter_seconds),
            retry_policy=RetryPolicy(
                base_delay=settings.retry_base_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
                jitter_ratio=settings.retry_jitter_ratio,
            ),
            metrics=MetricsCollector(store, recent_history_size=settings.recent_history_size),
            on_change=on_change,
            poll_interval=settings.worker_poll_interval,
            max_concurrent=settings.worker_max_concurrent,
            max_per_user=settings.worker_max_per_user,
            default_max_retries=settings.default_max_retries,
            default_timeout_ms=settings.default_timeout_ms,
        )

    # --- жизненный цикл ---

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def in_flight_ids(self) -> set[str]:
        """Задачи, которые сейчас выполняются в этом процессе."""
        return set(self._running)

    async def start(self) -> None:
        if self.is_running:
            logger.info("Queue processor is already running")
            return
        self._shutdown_event.clear()
        self._started_monotonic = time.monotonic()
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Queue processor started (poll={self._poll_interval}s, "
            f"concurrent={self._max_concurrent}, per_user={self._max_per_user})"
        )

    async def stop(self) -> None:
        """Остановить тики и дождаться выполняющихся задач (отмена через 30 с)."""
        if self._loop_task is None:
            return
        self._shutdown_event.set()
        await self._loop_task
        self._loop_task = None

        if self._active_tasks:
            logger.info(f"Waiting for {len(self._active_tasks)} active jobs to finish...")
            _, pending = await asyncio.wait(self._active_tasks, timeout=SHUTDOWN_GRACE_SECONDS)
            if pending:
                logger.warning(
                    f"Cancelling {len(pending)} jobs that didn't finish in {SHUTDOWN_GRACE_SECONDS}s"
                )
                for t in pending:
                    t.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Queue processor stopped")

    async def _run_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                dispatched = await self.tick()
                if dispatched:
                    logger.info(f"Dispatched {dispatched} jobs")
                self._tick_failures = 0
            except Exception as e:
                self._tick_failures += 1
                if isinstance(e, PersistenceError):
                    self._note_persistence_error(e)
                logger.exception(f"Error in queue processor tick: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass

    async def drain(self) -> None:
        """Дождаться, пока все запущенные выполнения запишут результат."""
        while self._active_tasks:
            await asyncio.gather(*list(self._active_tasks), return_exceptions=True)

    # --- проход планирования ---

    async def tick(self) -> int:
        """Один проход планирования. Возвращает число запущенных выполнений."""
        now = self._clock()
        self._last_tick_at = now
        if len(self._running) >= self._max_concurrent:
            return 0

        dispatched = 0
        for job in await self._scheduler.due_jobs(now):
            if job.id in self._running:
                continue
            async with self._admission_lock:
                if len(self._running) >= self._max_concurrent:
                    break
                if self._per_user[job.user_id] >= self._max_per_user:
                    continue
                if not await self._store.try_claim(job.id, now):
                    logger.debug(f"Job {job.id} claimed elsewhere, skipping")
                    continue
                self._running[job.id] = job.user_id
                self._per_user[job.user_id] += 1

            claimed = job.model_copy(update={"status": "running", "last_run_at": now})
            t = asyncio.create_task(self._process(claimed))
            self._active_tasks.add(t)
            t.add_done_callback(lambda done_t, j=claimed: self._on_task_done(j, done_t))
            dispatched += 1
        return dispatched

    def _on_task_done(self, job: ScrapingJob, t: asyncio.Task[None]) -> None:
        self._active_tasks.discard(t)
        self._running.pop(job.id, None)
        self._per_user[job.user_id] -= 1
        if self._per_user[job.user_id] <= 0:
            del self._per_user[job.user_id]

    async def _process(self, job: ScrapingJob) -> None:
        started_at = self._clock()
        started = time.monotonic()
        logger.debug(f"Processing job {job.id}: type={job.job_type}, "
                     f"retries={job.retry_count}/{job.max_retries}")
        try:
            try:
                outcome = await execute_job(job, self._fetcher, self._store, self._detector, started_at)
            except PersistenceError:
                raise
            except MonitorError as e:
                await self._write_failure(job, e, started_at, started)
            except Exception as e:
                logger.exception(f"Unexpected error executing job {job.id}: {e}")
                await self._write_failure(job, e, started_at, started)
            else:
                await self._write_success(job, outcome, started_at, started)
        except PersistenceError as e:
            self._note_persistence_error(e)
            logger.bind(job_id=job.id).critical(f"Could not persist outcome of job {job.id}: {e}")
        except Exception as e:
            logger.exception(f"Unhandled error in job {job.id}: {e}")

    def _note_persistence_error(self, error: PersistenceError) -> None:
        self._persistence_errors += 1
        self._last_persistence_error = str(error)

    async def _write_success(
        self,
        job: ScrapingJob,
        outcome: ExecutionOutcome,
        started_at: datetime,
        started: float,
    ) -> None:
        now = self._clock()
        # completed транзитный: сохранённый статус сразу возвращается в pending
        ensure_transition("running", "completed")
        ensure_transition("completed", "pending")
        applied = await self._store.update(
            job.id,
            {
                "status": "pending",
                "retry_count": 0,
                "last_error": None,
                "next_run_at": self._scheduler.compute_next_run(job, now),
            },
            expected_status="running",
        )
        if not applied:
            logger.info(f"Job {job.id} left running during execution, result discarded")
            return

        change = outcome.change
        await self._store.record_result(JobExecutionResult(
            job_id=job.id,
            user_id=job.user_id,
            started_at=started_at,
            completed_at=now,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            success=True,
            change_detected=change.changed,
            diff_ratio=change.diff_ratio,
            snapshot_hash=outcome.snapshot.hash,
            retry_count=0,
        ))
        await self._store.save_snapshot(job.id, outcome.snapshot)

        if change.changed:
            logger.info(f"Change detected for job {job.id} ({job.job_type} {job.url}): "
                        f"diff={change.diff_ratio:.3f}")
            await self._emit_change(ChangeEvent(
                job_id=job.id,
                competitor_id=job.competitor_id,
                user_id=job.user_id,
                diff_ratio=change.diff_ratio,
                timestamp=now,
            ))

    async def _write_failure(
        self,
        job: ScrapingJob,
        error: Exception,
        started_at: datetime,
        started: float,
    ) -> None:
        now = self._clock()
        retryable = getattr(error, "retryable", True)
        base_delay = job.config.retry_delay_ms / 1000 if job.config.retry_delay_ms else None
        decision = self._retry.on_failure(job.retry_count, job.max_retries, retryable, base_delay)
        message = sanitize_error(str(error)) or type(error).__name__

        if decision.terminal or job.frequency_type == "manual":
            next_run_at = None
        else:
            next_run_at = now + timedelta(seconds=decision.delay_seconds or 0)

        applied = await self._store.update(
            job.id,
            {
                "status": decision.status,
                "retry_count": decision.retry_count,
                "last_error": message,
                "next_run_at": next_run_at,
            },
            expected_status="running",
        )
        if not applied:
            logger.info(f"Job {job.id} left running during execution, failure discarded")
            return

        await self._store.record_result(JobExecutionResult(
            job_id=job.id,
            user_id=job.user_id,
            started_at=started_at,
            completed_at=now,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            success=False,
            error=message,
            error_kind=getattr(error, "kind", "unexpected"),
            retry_count=decision.retry_count,
        ))

        if decision.terminal:
            logger.bind(job_id=job.id).error(f"Job {job.id} failed permanently "
                         f"({decision.retry_count}/{job.max_retries}): {message}")
        else:
            logger.warning(f"Job {job.id} failed ({decision.retry_count}/{job.max_retries}), "
                           f"retry at {next_run_at}: {message}")

    async def _emit_change(self, event: ChangeEvent) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(event)
        except Exception as e:
            # результат уже сохранён; событие отправляется по возможности
            logger.error(f"Failed to publish change event for job {event.job_id}: {e}")

    # --- создание задач ---

    async def add_job(self, user_id: str, spec: JobCreate | dict[str, Any]) -> str:
        """Провалидировать спецификацию и сохранить задачу как pending. Возвращает id новой задачи."""
        if not user_id:
            raise AuthorizationError("Job must belong to a user")
        try:
            payload = spec if isinstance(spec, JobCreate) else JobCreate.model_validate(spec)
            config = build_job_config(payload.job_type, payload.config)
        except ValidationError as e:
            raise JobValidationError(str(e)) from e
        if "timeout_ms" not in config.model_fields_set:
            config = config.model_copy(update={"timeout_ms": self._default_timeout_ms})
        validate_frequency(payload.frequency_type, payload.frequency_value, payload.frequency_timezone)

        now = self._clock()
        job = ScrapingJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            competitor_id=payload.competitor_id,
            job_type=payload.job_type,
            url=payload.url,
            priority=payload.priority,
            frequency_type=payload.frequency_type,
            frequency_value=payload.frequency_value,
            frequency_timezone=payload.frequency_timezone,
            config=config,
            status="pending",
            max_retries=(
                payload.max_retries if payload.max_retries is not None
                else self._default_max_retries
            ),
            next_run_at=self._scheduler.initial_run_at(payload.frequency_type, now),
            created_at=now,
            updated_at=now,
        )
        await self._store.create(job)
        logger.info(f"Job {job.id} added: {job.job_type} {job.url} for user {user_id}")
        return job.id

    # --- управление задачами ---

    async def _owned(self, job_id: str, user_id: str | None) -> ScrapingJob:
        job = await self._store.get(job_id)
        if user_id is not None and job.user_id != user_id:
            raise AuthorizationError(f"Job {job_id} does not belong to user {user_id}")
        return job

    async def _transition(self, job: ScrapingJob, target: str, patch: dict[str, Any]) -> ScrapingJob:
        ensure_transition(job.status, target)
        if not await self._store.update(job.id, {**patch, "status": target}, expected_status=job.status):
            current = await self._store.get(job.id)
            raise InvalidTransitionError(current.status, target)
        return await self._store.get(job.id)

    async def get_job(self, job_id: str, user_id: str | None = None) -> ScrapingJob:
        return await self._owned(job_id, user_id)

    async def pause_job(self, job_id: str, user_id: str | None = None) -> ScrapingJob:
        job = await self._owned(job_id, user_id)
        return await self._transition(job, "paused", {})

    async def resume_job(self, job_id: str, user_id: str | None = None) -> ScrapingJob:
        job = await self._owned(job_id, user_id)
        next_run_at = self._scheduler.compute_next_run(job, self._clock())
        return await self._transition(job, "pending", {"next_run_at": next_run_at})

    async def cancel_job(self, job_id: str, user_id: str | None = None) -> ScrapingJob:
        """Мягкое удаление; выполнение на лету завершится, но его результат отбрасывается."""
        await self._owned(job_id, user_id)
        job = await self._store.cancel(job_id)
        logger.info(f"Job {job_id} cancelled")
        return job

    async def reset_job(self, job_id: str, user_id: str | None = None) -> ScrapingJob:
        """Сброс упавшей задачи оператором: бюджет ретраев восстанавливается."""
        job = await self._owned(job_id, user_id)
        if job.status != "failed":
            raise InvalidTransitionError(job.status, "pending")
        next_run_at = self._scheduler.initial_run_at(job.frequency_type, self._clock())
        return await self._transition(
            job, "pending", {"retry_count": 0, "last_error": None, "next_run_at": next_run_at}
        )

    async def trigger_job(self, job_id: str, user_id: str | None = None) -> ScrapingJob:
        """Сделать задачу готовой к запуску сейчас. Упавшая задача сохраняет retry_count."""
        job = await self._owned(job_id, user_id)
        now = self._clock()
        if job.status == "pending":
            if not await self._store.update(job.id, {"next_run_at": now}, expected_status="pending"):
                current = await self._store.get(job.id)
                raise InvalidTransitionError(current.status, "pending")
            return await self._store.get(job.id)
        if job.status != "failed":
            raise InvalidTransitionError(job.status, "pending")
        return await self._transition(job, "pending", {"next_run_at": now})

    # --- операции по конкуренту ---

    async def create_default_jobs(
        self,
        competitor_id: str,
        user_id: str,
        domain: str | None = None,
        social_handles: dict[str, str] | None = None,
    ) -> list[str]:
        """Стандартный набор мониторинга конкурента: страницы сайта и известные профили в соцсетях."""
        specs: list[dict[str, Any]] = []
        if domain:
            host = domain.strip().removeprefix("https://").removeprefix("http://").rstrip("/")
            for job_type, path, priority, minutes, threshold, selectors in _DEFAULT_SITE_JOBS:
                specs.append({
                    "competitor_id": competitor_id,
                    "job_type": job_type,
                    "url": f"https://{host}{path}",
                    "priority": priority,
                    "frequency_type": "interval",
                    "frequency_value": minutes,
                    "config": {
                        "change_detection": {"enabled": True, "threshold": threshold},
                        "selectors": selectors,
                        "respect_robots_txt": True,
                    },
                })
        for platform, minutes in _DEFAULT_SOCIAL_INTERVALS.items():
            url = (social_handles or {}).get(platform)
            if not url:
                continue
            specs.append({
                "competitor_id": competitor_id,
                "job_type": "social",
                "url": url,
                "priority": "medium",
                "frequency_type": "interval",
                "frequency_value": minutes,
                "config": {
                    "platform": platform,
                    "change_detection": {"enabled": True, "threshold": 0.01},
                },
            })

        job_ids = [await self.add_job(user_id, spec) for spec in specs]
        logger.info(f"Created {len(job_ids)} default monitoring jobs for competitor {competitor_id}")
        return job_ids

    async def _competitor_jobs(self, competitor_id: str, user_id: str, status: str | None = None) -> list[ScrapingJob]:
        return await self._store.list_by_user(user_id, competitor_id=competitor_id, status=status)

    async def pause_competitor_jobs(self, competitor_id: str, user_id: str) -> int:
        paused = 0
        for job in await self._competitor_jobs(competitor_id, user_id, status="pending"):
            try:
                await self._transition(job, "paused", {})
                paused += 1
            except InvalidTransitionError:
                logger.debug(f"Job {job.id} changed state while pausing, skipped")
        logger.info(f"Paused {paused} jobs of competitor {competitor_id}")
        return paused

    async def resume_competitor_jobs(self, competitor_id: str, user_id: str) -> int:
        resumed = 0
        now = self._clock()
        for job in await self._competitor_jobs(competitor_id, user_id, status="paused"):
            try:
                await self._transition(job, "pending", {"next_run_at": self._scheduler.compute_next_run(job, now)})
                resumed += 1
            except InvalidTransitionError:
                logger.debug(f"Job {job.id} changed state while resuming, skipped")
        logger.info(f"Resumed {resumed} jobs of competitor {competitor_id}")
        return resumed

    async def cancel_competitor_jobs(self, competitor_id: str, user_id: str) -> int:
        cancelled = 0
        for job in await self._competitor_jobs(competitor_id, user_id):
            if job.status == "cancelled":
                continue
            await self._store.cancel(job.id)
            cancelled += 1
        logger.info(f"Cancelled {cancelled} jobs of competitor {competitor_id}")
        return cancelled

    async def update_job_frequencies(self, competitor_id: str, user_id: str, threat_level: str) -> int:
        """Пересчитать интервалы по уровню угрозы (critical в 4 раза чаще), но не меньше 30 минут."""
        multiplier = _THREAT_MULTIPLIER.get(threat_level, 1)
        now = self._clock()
        updated = 0
        for job in await self._competitor_jobs(competitor_id, user_id):
            if job.frequency_type != "interval" or job.status == "cancelled":
                continue
            minutes = parse_duration(job.frequency_value).total_seconds() / 60
            new_minutes = max(MIN_INTERVAL_MINUTES, int(minutes // multiplier))
            patch: dict[str, Any] = {"frequency_value": str(new_minutes)}
            if job.status == "pending":
                patch["next_run_at"] = now + timedelta(minutes=new_minutes)
            if await self._store.update(job.id, patch, expected_status=job.status):
                updated += 1
        logger.info(f"Updated frequencies of {updated} jobs of competitor {competitor_id} "
                    f"(threat={threat_level})")
        return updated

    # --- наблюдаемость ---

    async def get_queue_stats(self) -> dict[str, Any]:
        return {
            "system_metrics": await self.metrics.system_metrics(),
            "per_status_counts": await self._store.count_by_status(),
        }

    def get_health_status(self) -> dict[str, Any]:
        if not self.is_running:
            status = "stopped"
        elif self._tick_failures:
            status = "degraded"
        else:
            status = "healthy"
        uptime = (
            round(time.monotonic() - self._started_monotonic, 1)
            if self._started_monotonic is not None and self.is_running else 0.0
        )
        return {
            "is_running": self.is_running,
            "health": {
                "status": status,
                "poll_interval_seconds": self._poll_interval,
                "max_concurrent_jobs": self._max_concurrent,
                "max_jobs_per_user": self._max_per_user,
                "active_jobs": len(self._running),
                "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
                "uptime_seconds": uptime,
                "consecutive_tick_failures": self._tick_failures,
                "persistence_errors": self._persistence_errors,
                "last_persistence_error": self._last_persistence_error,
            },
        }
