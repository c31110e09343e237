"""Расчёт следующего запуска, порядок готовых задач и обслуживающие задачи APScheduler."""
import random
import re
from collections.abc import Callable, Collection
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from src.exceptions import JobValidationError
from src.models.job import ScrapingJob
from src.store import JobStore

_DURATION_RE = re.compile(r"(\d+)\s*(ms|s|m|h|d|w)")
_DURATION_FULL_RE = re.compile(r"(?:\d+\s*(?:ms|s|m|h|d|w)\s*)+")
_UNIT_SECONDS: dict[str, float] = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}


def parse_duration(value: str) -> timedelta:
    """
    Разобрать '30s', '5m', '2h', '1d', '1w' или комбинации вроде '1h30m'.
    Голое число означает минуты (старый API присылал интервал в минутах).
    """
    text = (value or "").strip().lower()
    if not text:
        raise JobValidationError("interval frequency_value must not be empty")
    if text.isdigit():
        seconds = int(text) * 60.0
    elif _DURATION_FULL_RE.fullmatch(text):
        seconds = sum(int(n) * _UNIT_SECONDS[unit] for n, unit in _DURATION_RE.findall(text))
    else:
        raise JobValidationError(f"Invalid duration: {value!r}")
    if seconds <= 0:
        raise JobValidationError(f"Duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


def _zone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone or "UTC")
    except (ValueError, KeyError) as e:
        raise JobValidationError(f"Unknown timezone: {timezone!r}") from e


def _cron_trigger(expression: str, timezone: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expression, timezone=_zone(timezone))
    except ValueError as e:
        raise JobValidationError(f"Invalid cron expression {expression!r}: {e}") from e


def next_cron_run(expression: str, timezone: str, now: datetime) -> datetime | None:
    """Следующее срабатывание cron строго после ``now`` в ``timezone``."""
    trigger = _cron_trigger(expression, timezone)
    # Наименьшая целая секунда строго после now; cron срабатывает на целых секундах.
    probe = now.replace(microsecond=0) + timedelta(seconds=1)
    fire_time = trigger.get_next_fire_time(None, probe)
    return fire_time.astimezone(UTC) if fire_time is not None else None


def next_run_for(
    frequency_type: str,
    frequency_value: str,
    timezone: str,
    now: datetime,
) -> datetime | None:
    if frequency_type == "interval":
        return now + parse_duration(frequency_value)
    if frequency_type == "cron":
        return next_cron_run(frequency_value, timezone, now)
    # manual: запускается только явным триггером
    return None


def compute_next_run(job: ScrapingJob, now: datetime) -> datetime | None:
    """Следующий автоматический запуск ``job`` после ``now``; None для manual-задач."""
    return next_run_for(job.frequency_type, job.frequency_value, job.frequency_timezone, now)


def validate_frequency(frequency_type: str, frequency_value: str, timezone: str) -> None:
    """Отклонить частоты, которые никогда не сработают. Бросает JobValidationError."""
    _zone(timezone)
    if frequency_type == "interval":
        parse_duration(frequency_value)
    elif frequency_type == "cron":
        if next_cron_run(frequency_value, timezone, datetime.now(UTC)) is None:
            raise JobValidationError(f"Cron expression never fires: {frequency_value!r}")


def order_due(jobs: list[ScrapingJob]) -> list[ScrapingJob]:
    """critical > high > medium > low, затем самые старые по created_at (FIFO внутри уровня)."""
    return sorted(jobs, key=lambda j: (j.priority_rank, j.created_at))


class Scheduler:
    """Решает, когда запускаются задачи и какие pending-задачи готовы."""

    def __init__(
        self,
        store: JobStore,
        initial_jitter_seconds: float = 30.0,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._store = store
        self._initial_jitter = max(1.0, initial_jitter_seconds)
        self._rng = rng

    def compute_next_run(self, job: ScrapingJob, now: datetime) -> datetime | None:
        return compute_next_run(job, now)

    def initial_run_at(self, frequency_type: str, now: datetime) -> datetime | None:
        """Первый запуск новой задачи: now + небольшой jitter, для manual никогда."""
        if frequency_type == "manual":
            return None
        return now + timedelta(seconds=self._rng(1.0, self._initial_jitter))

    async def due_jobs(self, now: datetime, limit: int = 100) -> list[ScrapingJob]:
        """Pending-задачи с next_run_at <= now в порядке очереди."""
        jobs = await self._store.list_due(now, limit=limit)
        return order_due([j for j in jobs if j.status == "pending"])


async def recover_stuck_jobs(
    store: JobStore,
    max_running_minutes: int,
    in_flight: Callable[[], Collection[str]],
    now: datetime | None = None,
) -> int:
    """
    Вернуть застрявшие в running задачи (например, после падения) в pending.
    Выполняемые этим процессом пропускаются; с исчерпанными ретраями падают.
    """
    now = now or datetime.now(UTC)
    threshold = now - timedelta(minutes=max_running_minutes)
    active = set(in_flight())

    recovered = 0
    for job in await store.list_running():
        if job.id in active:
            continue
        if job.last_run_at is not None and job.last_run_at > threshold:
            continue
        if job.retry_count >= job.max_retries:
            patch = {
                "status": "failed",
                "last_error": f"Stuck in running for >{max_running_minutes}min, max retries exhausted",
            }
        else:
            patch = {
                "status": "pending",
                "next_run_at": None if job.frequency_type == "manual" else now,
                "last_error": f"Recovered: stuck in running for >{max_running_minutes}min",
            }
        if await store.update(job.id, patch, expected_status="running"):
            recovered += 1

    if recovered:
        logger.warning(f"Recovered {recovered} stuck jobs (>{max_running_minutes}min)")
    return recovered


def create_scheduler(
    store: JobStore,
    in_flight: Callable[[], Collection[str]],
    stuck_job_minutes: int = 30,
) -> AsyncIOScheduler:
    """Собрать экземпляр APScheduler для обслуживающих задач."""
    scheduler = AsyncIOScheduler(
        job_defaults={
            # Дефолтный misfire_grace_time=1s молча пропускает async-задачи при лагах цикла.
            "misfire_grace_time": None,
            "coalesce": True,
        }
    )

    scheduler.add_job(
        recover_stuck_jobs,
        "interval",
        minutes=max(1, stuck_job_minutes // 3),
        kwargs={
            "store": store,
            "max_running_minutes": stuck_job_minutes,
            "in_flight": in_flight,
        },
        id="recover_stuck_jobs",
    )

    return scheduler
