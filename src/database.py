"""JobStore на Supabase и публикация событий изменений."""
import asyncio
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
from loguru import logger
from postgrest.exceptions import APIError as PostgrestAPIError
from postgrest.types import CountMethod
from pydantic import BaseModel
from supabase import Client

from src.exceptions import JobNotFoundError, PersistenceError
from src.models.execution import ChangeEvent, JobExecutionResult, Snapshot
from src.models.job import JOB_STATUSES, PRIORITY_RANK, ScrapingJob, ensure_transition

JOBS_TABLE = "scraping_jobs"
RESULTS_TABLE = "scraping_job_results"
SNAPSHOTS_TABLE = "scraping_snapshots"
EVENTS_TABLE = "competitor_change_events"

_STORE_ERRORS = (PostgrestAPIError, httpx.HTTPError, OSError)


async def run_in_thread(func: Any, *args: Any, **kwargs: Any) -> Any:
    """Выполнить синхронный вызов Supabase в отдельном потоке."""
    return await asyncio.to_thread(func, *args, **kwargs)


def sanitize_error(error: str) -> str:
    """Замаскировать учётные данные в URL внутри сообщения об ошибке."""
    return re.sub(r"://[^@\s]+@", "://***:***@", error)


def _serialize(value: Any) -> Any:
    """Привести datetime и модели к JSON-значениям для PostgREST."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


async def _execute(execute: Callable[[], Any], action: str) -> Any:
    """Выполнить запрос PostgREST, обернув ошибки транспорта и API."""
    try:
        return await run_in_thread(execute)
    except _STORE_ERRORS as e:
        message = sanitize_error(str(e))
        logger.error(f"[supabase_store] {action} failed: {message}")
        raise PersistenceError(f"{action} failed: {message}") from e


class SupabaseJobStore:
    """JobStore на таблицах Supabase.

    Захват задачи это один условный UPDATE (``WHERE status = 'pending'``),
    победителя среди конкурентов определяет блокировка строки в Postgres.
    ``list_by_user`` опирается на индекс (user_id, created_at).
    """

    def __init__(self, db: Client) -> None:
        self._db = db

    def _jobs(self) -> Any:
        return self._db.table(JOBS_TABLE)

    async def create(self, job: ScrapingJob) -> ScrapingJob:
        row = job.model_dump(mode="json")
        result = await _execute(self._jobs().insert(row).execute, f"create job {job.id}")
        logger.info(f"Created {job.job_type} job {job.id} for competitor {job.competitor_id}")
        if result.data:
            return ScrapingJob.model_validate(result.data[0])
        return job

    async def get(self, job_id: str) -> ScrapingJob:
        result = await _execute(
            self._jobs().select("*").eq("id", job_id).limit(1).execute, f"get job {job_id}"
        )
        if not result.data:
            raise JobNotFoundError(job_id)
        return ScrapingJob.model_validate(result.data[0])

    async def list_by_user(
        self,
        user_id: str,
        *,
        status: str | None = None,
        competitor_id: str | None = None,
        job_type: str | None = None,
    ) -> list[ScrapingJob]:
        query = self._jobs().select("*").eq("user_id", user_id)
        if status:
            query = query.eq("status", status)
        if competitor_id:
            query = query.eq("competitor_id", competitor_id)
        if job_type:
            query = query.eq("job_type", job_type)
        result = await _execute(
            query.order("created_at", desc=False).execute, f"list jobs of user {user_id}"
        )
        return [ScrapingJob.model_validate(row) for row in result.data]

    async def list_due(self, now: datetime, limit: int = 100) -> list[ScrapingJob]:
        # PostgREST не сортирует по CASE над priority: по запросу на уровень, от высшего
        jobs: list[ScrapingJob] = []
        for priority in sorted(PRIORITY_RANK, key=PRIORITY_RANK.__getitem__):
            remaining = limit - len(jobs)
            if remaining <= 0:
                break
            result = await _execute(
                self._jobs()
                .select("*")
                .eq("status", "pending")
                .eq("priority", priority)
                .lte("next_run_at", now.isoformat())
                .order("created_at", desc=False)
                .limit(remaining)
                .execute,
                f"list due {priority} jobs",
            )
            jobs.extend(ScrapingJob.model_validate(row) for row in result.data)
        return jobs

    async def list_running(self) -> list[ScrapingJob]:
        result = await _execute(
            self._jobs().select("*").eq("status", "running").execute, "list running jobs"
        )
        return [ScrapingJob.model_validate(row) for row in result.data]

    async def try_claim(self, job_id: str, now: datetime) -> bool:
        stamp = now.isoformat()
        result = await _execute(
            self._jobs()
            .update({"status": "running", "last_run_at": stamp, "updated_at": stamp})
            .eq("id", job_id)
            .eq("status", "pending")
            .execute,
            f"claim job {job_id}",
        )
        return bool(result.data)

    async def update(
        self,
        job_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> bool:
        payload = _serialize(patch)
        payload.setdefault("updated_at", datetime.now(UTC).isoformat())
        query = self._jobs().update(payload).eq("id", job_id)
        if expected_status is not None:
            query = query.eq("status", expected_status)
        result = await _execute(query.execute, f"update job {job_id}")
        return bool(result.data)

    async def cancel(self, job_id: str) -> ScrapingJob:
        # Статус может смениться (захват, запись результата); повторяем условную запись.
        for _ in range(3):
            job = await self.get(job_id)
            if job.status == "cancelled":
                return job
            ensure_transition(job.status, "cancelled")
            if await self.update(
                job_id, {"status": "cancelled", "next_run_at": None}, expected_status=job.status
            ):
                return await self.get(job_id)
        raise PersistenceError(f"cancel job {job_id} failed: status kept changing")

    async def count_by_status(self, user_id: str | None = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for status in JOB_STATUSES:
            query = self._jobs().select("id", count=CountMethod.exact).eq("status", status)
            if user_id is not None:
                query = query.eq("user_id", user_id)
            result = await _execute(query.limit(1).execute, f"count {status} jobs")
            if result.count:
                counts[status] = result.count
        return counts

    async def count_created_since(self, user_id: str, since: datetime) -> int:
        result = await _execute(
            self._jobs()
            .select("id", count=CountMethod.exact)
            .eq("user_id", user_id)
            .gte("created_at", since.isoformat())
            .limit(1)
            .execute,
            f"count recent jobs of user {user_id}",
        )
        return result.count or 0

    async def record_result(self, result: JobExecutionResult) -> None:
        await _execute(
            self._db.table(RESULTS_TABLE).insert(result.model_dump(mode="json")).execute,
            f"record result of job {result.job_id}",
        )

    async def list_results(
        self,
        *,
        job_id: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[JobExecutionResult]:
        query = self._db.table(RESULTS_TABLE).select("*")
        if job_id is not None:
            query = query.eq("job_id", job_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        result = await _execute(
            query.order("completed_at", desc=True).limit(limit).execute, "list results"
        )
        return [JobExecutionResult.model_validate(row) for row in result.data]

    async def get_snapshot(self, job_id: str) -> Snapshot | None:
        result = await _execute(
            self._db.table(SNAPSHOTS_TABLE).select("*").eq("job_id", job_id).limit(1).execute,
            f"get snapshot of job {job_id}",
        )
        if not result.data:
            return None
        return Snapshot.model_validate(result.data[0])

    async def save_snapshot(self, job_id: str, snapshot: Snapshot) -> None:
        row = {"job_id": job_id, **snapshot.model_dump(mode="json")}
        await _execute(
            self._db.table(SNAPSHOTS_TABLE).upsert(row, on_conflict="job_id").execute,
            f"save snapshot of job {job_id}",
        )


async def publish_change_event(db: Client, event: ChangeEvent) -> None:
    """Записать событие изменения для алертов и создания задач."""
    await _execute(
        db.table(EVENTS_TABLE).insert(event.to_row()).execute,
        f"publish change event of job {event.job_id}",
    )
    logger.info(f"Change event for job {event.job_id}: diff={event.diff_ratio:.3f}")
