"""Интерфейс JobStore и in-memory бэкенд."""
import asyncio
from collections import Counter, deque
from datetime import UTC, datetime
from typing import Any, Protocol

from loguru import logger

from src.exceptions import JobNotFoundError
from src.models.execution import JobExecutionResult, Snapshot
from src.models.job import ScrapingJob, ensure_transition


class JobStore(Protocol):
    """Надёжный реестр задач скрапинга, их результатов и снимков.

    ``try_claim`` единственный путь в ``running``: атомарный
    compare-and-swap pending -> running, который возвращает False всем
    вызывающим, кроме одного.
    """

    async def create(self, job: ScrapingJob) -> ScrapingJob:
        ...

    async def get(self, job_id: str) -> ScrapingJob:
        """Вернуть задачу или бросить JobNotFoundError."""
        ...

    async def list_by_user(
        self,
        user_id: str,
        *,
        status: str | None = None,
        competitor_id: str | None = None,
        job_type: str | None = None,
    ) -> list[ScrapingJob]:
        ...

    async def list_due(self, now: datetime, limit: int = 100) -> list[ScrapingJob]:
        """Pending-задачи с next_run_at <= now: сначала высший приоритет, затем самые старые, не больше limit."""
        ...

    async def list_running(self) -> list[ScrapingJob]:
        ...

    async def try_claim(self, job_id: str, now: datetime) -> bool:
        ...

    async def update(
        self,
        job_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> bool:
        """Применить patch; с expected_status только если сохранённый статус совпадает."""
        ...

    async def cancel(self, job_id: str) -> ScrapingJob:
        ...

    async def count_by_status(self, user_id: str | None = None) -> dict[str, int]:
        ...

    async def count_created_since(self, user_id: str, since: datetime) -> int:
        ...

    async def record_result(self, result: JobExecutionResult) -> None:
        ...

    async def list_results(
        self,
        *,
        job_id: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[JobExecutionResult]:
        """Сначала самые свежие."""
        ...

    async def get_snapshot(self, job_id: str) -> Snapshot | None:
        ...

    async def save_snapshot(self, job_id: str, snapshot: Snapshot) -> None:
        ...


class InMemoryJobStore:
    """JobStore в памяти процесса с индексами по пользователю и статусу.

    Возвращает только копии: сохранённые задачи меняются только через store.
    """

    def __init__(self, history_limit: int = 50) -> None:
        self._jobs: dict[str, ScrapingJob] = {}
        self._by_user: dict[str, set[str]] = {}
        self._by_status: dict[str, set[str]] = {}
        self._results: dict[str, deque[JobExecutionResult]] = {}
        self._snapshots: dict[str, Snapshot] = {}
        self._history_limit = history_limit
        self._lock = asyncio.Lock()

    def _index(self, job: ScrapingJob) -> None:
        self._by_user.setdefault(job.user_id, set()).add(job.id)
        self._by_status.setdefault(job.status, set()).add(job.id)

    def _reindex_status(self, job_id: str, old: str, new: str) -> None:
        if old == new:
            return
        self._by_status.get(old, set()).discard(job_id)
        self._by_status.setdefault(new, set()).add(job_id)

    def _require(self, job_id: str) -> ScrapingJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def create(self, job: ScrapingJob) -> ScrapingJob:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            self._index(job)
        logger.debug(f"[memory_store] Created job {job.id} for user {job.user_id}")
        return job.model_copy(deep=True)

    async def get(self, job_id: str) -> ScrapingJob:
        return self._require(job_id).model_copy(deep=True)

    async def list_by_user(
        self,
        user_id: str,
        *,
        status: str | None = None,
        competitor_id: str | None = None,
        job_type: str | None = None,
    ) -> list[ScrapingJob]:
        ids = self._by_user.get(user_id, set())
        if status is not None:
            ids = ids & self._by_status.get(status, set())
        jobs = [self._jobs[i] for i in ids]
        if competitor_id is not None:
            jobs = [j for j in jobs if j.competitor_id == competitor_id]
        if job_type is not None:
            jobs = [j for j in jobs if j.job_type == job_type]
        jobs.sort(key=lambda j: j.created_at)
        return [j.model_copy(deep=True) for j in jobs]

    async def list_due(self, now: datetime, limit: int = 100) -> list[ScrapingJob]:
        due = [
            self._jobs[i] for i in self._by_status.get("pending", set())
            if self._jobs[i].next_run_at is not None and self._jobs[i].next_run_at <= now
        ]
        due.sort(key=lambda j: (j.priority_rank, j.created_at))
        return [j.model_copy(deep=True) for j in due[:limit]]

    async def list_running(self) -> list[ScrapingJob]:
        return [self._jobs[i].model_copy(deep=True) for i in self._by_status.get("running", set())]

    async def try_claim(self, job_id: str, now: datetime) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != "pending":
                return False
            self._jobs[job_id] = job.model_copy(
                update={"status": "running", "last_run_at": now, "updated_at": now}
            )
            self._reindex_status(job_id, "pending", "running")
            return True

    async def update(
        self,
        job_id: str,
        patch: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> bool:
        async with self._lock:
            job = self._require(job_id)
            if expected_status is not None and job.status != expected_status:
                return False
            data = job.model_dump()
            data.update(patch)
            if "updated_at" not in patch:
                data["updated_at"] = datetime.now(UTC)
            updated = ScrapingJob.model_validate(data)
            self._jobs[job_id] = updated
            self._reindex_status(job_id, job.status, updated.status)
            return True

    async def cancel(self, job_id: str) -> ScrapingJob:
        async with self._lock:
            job = self._require(job_id)
            if job.status != "cancelled":
                ensure_transition(job.status, "cancelled")
                now = datetime.now(UTC)
                self._jobs[job_id] = job.model_copy(
                    update={"status": "cancelled", "next_run_at": None, "updated_at": now}
                )
                self._reindex_status(job_id, job.status, "cancelled")
            return self._jobs[job_id].model_copy(deep=True)

    async def count_by_status(self, user_id: str | None = None) -> dict[str, int]:
        if user_id is None:
            return {status: len(ids) for status, ids in self._by_status.items() if ids}
        counts = Counter(self._jobs[i].status for i in self._by_user.get(user_id, set()))
        return dict(counts)

    async def count_created_since(self, user_id: str, since: datetime) -> int:
        return sum(
            1 for i in self._by_user.get(user_id, set())
            if self._jobs[i].created_at >= since
        )

    async def record_result(self, result: JobExecutionResult) -> None:
        history = self._results.setdefault(result.job_id, deque(maxlen=self._history_limit))
        history.append(result.model_copy())

    async def list_results(
        self,
        *,
        job_id: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[JobExecutionResult]:
        if job_id is not None:
            pool = list(self._results.get(job_id, ()))
        elif user_id is not None:
            pool = [
                r for i in self._by_user.get(user_id, set())
                for r in self._results.get(i, ())
            ]
        else:
            pool = [r for history in self._results.values() for r in history]
        if user_id is not None:
            pool = [r for r in pool if r.user_id == user_id]
        pool.sort(key=lambda r: r.completed_at, reverse=True)
        return [r.model_copy() for r in pool[:limit]]

    async def get_snapshot(self, job_id: str) -> Snapshot | None:
        snapshot = self._snapshots.get(job_id)
        return snapshot.model_copy() if snapshot else None

    async def save_snapshot(self, job_id: str, snapshot: Snapshot) -> None:
        self._snapshots[job_id] = snapshot.model_copy()
