"""Метрики очереди и health score пользователя."""
from typing import Any

from src.models.execution import JobExecutionResult
from src.models.job import JOB_STATUSES
from src.store import JobStore

HIGH_RETRY_THRESHOLD = 2
SLOW_EXECUTION_MS = 30_000
RECENT_HISTORY_IN_REPORT = 10


def health_score(
    total_jobs: int,
    failed_jobs: int,
    recent_success_rate: float,
    high_retry_jobs: int,
    avg_execution_ms: float,
) -> float:
    """
    100 - 30*failed/total - 40*(1 - recent_success_rate)
        - 20*high_retry/total - (10 if avg execution > 30s).
    Ограничен [0, 100]; у пользователя без задач 100.
    """
    if total_jobs <= 0:
        return 100.0
    success_rate = min(1.0, max(0.0, recent_success_rate))
    score = (
        100.0
        - 30.0 * (failed_jobs / total_jobs)
        - 40.0 * (1.0 - success_rate)
        - 20.0 * (high_retry_jobs / total_jobs)
        - (10.0 if avg_execution_ms > SLOW_EXECUTION_MS else 0.0)
    )
    return round(min(100.0, max(0.0, score)), 1)


def _success_rate(results: list[JobExecutionResult]) -> float:
    """Доля успешных выполнений; без истории сбоев не наблюдалось."""
    if not results:
        return 1.0
    return sum(1 for r in results if r.success) / len(results)


def _avg_execution_ms(results: list[JobExecutionResult]) -> float:
    if not results:
        return 0.0
    return sum(r.execution_time_ms for r in results) / len(results)


class MetricsCollector:
    """Собирает состояние задач и историю выполнений из хранилища по запросу."""

    def __init__(self, store: JobStore, recent_history_size: int = 50) -> None:
        self._store = store
        self._recent = recent_history_size

    async def system_metrics(self) -> dict[str, Any]:
        counts = await self._store.count_by_status()
        results = await self._store.list_results(limit=self._recent)
        metrics: dict[str, Any] = {"total_jobs": sum(counts.values())}
        for status in JOB_STATUSES:
            metrics[f"{status}_jobs"] = counts.get(status, 0)
        metrics["average_execution_time_ms"] = round(_avg_execution_ms(results), 1)
        metrics["success_rate"] = round(_success_rate(results), 4)
        metrics["recent_executions"] = len(results)
        return metrics

    async def user_metrics(self, user_id: str) -> dict[str, Any]:
        jobs = [j for j in await self._store.list_by_user(user_id) if j.status != "cancelled"]
        results = await self._store.list_results(user_id=user_id, limit=self._recent)

        total = len(jobs)
        failed = sum(1 for j in jobs if j.status == "failed")
        high_retry = sum(1 for j in jobs if j.retry_count >= HIGH_RETRY_THRESHOLD)
        success_rate = _success_rate(results)
        avg_ms = _avg_execution_ms(results)

        by_status: dict[str, int] = {}
        for job in jobs:
            by_status[job.status] = by_status.get(job.status, 0) + 1

        return {
            "total_jobs": total,
            "jobs_by_status": by_status,
            "failed_jobs": failed,
            "high_retry_jobs": high_retry,
            "recent_success_rate": round(success_rate, 4),
            "average_execution_time_ms": round(avg_ms, 1),
            "health_score": health_score(total, failed, success_rate, high_retry, avg_ms),
        }

    async def job_metrics(self, job_id: str) -> dict[str, Any]:
        """Сводка выполнений одной задачи."""
        results = await self._store.list_results(job_id=job_id, limit=self._recent)
        successful = sum(1 for r in results if r.success)
        return {
            "total_executions": len(results),
            "successful_executions": successful,
            "failed_executions": len(results) - successful,
            "average_execution_time_ms": round(_avg_execution_ms(results), 1),
            "last_execution": results[0].model_dump(mode="json") if results else None,
        }

    async def user_report(self, user_id: str) -> dict[str, Any]:
        """Всё, что возвращает эндпоинт метрик пользователя."""
        system = await self.system_metrics()
        user = await self.user_metrics(user_id)
        history = await self._store.list_results(user_id=user_id, limit=RECENT_HISTORY_IN_REPORT)
        pending = await self._store.list_by_user(user_id, status="pending")
        running = await self._store.list_by_user(user_id, status="running")

        scheduled = [j for j in pending if j.next_run_at is not None]
        next_job = min(scheduled, key=lambda j: j.next_run_at, default=None)

        return {
            "system_metrics": system,
            "user_metrics": user,
            "recent_history": [r.model_dump(mode="json") for r in history],
            "summary": {
                "total_user_jobs": user["total_jobs"],
                "active_monitoring": len(pending) + len(running),
                "health_score": user["health_score"],
                "next_scheduled_job": {
                    "job_id": next_job.id,
                    "job_type": next_job.job_type,
                    "url": next_job.url,
                    "next_run_at": next_job.next_run_at.isoformat(),
                } if next_job else None,
            },
        }
