"""Тесты health score и агрегации метрик."""
from datetime import timedelta

import pytest

from src.models.execution import JobExecutionResult
from src.store import InMemoryJobStore
from src.worker.metrics import MetricsCollector, health_score
from tests.factories import T0, make_job


def _result(job_id: str, success: bool, ms: int = 1000, minutes: int = 0, user_id: str = "user-1"):
    at = T0 + timedelta(minutes=minutes)
    return JobExecutionResult(
        job_id=job_id,
        user_id=user_id,
        started_at=at,
        completed_at=at,
        execution_time_ms=ms,
        success=success,
    )


class TestHealthScore:
    """health_score: формула и ограничение диапазона."""

    def test_no_jobs_is_perfect(self) -> None:
        assert health_score(0, 0, 0.0, 0, 99_999) == 100.0

    def test_healthy_user(self) -> None:
        assert health_score(10, 0, 1.0, 0, 1000) == 100.0

    def test_formula(self) -> None:
        # 100 - 30*2/10 - 40*0.2 - 20*1/10 - 10
        assert health_score(10, 2, 0.8, 1, 45_000) == pytest.approx(74.0)

    def test_slow_penalty_is_strictly_above_30s(self) -> None:
        assert health_score(1, 0, 1.0, 0, 30_000) == 100.0
        assert health_score(1, 0, 1.0, 0, 30_001) == 90.0

    @pytest.mark.parametrize("args", [
        (1, 5, 0.0, 5, 60_000),
        (3, 3, -1.0, 3, 10**9),
        (2, -4, 2.0, -4, 0),
        (1, 1, 0.0, 1, 31_000),
    ])
    def test_always_within_bounds(self, args: tuple) -> None:
        assert 0.0 <= health_score(*args) <= 100.0


class TestMetricsCollector:
    """MetricsCollector поверх in-memory хранилища."""

    async def test_user_metrics(self) -> None:
        store = InMemoryJobStore()
        await store.create(make_job(id="ok"))
        await store.create(make_job(id="bad", status="failed", retry_count=3))
        await store.create(make_job(id="flaky", retry_count=2))
        await store.create(make_job(id="gone", status="cancelled", retry_count=3))
        await store.record_result(_result("ok", True))
        await store.record_result(_result("bad", False))
        await store.record_result(_result("flaky", True))
        await store.record_result(_result("flaky", False, minutes=1))

        metrics = await MetricsCollector(store).user_metrics("user-1")

        assert metrics["total_jobs"] == 3
        assert metrics["failed_jobs"] == 1
        assert metrics["high_retry_jobs"] == 2
        assert metrics["recent_success_rate"] == 0.5
        assert metrics["jobs_by_status"] == {"pending": 2, "failed": 1}
        # 100 - 10 - 20 - 13.33
        assert metrics["health_score"] == pytest.approx(56.7)

    async def test_user_without_history(self) -> None:
        store = InMemoryJobStore()
        await store.create(make_job())

        metrics = await MetricsCollector(store).user_metrics("user-1")

        assert metrics["recent_success_rate"] == 1.0
        assert metrics["health_score"] == 100.0

    async def test_recent_window(self) -> None:
        store = InMemoryJobStore()
        await store.create(make_job())
        await store.record_result(_result("job-1", False, minutes=0))
        for minute in range(1, 4):
            await store.record_result(_result("job-1", True, minutes=minute))

        metrics = await MetricsCollector(store, recent_history_size=3).user_metrics("user-1")

        assert metrics["recent_success_rate"] == 1.0

    async def test_system_metrics(self) -> None:
        store = InMemoryJobStore()
        await store.create(make_job(id="a"))
        await store.create(make_job(id="b", user_id="user-2", status="paused"))
        await store.record_result(_result("a", True, ms=1000))
        await store.record_result(_result("b", False, ms=3000, user_id="user-2"))

        metrics = await MetricsCollector(store).system_metrics()

        assert metrics["total_jobs"] == 2
        assert metrics["pending_jobs"] == 1
        assert metrics["paused_jobs"] == 1
        assert metrics["running_jobs"] == 0
        assert metrics["average_execution_time_ms"] == 2000.0
        assert metrics["success_rate"] == 0.5

    async def test_job_metrics(self) -> None:
        store = InMemoryJobStore()
        await store.create(make_job())
        await store.record_result(_result("job-1", True, ms=100, minutes=0))
        await store.record_result(_result("job-1", False, ms=300, minutes=1))

        metrics = await MetricsCollector(store).job_metrics("job-1")

        assert metrics["total_executions"] == 2
        assert metrics["successful_executions"] == 1
        assert metrics["failed_executions"] == 1
        assert metrics["average_execution_time_ms"] == 200.0
        assert metrics["last_execution"]["success"] is False

    async def test_user_report(self) -> None:
        store = InMemoryJobStore()
        await store.create(make_job(id="later", next_run_at=T0 + timedelta(hours=2)))
        await store.create(make_job(id="sooner", job_type="pricing", config={},
                                    next_run_at=T0 + timedelta(minutes=10)))
        await store.create(make_job(id="paused", status="paused"))
        await store.record_result(_result("later", True))

        report = await MetricsCollector(store).user_report("user-1")

        assert set(report) == {"system_metrics", "user_metrics", "recent_history", "summary"}
        summary = report["summary"]
        assert summary["total_user_jobs"] == 3
        assert summary["active_monitoring"] == 2
        assert summary["health_score"] == 100.0
        assert summary["next_scheduled_job"]["job_id"] == "sooner"
        assert summary["next_scheduled_job"]["job_type"] == "pricing"
        assert len(report["recent_history"]) == 1

    async def test_user_report_without_jobs(self) -> None:
        report = await MetricsCollector(InMemoryJobStore()).user_report("nobody")
        assert report["summary"]["next_scheduled_job"] is None
        assert report["summary"]["health_score"] == 100.0
