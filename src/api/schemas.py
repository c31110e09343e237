"""Pydantic-схемы API мониторинга."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from src.models.job import ScrapingJob


class JobResponse(BaseModel):
    """Задача в ответе API."""

    id: str
    competitor_id: str
    job_type: str
    url: str
    priority: str
    frequency_type: str
    frequency_value: str
    frequency_timezone: str
    status: str
    retry_count: int
    max_retries: int
    last_error: str | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    created_at: datetime
    config: dict[str, Any]

    @classmethod
    def from_job(cls, job: ScrapingJob) -> "JobResponse":
        data = job.model_dump(exclude={"user_id", "updated_at"})
        data["config"] = job.config.model_dump(mode="json", by_alias=True)
        return cls.model_validate(data)


class JobListResponse(BaseModel):
    """Задачи вызывающего пользователя."""

    jobs: list[JobResponse]
    total: int


class JobCreatedResponse(BaseModel):
    """Ответ на POST /api/jobs."""

    job_id: str
    status: str  # "pending"
    next_run_at: datetime | None = None


class HealthResponse(BaseModel):
    """Ответ healthcheck."""

    status: str  # "ok" | "degraded"
    is_running: bool
    health: dict[str, Any]
    per_status_counts: dict[str, int]


class QueueStatsResponse(BaseModel):
    """Ответ на GET /api/queue/stats."""

    system_metrics: dict[str, Any]
    per_status_counts: dict[str, int]
