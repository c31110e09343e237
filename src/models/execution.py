"""Результаты выполнения, снимки контента и события изменений."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class Snapshot(BaseModel):
    """Нормализованный извлечённый контент одного выполнения."""

    text: str
    hash: str
    fields: dict[str, list[str]] = Field(default_factory=dict)
    captured_at: datetime


class JobExecutionResult(BaseModel):
    """Строка scraping_job_results."""

    job_id: str
    user_id: str
    started_at: datetime
    completed_at: datetime
    execution_time_ms: int
    success: bool
    error: str | None = None
    error_kind: str | None = None
    change_detected: bool = False
    diff_ratio: float = 0.0
    snapshot_hash: str | None = None
    retry_count: int = 0


class ChangeEvent(BaseModel):
    """Создаётся, когда выполнение обнаружило изменение контента."""

    job_id: str
    competitor_id: str
    user_id: str
    diff_ratio: float
    timestamp: datetime

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
