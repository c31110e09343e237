"""FastAPI-приложение планировщика мониторинга."""
import hmac
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Path, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import ValidationError

from src.api.admission import FeatureFlags, SettingsFeatureFlags, check_budget, require_user
from src.api.schemas import (
    HealthResponse,
    JobCreatedResponse,
    JobListResponse,
    JobResponse,
    QueueStatsResponse,
)
from src.config import Settings
from src.exceptions import (
    AuthorizationError,
    BudgetExceededError,
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    MonitorError,
    PersistenceError,
)
from src.models.job import JobCreate, ScrapingJob
from src.store import JobStore
from src.worker.loop import QueueProcessor

security = HTTPBearer(auto_error=False)

# Rate limiting: скользящее окно на IP
RATE_LIMIT_MAX_REQUESTS = 60
RATE_LIMIT_WINDOW_SECONDS = 60
_rate_limit_store: dict[str, list[float]] = defaultdict(list)

# Сначала самые специфичные: InvalidTransitionError наследует JobValidationError
_ERROR_STATUS: tuple[tuple[type[MonitorError], int], ...] = (
    (InvalidTransitionError, 409),
    (JobValidationError, 422),
    (AuthorizationError, 403),
    (BudgetExceededError, 429),
    (JobNotFoundError, 404),
    (PersistenceError, 503),
)


def _status_for(exc: MonitorError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(
    processor: QueueProcessor,
    store: JobStore,
    settings: Settings,
    flags: FeatureFlags | None = None,
) -> FastAPI:
    """Собрать FastAPI-приложение вокруг процессора очереди."""
    app = FastAPI(title="Competitor Monitor API", version="0.1.0")

    app.state.processor = processor
    app.state.store = store
    app.state.settings = settings
    flags = flags or SettingsFeatureFlags(settings)

    @app.exception_handler(MonitorError)
    async def _monitor_error_handler(_: Request, exc: MonitorError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"Request failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "kind": exc.kind})

    async def check_rate_limit(request: Request) -> None:
        """Простой in-memory rate limiter: скользящее окно на IP."""
        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        window_start = now - RATE_LIMIT_WINDOW_SECONDS

        timestamps = _rate_limit_store[client_ip]
        _rate_limit_store[client_ip] = [t for t in timestamps if t > window_start]

        if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_MAX_REQUESTS:
            raise HTTPException(status_code=429, detail="Rate limit exceeded")

        _rate_limit_store[client_ip].append(now)

        # Чистим устаревшие IP, когда записей больше 100
        if len(_rate_limit_store) > 100:
            stale_ips = [
                ip for ip, ts in _rate_limit_store.items()
                if not ts or ts[-1] <= window_start
            ]
            for ip in stale_ips:
                del _rate_limit_store[ip]

    async def verify_api_key(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> None:
        expected = settings.scraper_api_key.get_secret_value()
        if credentials is None or not hmac.compare_digest(
            credentials.credentials, expected
        ):
            raise HTTPException(status_code=401, detail="Invalid API key")

    async def current_user(x_user_id: str | None = Header(default=None)) -> str:
        """Идентичность вызывающего, проброшенная шлюзом аутентификации."""
        return require_user(x_user_id)

    guarded = [Depends(check_rate_limit), Depends(verify_api_key)]

    @app.get("/api/health", response_model=HealthResponse)
    async def health(response: Response) -> HealthResponse:
        """Healthcheck, без авторизации."""
        status = processor.get_health_status()
        try:
            counts = await store.count_by_status()
        except PersistenceError:
            response.status_code = 503
            return HealthResponse(
                status="degraded",
                is_running=status["is_running"],
                health=status["health"],
                per_status_counts={},
            )
        return HealthResponse(
            status="ok" if status["health"]["status"] == "healthy" else "degraded",
            is_running=status["is_running"],
            health=status["health"],
            per_status_counts=counts,
        )

    @app.get("/api/queue/stats", response_model=QueueStatsResponse, dependencies=guarded)
    async def queue_stats() -> dict:
        return await processor.get_queue_stats()

    @app.post("/api/jobs", status_code=201, response_model=JobCreatedResponse, dependencies=guarded)
    async def create_job(
        body: dict[str, Any] = Body(...),
        user_id: str = Depends(current_user),
    ) -> dict:
        """Принять задачу: валидация, часовой лимит, постановка в очередь."""
        try:
            payload = JobCreate.model_validate(body)
        except ValidationError as e:
            raise JobValidationError(str(e)) from e
        await check_budget(store, flags, user_id, datetime.now(UTC))
        job_id = await processor.add_job(user_id, payload)
        job = await store.get(job_id)
        return {"job_id": job_id, "status": job.status, "next_run_at": job.next_run_at}

    @app.get("/api/jobs", response_model=JobListResponse, dependencies=guarded)
    async def list_jobs(
        status: str | None = None,
        competitor_id: str | None = None,
        job_type: str | None = None,
        user_id: str = Depends(current_user),
    ) -> dict:
        jobs = await store.list_by_user(
            user_id, status=status, competitor_id=competitor_id, job_type=job_type
        )
        return {"jobs": [JobResponse.from_job(j) for j in jobs], "total": len(jobs)}

    @app.get("/api/jobs/{job_id}", response_model=JobResponse, dependencies=guarded)
    async def get_job(
        job_id: str = Path(description="Job id"),
        user_id: str = Depends(current_user),
    ) -> JobResponse:
        return JobResponse.from_job(await processor.get_job(job_id, user_id))

    @app.get("/api/jobs/{job_id}/metrics", dependencies=guarded)
    async def job_metrics(
        job_id: str = Path(description="Job id"),
        user_id: str = Depends(current_user),
    ) -> dict:
        await processor.get_job(job_id, user_id)
        return await processor.metrics.job_metrics(job_id)

    actions: dict[str, Callable[[str, str], Awaitable[ScrapingJob]]] = {
        "pause": processor.pause_job,
        "resume": processor.resume_job,
        "cancel": processor.cancel_job,
        "reset": processor.reset_job,
        "run": processor.trigger_job,
    }

    @app.post("/api/jobs/{job_id}/{action}", response_model=JobResponse, dependencies=guarded)
    async def job_action(
        job_id: str = Path(description="Job id"),
        action: str = Path(description="pause | resume | cancel | reset | run"),
        user_id: str = Depends(current_user),
    ) -> JobResponse:
        handler = actions.get(action)
        if handler is None:
            raise HTTPException(status_code=404, detail=f"Unknown action: {action}")
        job = await handler(job_id, user_id)
        logger.info(f"Job {job_id}: {action} by user {user_id}")
        return JobResponse.from_job(job)

    @app.get("/api/users/me/metrics", dependencies=guarded)
    async def my_metrics(user_id: str = Depends(current_user)) -> dict:
        return await processor.metrics.user_report(user_id)

    return app
