"""Pydantic-модели задач скрапинга и их конфигурации по типам."""
from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from src.exceptions import InvalidTransitionError

JobType = Literal["website", "pricing", "products", "jobs", "social"]
Priority = Literal["low", "medium", "high", "critical"]
FrequencyType = Literal["interval", "cron", "manual"]
JobStatus = Literal["pending", "running", "paused", "failed", "completed", "cancelled"]
SocialPlatform = Literal["linkedin", "twitter", "facebook", "instagram", "youtube", "tiktok"]

JOB_TYPES: tuple[str, ...] = ("website", "pricing", "products", "jobs", "social")
JOB_STATUSES: tuple[str, ...] = ("pending", "running", "paused", "failed", "completed", "cancelled")

# critical первым; меньший rank выигрывает
PRIORITY_RANK: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChangeDetectionConfig(BaseModel):
    """Настройки детекции изменений одной задачи."""

    model_config = _CAMEL

    enabled: bool = True
    threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    ignore_selectors: list[str] = Field(default_factory=list)


class _JobConfigBase(BaseModel):
    """Поля, общие для всех типов задач.

    Сырой формат при создании передаёт ``selectors`` словарём групп
    (``content``/``pricing``/``products``); каждый вариант оставляет только свою группу.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    selector_group: ClassVar[str] = "content"

    change_detection: ChangeDetectionConfig = Field(default_factory=ChangeDetectionConfig)
    selectors: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int = Field(default=30_000, gt=0, le=300_000)
    retry_delay_ms: int | None = Field(default=None, gt=0)
    respect_robots_txt: bool = True

    @model_validator(mode="before")
    @classmethod
    def _pick_selector_group(cls, data: Any) -> Any:
        if isinstance(data, dict):
            selectors = data.get("selectors")
            if isinstance(selectors, dict):
                data = {**data, "selectors": selectors.get(cls.selector_group) or []}
        return data


class WebsiteConfig(_JobConfigBase):
    """Мониторинг сайта целиком."""

    kind: Literal["website"] = "website"


class PricingConfig(_JobConfigBase):
    """Мониторинг страницы цен."""

    selector_group: ClassVar[str] = "pricing"
    kind: Literal["pricing"] = "pricing"


class ProductsConfig(_JobConfigBase):
    """Мониторинг страниц продуктов и фич."""

    selector_group: ClassVar[str] = "products"
    kind: Literal["products"] = "products"


class JobsConfig(_JobConfigBase):
    """Мониторинг страницы вакансий."""

    kind: Literal["jobs"] = "jobs"


class SocialConfig(_JobConfigBase):
    """Мониторинг профиля в соцсети."""

    kind: Literal["social"] = "social"
    platform: SocialPlatform | None = None


JobConfig = Annotated[
    WebsiteConfig | PricingConfig | ProductsConfig | JobsConfig | SocialConfig,
    Field(discriminator="kind"),
]

_job_config_adapter: TypeAdapter[Any] = TypeAdapter(JobConfig)


def build_job_config(job_type: str, raw: dict[str, Any] | None = None) -> JobConfig:
    """Провалидировать сырой config в вариант для ``job_type``."""
    data = dict(raw or {})
    data.pop("kind", None)
    data["kind"] = job_type
    return _job_config_adapter.validate_python(data)


class ScrapingJob(BaseModel):
    """Строка таблицы scraping_jobs."""

    id: str
    user_id: str
    competitor_id: str
    job_type: JobType
    url: str
    priority: Priority = "medium"
    frequency_type: FrequencyType = "interval"
    frequency_value: str = ""
    frequency_timezone: str = "UTC"
    config: JobConfig
    status: JobStatus = "pending"
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    last_error: str | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _config_matches_type(self) -> "ScrapingJob":
        if self.config.kind != self.job_type:
            raise ValueError(f"config kind '{self.config.kind}' does not match job_type '{self.job_type}'")
        return self

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK[self.priority]


class JobCreate(BaseModel):
    """Вход создания задачи (camelCase или snake_case)."""

    model_config = _CAMEL

    competitor_id: str = Field(min_length=1)
    job_type: JobType
    url: str
    priority: Priority = "medium"
    frequency_type: FrequencyType = "interval"
    frequency_value: str = ""
    frequency_timezone: str = "UTC"
    config: dict[str, Any] | None = None
    max_retries: int | None = Field(default=None, ge=0, le=10)

    @field_validator("competitor_id", "frequency_value", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> Any:
        """Старый API присылал числовые id и интервал в минутах."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        """Мониторить можно только абсолютные http(s) URL."""
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"url must be an absolute http(s) URL: {v!r}")
        return v


# Машина состояний: pending -> running -> {completed, pending (ретрай), failed};
# pending/running -> cancelled; pending <-> paused. completed транзитный и
# всегда возвращается в pending. Сброс оператором: failed -> pending.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "paused", "cancelled"}),
    "running": frozenset({"completed", "pending", "failed", "cancelled"}),
    "completed": frozenset({"pending"}),
    "paused": frozenset({"pending", "cancelled"}),
    "failed": frozenset({"pending", "cancelled"}),
    "cancelled": frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    """InvalidTransitionError, если переход current -> target запрещён."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
