"""Экспоненциальный backoff и решение о финальном сбое для упавших задач."""
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class RetryDecision:
    """Что записать после неудачного выполнения."""

    status: Literal["pending", "failed"]
    retry_count: int
    delay_seconds: float | None  # None для финальных сбоев

    @property
    def terminal(self) -> bool:
        return self.status == "failed"


class RetryPolicy:
    """
    backoff(n) = min(max_delay, base * 2**n) + jitter.
    Jitter равномерный в [0, jitter_ratio * ограниченная задержка], чтобы ретраи
    задач, упавших одновременно, не попадали в один тик.
    """

    def __init__(
        self,
        base_delay: float = 60.0,
        max_delay: float = 3600.0,
        jitter_ratio: float = 0.1,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if base_delay <= 0 or max_delay <= 0:
            raise ValueError("base_delay and max_delay must be positive")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._rng = rng

    def base_backoff(self, retry_count: int, base_delay: float | None = None) -> float:
        """Задержка без jitter; не убывает по retry_count, ограничена max_delay."""
        base = base_delay if base_delay is not None else self.base_delay
        exponent = min(max(0, retry_count), 62)
        return min(self.max_delay, base * (2 ** exponent))

    def backoff(self, retry_count: int, base_delay: float | None = None) -> float:
        delay = self.base_backoff(retry_count, base_delay)
        return delay + self._rng() * self.jitter_ratio * delay

    def on_failure(
        self,
        retry_count: int,
        max_retries: int,
        retryable: bool = True,
        base_delay: float | None = None,
    ) -> RetryDecision:
        """
        Учесть сбой и выбрать между отложенным ретраем и финальным сбоем.
        retry_count никогда не превышает max_retries; достижение его финально, как и
        любая неретраибельная ошибка (robots, валидация, HTTP 4xx).
        """
        new_count = min(retry_count + 1, max_retries)
        if not retryable or new_count >= max_retries:
            return RetryDecision(status="failed", retry_count=new_count, delay_seconds=None)
        return RetryDecision(
            status="pending",
            retry_count=new_count,
            delay_seconds=self.backoff(new_count, base_delay),
        )
