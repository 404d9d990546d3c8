from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from escapehatch.core.config import get_settings
from escapehatch.core.errors import ExternalUnavailableError
from escapehatch.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

_STATE_GAUGE = {"closed": 0.0, "half_open": 0.5, "open": 1.0}

_shared_redis: Redis | None = None
_shared_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis() -> Redis | None:
    # One client per event loop; breaker state degrades to process-local without it.
    global _shared_redis, _shared_redis_loop
    loop = asyncio.get_running_loop()
    if _shared_redis is not None and _shared_redis_loop is loop:
        return _shared_redis
    try:
        _shared_redis = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
    except (RedisError, ValueError) as exc:
        logger.warning("resilience_redis_unavailable", exc_info=exc)
        _shared_redis = None
        return None
    _shared_redis_loop = loop
    return _shared_redis


def is_transient(exc: Exception) -> bool:
    # Timeouts, socket errors and 5xx-style failures are worth another attempt.
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def backoff_seconds(self, attempt: int) -> float:
        # Exponential from the base delay, jittered so concurrent callers spread out.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    policy = policy or RetryPolicy.from_settings()
    should_retry = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless the policy allows another attempt
            if attempt >= attempts or not should_retry(exc):
                raise
            increment_counter("external_retries_total")
            await asyncio.sleep(policy.backoff_seconds(attempt))
    raise RuntimeError("retry loop exited without a result")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass
class CircuitBreakerState:
    state: str = "closed"
    failures: int = 0
    opened_at: float | None = None
    half_open_trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else str(self.opened_at),
            "half_open_trials": str(self.half_open_trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> "CircuitBreakerState":
        return cls(
            state=raw.get("state", "closed"),
            failures=int(raw.get("failures") or 0),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            half_open_trials=int(raw.get("half_open_trials") or 0),
        )


class CircuitBreaker:
    """closed -> open after repeated failures, open -> half_open after a cool-down.

    State lives in a Redis hash so every worker and API process sees the
    same breaker; without Redis the breaker is process-local.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        self._clock = time_source or time.monotonic
        self._local = CircuitBreakerState()

    @property
    def name(self) -> str:
        return self._name

    @property
    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _read(self) -> CircuitBreakerState:
        if self._redis is None:
            return self._local
        try:
            raw = await self._redis.hgetall(self._key)
        except RedisError as exc:
            logger.warning("circuit_breaker_redis_read_failed name=%s", self._name, exc_info=exc)
            return self._local
        return CircuitBreakerState.from_mapping(raw) if raw else self._local

    async def _write(self, state: CircuitBreakerState) -> None:
        self._local = state
        if self._redis is None:
            return
        try:
            await self._redis.hset(self._key, mapping=state.to_mapping())
            await self._redis.expire(self._key, max(self._config.open_seconds * 4, 60))
        except RedisError as exc:
            logger.warning("circuit_breaker_redis_write_failed name=%s", self._name, exc_info=exc)

    def _move(self, current: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if current.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, current.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            if target == "open":
                increment_counter("circuit_breaker_open_total")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        return CircuitBreakerState(state=target, opened_at=self._clock() if target == "open" else None)

    async def before_call(self) -> None:
        # Raise while open; admit a bounded number of probes while half-open.
        state = await self._read()
        if state.state == "open":
            cooled_down = state.opened_at is not None and self._clock() - state.opened_at >= self._config.open_seconds
            if not cooled_down:
                raise ExternalUnavailableError(f"{self._name} is temporarily unavailable")
            state = self._move(state, "half_open")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise ExternalUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
        await self._write(state)

    async def record_success(self) -> None:
        state = await self._read()
        await self._write(self._move(state, "closed") if state.state != "closed" else CircuitBreakerState())

    async def record_failure(self) -> None:
        state = await self._read()
        if state.state == "half_open":
            await self._write(self._move(state, "open"))
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            await self._write(self._move(state, "open"))
            return
        await self._write(
            CircuitBreakerState(state=state.state, failures=failures, half_open_trials=state.half_open_trials)
        )
