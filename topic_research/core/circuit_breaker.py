"""Circuit breakers for external service calls using pybreaker.

One breaker per external service: each search backend profile and the
completion service. A sustained outage in one backend fast-fails further calls
to that backend until its cooldown elapses, while the others stay unaffected.
State machine: CLOSED (healthy) → OPEN (failing) → HALF_OPEN (testing recovery).

Breakers live in a ``BreakerRegistry`` owned by whoever builds the gateway or
completion service, so tests and separate pipelines never share state by
accident. State is kept in process memory unless ``CIRCUIT_BREAKER_REDIS_URL``
is configured, in which case workers share it through Redis.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import redis
import structlog
from pybreaker import (
    STATE_CLOSED,
    STATE_OPEN,
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerListener,
    CircuitBreakerStorage,
    CircuitMemoryStorage,
)

from topic_research.core.config import Settings
from topic_research.core.metrics import (
    circuit_breaker_open_total,
    circuit_breaker_state_changes_total,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# === Redis-backed Circuit Breaker Storage ===


class RedisCircuitBreakerStorage(CircuitBreakerStorage):
    """Redis-backed storage for circuit breaker state (shared across workers).

    Stores state in Redis with TTL to prevent stale data. Uses the synchronous
    Redis client because pybreaker's storage interface is synchronous.
    """

    def __init__(self, client: redis.Redis, name: str, ttl: int, failure_threshold: int):
        super().__init__(name)
        self._redis = client
        self._key_prefix = f"topic_research:circuit_breaker:{name}"
        self._state_key = f"{self._key_prefix}:state"
        self._fail_counter_key = f"{self._key_prefix}:fail_counter"
        self._success_counter_key = f"{self._key_prefix}:success_counter"
        self._opened_at_key = f"{self._key_prefix}:opened_at"
        self._ttl = ttl
        self._failure_threshold = failure_threshold

    @property
    def state(self) -> str:
        """Get current state from Redis (closed/open/half-open)."""
        try:
            raw = self._redis.get(self._state_key)
            return raw or STATE_CLOSED
        except redis.RedisError as e:
            logger.warning(
                "circuit_breaker.redis_error_failing_half_open",
                service=self.name,
                error=str(e),
                context="state_get",
            )
            # Half-open admits trial traffic instead of all-or-nothing
            return "half-open"

    @state.setter
    def state(self, state: str) -> None:
        try:
            self._redis.setex(self._state_key, self._ttl, state)
        except redis.RedisError:
            logger.exception("circuit_breaker.redis.state_set_error", name=self.name, state=state)

    @property
    def counter(self) -> int:
        """Get failure counter from Redis."""
        try:
            raw = self._redis.get(self._fail_counter_key)
            return int(raw) if raw else 0
        except redis.RedisError as e:
            logger.warning(
                "circuit_breaker.redis_error_counter_fallback",
                service=self.name,
                error=str(e),
                context="counter_get",
            )
            return self._failure_threshold // 2

    @counter.setter
    def counter(self, count: int) -> None:
        try:
            self._redis.setex(self._fail_counter_key, self._ttl, str(count))
        except redis.RedisError:
            logger.exception("circuit_breaker.redis.counter_set_error", name=self.name, count=count)

    def increment_counter(self) -> None:
        """Atomically increment failure counter in Redis."""
        try:
            # INCR is atomic across workers
            self._redis.incr(self._fail_counter_key)
            self._redis.expire(self._fail_counter_key, self._ttl)
        except redis.RedisError:
            logger.exception("circuit_breaker.redis.counter_increment_error", name=self.name)

    def reset_counter(self) -> None:
        self.counter = 0

    @property
    def success_counter(self) -> int:
        try:
            raw = self._redis.get(self._success_counter_key)
            return int(raw) if raw else 0
        except redis.RedisError:
            logger.exception("circuit_breaker.redis.success_counter_get_error", name=self.name)
            return 0

    @success_counter.setter
    def success_counter(self, count: int) -> None:
        try:
            self._redis.setex(self._success_counter_key, self._ttl, str(count))
        except redis.RedisError:
            logger.exception(
                "circuit_breaker.redis.success_counter_set_error", name=self.name, count=count
            )

    def increment_success_counter(self) -> None:
        try:
            self._redis.incr(self._success_counter_key)
            self._redis.expire(self._success_counter_key, self._ttl)
        except redis.RedisError:
            logger.exception("circuit_breaker.redis.success_counter_increment_error", name=self.name)

    def reset_success_counter(self) -> None:
        self.success_counter = 0

    @property
    def opened_at(self) -> datetime | None:
        try:
            raw = self._redis.get(self._opened_at_key)
            return datetime.fromtimestamp(float(raw), tz=UTC) if raw else None
        except (redis.RedisError, ValueError):
            logger.exception("circuit_breaker.redis.opened_at_get_error", name=self.name)
            return None

    @opened_at.setter
    def opened_at(self, timestamp: datetime | float | None) -> None:
        try:
            if timestamp is None:
                self._redis.delete(self._opened_at_key)
                return
            if isinstance(timestamp, datetime):
                if timestamp.tzinfo is None:
                    timestamp = timestamp.replace(tzinfo=UTC)
                opened_ts = timestamp.timestamp()
            else:
                opened_ts = float(timestamp)
            self._redis.setex(self._opened_at_key, self._ttl, str(opened_ts))
        except redis.RedisError:
            logger.exception("circuit_breaker.redis.opened_at_set_error", name=self.name)


# === Listener ===


class BreakerListener(CircuitBreakerListener):
    """Logs state changes and failures, and remembers when the breaker opened."""

    def __init__(self, api_name: str):
        self.api_name = api_name
        self.opened_at: float | None = None

    def state_change(self, cb: CircuitBreaker, old_state: Any, new_state: Any) -> None:
        old_name = getattr(old_state, "name", str(old_state))
        new_name = getattr(new_state, "name", str(new_state))
        logger.info(
            "circuit_breaker.state_change",
            api_name=self.api_name,
            old_state=old_name,
            new_state=new_name,
        )
        circuit_breaker_state_changes_total.labels(
            api_name=self.api_name,
            from_state=old_name,
            to_state=new_name,
        ).inc()

        if new_name == STATE_OPEN:
            self.opened_at = time.monotonic()
            circuit_breaker_open_total.labels(api_name=self.api_name).inc()

    def failure(self, cb: CircuitBreaker, exc: BaseException) -> None:
        logger.warning(
            "circuit_breaker.failure",
            api_name=self.api_name,
            failure_count=cb.fail_counter,
            error=str(exc),
        )

    def success(self, cb: CircuitBreaker) -> None:
        if cb.current_state == "half-open":
            logger.info("circuit_breaker.recovery_success", api_name=self.api_name)


# === Async wrapper ===


class ServiceBreaker:
    """Runs coroutines under a pybreaker breaker.

    pybreaker only drives synchronous callables, so admission is checked here
    and the coroutine's outcome is replayed through ``breaker.call`` to keep
    pybreaker's counters and transitions authoritative.
    """

    def __init__(
        self,
        name: str,
        breaker: CircuitBreaker,
        listener: BreakerListener,
        storage: CircuitBreakerStorage,
        open_error: Callable[[], Exception],
        remote: bool = False,
    ):
        self.name = name
        self.breaker = breaker
        self._listener = listener
        self._storage = storage
        self._open_error = open_error
        self._remote = remote

    @property
    def state(self) -> str:
        return self.breaker.current_state

    def _cooldown_elapsed(self) -> bool:
        reset_timeout = float(self.breaker.reset_timeout)
        if self._listener.opened_at is not None:
            return time.monotonic() - self._listener.opened_at >= reset_timeout
        # Opened by another worker: fall back to the shared timestamp
        opened_at = self._storage.opened_at
        if opened_at is None:
            return True
        if opened_at.tzinfo is None:
            opened_at = opened_at.replace(tzinfo=UTC)
        return (datetime.now(UTC) - opened_at).total_seconds() >= reset_timeout

    def _admit(self) -> None:
        if self.state != STATE_OPEN:
            return
        if not self._cooldown_elapsed():
            logger.warning("circuit_breaker.open_rejected", api_name=self.name)
            raise self._open_error()
        self.breaker.half_open()

    def _record(self, error: Exception | None) -> None:
        def _replay() -> None:
            if error is not None:
                raise error

        try:
            self.breaker.call(_replay)
        except CircuitBreakerError:
            # Tripped by this failure, or opened meanwhile by a sibling call
            pass
        except Exception:
            # The replayed error itself; the caller re-raises the original
            pass

    async def _record_async(self, error: Exception | None) -> None:
        if self._remote:
            await asyncio.to_thread(self._record, error)
        else:
            self._record(error)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func`` under the breaker.

        Raises the configured open-error without calling ``func`` while the
        breaker is open. Any exception from ``func`` is counted and re-raised;
        cancellation is neither counted nor swallowed.
        """
        if self._remote:
            await asyncio.to_thread(self._admit)
        else:
            self._admit()

        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            await self._record_async(exc)
            raise
        await self._record_async(None)
        return result


# === Registry ===


class BreakerRegistry:
    """Creates and caches one ``ServiceBreaker`` per service name."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        redis_url: str | None = None,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._redis: redis.Redis | None = (
            redis.Redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=1,
                socket_timeout=1,
            )
            if redis_url
            else None
        )
        self._breakers: dict[str, ServiceBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> BreakerRegistry:
        return cls(
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
            redis_url=settings.CIRCUIT_BREAKER_REDIS_URL,
        )

    def get(self, name: str, open_error: Callable[[], Exception]) -> ServiceBreaker:
        existing = self._breakers.get(name)
        if existing is not None:
            return existing

        storage: CircuitBreakerStorage
        if self._redis is not None:
            storage = RedisCircuitBreakerStorage(
                self._redis,
                name,
                ttl=max(int(self.recovery_timeout * 2), 1),
                failure_threshold=self.failure_threshold,
            )
        else:
            storage = CircuitMemoryStorage(STATE_CLOSED)

        listener = BreakerListener(name)
        breaker = CircuitBreaker(
            fail_max=self.failure_threshold,
            reset_timeout=self.recovery_timeout,
            name=name,
            listeners=[listener],
            state_storage=storage,
        )
        service_breaker = ServiceBreaker(
            name,
            breaker,
            listener,
            storage,
            open_error,
            remote=self._redis is not None,
        )
        self._breakers[name] = service_breaker
        return service_breaker

    def states(self) -> dict[str, str]:
        return {name: b.state for name, b in self._breakers.items()}
