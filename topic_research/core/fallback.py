"""Ordered fallback strategies.

A fallback chain is a list of named async strategies tried in order; the first
one that produces a value wins. A strategy fails by raising or by returning
``Failure``. Cancellation always propagates.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Failure:
    reason: str


@dataclass(frozen=True)
class Strategy(Generic[T]):
    name: str
    run: Callable[..., Awaitable[T | Failure]]


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T
    strategy: str
    failures: list[tuple[str, str]] = field(default_factory=list)


class FallbackExhausted(Exception):
    def __init__(self, failures: list[tuple[str, str]]):
        super().__init__(
            "All strategies failed: " + "; ".join(f"{name}: {reason}" for name, reason in failures)
        )
        self.failures = failures


async def first_success(
    strategies: Sequence[Strategy[T]], *args: Any, label: str = "fallback", **kwargs: Any
) -> Outcome[T]:
    """Apply ``strategies`` in order and return the first success."""
    failures: list[tuple[str, str]] = []
    for strategy in strategies:
        try:
            result = await strategy.run(*args, **kwargs)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.warning(f"{label}.strategy_failed", strategy=strategy.name, error=reason)
            failures.append((strategy.name, reason))
            continue
        if isinstance(result, Failure):
            logger.warning(f"{label}.strategy_failed", strategy=strategy.name, error=result.reason)
            failures.append((strategy.name, result.reason))
            continue
        if failures:
            logger.info(f"{label}.strategy_recovered", strategy=strategy.name, failed=len(failures))
        return Outcome(value=result, strategy=strategy.name, failures=failures)
    raise FallbackExhausted(failures)
