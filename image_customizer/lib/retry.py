"""Bounded retry with exponential backoff and jitter.

Errors are classified by type first. Message patterns are accepted as a
fallback for collaborators that only report free text, but they are a
heuristic: prefer raising a TransientIOError subclass at the boundary.
"""

from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, Tuple, Type, TypeVar, Union

from ..errors import Exhausted, Fatal, TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Matcher = Union[Type[BaseException], str, "re.Pattern[str]"]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 2.0
    growth_factor: float = 2.0
    jitter: float = 0.5
    max_delay: float = 60.0
    transient: Tuple[Matcher, ...] = (TransientIOError,)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def is_transient(self, error: BaseException) -> bool:
        for m in self.transient:
            if isinstance(m, type):
                if isinstance(error, m):
                    return True
            elif isinstance(m, str):
                if re.search(m, str(error), re.IGNORECASE):
                    return True
            elif m.search(str(error)):
                return True
        return False

    def nominal_delay(self, retry: int) -> float:
        """Delay before the ``retry``-th retry (1-based), without jitter."""
        return min(self.max_delay, self.base_delay * (self.growth_factor ** (retry - 1)))


@dataclass(frozen=True)
class Operation(Generic[T]):
    name: str
    fn: Callable[[], T]


@dataclass
class RetryExecutor:
    """Runs operations under a RetryPolicy.

    Holds no per-call state, so one executor can serve concurrent sessions.
    ``sleep`` and ``rng`` are injectable for tests.
    """

    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)
    default_policy: RetryPolicy = field(default_factory=RetryPolicy)

    def delay_for(self, policy: RetryPolicy, retry: int) -> float:
        nominal = policy.nominal_delay(retry)
        if policy.jitter:
            nominal *= 1 + self.rng.uniform(-policy.jitter, policy.jitter)
        return max(0.0, nominal)

    def execute(self, operation: Operation[T], policy: Optional[RetryPolicy] = None) -> T:
        policy = policy or self.default_policy
        total_attempts = policy.max_retries + 1
        elapsed_delay = 0.0

        for attempt in range(1, total_attempts + 1):
            try:
                result = operation.fn()
            except Exception as e:
                if not policy.is_transient(e):
                    logger.error(
                        "op=%s attempt=%d/%d outcome=fatal error=%s: %s",
                        operation.name, attempt, total_attempts, type(e).__name__, e,
                    )
                    raise Fatal(
                        operation.name, e, attempts=attempt, elapsed_delay=elapsed_delay
                    ) from e

                if attempt == total_attempts:
                    logger.error(
                        "op=%s attempt=%d/%d outcome=exhausted error=%s: %s",
                        operation.name, attempt, total_attempts, type(e).__name__, e,
                    )
                    raise Exhausted(
                        operation.name, e, attempts=attempt, elapsed_delay=elapsed_delay
                    ) from e

                delay = self.delay_for(policy, attempt)
                logger.warning(
                    "op=%s attempt=%d/%d outcome=transient delay=%.2fs error=%s: %s",
                    operation.name, attempt, total_attempts, delay, type(e).__name__, e,
                )
                self.sleep(delay)
                elapsed_delay += delay
                continue

            logger.info(
                "op=%s attempt=%d/%d outcome=ok", operation.name, attempt, total_attempts
            )
            return result

    def run(self, name: str, fn: Callable[[], T], policy: Optional[RetryPolicy] = None) -> T:
        return self.execute(Operation(name=name, fn=fn), policy)


def policy_from_config(cfg: Any, *, transient: Tuple[Matcher, ...] = (TransientIOError,)) -> RetryPolicy:
    """Build a RetryPolicy from a CustomizerConfig's retry section."""
    return RetryPolicy(
        max_retries=cfg.max_retries,
        base_delay=cfg.base_delay,
        growth_factor=cfg.growth_factor,
        jitter=cfg.jitter,
        max_delay=cfg.max_delay,
        transient=transient,
    )
