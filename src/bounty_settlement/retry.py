"""Bounded exponential backoff for calls to external collaborators."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class BackoffPolicy:
    """Attempts and delay envelope for one external call site."""

    max_attempts: int = 3
    base_seconds: float = 0.5
    max_seconds: float = 8.0
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def delay_for(self, attempt: int) -> float:
        """Full-jitter delay after the given 1-based failed attempt."""

        ceiling = min(self.max_seconds, self.base_seconds * (2 ** max(attempt - 1, 0)))
        return self.rng.uniform(0, ceiling)


def with_backoff(operation: Callable[[], T], *, policy: BackoffPolicy, label: str) -> T:
    """Run `operation`, retrying only errors flagged `transient`.

    The last transient error propagates once attempts are exhausted; other
    errors propagate immediately.
    """

    attempt = 1
    while True:
        try:
            return operation()
        except Exception as error:
            if not getattr(error, "transient", False) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                policy.max_attempts,
                delay,
                error,
            )
            policy.sleep(delay)
            attempt += 1
