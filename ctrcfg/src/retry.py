from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from kubernetes.client import ApiException

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded backoff for optimistic-concurrency conflicts.

    ``steps`` attempts in total; each wait is ``duration`` seconds scaled by
    ``factor`` per attempt, plus up to ``jitter * wait`` of random delay.
    """

    steps: int = 5
    duration: float = 0.1
    factor: float = 1.0
    jitter: float = 1.0

    def delay(self, attempt: int) -> float:
        base = self.duration * (self.factor ** attempt)
        if self.jitter > 0:
            base += base * self.jitter * random.random()  # noqa: S311
        return base


UPDATE_BACKOFF = RetryPolicy()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def retry_on_conflict(
    policy: RetryPolicy,
    fn: Callable[[], T],
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` and retry it while it raises a ``409 Conflict``.

    ``fn`` must re-read the object it mutates so each attempt applies its
    change on top of the latest resourceVersion. Any other exception, or a
    conflict on the last attempt, propagates to the caller.
    """
    for attempt in range(policy.steps):
        try:
            return fn()
        except ApiException as exc:
            if not is_conflict(exc) or attempt + 1 >= policy.steps:
                raise
            wait = policy.delay(attempt)
            LOGGER.debug(
                "Conflict on attempt %d/%d; retrying in %.3fs", attempt + 1, policy.steps, wait
            )
            sleep(wait)
    raise RuntimeError("retry policy must allow at least one attempt")
