from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from sitecraft.cancellation import CancellationToken

log = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff(step_seconds: float) -> Callable[[int], float]:
    """Delay after failed attempt ``n`` is ``n * step_seconds``."""

    def _delay(attempt: int) -> float:
        return attempt * step_seconds

    return _delay


def retry_until(
    operation: Callable[[int], T],
    is_done: Callable[[T], bool],
    *,
    max_attempts: int,
    backoff: Optional[Callable[[int], float]] = None,
    retry_on: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
    token: Optional[CancellationToken] = None,
    label: str = "operation",
) -> T:
    """Run ``operation(attempt)`` until ``is_done`` accepts its result.

    Attempts are numbered from 1. Exceptions listed in ``retry_on`` count as a failed
    attempt; anything else propagates at once. When attempts run out the last retried
    exception is re-raised if the final attempt raised, otherwise the last result is
    returned as-is so callers can keep a best-effort value.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    last_exc: Optional[BaseException] = None
    result: Optional[T] = None
    have_result = False
    for attempt in range(1, max_attempts + 1):
        if token is not None:
            token.raise_if_cancelled()
        try:
            result = operation(attempt)
            have_result = True
            last_exc = None
        except retry_on as exc:
            last_exc = exc
            log.warning("%s attempt=%d/%d failed: %s", label, attempt, max_attempts, exc)
        else:
            if is_done(result):
                return result
            log.info("%s attempt=%d/%d not done yet", label, attempt, max_attempts)
        if attempt < max_attempts and backoff is not None:
            delay = backoff(attempt)
            if delay > 0:
                sleep(delay)
    if last_exc is not None:
        raise last_exc
    if not have_result:
        raise RuntimeError(f"{label} produced no result")
    return result  # type: ignore[return-value]
