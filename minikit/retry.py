"""Retry helpers for minikit.

Exponential backoff for multi-step operations that race with guest or daemon
readiness. Only errors typed as retriable are retried; anything else fails on
the first attempt.
"""

from __future__ import annotations

import time
from typing import Callable, Tuple, Type, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
    wait_random,
)

from minikit.exceptions import RetriableError
from minikit.utils import log

T = TypeVar("T")

MULTIPLIER = 1.5
RANDOMIZATION_FACTOR = 0.5


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    log("DEBUG", f"Attempt {retry_state.attempt_number} failed ({exc}); will retry after {delay:.2f}s")


def expo(
    callback: Callable[[], T],
    initial_interval: float,
    max_time: float,
    retry_on: Tuple[Type[BaseException], ...] = (RetriableError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``callback`` until it succeeds, backing off exponentially.

    Delays grow by :data:`MULTIPLIER` per attempt with up to
    :data:`RANDOMIZATION_FACTOR` of the initial interval added as jitter.
    Gives up once ``max_time`` seconds have elapsed and re-raises the last
    error.
    """
    retrying = Retrying(
        retry=retry_if_exception_type(retry_on),
        stop=stop_after_delay(max_time),
        wait=wait_exponential(multiplier=initial_interval, exp_base=MULTIPLIER, max=max_time)
        + wait_random(0, initial_interval * RANDOMIZATION_FACTOR),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    return retrying(callback)


def local(
    callback: Callable[[], T],
    interval: float,
    attempts: int,
    retry_on: Tuple[Type[BaseException], ...] = (RetriableError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``callback`` at a fixed interval, at most ``attempts`` times."""
    retrying = Retrying(
        retry=retry_if_exception_type(retry_on),
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(interval),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    return retrying(callback)
