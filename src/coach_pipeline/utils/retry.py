from __future__ import annotations

import random
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any

Sleep = Callable[[float], None]


def backoff_delay(
    attempt: int,
    *,
    base: float,
    cap: float | None = None,
    jitter: bool = False,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retry number `attempt` (0-based): base * 2**attempt, capped.
    Jitter scales the delay into [0.5x, 1.5x) and then re-applies the cap.
    """
    delay = float(base) * (2 ** max(0, int(attempt)))
    if cap is not None:
        delay = min(float(cap), delay)
    if jitter:
        delay = delay * (0.5 + rand())
        if cap is not None:
            delay = min(float(cap), delay)
    return max(0.0, delay)


def retry_call(
    fn: Callable[[], Any],
    *,
    retries: int = 3,
    base: float = 0.5,
    cap: float | None = 8.0,
    jitter: bool = True,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Sleep | None = None,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> Any:
    """
    Call fn() with capped exponential backoff (+ optional jitter).

    retries: number of retry attempts (so total calls = 1 + retries)
    Only exceptions matching `retry_on` are retried; the last one is re-raised
    once the retries are spent.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as ex:
            if attempt >= int(retries):
                raise
            delay = backoff_delay(attempt, base=base, cap=cap, jitter=jitter)
            attempt += 1
            if on_retry is not None:
                with suppress(Exception):
                    on_retry(attempt, delay, ex)
            (sleep or time.sleep)(max(0.0, float(delay)))
