from __future__ import annotations

import time

import pytest

from coach_pipeline.errors import RateLimitError
from coach_pipeline.utils.retry import backoff_delay, retry_call


def test_retry_call_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("fail")
        return "ok"

    # don't actually sleep in tests
    monkeypatch.setattr(time, "sleep", lambda _: None)
    assert retry_call(fn, retries=5, base=0.001, cap=0.01, jitter=False) == "ok"
    assert calls["n"] == 3


def test_retry_call_only_retries_matching_errors() -> None:
    slept: list[float] = []

    def fn():
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        retry_call(fn, retries=3, base=1, jitter=False, retry_on=(RateLimitError,), sleep=slept.append)
    assert slept == []


def test_retry_call_reraises_after_retries() -> None:
    slept: list[float] = []
    seen: list[int] = []

    def fn():
        raise RateLimitError("429")

    with pytest.raises(RateLimitError):
        retry_call(
            fn,
            retries=3,
            base=30,
            cap=None,
            jitter=False,
            retry_on=(RateLimitError,),
            sleep=slept.append,
            on_retry=lambda attempt, _delay, _ex: seen.append(attempt),
        )
    assert slept == [30.0, 60.0, 120.0]
    assert seen == [1, 2, 3]


def test_backoff_delay_caps_and_jitters() -> None:
    assert backoff_delay(0, base=60, cap=300) == 60.0
    assert backoff_delay(3, base=60, cap=300) == 300.0
    assert backoff_delay(2, base=60, cap=300, jitter=True, rand=lambda: 0.0) == 60.0
    assert backoff_delay(3, base=60, cap=300, jitter=True, rand=lambda: 0.99) == 300.0
