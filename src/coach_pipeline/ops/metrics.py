from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Histogram

REGISTRY = CollectorRegistry()

# Latency buckets (seconds); chunk calls and synthesis run for minutes.
PIPELINE_BUCKETS = (
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    900.0,
    1800.0,
    3600.0,
    7200.0,
)

# Admission
jobs_admitted = Counter(
    "coach_pipeline_jobs_admitted_total", "Jobs started immediately on submit", registry=REGISTRY
)
jobs_queued = Counter("coach_pipeline_jobs_queued_total", "Jobs queued on submit", registry=REGISTRY)
jobs_finished = Counter(
    "coach_pipeline_jobs_finished_total",
    "Jobs finished by final state",
    labelnames=("state",),
    registry=REGISTRY,
)
job_errors = Counter(
    "coach_pipeline_job_errors_total", "Fatal job errors", labelnames=("stage",), registry=REGISTRY
)

# Provider
chunk_failures = Counter(
    "coach_pipeline_chunk_failures_total", "Chunks recorded as failed placeholders", registry=REGISTRY
)
rate_limit_hits = Counter(
    "coach_pipeline_rate_limit_hits_total",
    "Provider rate-limit responses",
    labelnames=("request_type",),
    registry=REGISTRY,
)
tokens_total = Counter(
    "coach_pipeline_tokens_total",
    "Provider tokens consumed",
    labelnames=("direction",),
    registry=REGISTRY,
)

# Stage durations
transcription_seconds = Histogram(
    "coach_pipeline_transcription_seconds",
    "Chunked transcription stage seconds",
    registry=REGISTRY,
    buckets=PIPELINE_BUCKETS,
)
synthesis_seconds = Histogram(
    "coach_pipeline_synthesis_seconds",
    "Synthesis stage seconds",
    registry=REGISTRY,
    buckets=PIPELINE_BUCKETS,
)
staging_seconds = Histogram(
    "coach_pipeline_staging_seconds",
    "Audio staging seconds (download + provider ingestion)",
    registry=REGISTRY,
    buckets=PIPELINE_BUCKETS,
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[Callable[[], float]]:
    """
    Context manager to time a block and observe into a histogram.
    Usage:
        with time_hist(hist) as elapsed:
            ...
        dt = elapsed()
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt or 0.0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            h.observe(dt)
