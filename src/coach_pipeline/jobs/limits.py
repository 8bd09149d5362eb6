from __future__ import annotations

from dataclasses import dataclass

from coach_pipeline.config import get_settings


@dataclass(frozen=True, slots=True)
class Limits:
    max_concurrent_jobs: int = 1
    stale_after_minutes: int = 30
    queue_retry_after_s: int = 60
    bytes_per_minute_estimate: int = 1024 * 1024

    # chunked transcription
    chunk_minutes: int = 45
    inter_request_delay_s: float = 35.0
    context_summary_chars: int = 600
    min_section_chars: int = 50
    rate_limit_cooldown_s: float = 60.0
    rate_limit_cooldown_cap_s: float = 300.0
    chunk_max_rate_limit_retries: int = 5
    rate_limit_jitter: bool = True

    # synthesis
    synthesis_max_retries: int = 3
    synthesis_backoff_base_s: float = 30.0
    synthesis_min_output_chars: int = 20
    stream_checkpoint_every: int = 5

    # provider-side ingestion
    ingestion_poll_interval_s: float = 5.0
    ingestion_timeout_s: float = 600.0


def get_limits() -> Limits:
    s = get_settings()
    return Limits(
        max_concurrent_jobs=max(1, int(s.max_concurrent_jobs)),
        stale_after_minutes=max(0, int(s.stale_after_minutes)),
        queue_retry_after_s=max(0, int(s.queue_retry_after_s)),
        bytes_per_minute_estimate=max(1, int(s.bytes_per_minute_estimate)),
        chunk_minutes=max(1, int(s.chunk_minutes)),
        inter_request_delay_s=max(0.0, float(s.inter_request_delay_s)),
        context_summary_chars=max(0, int(s.context_summary_chars)),
        min_section_chars=max(0, int(s.min_section_chars)),
        rate_limit_cooldown_s=max(0.0, float(s.rate_limit_cooldown_s)),
        rate_limit_cooldown_cap_s=max(0.0, float(s.rate_limit_cooldown_cap_s)),
        chunk_max_rate_limit_retries=max(0, int(s.chunk_max_rate_limit_retries)),
        rate_limit_jitter=bool(s.rate_limit_jitter),
        synthesis_max_retries=max(0, int(s.synthesis_max_retries)),
        synthesis_backoff_base_s=max(0.0, float(s.synthesis_backoff_base_s)),
        synthesis_min_output_chars=max(0, int(s.synthesis_min_output_chars)),
        stream_checkpoint_every=max(1, int(s.stream_checkpoint_every)),
        ingestion_poll_interval_s=max(0.0, float(s.ingestion_poll_interval_s)),
        ingestion_timeout_s=max(0.0, float(s.ingestion_timeout_s)),
    )
