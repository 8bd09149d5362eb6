from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from coach_pipeline.errors import EmptyOutputError, ParseError, RateLimitError, RateLimitExhausted
from coach_pipeline.jobs.limits import Limits, get_limits
from coach_pipeline.jobs.models import AnalysisJob, RequestType, TokenUsageLogEntry
from coach_pipeline.jobs.store import JobStore
from coach_pipeline.ops import metrics
from coach_pipeline.providers.base import AnalysisProvider, RemoteFile
from coach_pipeline.stages.prompts import synthesis_prompt
from coach_pipeline.stages.rubric import normalize_report
from coach_pipeline.text.repair import parse_structured
from coach_pipeline.text.streaming import StreamAccumulator, StreamResult
from coach_pipeline.utils.log import logger
from coach_pipeline.utils.retry import retry_call


class Synthesizer:
    """
    Turn the accumulated sections into the scored coaching report.

    One streaming JSON call, retried only on rate limits. Empty output and anything
    the repairer cannot rescue are fatal for the job.
    """

    def __init__(
        self,
        provider: AnalysisProvider,
        store: JobStore,
        *,
        limits: Limits | None = None,
        sleep: Callable[[float], None] = time.sleep,
        temperature: float = 0.3,
        max_output_tokens: int = 65536,
        include_audio: bool = True,
        jitter: bool = False,
    ) -> None:
        self.provider = provider
        self.store = store
        self.limits = limits or get_limits()
        self.sleep = sleep
        self.temperature = float(temperature)
        self.max_output_tokens = int(max_output_tokens)
        self.include_audio = bool(include_audio)
        self.jitter = bool(jitter)

    def _stream_once(self, job: AnalysisJob, prompt: str, audio: RemoteFile | None) -> StreamResult:
        acc = StreamAccumulator(
            checkpoint_every=self.limits.stream_checkpoint_every,
            on_checkpoint=lambda msg: self.store.update(job.id, progress_message=msg),
            label="Creating final analysis",
        )
        return acc.consume(
            self.provider.generate_stream(
                prompt=prompt,
                audio=audio,
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
                json_mode=True,
            )
        )

    def _on_rate_limit(self, job: AnalysisJob) -> Callable[[int, float, BaseException], None]:
        def _cb(attempt: int, delay: float, ex: BaseException) -> None:
            metrics.rate_limit_hits.labels(request_type=RequestType.synthesis.value).inc()
            logger.warning(
                "synthesis_rate_limited",
                job_id=job.id,
                attempt=attempt,
                backoff_s=round(delay, 2),
            )
            self.store.update(job.id, progress_message=f"Rate limited; retrying analysis in {int(delay)}s")

        return _cb

    def run(self, job: AnalysisJob, audio: RemoteFile | None = None) -> dict[str, Any]:
        lim = self.limits
        prompt = synthesis_prompt(job.sections, duration_minutes=float(job.duration_seconds or 0) / 60)
        use_audio = audio if self.include_audio else None
        self.store.update(job.id, progress_message="Creating final analysis...")

        with metrics.time_hist(metrics.synthesis_seconds):
            try:
                result: StreamResult = retry_call(
                    lambda: self._stream_once(job, prompt, use_audio),
                    retries=lim.synthesis_max_retries,
                    base=lim.synthesis_backoff_base_s,
                    cap=None,
                    jitter=self.jitter,
                    retry_on=(RateLimitError,),
                    sleep=self.sleep,
                    on_retry=self._on_rate_limit(job),
                )
            except RateLimitError as ex:
                metrics.rate_limit_hits.labels(request_type=RequestType.synthesis.value).inc()
                raise RateLimitExhausted("synthesis", lim.synthesis_max_retries + 1) from ex

        if result.usage is not None:
            self.store.record_usage(
                TokenUsageLogEntry.new(
                    job_id=job.id,
                    request_type=RequestType.synthesis,
                    input_tokens=result.usage.input_tokens,
                    output_tokens=result.usage.output_tokens,
                    model_used=self.provider.model,
                )
            )
            metrics.tokens_total.labels(direction="input").inc(result.usage.input_tokens)
            metrics.tokens_total.labels(direction="output").inc(result.usage.output_tokens)
        if result.warning:
            cur = self.store.get(job.id)
            if cur is not None:
                self.store.update(job.id, warnings=[*cur.warnings, f"Synthesis: {result.warning}"])

        text = result.text.strip()
        logger.info(
            "synthesis_received",
            job_id=job.id,
            chars=len(text),
            fragments=result.fragments,
            stop_reason=result.stop_reason,
        )
        if len(text) < lim.synthesis_min_output_chars:
            raise EmptyOutputError(
                f"Model returned empty output ({len(text)} chars, stop_reason={result.stop_reason})"
            )
        parsed = parse_structured(text)
        if not isinstance(parsed, dict):
            raise ParseError(f"expected a JSON object, got {type(parsed).__name__}", raw=text)
        return normalize_report(parsed)
