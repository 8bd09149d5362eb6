from __future__ import annotations

import random
import re
import time
from collections.abc import Callable

from coach_pipeline.errors import RateLimitError, RateLimitExhausted
from coach_pipeline.jobs.limits import Limits, get_limits
from coach_pipeline.jobs.models import (
    AnalysisJob,
    JobStage,
    RequestType,
    TokenUsageLogEntry,
    TranscriptSection,
    now_utc,
)
from coach_pipeline.jobs.store import JobStore
from coach_pipeline.ops import metrics
from coach_pipeline.providers.base import AnalysisProvider, RemoteFile
from coach_pipeline.stages.prompts import chunk_prompt, clock
from coach_pipeline.text.streaming import StreamAccumulator
from coach_pipeline.utils.log import logger
from coach_pipeline.utils.retry import backoff_delay


def _marker(name: str) -> re.Pattern[str]:
    return re.compile(rf"==={name}===\s*(.*?)(?====|\Z)", re.IGNORECASE | re.DOTALL)


_TITLE_RE = _marker("TITLE")
_TRANSCRIPT_RE = _marker("TRANSCRIPT")
_SUMMARY_RE = _marker("SUMMARY")
_TOPICS_RE = _marker("TOPICS")


def _group(rx: re.Pattern[str], text: str) -> str:
    m = rx.search(text)
    return m.group(1).strip() if m else ""


def parse_chunk_response(
    text: str,
    *,
    chunk_index: int,
    start_seconds: float,
    end_seconds: float,
    min_chars: int = 50,
) -> TranscriptSection | None:
    """
    Parse the marker-delimited chunk format. Returns None when the transcript is too short to trust.
    Without a TRANSCRIPT marker the whole response counts as the transcript.
    """
    raw = text or ""
    content = _group(_TRANSCRIPT_RE, raw) or raw.strip()
    if len(content) < int(min_chars):
        return None
    summary = _group(_SUMMARY_RE, raw) or (content[:200] + "...")
    topics_raw = _group(_TOPICS_RE, raw).strip("[]")
    topics = [t.strip() for t in topics_raw.split(",") if t.strip()]
    return TranscriptSection(
        chunk_index=int(chunk_index),
        start_offset_seconds=float(start_seconds),
        end_offset_seconds=float(end_seconds),
        title=_group(_TITLE_RE, raw) or f"Part {chunk_index + 1}",
        content=content,
        summary=summary,
        topics=topics,
    )


def placeholder_section(chunk_index: int, start_seconds: float, end_seconds: float) -> TranscriptSection:
    return TranscriptSection(
        chunk_index=int(chunk_index),
        start_offset_seconds=float(start_seconds),
        end_offset_seconds=float(end_seconds),
        title=f"Part {chunk_index + 1}",
        content="",
        summary="",
        topics=[],
        failed=True,
    )


def transcript_block(section: TranscriptSection) -> str:
    head = f"## [{clock(section.start_offset_seconds / 60)}] {section.title}"
    body = section.content if not section.failed else "(transcription unavailable)"
    return f"{head}\n\n{body}\n\n---"


def chunk_window(job: AnalysisJob, chunk_index: int, chunk_minutes: int) -> tuple[float, float]:
    span = float(chunk_minutes) * 60.0
    start = chunk_index * span
    end = (chunk_index + 1) * span
    duration = float(job.duration_seconds or 0.0)
    if duration > 0:
        end = min(end, duration)
        start = min(start, end)
    return start, end


class ChunkTranscriber:
    """
    Transcribe a staged recording window by window, checkpointing after every chunk.

    Resumes from `completed_chunks`. Rate limits are retried on the same chunk with
    capped exponential backoff; past the ceiling the run fails with RateLimitExhausted.
    Any other chunk failure leaves a placeholder section so indices stay contiguous.
    """

    def __init__(
        self,
        provider: AnalysisProvider,
        store: JobStore,
        *,
        limits: Limits | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
        chunk_temperature: float = 0.1,
        chunk_max_output_tokens: int = 8192,
    ) -> None:
        self.provider = provider
        self.store = store
        self.limits = limits or get_limits()
        self.sleep = sleep
        self.rand = rand
        self.chunk_temperature = float(chunk_temperature)
        self.chunk_max_output_tokens = int(chunk_max_output_tokens)

    def _progress(self, job_id: str, message: str) -> None:
        self.store.update(job_id, progress_message=message)

    def _previous_summary(self, job: AnalysisJob) -> str:
        for s in reversed(job.sections):
            if not s.failed and s.summary:
                return s.summary[: self.limits.context_summary_chars]
        return ""

    def _cooldown(self, attempt: int) -> float:
        lim = self.limits
        return backoff_delay(
            attempt,
            base=lim.rate_limit_cooldown_s,
            cap=lim.rate_limit_cooldown_cap_s,
            jitter=lim.rate_limit_jitter,
            rand=self.rand,
        )

    def _transcribe_one(
        self, job: AnalysisJob, audio: RemoteFile, idx: int, *, first_call: bool
    ) -> TranscriptSection:
        lim = self.limits
        start, end = chunk_window(job, idx, lim.chunk_minutes)
        prompt = chunk_prompt(
            chunk_index=idx,
            total_chunks=job.total_chunks,
            start_minutes=start / 60,
            end_minutes=end / 60,
            previous_summary=self._previous_summary(job),
        )
        acc = StreamAccumulator(checkpoint_every=lim.stream_checkpoint_every)
        rate_limited = 0
        delay_before_call = not first_call
        while True:
            if delay_before_call:
                self.sleep(lim.inter_request_delay_s)
            delay_before_call = True
            try:
                completion = self.provider.generate(
                    prompt=prompt,
                    audio=audio,
                    temperature=self.chunk_temperature,
                    max_output_tokens=self.chunk_max_output_tokens,
                )
            except RateLimitError as ex:
                metrics.rate_limit_hits.labels(request_type=RequestType.chunk.value).inc()
                if rate_limited >= lim.chunk_max_rate_limit_retries:
                    raise RateLimitExhausted(f"chunk {idx + 1}", rate_limited + 1) from ex
                wait = self._cooldown(rate_limited)
                rate_limited += 1
                logger.warning(
                    "chunk_rate_limited",
                    job_id=job.id,
                    chunk_index=idx,
                    attempt=rate_limited,
                    cooldown_s=round(wait, 2),
                )
                self._progress(
                    job.id,
                    f"Rate limited on chunk {idx + 1} of {job.total_chunks}; retrying in {int(wait)}s",
                )
                self.sleep(wait)
                # The cooldown replaces the inter-request delay for the retry.
                delay_before_call = False
                continue
            except Exception as ex:
                metrics.chunk_failures.inc()
                logger.warning(
                    "chunk_failed",
                    job_id=job.id,
                    chunk_index=idx,
                    error=str(ex)[:200],
                )
                return placeholder_section(idx, start, end)
            break

        result = acc.consume_completion(completion)
        if result.usage is not None:
            self.store.record_usage(
                TokenUsageLogEntry.new(
                    job_id=job.id,
                    request_type=RequestType.chunk,
                    input_tokens=result.usage.input_tokens,
                    output_tokens=result.usage.output_tokens,
                    model_used=self.provider.model,
                    chunk_index=idx,
                )
            )
            metrics.tokens_total.labels(direction="input").inc(result.usage.input_tokens)
            metrics.tokens_total.labels(direction="output").inc(result.usage.output_tokens)
        if result.warning:
            cur = self.store.get(job.id)
            if cur is not None:
                self.store.update(job.id, warnings=[*cur.warnings, f"Chunk {idx + 1}: {result.warning}"])
        section = parse_chunk_response(
            result.text,
            chunk_index=idx,
            start_seconds=start,
            end_seconds=end,
            min_chars=lim.min_section_chars,
        )
        if section is None:
            metrics.chunk_failures.inc()
            logger.warning("chunk_unparseable", job_id=job.id, chunk_index=idx, chars=len(result.text))
            return placeholder_section(idx, start, end)
        return section

    def run(self, job: AnalysisJob, audio: RemoteFile) -> AnalysisJob:
        total = int(job.total_chunks)
        first_call = True
        with metrics.time_hist(metrics.transcription_seconds):
            for idx in range(int(job.completed_chunks), total):
                self._progress(job.id, f"Processing chunk {idx + 1} of {total}...")
                section = self._transcribe_one(job, audio, idx, first_call=first_call)
                first_call = False
                job = self.store.checkpoint_section(
                    job.id,
                    section,
                    transcript_block=transcript_block(section),
                    message=f"Completed chunk {idx + 1} of {total}",
                )
                logger.info(
                    "chunk_checkpointed",
                    job_id=job.id,
                    chunk_index=idx,
                    failed=section.failed,
                    completed_chunks=job.completed_chunks,
                    total_chunks=total,
                )
        failed = sum(1 for s in job.sections if s.failed)
        return self.store.transition(
            job.id,
            JobStage.analyzing,
            transcription_completed_at=now_utc(),
            progress_message=(
                f"Transcribed {total - failed} of {total} chunks; creating final analysis..."
            ),
        )
