from __future__ import annotations

import math
from dataclasses import dataclass

from coach_pipeline.errors import DuplicateSubmission, RecordingNotFound
from coach_pipeline.jobs.limits import Limits, get_limits
from coach_pipeline.jobs.models import AnalysisJob, JobStage
from coach_pipeline.jobs.recordings import Recording, RecordingStatus, RecordingStore
from coach_pipeline.jobs.store import JobStore
from coach_pipeline.ops import metrics
from coach_pipeline.utils.log import logger

# Rough wall-clock cost of one chunk call on top of the inter-request delay.
_CHUNK_CALL_ESTIMATE_S = 60.0
_SYNTHESIS_ESTIMATE_MIN = 2


@dataclass(frozen=True, slots=True)
class Started:
    job: AnalysisJob
    total_chunks: int
    estimated_minutes: int


@dataclass(frozen=True, slots=True)
class Queued:
    job: AnalysisJob
    position: int
    active_count: int
    max_concurrent: int
    retry_after_seconds: int


def duration_minutes(rec: Recording, *, bytes_per_minute: int) -> float:
    """Known media duration, else a size-based estimate, else 0."""
    if rec.duration_s and float(rec.duration_s) > 0:
        return float(rec.duration_s) / 60.0
    if rec.file_size_bytes and int(rec.file_size_bytes) > 0:
        return int(rec.file_size_bytes) / float(max(1, int(bytes_per_minute)))
    return 0.0


def _norm_path(p: str) -> str:
    return str(p or "").strip().lstrip("/")


def total_chunks_for(minutes: float, *, chunk_minutes: int) -> int:
    return max(1, math.ceil(float(minutes) / float(max(1, int(chunk_minutes)))))


def estimated_processing_minutes(total_chunks: int, limits: Limits) -> int:
    per_chunk_s = float(limits.inter_request_delay_s) + _CHUNK_CALL_ESTIMATE_S
    return int(math.ceil(total_chunks * per_chunk_s / 60.0)) + _SYNTHESIS_ESTIMATE_MIN


class AdmissionController:
    """
    Decide whether a submitted recording starts now or waits in the queue.

    Capacity is the number of recently started `processing` jobs; rows older than
    the staleness window are treated as abandoned and do not hold a slot.
    The capacity check and job creation run under the store's admission lock,
    the same one the chainer takes before promoting a pending job.
    """

    def __init__(
        self,
        store: JobStore,
        recordings: RecordingStore,
        *,
        limits: Limits | None = None,
        model_name: str = "gemini-2.5-flash",
    ) -> None:
        self.store = store
        self.recordings = recordings
        self.limits = limits or get_limits()
        self.model_name = model_name

    def active_count(self) -> int:
        return self.store.count_active(stale_after_minutes=self.limits.stale_after_minutes)

    def submit(self, recording_id: str, *, owner_id: str, file_path: str | None = None) -> Started | Queued:
        """
        `file_path`, when given, must name the recording's own storage path; the job
        always stages the path from the recordings catalog.
        """
        rec = self.recordings.get_owned(recording_id, owner_id)
        if rec is None:
            raise RecordingNotFound(f"recording {recording_id} not found")
        if file_path and _norm_path(file_path) != _norm_path(rec.file_path):
            logger.warning("submit_file_path_mismatch", recording_id=rec.id, owner_id=owner_id)
            raise RecordingNotFound(f"recording {recording_id} not found")
        path = str(rec.file_path)
        lim = self.limits

        with self.store.admission_lock:
            existing = self.store.get_by_recording(rec.id)
            if existing is not None and not existing.is_terminal:
                raise DuplicateSubmission(rec.id, existing.id, existing.status.value)

            minutes = duration_minutes(rec, bytes_per_minute=lim.bytes_per_minute_estimate)
            chunks = total_chunks_for(minutes, chunk_minutes=lim.chunk_minutes)
            active = self.active_count()

            if active < lim.max_concurrent_jobs:
                job = self.store.create_or_reopen(
                    recording_id=rec.id,
                    owner_id=rec.owner_id,
                    file_path=path,
                    duration_seconds=minutes * 60.0,
                    total_chunks=chunks,
                    stage=JobStage.transcribing,
                    message="Starting analysis...",
                    model_used=self.model_name,
                )
                self.recordings.set_status(rec.id, RecordingStatus.processing)
                metrics.jobs_admitted.inc()
                logger.info(
                    "job_admitted",
                    job_id=job.id,
                    recording_id=rec.id,
                    total_chunks=chunks,
                    attempt=job.attempt,
                    active_count=active,
                )
                return Started(
                    job=job,
                    total_chunks=chunks,
                    estimated_minutes=estimated_processing_minutes(chunks, lim),
                )

            pending_ahead = len(self.store.pending_jobs())
            job = self.store.create_or_reopen(
                recording_id=rec.id,
                owner_id=rec.owner_id,
                file_path=path,
                duration_seconds=minutes * 60.0,
                total_chunks=chunks,
                stage=JobStage.pending,
                message="Queued; waiting for a free analysis slot",
                model_used=self.model_name,
            )
        position = active + pending_ahead + 1
        metrics.jobs_queued.inc()
        logger.info(
            "job_queued",
            job_id=job.id,
            recording_id=rec.id,
            position=position,
            active_count=active,
            max_concurrent=lim.max_concurrent_jobs,
        )
        return Queued(
            job=job,
            position=position,
            active_count=active,
            max_concurrent=lim.max_concurrent_jobs,
            retry_after_seconds=lim.queue_retry_after_s,
        )
