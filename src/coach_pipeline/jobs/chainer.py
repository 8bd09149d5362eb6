from __future__ import annotations

from collections.abc import Callable

from coach_pipeline.jobs.limits import Limits, get_limits
from coach_pipeline.jobs.models import AnalysisJob
from coach_pipeline.jobs.recordings import RecordingStatus, RecordingStore
from coach_pipeline.jobs.store import JobStore
from coach_pipeline.utils.log import logger


class QueueChainer:
    """
    Promote the oldest pending job once a slot frees up and hand it to the worker.

    `hand_off(job_id)` must not block on the job; the worker's `submit` only enqueues.
    Called after every terminal transition and periodically by the worker's scan loop.
    """

    def __init__(
        self,
        store: JobStore,
        recordings: RecordingStore,
        *,
        hand_off: Callable[[str], None] | None = None,
        limits: Limits | None = None,
    ) -> None:
        self.store = store
        self.recordings = recordings
        self.hand_off = hand_off
        self.limits = limits or get_limits()

    def chain_next(self) -> AnalysisJob | None:
        with self.store.admission_lock:
            active = self.store.count_active(stale_after_minutes=self.limits.stale_after_minutes)
            if active >= self.limits.max_concurrent_jobs:
                return None
            for cand in self.store.pending_jobs():
                job = self.store.claim_pending(cand.id, message="Starting analysis...")
                if job is None:
                    continue
                self.recordings.set_status(job.recording_id, RecordingStatus.processing)
                logger.info(
                    "job_chained",
                    job_id=job.id,
                    recording_id=job.recording_id,
                    waited_since=job.created_at,
                )
                break
            else:
                return None
        if self.hand_off is not None:
            self.hand_off(job.id)
        return job
