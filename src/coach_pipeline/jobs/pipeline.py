from __future__ import annotations

import random
import time
from collections.abc import Callable
from contextlib import suppress

from coach_pipeline.config import get_settings
from coach_pipeline.errors import InvalidTransition, ParseError
from coach_pipeline.jobs.chainer import QueueChainer
from coach_pipeline.jobs.limits import Limits, get_limits
from coach_pipeline.jobs.models import AnalysisJob, JobStage, now_utc
from coach_pipeline.jobs.recordings import RecordingStatus, RecordingStore
from coach_pipeline.jobs.store import ERROR_MESSAGE_MAX, JobStore
from coach_pipeline.ops import metrics
from coach_pipeline.providers.base import AnalysisProvider
from coach_pipeline.stages.rubric import report_summary, report_title
from coach_pipeline.stages.staging import AudioStager, StagedAudio
from coach_pipeline.stages.synthesis import Synthesizer
from coach_pipeline.stages.transcription import ChunkTranscriber
from coach_pipeline.utils.log import logger, set_job_id


class AnalysisPipeline:
    """
    staging -> chunked transcription -> synthesis -> finalize, for one job.

    Resumable: transcription continues from `completed_chunks` and a job already in
    `analyzing` skips straight to synthesis. Every failure converges in `_fail`.
    The chainer runs after the job settles, whichever way it ended.
    """

    def __init__(
        self,
        store: JobStore,
        recordings: RecordingStore,
        provider_factory: Callable[[], AnalysisProvider],
        *,
        chainer: QueueChainer | None = None,
        limits: Limits | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.recordings = recordings
        self.provider_factory = provider_factory
        self.chainer = chainer
        self.limits = limits or get_limits()
        self.sleep = sleep
        self.rand = rand

    def run(self, job_id: str) -> AnalysisJob | None:
        job = self.store.get(job_id)
        if job is None or job.is_terminal or job.stage == JobStage.pending:
            logger.info("pipeline_skip", job_id=job_id, stage=(job.stage.value if job else None))
            return job
        set_job_id(job.id)
        s = get_settings()
        stager: AudioStager | None = None
        staged: StagedAudio | None = None
        try:
            provider = self.provider_factory()
            stager = AudioStager(provider, limits=self.limits, sleep=self.sleep)
            self.store.update(job.id, progress_message="Preparing audio...")
            staged = stager.stage(job)
            job = self.store.get(job.id) or job

            if job.stage == JobStage.transcribing:
                job = ChunkTranscriber(
                    provider,
                    self.store,
                    limits=self.limits,
                    sleep=self.sleep,
                    rand=self.rand,
                    chunk_temperature=float(s.chunk_temperature),
                    chunk_max_output_tokens=int(s.chunk_max_output_tokens),
                ).run(job, staged.remote)

            report = Synthesizer(
                provider,
                self.store,
                limits=self.limits,
                sleep=self.sleep,
                temperature=float(s.synthesis_temperature),
                max_output_tokens=int(s.synthesis_max_output_tokens),
                include_audio=bool(s.synthesis_include_audio),
                jitter=self.limits.rate_limit_jitter,
            ).run(job, staged.remote)

            job = self.store.transition(
                job.id,
                JobStage.done,
                structured_report=report,
                title=report_title(report),
                summary=report_summary(report),
                analysis_completed_at=now_utc(),
                progress_message="Analysis complete!",
            )
            self.recordings.set_status(job.recording_id, RecordingStatus.done)
            metrics.jobs_finished.labels(state="done").inc()
            logger.info(
                "job_done",
                job_id=job.id,
                total_tokens=job.total_tokens,
                estimated_cost_usd=job.estimated_cost_usd,
                warnings=len(job.warnings),
            )
        except Exception as ex:
            job = self._fail(job, ex)
        finally:
            if stager is not None and staged is not None:
                stager.release(staged.remote)
            set_job_id(None)

        if self.chainer is not None:
            try:
                self.chainer.chain_next()
            except Exception as ex:
                logger.error("chain_next_failed", job_id=job_id, error=str(ex))
        return job

    def _fail(self, job: AnalysisJob, ex: Exception) -> AnalysisJob:
        job = self.store.get(job.id) or job
        stage = job.stage.value
        fields: dict[str, object] = {}
        if isinstance(ex, ParseError):
            fields.update(ex.diagnostic())
        logger.error(
            "job_failed",
            job_id=job.id,
            stage=stage,
            error_type=type(ex).__name__,
            error=str(ex)[:ERROR_MESSAGE_MAX],
            exc_info=not isinstance(ex, ParseError),
            **fields,
        )
        metrics.job_errors.labels(stage=stage).inc()
        metrics.jobs_finished.labels(state="error").inc()
        msg = f"{type(ex).__name__}: {ex}" if str(ex) else type(ex).__name__
        out = job
        with suppress(InvalidTransition, KeyError):
            out = self.store.transition(
                job.id,
                JobStage.error,
                error_message=msg[:ERROR_MESSAGE_MAX],
                progress_message="Analysis failed",
            )
        with suppress(Exception):
            self.recordings.set_status(job.recording_id, RecordingStatus.error)
        return out
