from __future__ import annotations

import threading
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from sqlitedict import SqliteDict  # type: ignore

from coach_pipeline.errors import InvalidTransition
from coach_pipeline.jobs.models import (
    STAGE_STATUS,
    AnalysisJob,
    JobStage,
    JobStatus,
    TokenUsageLogEntry,
    TranscriptSection,
    new_id,
    now_utc,
    parse_ts,
    stage_transition_allowed,
)
from coach_pipeline.providers.pricing import estimate_cost_usd
from coach_pipeline.utils.log import logger

ERROR_MESSAGE_MAX = 500

# One admission lock per database file, shared by every JobStore opened on it.
_ADMISSION_LOCKS: dict[str, threading.Lock] = {}
_ADMISSION_LOCKS_GUARD = threading.Lock()


def _admission_lock_for(db_path: Path) -> threading.Lock:
    key = str(Path(db_path).resolve())
    with _ADMISSION_LOCKS_GUARD:
        return _ADMISSION_LOCKS.setdefault(key, threading.Lock())


class JobStore:
    """
    Persisted AnalysisJob records plus the append-only token usage log.

    Tables (one sqlite file):
    - jobs: job_id -> AnalysisJob dict
    - job_by_recording: recording_id -> job_id (one job per recording)
    - token_usage: entry_id -> TokenUsageLogEntry dict
    - meta: counters

    Every write goes through `self._lock`; the pipeline is effectively single-writer per job,
    so fields are last-writer-wins.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        # Held across "count active, then start or claim" by admission and the chainer.
        self.admission_lock = _admission_lock_for(db_path)
        # Ensure tables exist before the first read.
        for opener in (self._jobs, self._by_recording, self._usage, self._meta):
            with opener():
                pass

    def _jobs(self) -> SqliteDict:
        # Open/close per operation (safe + avoids cross-thread SQLite handle issues)
        return SqliteDict(str(self.db_path), tablename="jobs", autocommit=True)

    def _by_recording(self) -> SqliteDict:
        return SqliteDict(str(self.db_path), tablename="job_by_recording", autocommit=True)

    def _usage(self) -> SqliteDict:
        return SqliteDict(str(self.db_path), tablename="token_usage", autocommit=True)

    def _meta(self) -> SqliteDict:
        return SqliteDict(str(self.db_path), tablename="meta", autocommit=True)

    def _next_seq(self) -> int:
        with self._meta() as db:
            n = int(db.get("job_seq") or 0) + 1
            db["job_seq"] = n
        return n

    # --- basic CRUD ---
    def put(self, job: AnalysisJob) -> None:
        with self._lock:
            if not job.seq:
                job.seq = self._next_seq()
            raw = job.to_dict()
            with self._jobs() as db:
                db[job.id] = raw
            with self._by_recording() as idx:
                idx[job.recording_id] = job.id

    def get(self, id: str) -> AnalysisJob | None:
        with self._lock, self._jobs() as db:
            raw = db.get(str(id))
        if raw is None:
            return None
        return _from_raw(raw)

    def get_by_recording(self, recording_id: str) -> AnalysisJob | None:
        with self._lock:
            with self._by_recording() as idx:
                jid = idx.get(str(recording_id))
            if not jid:
                return None
            return self.get(jid)

    def _update_raw(self, id: str, fields: dict[str, Any], *, allow_terminal: bool) -> AnalysisJob:
        with self._jobs() as db:
            raw = db.get(str(id))
            if raw is None:
                raise KeyError(id)
            raw = dict(raw)
            if not allow_terminal and str(raw.get("status")) in {"done", "error"}:
                raise InvalidTransition(f"job {id} is terminal ({raw.get('status')})")
            for k, v in list(fields.items()):
                if isinstance(v, (JobStatus, JobStage)):
                    fields[k] = v.value
                elif k == "sections":
                    fields[k] = [s.to_dict() if isinstance(s, TranscriptSection) else dict(s) for s in v]
            raw.update(fields)
            raw["updated_at"] = now_utc()
            db[str(id)] = raw
        return _from_raw(raw)

    def update(self, id: str, **fields: Any) -> AnalysisJob | None:
        """
        Patch non-state fields of a non-terminal job.
        Returns None for unknown ids; raises InvalidTransition on a terminal job.
        """
        if "status" in fields or "stage" in fields:
            raise ValueError("use transition() to change status/stage")
        with self._lock:
            try:
                return self._update_raw(id, fields, allow_terminal=False)
            except KeyError:
                return None

    def transition(self, id: str, stage: JobStage, **fields: Any) -> AnalysisJob:
        """
        Move a job to `stage` (status follows the stage).
        Forward-only; `error` reachable from any non-terminal stage; terminal stages are final.
        """
        with self._lock:
            cur = self.get(id)
            if cur is None:
                raise KeyError(id)
            if not stage_transition_allowed(cur.stage, stage):
                raise InvalidTransition(f"job {id}: {cur.stage.value} -> {stage.value} not allowed")
            fields = dict(fields)
            fields["stage"] = stage
            fields["status"] = STAGE_STATUS[stage]
            if "error_message" in fields and fields["error_message"] is not None:
                fields["error_message"] = str(fields["error_message"])[:ERROR_MESSAGE_MAX]
            job = self._update_raw(id, fields, allow_terminal=False)
        logger.info(
            "job_transition",
            job_id=str(id),
            from_stage=cur.stage.value,
            to_stage=stage.value,
            status=job.status.value,
        )
        return job

    def delete_job(self, id: str) -> None:
        if not id:
            return
        with self._lock:
            job = self.get(id)
            with self._jobs() as db, suppress(KeyError):
                del db[str(id)]
            if job is not None:
                with self._by_recording() as idx:
                    if idx.get(job.recording_id) == str(id):
                        del idx[job.recording_id]

    def list(self, limit: int = 1000, status: JobStatus | str | None = None) -> list[AnalysisJob]:
        with self._lock, self._jobs() as db:
            items = list(db.values())
        jobs = [_from_raw(v) for v in items]
        if status:
            st = JobStatus(status.value if isinstance(status, JobStatus) else str(status))
            jobs = [j for j in jobs if j.status == st]
        jobs.sort(key=lambda j: (j.created_at, _seq(j)), reverse=True)
        return jobs[: max(0, int(limit))]

    # --- admission support ---
    def create_or_reopen(
        self,
        *,
        recording_id: str,
        owner_id: str,
        file_path: str,
        duration_seconds: float,
        total_chunks: int,
        stage: JobStage,
        message: str,
        model_used: str,
    ) -> AnalysisJob:
        """
        Create the recording's job, or start a new attempt on its terminal job.
        Token totals carry over so they always equal the sum of the job's usage log.
        """
        if stage not in {JobStage.pending, JobStage.transcribing}:
            raise ValueError(f"cannot admit a job into stage {stage.value}")
        now = now_utc()
        started_at = now if stage == JobStage.transcribing else None
        with self._lock:
            cur = self.get_by_recording(recording_id)
            if cur is not None and not cur.is_terminal:
                raise InvalidTransition(f"job {cur.id} for recording {recording_id} is still active")
            if cur is None:
                job = AnalysisJob(
                    id=new_id(),
                    recording_id=str(recording_id),
                    owner_id=str(owner_id),
                    file_path=str(file_path),
                    status=STAGE_STATUS[stage],
                    stage=stage,
                    created_at=now,
                    updated_at=now,
                    total_chunks=int(total_chunks),
                    duration_seconds=float(duration_seconds),
                    progress_message=message,
                    model_used=model_used,
                    started_at=started_at,
                )
                self.put(job)
                return job
            fields: dict[str, Any] = {
                "owner_id": str(owner_id),
                "file_path": str(file_path),
                "status": STAGE_STATUS[stage],
                "stage": stage,
                "created_at": now,
                "seq": self._next_seq(),
                "total_chunks": int(total_chunks),
                "completed_chunks": 0,
                "duration_seconds": float(duration_seconds),
                "progress_message": message,
                "transcript": "",
                "sections": [],
                "structured_report": None,
                "title": "",
                "summary": "",
                "error_message": None,
                "warnings": [],
                "model_used": model_used,
                "attempt": int(cur.attempt) + 1,
                "started_at": started_at,
                "transcription_completed_at": None,
                "analysis_completed_at": None,
            }
            return self._update_raw(cur.id, fields, allow_terminal=True)

    def count_active(self, *, stale_after_minutes: int, now: datetime | None = None) -> int:
        """
        Count processing jobs that started within the staleness window.
        Older ones are assumed to belong to a crashed worker and do not hold a slot.
        """
        now = now or datetime.now(tz=timezone.utc)
        cutoff = now - timedelta(minutes=max(0, int(stale_after_minutes)))
        n = 0
        for j in self.list(limit=100000, status=JobStatus.processing):
            ts = parse_ts(j.started_at or j.created_at)
            if ts is not None and ts >= cutoff:
                n += 1
        return n

    def pending_jobs(self) -> list[AnalysisJob]:
        """Pending jobs, oldest first."""
        jobs = self.list(limit=100000, status=JobStatus.pending)
        jobs.sort(key=lambda j: (j.created_at, _seq(j)))
        return jobs

    def oldest_pending(self) -> AnalysisJob | None:
        jobs = self.pending_jobs()
        return jobs[0] if jobs else None

    def claim_pending(self, id: str, *, message: str) -> AnalysisJob | None:
        """
        Atomically flip a pending job to processing/transcribing.
        Returns None when the job is gone or no longer pending (someone else claimed it).
        """
        with self._lock:
            cur = self.get(id)
            if cur is None or cur.status != JobStatus.pending:
                return None
            return self.transition(
                id,
                JobStage.transcribing,
                started_at=now_utc(),
                progress_message=message,
            )

    # --- transcription checkpoints ---
    def checkpoint_section(
        self,
        id: str,
        section: TranscriptSection,
        *,
        transcript_block: str,
        message: str,
    ) -> AnalysisJob:
        """
        Persist one finished chunk: append the section, extend the transcript, bump completed_chunks.
        Chunk indices must arrive in order without duplicates.
        """
        with self._lock:
            cur = self.get(id)
            if cur is None:
                raise KeyError(id)
            if cur.is_terminal:
                raise InvalidTransition(f"job {id} is terminal")
            expected = len(cur.sections)
            if int(section.chunk_index) != expected:
                raise ValueError(
                    f"job {id}: chunk {section.chunk_index} out of order (expected {expected})"
                )
            if int(section.chunk_index) >= int(cur.total_chunks):
                raise ValueError(f"job {id}: chunk {section.chunk_index} >= total {cur.total_chunks}")
            sections = list(cur.sections) + [section]
            transcript = cur.transcript
            if transcript_block:
                transcript = (transcript + "\n\n" + transcript_block) if transcript else transcript_block
            return self._update_raw(
                id,
                {
                    "sections": sections,
                    "transcript": transcript,
                    "completed_chunks": max(int(cur.completed_chunks), len(sections)),
                    "progress_message": message,
                },
                allow_terminal=False,
            )

    # --- token accounting ---
    def record_usage(self, entry: TokenUsageLogEntry) -> AnalysisJob:
        """
        Append a usage row and fold it into the job's aggregate under one lock,
        so readers never observe one without the other.
        """
        with self._lock:
            cur = self.get(entry.job_id)
            if cur is None:
                raise KeyError(entry.job_id)
            with self._usage() as db:
                db[entry.id] = entry.to_dict()
            cost = estimate_cost_usd(entry.model_used, entry.input_tokens, entry.output_tokens)
            return self._update_raw(
                entry.job_id,
                {
                    "input_tokens": int(cur.input_tokens) + int(entry.input_tokens),
                    "output_tokens": int(cur.output_tokens) + int(entry.output_tokens),
                    "total_tokens": int(cur.total_tokens) + int(entry.total_tokens),
                    "estimated_cost_usd": round(float(cur.estimated_cost_usd) + cost, 6),
                    "model_used": entry.model_used or cur.model_used,
                },
                allow_terminal=True,
            )

    def list_usage(self, job_id: str | None = None) -> list[TokenUsageLogEntry]:
        with self._lock, self._usage() as db:
            items = list(db.values())
        out = [TokenUsageLogEntry.from_dict(v) for v in items]
        if job_id:
            out = [e for e in out if e.job_id == str(job_id)]
        out.sort(key=lambda e: e.created_at)
        return out

    def usage_totals(self, job_id: str) -> dict[str, int]:
        entries = self.list_usage(job_id)
        return {
            "input_tokens": sum(e.input_tokens for e in entries),
            "output_tokens": sum(e.output_tokens for e in entries),
            "total_tokens": sum(e.total_tokens for e in entries),
            "requests": len(entries),
        }


def _seq(j: AnalysisJob) -> int:
    return int(j.seq or 0)


def _from_raw(raw: dict[str, Any]) -> AnalysisJob:
    return AnalysisJob.from_dict(raw)
