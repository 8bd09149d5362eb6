from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    done = "done"
    error = "error"


class JobStage(str, Enum):
    pending = "pending"
    transcribing = "transcribing"
    analyzing = "analyzing"
    done = "done"
    error = "error"


class RequestType(str, Enum):
    chunk = "chunk"
    synthesis = "synthesis"
    auxiliary = "auxiliary"


TERMINAL_STATUSES = frozenset({JobStatus.done, JobStatus.error})

# Forward order of stages; `error` sits outside the order and is reachable from any non-terminal.
_STAGE_ORDER = {
    JobStage.pending: 0,
    JobStage.transcribing: 1,
    JobStage.analyzing: 2,
    JobStage.done: 3,
}

# Coarse status implied by each stage.
STAGE_STATUS = {
    JobStage.pending: JobStatus.pending,
    JobStage.transcribing: JobStatus.processing,
    JobStage.analyzing: JobStatus.processing,
    JobStage.done: JobStatus.done,
    JobStage.error: JobStatus.error,
}


def now_utc() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def parse_ts(ts: str | None) -> datetime | None:
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    return str(uuid.uuid4())


def stage_transition_allowed(cur: JobStage, nxt: JobStage) -> bool:
    if cur in {JobStage.done, JobStage.error}:
        return False
    if nxt == JobStage.error:
        return True
    return _STAGE_ORDER[nxt] >= _STAGE_ORDER[cur]


def _enum(cls: type[Enum], v: Any) -> Any:
    if isinstance(v, cls):
        return v
    s = str(v)
    if s.startswith(f"{cls.__name__}."):
        s = s.split(".", 1)[1]
    return cls(s)


@dataclass(slots=True)
class TranscriptSection:
    chunk_index: int
    start_offset_seconds: float
    end_offset_seconds: float
    title: str
    content: str
    summary: str
    topics: list[str] = field(default_factory=list)
    # Placeholder for a chunk the provider could not transcribe.
    failed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TranscriptSection:
        dd = dict(d)
        dd.setdefault("topics", [])
        dd.setdefault("failed", False)
        return cls(**dd)


@dataclass(slots=True)
class TokenUsageLogEntry:
    id: str
    job_id: str
    request_type: RequestType
    input_tokens: int
    output_tokens: int
    total_tokens: int
    model_used: str
    created_at: str
    chunk_index: int | None = None

    @classmethod
    def new(
        cls,
        *,
        job_id: str,
        request_type: RequestType,
        input_tokens: int,
        output_tokens: int,
        model_used: str,
        chunk_index: int | None = None,
    ) -> TokenUsageLogEntry:
        i = max(0, int(input_tokens or 0))
        o = max(0, int(output_tokens or 0))
        return cls(
            id=new_id(),
            job_id=str(job_id),
            request_type=request_type,
            input_tokens=i,
            output_tokens=o,
            total_tokens=i + o,
            model_used=str(model_used or ""),
            created_at=now_utc(),
            chunk_index=chunk_index,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["request_type"] = self.request_type.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TokenUsageLogEntry:
        dd = dict(d)
        dd.setdefault("chunk_index", None)
        dd["request_type"] = _enum(RequestType, dd["request_type"])
        return cls(**dd)


@dataclass(slots=True)
class AnalysisJob:
    id: str
    recording_id: str
    owner_id: str
    file_path: str
    status: JobStatus
    stage: JobStage
    created_at: str
    updated_at: str
    total_chunks: int = 0
    completed_chunks: int = 0
    duration_seconds: float = 0.0
    progress_message: str = ""
    transcript: str = ""
    sections: list[TranscriptSection] = field(default_factory=list)
    structured_report: dict[str, Any] | None = None
    title: str = ""
    summary: str = ""
    error_message: str | None = None
    warnings: list[str] = field(default_factory=list)

    # token accounting (lifetime totals across attempts)
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    model_used: str = ""
    estimated_cost_usd: float = 0.0

    attempt: int = 1
    # Store-assigned admission order; breaks created_at ties for FIFO.
    seq: int = 0
    started_at: str | None = None
    transcription_completed_at: str | None = None
    analysis_completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["stage"] = self.stage.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AnalysisJob:
        dd = dict(d)
        # Backwards-compatible defaults for older persisted jobs.
        dd.setdefault("owner_id", "")
        dd.setdefault("file_path", "")
        dd.setdefault("sections", [])
        dd.setdefault("warnings", [])
        dd.setdefault("attempt", 1)
        dd["status"] = _enum(JobStatus, dd["status"])
        dd["stage"] = _enum(JobStage, dd["stage"])
        dd["sections"] = [
            s if isinstance(s, TranscriptSection) else TranscriptSection.from_dict(s)
            for s in (dd.get("sections") or [])
        ]
        return cls(**dd)
