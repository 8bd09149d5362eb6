from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from sqlitedict import SqliteDict  # type: ignore

from coach_pipeline.jobs.models import new_id, now_utc
from coach_pipeline.utils.log import logger


class RecordingStatus(str, Enum):
    uploaded = "uploaded"
    processing = "processing"
    done = "done"
    error = "error"


@dataclass(slots=True)
class Recording:
    id: str
    owner_id: str
    file_path: str
    status: RecordingStatus = RecordingStatus.uploaded
    duration_s: float | None = None
    file_size_bytes: int | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Recording:
        dd = dict(d)
        dd["status"] = RecordingStatus(str(dd.get("status") or "uploaded"))
        return cls(**dd)


class RecordingStore:
    """
    Recording metadata: owner, storage path, duration and size when known.
    Upload itself happens elsewhere; this store only tracks the resulting records.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _recordings(self) -> SqliteDict:
        return SqliteDict(str(self.db_path), tablename="recordings", autocommit=True)

    def add(
        self,
        *,
        owner_id: str,
        file_path: str,
        duration_s: float | None = None,
        file_size_bytes: int | None = None,
        id: str | None = None,
    ) -> Recording:
        now = now_utc()
        rec = Recording(
            id=str(id or new_id()),
            owner_id=str(owner_id),
            file_path=str(file_path),
            duration_s=(float(duration_s) if duration_s else None),
            file_size_bytes=(int(file_size_bytes) if file_size_bytes else None),
            created_at=now,
            updated_at=now,
        )
        with self._lock, self._recordings() as db:
            db[rec.id] = rec.to_dict()
        logger.info("recording_added", recording_id=rec.id, owner_id=rec.owner_id)
        return rec

    def get(self, id: str) -> Recording | None:
        with self._lock, self._recordings() as db:
            raw = db.get(str(id))
        return Recording.from_dict(raw) if raw is not None else None

    def get_owned(self, id: str, owner_id: str) -> Recording | None:
        """A recording owned by someone else is indistinguishable from a missing one."""
        rec = self.get(id)
        if rec is None or rec.owner_id != str(owner_id):
            return None
        return rec

    def set_status(self, id: str, status: RecordingStatus) -> Recording | None:
        with self._lock, self._recordings() as db:
            raw = db.get(str(id))
            if raw is None:
                return None
            raw = dict(raw)
            raw["status"] = RecordingStatus(status).value
            raw["updated_at"] = now_utc()
            db[str(id)] = raw
        return Recording.from_dict(raw)

    def list(self, owner_id: str | None = None) -> list[Recording]:
        with self._lock, self._recordings() as db:
            items = list(db.values())
        out = [Recording.from_dict(v) for v in items]
        if owner_id:
            out = [r for r in out if r.owner_id == str(owner_id)]
        out.sort(key=lambda r: r.created_at)
        return out
