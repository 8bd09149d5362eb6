from __future__ import annotations

import time
import urllib.parse
import urllib.request
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from itsdangerous import URLSafeTimedSerializer  # type: ignore

from coach_pipeline.config import get_settings
from coach_pipeline.errors import IngestionError, ProviderError, StagingError
from coach_pipeline.jobs.limits import Limits, get_limits
from coach_pipeline.jobs.models import AnalysisJob
from coach_pipeline.ops import metrics
from coach_pipeline.providers.base import AnalysisProvider, RemoteFile
from coach_pipeline.utils.log import logger

_STORAGE_SALT = "coach-pipeline-storage"

_MIME_BY_EXT = {
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".mp3": "audio/mpeg",
}


def mime_type_for(file_path: str) -> str:
    ext = PurePosixPath(str(file_path)).suffix.lower()
    return _MIME_BY_EXT.get(ext, "audio/mpeg")


def _serializer() -> URLSafeTimedSerializer:
    s = get_settings()
    return URLSafeTimedSerializer(s.session_secret.get_secret_value(), salt=_STORAGE_SALT)


def _local_path(file_path: str) -> Path:
    root = Path(get_settings().storage_dir).resolve()
    p = (root / str(file_path).lstrip("/")).resolve()
    if root != p and root not in p.parents:
        raise StagingError(f"file path escapes storage root: {file_path}")
    return p


def signed_url(file_path: str) -> str:
    """
    Time-limited URL for a stored recording.

    With STORAGE_BASE_URL set, an HTTP URL carrying an itsdangerous token over the path;
    otherwise a file:// URI under the local storage root.
    """
    s = get_settings()
    base = str(s.storage_base_url or "").strip()
    if base:
        token = _serializer().dumps({"path": str(file_path)})
        quoted = urllib.parse.quote(str(file_path).lstrip("/"))
        return f"{base.rstrip('/')}/{quoted}?token={token}"
    return _local_path(file_path).as_uri()


@dataclass(frozen=True, slots=True)
class StagedAudio:
    remote: RemoteFile
    size_bytes: int
    mime_type: str


class AudioStager:
    """
    Fetch a recording from storage and stage it on the provider side.
    Holds the bytes only until the upload returns.
    """

    def __init__(
        self,
        provider: AnalysisProvider,
        *,
        limits: Limits | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        opener: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self.provider = provider
        self.limits = limits or get_limits()
        self.sleep = sleep
        self.clock = clock
        self.opener = opener

    def download(self, file_path: str) -> bytes:
        url = signed_url(file_path)
        timeout = float(get_settings().download_timeout_s)
        try:
            with self.opener(url, timeout=timeout) as resp:  # nosec B310
                data = resp.read()
        except (OSError, ValueError) as ex:
            raise StagingError(f"failed to download audio file: {ex}") from ex
        if not data:
            raise StagingError("downloaded audio file is empty")
        return bytes(data)

    def wait_until_active(self, remote: RemoteFile) -> RemoteFile:
        deadline = self.clock() + float(self.limits.ingestion_timeout_s)
        cur = remote
        while cur.state == "PROCESSING":
            if self.clock() >= deadline:
                raise IngestionError(
                    f"provider ingestion timed out after {self.limits.ingestion_timeout_s:.0f}s"
                )
            self.sleep(float(self.limits.ingestion_poll_interval_s))
            cur = self.provider.get_file(cur.name)
        if cur.state != "ACTIVE":
            raise IngestionError(f"provider ingestion failed (state={cur.state})")
        return cur

    def stage(self, job: AnalysisJob) -> StagedAudio:
        mime = mime_type_for(job.file_path)
        with metrics.time_hist(metrics.staging_seconds):
            data = self.download(job.file_path)
            size = len(data)
            logger.info("audio_downloaded", job_id=job.id, size_bytes=size, mime_type=mime)
            try:
                remote = self.provider.upload(
                    data,
                    mime_type=mime,
                    display_name=f"{job.recording_id}{PurePosixPath(job.file_path).suffix}",
                )
            except ProviderError as ex:
                raise IngestionError(f"audio upload failed: {ex}") from ex
            del data
            try:
                remote = self.wait_until_active(remote)
            except Exception:
                self.release(remote)
                raise
        logger.info("audio_staged", job_id=job.id, remote_name=remote.name)
        return StagedAudio(remote=remote, size_bytes=size, mime_type=mime)

    def release(self, remote: RemoteFile | None) -> None:
        """Best-effort delete of the provider-side copy."""
        if remote is None or not remote.name:
            return
        with suppress(Exception):
            self.provider.delete_file(remote.name)
            logger.info("audio_released", remote_name=remote.name)
