from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from itsdangerous import BadSignature

from coach_pipeline.config import get_settings
from coach_pipeline.errors import IngestionError, StagingError
from coach_pipeline.jobs.limits import Limits
from coach_pipeline.providers.base import RemoteFile
from coach_pipeline.stages.staging import AudioStager, _serializer, mime_type_for, signed_url
from tests._helpers.fakes import ScriptedProvider, Sleeps
from tests._helpers.jobs import put_job, stores, write_audio


def test_mime_type_for() -> None:
    assert mime_type_for("calls/a.WAV") == "audio/wav"
    assert mime_type_for("calls/a.m4a") == "audio/mp4"
    assert mime_type_for("calls/a.webm") == "audio/webm"
    assert mime_type_for("calls/a.mp3") == "audio/mpeg"
    assert mime_type_for("calls/noext") == "audio/mpeg"


def test_local_signed_url_is_file_uri_under_storage_root() -> None:
    url = signed_url("calls/a.mp3")
    assert url.startswith("file://")
    assert url.endswith("/audio-files/calls/a.mp3")


def test_path_traversal_is_rejected() -> None:
    with pytest.raises(StagingError):
        signed_url("../../etc/passwd")


def test_http_signed_url_carries_path_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORAGE_BASE_URL", "https://storage.example/audio/")
    get_settings.cache_clear()
    url = signed_url("calls/a b.mp3")
    parsed = urlparse(url)
    assert parsed.netloc == "storage.example"
    assert parsed.path == "/audio/calls/a%20b.mp3"
    token = parse_qs(parsed.query)["token"][0]
    assert _serializer().loads(token)["path"] == "calls/a b.mp3"
    with pytest.raises(BadSignature):
        _serializer().loads(token + "x")


def test_stage_uploads_and_waits_for_active() -> None:
    store, _ = stores()
    write_audio("calls/s.m4a", size=2048)
    job = put_job(store, file_path="calls/s.m4a")
    provider = ScriptedProvider(file_states=["PROCESSING", "PROCESSING", "ACTIVE"])
    sleeps = Sleeps()
    staged = AudioStager(provider, limits=Limits(), sleep=sleeps).stage(job)
    assert staged.size_bytes == 2048
    assert staged.mime_type == "audio/mp4"
    assert staged.remote.state == "ACTIVE"
    assert sleeps.calls == [5.0, 5.0]
    assert provider.uploads[0]["display_name"] == f"{job.recording_id}.m4a"


def test_ingestion_timeout() -> None:
    ticks = iter([0.0, 0.0, 700.0])
    provider = ScriptedProvider(file_states=["PROCESSING"])
    stager = AudioStager(provider, limits=Limits(), sleep=Sleeps(), clock=lambda: next(ticks))
    with pytest.raises(IngestionError):
        stager.wait_until_active(RemoteFile(name="files/1", uri="u", mime_type="audio/mpeg", state="PROCESSING"))


def test_release_is_best_effort() -> None:
    class _Provider(ScriptedProvider):
        def delete_file(self, name: str) -> None:
            raise RuntimeError("gone")

    stager = AudioStager(_Provider(), limits=Limits())
    stager.release(RemoteFile(name="files/1", uri="u", mime_type="audio/mpeg"))
    stager.release(None)
