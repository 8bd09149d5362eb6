from __future__ import annotations

import threading

import pytest

from coach_pipeline.errors import DuplicateSubmission, RecordingNotFound
from coach_pipeline.jobs.admission import (
    AdmissionController,
    Queued,
    Started,
    estimated_processing_minutes,
    total_chunks_for,
)
from coach_pipeline.jobs.chainer import QueueChainer
from coach_pipeline.jobs.limits import Limits
from coach_pipeline.jobs.models import JobStage, JobStatus
from coach_pipeline.jobs.recordings import RecordingStatus
from coach_pipeline.jobs.store import JobStore
from tests._helpers.jobs import add_recording, put_job, stores


def _controller(**limits):
    store, recs = stores()
    return AdmissionController(store, recs, limits=Limits(**limits)), store, recs


def test_queued_when_slot_is_busy() -> None:
    adm, store, recs = _controller()
    put_job(store, stage=JobStage.transcribing, started_minutes_ago=2)

    second = add_recording(recs)
    out = adm.submit(second.id, owner_id="user-1")
    assert isinstance(out, Queued)
    assert out.active_count == 1
    assert out.max_concurrent == 1
    assert out.position == 2
    assert out.retry_after_seconds == 60
    assert out.job.status == JobStatus.pending
    assert out.job.started_at is None

    third = add_recording(recs)
    out3 = adm.submit(third.id, owner_id="user-1")
    assert isinstance(out3, Queued)
    assert out3.position == 3


def test_stale_processing_job_does_not_hold_the_slot() -> None:
    adm, store, recs = _controller()
    put_job(store, stage=JobStage.transcribing, started_minutes_ago=40)
    rec = add_recording(recs)
    out = adm.submit(rec.id, owner_id="user-1")
    assert isinstance(out, Started)
    assert out.job.stage == JobStage.transcribing
    assert out.job.started_at


def test_started_marks_recording_processing() -> None:
    adm, store, recs = _controller()
    rec = add_recording(recs, duration_min=100)
    out = adm.submit(rec.id, owner_id="user-1")
    assert isinstance(out, Started)
    assert out.total_chunks == 3
    assert out.job.total_chunks == 3
    assert out.job.duration_seconds == pytest.approx(6000.0)
    assert out.estimated_minutes == estimated_processing_minutes(3, Limits())
    assert recs.get(rec.id).status == RecordingStatus.processing
    assert store.get_by_recording(rec.id).id == out.job.id


def test_duplicate_submission_is_rejected() -> None:
    adm, _, recs = _controller()
    rec = add_recording(recs)
    first = adm.submit(rec.id, owner_id="user-1")
    with pytest.raises(DuplicateSubmission) as ei:
        adm.submit(rec.id, owner_id="user-1")
    assert ei.value.job_id == first.job.id
    assert ei.value.status == "processing"


def test_queued_duplicate_is_rejected_too() -> None:
    adm, store, recs = _controller()
    put_job(store, stage=JobStage.transcribing, started_minutes_ago=1)
    rec = add_recording(recs)
    assert isinstance(adm.submit(rec.id, owner_id="user-1"), Queued)
    with pytest.raises(DuplicateSubmission):
        adm.submit(rec.id, owner_id="user-1")


def test_foreign_or_unknown_recording_is_not_found() -> None:
    adm, _, recs = _controller()
    rec = add_recording(recs, owner_id="someone-else")
    with pytest.raises(RecordingNotFound):
        adm.submit(rec.id, owner_id="user-1")
    with pytest.raises(RecordingNotFound):
        adm.submit("nope", owner_id="user-1")


def test_terminal_job_is_reopened_as_new_attempt() -> None:
    adm, store, recs = _controller()
    rec = add_recording(recs)
    first = adm.submit(rec.id, owner_id="user-1")
    store.transition(first.job.id, JobStage.error, error_message="boom")
    again = adm.submit(rec.id, owner_id="user-1")
    assert isinstance(again, Started)
    assert again.job.id == first.job.id
    assert again.job.attempt == 2


def test_chunk_count_falls_back_to_file_size_then_one() -> None:
    adm, _, recs = _controller()
    sized = add_recording(recs, duration_min=None, size_bytes=50 * 1024 * 1024)
    out = adm.submit(sized.id, owner_id="user-1")
    assert out.total_chunks == 2

    adm2, store2, recs2 = _controller(max_concurrent_jobs=5)
    unknown = add_recording(recs2, duration_min=None, size_bytes=None)
    out2 = adm2.submit(unknown.id, owner_id="user-1")
    assert out2.total_chunks == 1


def test_total_chunks_formula() -> None:
    assert total_chunks_for(0, chunk_minutes=45) == 1
    assert total_chunks_for(45, chunk_minutes=45) == 1
    assert total_chunks_for(45.5, chunk_minutes=45) == 2
    assert total_chunks_for(225, chunk_minutes=45) == 5


def test_file_path_must_match_the_owned_recording() -> None:
    adm, store, recs = _controller()
    mine = add_recording(recs, owner_id="user-1")
    theirs = add_recording(recs, owner_id="user-2")
    with pytest.raises(RecordingNotFound):
        adm.submit(mine.id, owner_id="user-1", file_path=theirs.file_path)
    assert store.get_by_recording(mine.id) is None

    out = adm.submit(mine.id, owner_id="user-1", file_path="/" + mine.file_path)
    assert isinstance(out, Started)
    assert out.job.file_path == mine.file_path


def test_admission_and_chainer_share_one_slot() -> None:
    adm, store, recs = _controller()
    waiting = add_recording(recs)
    put_job(store, recording_id=waiting.id, stage=JobStage.pending, created_minutes_ago=5)
    chainer = QueueChainer(store, recs, hand_off=lambda _id: None, limits=adm.limits)
    assert JobStore(store.db_path).admission_lock is store.admission_lock

    fresh = add_recording(recs)
    gate = threading.Barrier(2)
    results: dict[str, object] = {}

    def admit() -> None:
        gate.wait()
        results["admitted"] = adm.submit(fresh.id, owner_id="user-1")

    def chain() -> None:
        gate.wait()
        results["chained"] = chainer.chain_next()

    threads = [threading.Thread(target=admit), threading.Thread(target=chain)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(store.list(status=JobStatus.processing)) == 1
    if isinstance(results["admitted"], Started):
        assert results["chained"] is None
    else:
        assert isinstance(results["admitted"], Queued)
        assert results["chained"] is not None
