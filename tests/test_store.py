from __future__ import annotations

import pytest

from coach_pipeline.errors import InvalidTransition
from coach_pipeline.jobs.models import JobStage, JobStatus, RequestType, TokenUsageLogEntry, TranscriptSection
from coach_pipeline.providers.pricing import estimate_cost_usd
from tests._helpers.jobs import put_job, stores


def _section(i: int) -> TranscriptSection:
    return TranscriptSection(
        chunk_index=i,
        start_offset_seconds=i * 2700.0,
        end_offset_seconds=(i + 1) * 2700.0,
        title=f"Part {i + 1}",
        content="x" * 60,
        summary="s",
    )


def test_put_get_and_lookup_by_recording() -> None:
    store, _ = stores()
    job = put_job(store, recording_id="rec-1")
    assert store.get(job.id) == store.get_by_recording("rec-1")
    assert store.get("missing") is None
    assert store.get_by_recording("missing") is None


def test_stage_transitions_are_forward_only() -> None:
    store, _ = stores()
    job = put_job(store, stage=JobStage.pending)
    j = store.transition(job.id, JobStage.transcribing)
    assert j.status == JobStatus.processing
    with pytest.raises(InvalidTransition):
        store.transition(job.id, JobStage.pending)
    j = store.transition(job.id, JobStage.analyzing)
    j = store.transition(job.id, JobStage.done)
    assert j.status == JobStatus.done
    with pytest.raises(InvalidTransition):
        store.transition(job.id, JobStage.error)
    with pytest.raises(InvalidTransition):
        store.update(job.id, progress_message="late write")


def test_error_is_reachable_from_any_non_terminal_stage() -> None:
    store, _ = stores()
    for stage in (JobStage.pending, JobStage.transcribing, JobStage.analyzing):
        job = put_job(store, stage=stage)
        j = store.transition(job.id, JobStage.error, error_message="e" * 900)
        assert j.status == JobStatus.error
        assert len(j.error_message or "") == 500


def test_update_rejects_state_fields() -> None:
    store, _ = stores()
    job = put_job(store)
    with pytest.raises(ValueError):
        store.update(job.id, status=JobStatus.done)
    assert store.update("missing", progress_message="x") is None


def test_checkpoint_sections_must_be_contiguous() -> None:
    store, _ = stores()
    job = put_job(store, total_chunks=3)
    j = store.checkpoint_section(job.id, _section(0), transcript_block="## one", message="1/3")
    assert j.completed_chunks == 1
    with pytest.raises(ValueError):
        store.checkpoint_section(job.id, _section(2), transcript_block="## three", message="3/3")
    j = store.checkpoint_section(job.id, _section(1), transcript_block="## two", message="2/3")
    assert [s.chunk_index for s in j.sections] == [0, 1]
    assert j.transcript == "## one\n\n## two"
    assert j.progress_message == "2/3"


def test_checkpoint_beyond_total_chunks_is_rejected() -> None:
    store, _ = stores()
    job = put_job(store, total_chunks=1)
    store.checkpoint_section(job.id, _section(0), transcript_block="", message="")
    with pytest.raises(ValueError):
        store.checkpoint_section(job.id, _section(1), transcript_block="", message="")


def test_token_aggregate_equals_usage_log() -> None:
    store, _ = stores()
    job = put_job(store)
    entries = [
        TokenUsageLogEntry.new(
            job_id=job.id,
            request_type=RequestType.chunk,
            input_tokens=1000 * (i + 1),
            output_tokens=100 * (i + 1),
            model_used="gemini-2.5-flash",
            chunk_index=i,
        )
        for i in range(3)
    ]
    for e in entries:
        j = store.record_usage(e)
        totals = store.usage_totals(job.id)
        assert j.input_tokens == totals["input_tokens"]
        assert j.output_tokens == totals["output_tokens"]
        assert j.total_tokens == j.input_tokens + j.output_tokens == totals["total_tokens"]
    assert store.usage_totals(job.id)["requests"] == 3
    assert [e.chunk_index for e in store.list_usage(job.id)] == [0, 1, 2]
    expected = sum(estimate_cost_usd("gemini-2.5-flash", e.input_tokens, e.output_tokens) for e in entries)
    assert store.get(job.id).estimated_cost_usd == pytest.approx(expected, abs=1e-6)


def test_pricing_per_million_tokens() -> None:
    assert estimate_cost_usd("gemini-2.5-flash", 1_000_000, 1_000_000) == pytest.approx(0.375)
    assert estimate_cost_usd("gemini-3-pro-preview", 1_000_000, 1_000_000) == pytest.approx(14.0)
    # unknown models fall back to the default price
    assert estimate_cost_usd("mystery", 1_000_000, 0) == pytest.approx(0.075)


def test_reopen_terminal_job_starts_new_attempt_and_keeps_tokens() -> None:
    store, _ = stores()
    job = put_job(store, recording_id="rec-r")
    store.record_usage(
        TokenUsageLogEntry.new(
            job_id=job.id,
            request_type=RequestType.chunk,
            input_tokens=500,
            output_tokens=50,
            model_used="gemini-2.5-flash",
        )
    )
    store.checkpoint_section(job.id, _section(0), transcript_block="## one", message="")
    store.transition(job.id, JobStage.error, error_message="boom")

    j = store.create_or_reopen(
        recording_id="rec-r",
        owner_id="user-1",
        file_path="calls/x.mp3",
        duration_seconds=600.0,
        total_chunks=1,
        stage=JobStage.transcribing,
        message="again",
        model_used="gemini-2.5-flash",
    )
    assert j.id == job.id
    assert j.attempt == 2
    assert j.status == JobStatus.processing
    assert j.completed_chunks == 0 and j.sections == [] and j.transcript == ""
    assert j.error_message is None
    assert j.total_tokens == 550 == store.usage_totals(job.id)["total_tokens"]


def test_reopen_refuses_active_job() -> None:
    store, _ = stores()
    put_job(store, recording_id="rec-a")
    with pytest.raises(InvalidTransition):
        store.create_or_reopen(
            recording_id="rec-a",
            owner_id="user-1",
            file_path="calls/x.mp3",
            duration_seconds=60.0,
            total_chunks=1,
            stage=JobStage.pending,
            message="",
            model_used="m",
        )


def test_count_active_ignores_stale_processing_jobs() -> None:
    store, _ = stores()
    put_job(store, stage=JobStage.transcribing, started_minutes_ago=2)
    put_job(store, stage=JobStage.analyzing, started_minutes_ago=40)
    put_job(store, stage=JobStage.pending)
    assert store.count_active(stale_after_minutes=30) == 1


def test_pending_jobs_are_oldest_first_and_claim_is_exclusive() -> None:
    store, _ = stores()
    newer = put_job(store, stage=JobStage.pending, created_minutes_ago=1)
    older = put_job(store, stage=JobStage.pending, created_minutes_ago=5)
    assert [j.id for j in store.pending_jobs()] == [older.id, newer.id]
    assert store.oldest_pending().id == older.id

    claimed = store.claim_pending(older.id, message="go")
    assert claimed is not None
    assert claimed.stage == JobStage.transcribing
    assert claimed.started_at
    assert store.claim_pending(older.id, message="go") is None


def test_delete_job_removes_recording_index() -> None:
    store, _ = stores()
    job = put_job(store, recording_id="rec-d")
    store.delete_job(job.id)
    assert store.get(job.id) is None
    assert store.get_by_recording("rec-d") is None
