from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from coach_pipeline.api.deps import (
    Identity,
    current_identity,
    get_admission,
    get_job_store,
    get_recordings,
    get_worker,
)
from coach_pipeline.config import get_settings
from coach_pipeline.errors import DuplicateSubmission, PipelineError, RecordingNotFound
from coach_pipeline.jobs.admission import AdmissionController, Queued
from coach_pipeline.jobs.recordings import RecordingStore
from coach_pipeline.jobs.store import JobStore
from coach_pipeline.jobs.worker import AnalysisWorker
from coach_pipeline.utils.log import logger

router = APIRouter(prefix="/analyze", tags=["analyze"])


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON body") from None
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    return body


@router.post("")
async def submit_analysis(
    request: Request,
    ident: Identity = Depends(current_identity),
    admission: AdmissionController = Depends(get_admission),
    worker: AnalysisWorker | None = Depends(get_worker),
) -> Any:
    body = await _json_body(request)
    recording_id = str(body.get("recordingId") or "").strip()
    file_path = str(body.get("filePath") or "").strip()
    if not recording_id or not file_path:
        raise HTTPException(status_code=400, detail="Missing recordingId or filePath")

    if not get_settings().provider_api_key():
        logger.error("analysis_not_configured", recording_id=recording_id)
        raise HTTPException(status_code=500, detail="Gemini API key not configured")

    try:
        outcome = admission.submit(recording_id, owner_id=ident.user_id, file_path=file_path)
    except RecordingNotFound:
        raise HTTPException(status_code=404, detail="Recording not found") from None
    except DuplicateSubmission as ex:
        raise HTTPException(
            status_code=409,
            detail={"error": str(ex), "analysisId": ex.job_id, "status": ex.status},
        ) from None
    except PipelineError as ex:
        logger.error("analysis_submit_failed", recording_id=recording_id, error=str(ex))
        raise HTTPException(status_code=500, detail="Failed to create analysis") from None

    if isinstance(outcome, Queued):
        return JSONResponse(
            status_code=202,
            content={
                "queued": True,
                "analysisId": outcome.job.id,
                "queuePosition": outcome.position,
                "activeCount": outcome.active_count,
                "maxConcurrent": outcome.max_concurrent,
                "retryAfterSeconds": outcome.retry_after_seconds,
            },
            headers={"Retry-After": str(outcome.retry_after_seconds)},
        )

    if worker is not None:
        worker.submit(outcome.job.id)
    return {
        "analysisId": outcome.job.id,
        "totalChunks": outcome.total_chunks,
        "estimatedMinutes": outcome.estimated_minutes,
    }


@router.get("")
async def analysis_status(
    recordingId: str = "",
    ident: Identity = Depends(current_identity),
    store: JobStore = Depends(get_job_store),
    recordings: RecordingStore = Depends(get_recordings),
) -> dict[str, Any]:
    rid = str(recordingId or "").strip()
    if not rid:
        raise HTTPException(status_code=400, detail="Missing recordingId")
    if recordings.get_owned(rid, ident.user_id) is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    job = store.get_by_recording(rid)
    if job is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return {
        "analysisId": job.id,
        "status": job.status.value,
        "stage": job.stage.value,
        "totalChunks": job.total_chunks,
        "completedChunks": job.completed_chunks,
        "message": job.progress_message,
        "error": job.error_message,
    }


@router.get("/{analysis_id}/report")
async def analysis_report(
    analysis_id: str,
    ident: Identity = Depends(current_identity),
    store: JobStore = Depends(get_job_store),
) -> dict[str, Any]:
    job = store.get(analysis_id)
    if job is None or job.owner_id != ident.user_id:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return job.to_dict()
