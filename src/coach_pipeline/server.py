from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from coach_pipeline import __version__
from coach_pipeline.api.middleware import request_context_middleware
from coach_pipeline.api.routes_analyze import router as analyze_router
from coach_pipeline.config import get_settings
from coach_pipeline.jobs.admission import AdmissionController
from coach_pipeline.jobs.chainer import QueueChainer
from coach_pipeline.jobs.limits import get_limits
from coach_pipeline.jobs.pipeline import AnalysisPipeline
from coach_pipeline.jobs.recordings import RecordingStore
from coach_pipeline.jobs.store import JobStore
from coach_pipeline.jobs.worker import AnalysisWorker
from coach_pipeline.ops.metrics import REGISTRY
from coach_pipeline.providers import get_provider
from coach_pipeline.utils.log import logger


def jobs_db_path() -> Path:
    s = get_settings()
    state_root = Path(s.state_dir).resolve()
    return state_root / str(s.jobs_db_name or "jobs.db")


def open_stores() -> tuple[JobStore, RecordingStore]:
    db = jobs_db_path()
    return JobStore(db), RecordingStore(db)


def build_worker(store: JobStore, recordings: RecordingStore) -> AnalysisWorker:
    s = get_settings()
    limits = get_limits()
    chainer = QueueChainer(store, recordings, limits=limits)
    pipeline = AnalysisPipeline(store, recordings, get_provider, chainer=chainer, limits=limits)
    worker = AnalysisWorker(
        store,
        pipeline,
        chainer,
        concurrency=limits.max_concurrent_jobs,
        scan_interval_s=float(s.queue_scan_interval_s),
    )
    chainer.hand_off = worker.submit
    return worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = get_settings()
    store, recordings = open_stores()
    app.state.job_store = store
    app.state.recordings = recordings
    app.state.admission = AdmissionController(
        store, recordings, limits=get_limits(), model_name=str(s.model_name)
    )
    worker: AnalysisWorker | None = None
    if bool(s.worker_autostart):
        worker = build_worker(store, recordings)
        await worker.start()
    app.state.worker = worker
    logger.info(
        "server_started",
        version=__version__,
        jobs_db=str(jobs_db_path()),
        worker=bool(worker),
        base_url=str(s.app_base_url),
    )
    try:
        yield
    finally:
        if worker is not None:
            await worker.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="coach-pipeline", version=__version__, lifespan=lifespan)
    app.middleware("http")(request_context_middleware)

    s = get_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=s.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    app.include_router(analyze_router)

    @app.get("/health")
    async def health():
        return {"ok": True, "version": __version__}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
