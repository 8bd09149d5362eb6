from __future__ import annotations

import asyncio

from coach_pipeline.jobs.chainer import QueueChainer
from coach_pipeline.jobs.models import JobStatus
from coach_pipeline.jobs.pipeline import AnalysisPipeline
from coach_pipeline.jobs.store import JobStore
from coach_pipeline.utils.log import logger


class AnalysisWorker:
    """
    In-process consumer for admitted jobs.

    HTTP handlers and the chainer only call `submit(job_id)`; worker tasks pull ids
    off an asyncio queue and run the synchronous pipeline in a thread. On start,
    `processing` jobs left by a previous process are re-enqueued and resume from
    their checkpoint. A scan loop promotes pending jobs whenever a slot is free,
    which also covers hand-offs lost to a crash.
    """

    def __init__(
        self,
        store: JobStore,
        pipeline: AnalysisPipeline,
        chainer: QueueChainer,
        *,
        concurrency: int = 1,
        scan_interval_s: float = 5.0,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.chainer = chainer
        self.concurrency = max(1, int(concurrency))
        self.scan_interval_s = max(0.1, float(scan_interval_s))
        self._q: asyncio.Queue[str] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: list[asyncio.Task] = []
        # ids queued or running; a job is never run twice concurrently
        self._inflight: set[str] = set()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._loop = asyncio.get_running_loop()
        self._q = asyncio.Queue()

        # Recover unfinished jobs (durable-ish single node)
        recovered = 0
        for j in self.store.list(limit=100000, status=JobStatus.processing):
            self._enqueue(j.id)
            recovered += 1

        for i in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._worker(), name=f"analysis.worker.{i}"))
        self._tasks.append(asyncio.create_task(self._scan_loop(), name="analysis.worker.scan"))
        logger.info("worker_started", concurrency=self.concurrency, recovered=recovered)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._inflight.clear()
        logger.info("worker_stopped")

    def _enqueue(self, job_id: str) -> None:
        if self._q is None or job_id in self._inflight:
            return
        self._inflight.add(job_id)
        self._q.put_nowait(job_id)

    def submit(self, job_id: str) -> None:
        """Thread-safe, non-blocking hand-off."""
        jid = str(job_id or "").strip()
        if not jid:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            # Not started: start() recovers processing jobs from the store.
            logger.info("worker_submit_deferred", job_id=jid)
            return
        loop.call_soon_threadsafe(self._enqueue, jid)

    async def _worker(self) -> None:
        assert self._q is not None
        while True:
            job_id = await self._q.get()
            try:
                await asyncio.to_thread(self.pipeline.run, job_id)
            except Exception as ex:
                logger.error("worker_job_crashed", job_id=job_id, error=str(ex), exc_info=True)
            finally:
                self._inflight.discard(job_id)
                self._q.task_done()

    async def _scan_loop(self) -> None:
        while True:
            await asyncio.sleep(self.scan_interval_s)
            try:
                await asyncio.to_thread(self.chainer.chain_next)
            except Exception as ex:
                logger.warning("worker_scan_failed", error=str(ex))
