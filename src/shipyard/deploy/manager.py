"""In-memory run manager for the trigger service."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Tuple

import structlog

from shipyard.core.exceptions import ShipyardError
from shipyard.core.models import BUILD_JOB_STAGES, DEPLOY_JOB_STAGES, RunRecord
from shipyard.pipeline import Pipeline

logger = structlog.get_logger()


class RunManager:
    """Queues pipeline runs requested via webhook or /deploy.

    A single worker drains the queue, so runs started by this process
    never touch the remote container slot concurrently.
    """

    def __init__(self, pipeline: Pipeline, max_history: int = 100):
        self.pipeline = pipeline
        self.max_history = max_history

        self.runs: Dict[str, RunRecord] = {}
        self._lock = asyncio.Lock()
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._work())
        logger.info("Run manager started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None
        logger.info("Run manager stopped")

    async def join(self) -> None:
        """Wait until every queued run has finished."""
        if self._queue is not None:
            await self._queue.join()

    def list(self) -> List[RunRecord]:
        return sorted(self.runs.values(), key=lambda r: r.createdAt, reverse=True)

    def get(self, run_id: str) -> Optional[RunRecord]:
        return self.runs.get(run_id)

    def active_for(self, tag: str) -> Optional[RunRecord]:
        for record in self.runs.values():
            if record.tag == tag and record.is_active:
                return record
        return None

    async def submit(self, branch: str, revision: str, trigger: str = "manual") -> Tuple[RunRecord, bool]:
        """Queue a run; returns ``(record, created)``.

        A run whose tag is already pending or running is returned instead of
        queueing a duplicate.
        """
        tag = self.pipeline.tag_for(branch, revision)

        async with self._lock:
            existing = self.active_for(tag)
            if existing is not None:
                logger.info("Run already queued for tag", tag=tag, run_id=existing.run_id)
                return existing, False

            record = RunRecord.create(
                BUILD_JOB_STAGES + DEPLOY_JOB_STAGES,
                trigger=trigger,
                branch=branch,
                revision=revision,
                tag=tag,
            )
            self.runs[record.run_id] = record
            self._trim_history()

        await self.start()
        await self._queue.put(record.run_id)
        logger.info("Run queued", run_id=record.run_id, tag=tag, trigger=trigger, queued=self._queue.qsize())
        return record, True

    def _trim_history(self) -> None:
        finished = [r for r in self.list() if not r.is_active]
        for record in finished[self.max_history:]:
            self.runs.pop(record.run_id, None)

    async def _work(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            run_id = await self._queue.get()
            record = self.runs.get(run_id)
            try:
                if record is not None:
                    logger.info("Run starting", run_id=run_id, tag=record.tag)
                    await loop.run_in_executor(None, self.pipeline.run, record.branch, record.revision, record)
            except ShipyardError as exc:
                # the pipeline already recorded the failure on the run
                logger.info("Run finished with failure", run_id=run_id, error_type=exc.__class__.__name__)
            except Exception:
                logger.exception("Unexpected pipeline error", run_id=run_id)
            finally:
                self._queue.task_done()
