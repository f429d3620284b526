"""Time-boxed worker for the downstream classification backlog.

Jobs are created by the ``classified`` pipeline step.  A run whose items
are all processed stays ``running`` until its jobs settle, so progress
does not reach 100% before the slow part is done.
"""

from __future__ import annotations

import abc
import asyncio
import time
import uuid
from collections.abc import Callable
from datetime import timedelta

import structlog
from pydantic import BaseModel

from intake_queue.budget import TimeBudget
from intake_queue.config import ClassificationConfig
from intake_queue.db.models import ClassificationJob
from intake_queue.db.types import utcnow
from intake_queue.finalizer import RunFinalizer
from intake_queue.progress import ProgressTracker
from intake_queue.store.classification import ClassificationJobStore

logger = structlog.get_logger()


class Classifier(abc.ABC):
    """External AI classification of one imported message."""

    @abc.abstractmethod
    async def classify(self, job: ClassificationJob) -> None:
        """Classify the job's message; raise on failure."""
        ...


class ClassificationSliceResult(BaseModel):
    claimed: int = 0
    reclaimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0


def backoff_delay(attempts: int, base: float, ceiling: float) -> float:
    """Seconds to wait before retry number *attempts* (1-based)."""
    return min(ceiling, base * 2 ** max(0, attempts - 1))


class ClassificationWorker:
    def __init__(
        self,
        jobs: ClassificationJobStore,
        classifier: Classifier,
        progress: ProgressTracker,
        finalizer: RunFinalizer,
        config: ClassificationConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._jobs = jobs
        self._classifier = classifier
        self._progress = progress
        self._finalizer = finalizer
        self._config = config
        self._clock = clock

    async def run_slice(self) -> ClassificationSliceResult:
        budget = TimeBudget(
            self._config.soft_limit_seconds,
            self._config.soft_limit_seconds,
            clock=self._clock,
        )
        result = ClassificationSliceResult()
        touched: set[uuid.UUID] = set()
        await self._reclaim_stalled(result, touched)

        async def worker() -> None:
            while budget.remaining() >= self._config.min_remaining_seconds:
                job = await self._jobs.claim_next()
                if job is None:
                    return
                result.claimed += 1
                touched.add(job.run_id)
                await self._run_job(job, result)

        async with asyncio.TaskGroup() as tg:
            for _ in range(self._config.concurrency):
                tg.create_task(worker())

        for run_id in touched:
            await self._progress.try_refresh(run_id)
            await self._finalizer.finish_by_id(run_id)

        if result.claimed or result.reclaimed:
            logger.info("classification_slice_finished", **result.model_dump())
        return result

    async def _run_job(self, job: ClassificationJob, result: ClassificationSliceResult) -> None:
        try:
            await asyncio.wait_for(
                self._classifier.classify(job),
                timeout=self._config.timeout_seconds,
            )
        except Exception as exc:
            await self._record_failure(job, str(exc) or type(exc).__name__, result)
            return

        await self._jobs.mark_succeeded(job.id)
        result.succeeded += 1

    async def _reclaim_stalled(
        self,
        result: ClassificationSliceResult,
        touched: set[uuid.UUID],
    ) -> None:
        """Charge jobs abandoned by a killed invocation one failed attempt."""
        grace = self._config.timeout_seconds + self._config.stall_grace_seconds
        for job in await self._jobs.list_stalled(utcnow() - timedelta(seconds=grace)):
            logger.warning(
                "classification_job_reclaimed",
                job_id=job.id,
                run_id=str(job.run_id),
                started_at=job.last_started_at.isoformat() if job.last_started_at else None,
            )
            result.reclaimed += 1
            touched.add(job.run_id)
            await self._record_failure(job, "worker stopped before finishing", result)

    async def _record_failure(
        self,
        job: ClassificationJob,
        error: str,
        result: ClassificationSliceResult,
    ) -> None:
        attempts = job.attempts + 1
        if attempts >= self._config.max_attempts:
            await self._jobs.mark_failed(job.id, error)
            result.failed += 1
            logger.warning("classification_failed", job_id=job.id, attempts=attempts, error=error)
            return

        delay = backoff_delay(
            attempts,
            self._config.base_backoff_seconds,
            self._config.max_backoff_seconds,
        )
        await self._jobs.mark_retry(job.id, error, utcnow() + timedelta(seconds=delay))
        result.retried += 1
        logger.info(
            "classification_retry_scheduled",
            job_id=job.id,
            attempts=attempts,
            delay_seconds=delay,
            error=error,
        )
