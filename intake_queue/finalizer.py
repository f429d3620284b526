"""Terminal bookkeeping shared by the slice loop, the reaper and the
classification worker.
"""

from __future__ import annotations

import uuid

import structlog

from intake_queue.config import SliceConfig
from intake_queue.db.models import ImportRun
from intake_queue.models import Checkpoint, ItemCounts, RunStatus, SliceStatus
from intake_queue.progress import ProgressTracker
from intake_queue.store.classification import ClassificationJobStore
from intake_queue.store.items import ItemStore
from intake_queue.store.runs import RunStore
from intake_queue.summary import SummaryBuilder

logger = structlog.get_logger()

_TERMINAL_SLICE_STATUS = {
    RunStatus.SUCCEEDED: SliceStatus.SUCCEEDED,
    RunStatus.FAILED: SliceStatus.FAILED,
    RunStatus.CANCELED: SliceStatus.CANCELED,
}


class RunFinalizer:
    def __init__(
        self,
        runs: RunStore,
        items: ItemStore,
        jobs: ClassificationJobStore,
        progress: ProgressTracker,
        summaries: SummaryBuilder,
        config: SliceConfig,
    ) -> None:
        self._runs = runs
        self._items = items
        self._jobs = jobs
        self._progress = progress
        self._summaries = summaries
        self._config = config

    async def finish(self, run: ImportRun) -> SliceStatus:
        """Finalize *run* if nothing is left to do, else say what remains."""
        fresh = await self._runs.get(run.id)
        if fresh is None:
            return SliceStatus.NO_WORK
        if fresh.status != RunStatus.RUNNING:
            return _TERMINAL_SLICE_STATUS.get(RunStatus(fresh.status), SliceStatus.NO_WORK)

        checkpoint = Checkpoint.model_validate(fresh.checkpoint or {})
        counts = await self._items.count_by_status(fresh.id)
        if counts.outstanding or not checkpoint.complete:
            return SliceStatus.CONTINUE

        downstream = await self._jobs.counts(fresh.id)
        if downstream.active:
            logger.info("run_awaiting_downstream", run_id=str(fresh.id), active=downstream.active)
            return SliceStatus.AWAITING_DOWNSTREAM

        return await self._complete(fresh, counts)

    async def finish_by_id(self, run_id: uuid.UUID) -> SliceStatus:
        run = await self._runs.get(run_id)
        if run is None:
            return SliceStatus.NO_WORK
        return await self.finish(run)

    async def _complete(self, run: ImportRun, counts: ItemCounts) -> SliceStatus:
        await self._progress.try_refresh(run.id)
        # An empty mailbox is a successful import of nothing.
        if counts.done > 0 or counts.total == 0:
            status, last_error = RunStatus.SUCCEEDED, None
        else:
            status = RunStatus.FAILED
            last_error = f"All {counts.failed} items failed; see summary for details"

        summary = await self._summaries.build(run)
        if not await self._runs.finalize(run.id, status, summary=summary, last_error=last_error):
            current = await self._runs.get(run.id)
            return _TERMINAL_SLICE_STATUS.get(
                RunStatus(current.status) if current else RunStatus.FAILED,
                SliceStatus.NO_WORK,
            )
        await self.prune(run.job_id)
        return _TERMINAL_SLICE_STATUS[status]

    async def fail(self, run: ImportRun, error: str) -> bool:
        """Force a run to ``failed`` with *error*, attaching what summary we can."""
        summary = await self._summaries.try_build(run)
        finalized = await self._runs.finalize(
            run.id,
            RunStatus.FAILED,
            summary=summary,
            last_error=error[:500],
        )
        if finalized:
            await self.prune(run.job_id)
        return finalized

    async def settle_canceled(self, run: ImportRun) -> bool:
        """Cancel untouched items and write the summary of a canceled run."""
        if run.summary is not None:
            return False
        canceled = await self._items.cancel_pending(run.id)
        counts = await self._items.count_by_status(run.id)
        await self._runs.record_counts(
            run.id,
            total_messages=counts.total,
            processed_messages=counts.processed,
        )
        summary = await self._summaries.try_build(run)
        if summary is None:
            return False
        settled = await self._runs.settle(run.id, summary)
        if settled:
            logger.info("canceled_run_settled", run_id=str(run.id), items_canceled=canceled)
            await self.prune(run.job_id)
        return settled

    async def prune(self, job_id: str) -> None:
        try:
            await self._runs.prune_terminal(job_id, self._config.run_retention)
        except Exception:
            logger.exception("run_prune_failed", job_id=job_id)
