"""Time-boxed slice processor.

One call to :meth:`SliceProcessor.run_slice` is one invocation's worth of
work on the running run: enumerate while the checkpoint says there is more
to discover, then claim and process batches of pending items until the
budget runs out or nothing is left, then decide whether the run is done.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Callable

import structlog

from intake_queue.budget import TimeBudget
from intake_queue.config import SliceConfig
from intake_queue.db.models import ImportItem, ImportRun
from intake_queue.enumerator import Enumerator
from intake_queue.errors import ConfigurationError
from intake_queue.finalizer import RunFinalizer
from intake_queue.models import Checkpoint, ItemStatus, RunStatus, SliceResult, SliceStatus
from intake_queue.processor import ItemProcessor
from intake_queue.progress import ProgressTracker
from intake_queue.providers.base import EmailProvider
from intake_queue.store.items import ItemStore
from intake_queue.store.runs import RunStore

logger = structlog.get_logger()

ProviderFactory = Callable[[ImportRun], EmailProvider]

REQUIRED_RUN_PARAMETERS = ("mailbox", "search_text")


class SliceProcessor:
    def __init__(
        self,
        runs: RunStore,
        items: ItemStore,
        enumerator: Enumerator,
        processor: ItemProcessor,
        progress: ProgressTracker,
        finalizer: RunFinalizer,
        provider_factory: ProviderFactory,
        config: SliceConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runs = runs
        self._items = items
        self._enumerator = enumerator
        self._processor = processor
        self._progress = progress
        self._finalizer = finalizer
        self._provider_factory = provider_factory
        self._config = config
        self._clock = clock

    async def run_slice(self, run_id: uuid.UUID | None = None) -> SliceResult:
        """Work on *run_id* (default: the running run) until done or out of time."""
        budget = TimeBudget(
            self._config.hard_limit_seconds,
            self._config.soft_limit_seconds,
            clock=self._clock,
        )
        run = await (self._runs.get(run_id) if run_id else self._runs.get_running())
        if run is None:
            logger.info("slice_no_work", run_id=str(run_id) if run_id else None)
            return SliceResult(status=SliceStatus.NO_WORK, run_id=run_id)

        with structlog.contextvars.bound_contextvars(run_id=str(run.id), job_id=run.job_id):
            if run.status == RunStatus.CANCELED:
                await self._finalizer.settle_canceled(run)
                return SliceResult(status=SliceStatus.CANCELED, run_id=run.id)
            if run.status != RunStatus.RUNNING:
                logger.info("slice_run_not_running", status=run.status)
                return SliceResult(status=SliceStatus.NO_WORK, run_id=run.id)

            if not await self._runs.acquire_slice_lease(run.id, self._config.hard_limit_seconds):
                logger.info("slice_lease_busy")
                return SliceResult(status=SliceStatus.BUSY, run_id=run.id)

            logger.info("slice_started", attempts=run.attempts)
            try:
                result = await self._work(run, budget)
            finally:
                await self._runs.release_slice_lease(run.id)

            logger.info(
                "slice_finished",
                status=result.status.value,
                processed=result.processed,
                elapsed=round(result.elapsed_seconds, 2),
            )
            return result

    async def _work(self, run: ImportRun, budget: TimeBudget) -> SliceResult:
        processed = 0
        try:
            self._validate(run)
            await self._items.release_abandoned(
                run.id, max_attempts=self._config.max_item_attempts
            )

            async with self._provider_factory(run) as provider:
                if not Checkpoint.model_validate(run.checkpoint or {}).complete:
                    await self._enumerator.run(run, provider, budget)
                processed = await self._process(run, provider, budget)

        except ConfigurationError as exc:
            logger.error("run_configuration_invalid", error=str(exc))
            await self._finalizer.fail(run, str(exc))
            return self._result(run, SliceStatus.FAILED, budget, processed, error=str(exc))

        except Exception as exc:
            logger.exception("slice_failed")
            error = f"Import failed: {exc}"
            await self._finalizer.fail(run, error)
            return self._result(run, SliceStatus.FAILED, budget, processed, error=error)

        current = await self._runs.get(run.id)
        if current is not None and current.status == RunStatus.CANCELED:
            await self._finalizer.settle_canceled(current)
            return self._result(run, SliceStatus.CANCELED, budget, processed)

        status = await self._finalizer.finish(run)
        return self._result(run, status, budget, processed)

    @staticmethod
    def _validate(run: ImportRun) -> None:
        missing = [name for name in REQUIRED_RUN_PARAMETERS if not getattr(run, name)]
        if missing:
            raise ConfigurationError(f"Run is missing required parameters: {', '.join(missing)}")

    @staticmethod
    def _result(
        run: ImportRun,
        status: SliceStatus,
        budget: TimeBudget,
        processed: int,
        error: str | None = None,
    ) -> SliceResult:
        return SliceResult(
            status=status,
            run_id=run.id,
            processed=processed,
            elapsed_seconds=budget.elapsed(),
            error=error,
        )

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    async def _process(self, run: ImportRun, provider: EmailProvider, budget: TimeBudget) -> int:
        allowance = self._config.item_allowance_seconds
        processed = 0

        while True:
            # Cancellation is only observed between batches.
            current = await self._runs.get(run.id)
            if current is None or current.status != RunStatus.RUNNING:
                logger.info("slice_run_left_running", status=current.status if current else None)
                break

            if not budget.can_claim(allowance):
                logger.info("slice_budget_exhausted", elapsed=round(budget.elapsed(), 2))
                break

            batch = await self._items.claim_pending(run.id, self._config.batch_size)
            if not batch:
                break

            processed += await self._run_batch(current, batch, provider, budget)
            await self._items.requeue_transient(run.id, self._config.max_item_attempts)
            await self._progress.try_refresh(run.id)
            await self._runs.heartbeat(run.id)

        return processed

    async def _run_batch(
        self,
        run: ImportRun,
        batch: list[ImportItem],
        provider: EmailProvider,
        budget: TimeBudget,
    ) -> int:
        """Process *batch* with a shared queue and ``concurrency`` workers.

        Workers pull the next item as soon as they finish one, so a slow item
        only holds up its own worker.  Items no worker started before the
        budget ran out go back to ``pending``.
        """
        allowance = self._config.item_allowance_seconds
        queue = deque(batch)
        started: set[int] = set()
        finished = 0

        async def worker() -> None:
            nonlocal finished
            while queue:
                if not budget.can_start(allowance):
                    return
                item = queue.popleft()
                started.add(item.id)
                result = await self._processor.advance_within(run, item, provider, allowance)
                if result.timed_out:
                    await self._charge_timeout(item, allowance)
                else:
                    finished += 1

        async with asyncio.TaskGroup() as tg:
            for _ in range(min(self._config.concurrency, len(batch))):
                tg.create_task(worker())

        unstarted = [item.id for item in batch if item.id not in started]
        if unstarted:
            await self._items.release(unstarted)
            logger.info("unstarted_items_released", count=len(unstarted))

        logger.debug("batch_processed", claimed=len(batch), finished=finished)
        return finished

    async def _charge_timeout(self, item: ImportItem, allowance: float) -> None:
        status = await self._items.record_timeout(
            item.id,
            f"exceeded time allowance of {allowance:g}s",
            max_attempts=self._config.max_item_attempts,
        )
        if status is ItemStatus.FAILED:
            logger.warning(
                "item_failed_time_allowance",
                item_id=item.id,
                external_message_id=item.external_message_id,
            )
