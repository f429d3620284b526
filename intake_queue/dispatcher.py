"""Dispatcher and reaper: the only entry points a trigger needs.

Both are stateless and safe to call from several invocations at once;
correctness comes from the run store's conditional updates, not from
anything held in memory here.
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import structlog

from intake_queue.config import SliceConfig
from intake_queue.db.types import utcnow
from intake_queue.finalizer import RunFinalizer
from intake_queue.models import DispatchAction, DispatchResult, SliceResult, SliceStatus
from intake_queue.scheduler import SliceProcessor
from intake_queue.store.runs import RunStore
from intake_queue.trigger import Trigger

logger = structlog.get_logger()

_RUN_ENDED = {SliceStatus.SUCCEEDED, SliceStatus.FAILED, SliceStatus.CANCELED}


class Dispatcher:
    def __init__(
        self,
        runs: RunStore,
        slices: SliceProcessor,
        finalizer: RunFinalizer,
        trigger: Trigger,
    ) -> None:
        self._runs = runs
        self._slices = slices
        self._finalizer = finalizer
        self._trigger = trigger

    async def dispatch(self) -> DispatchResult:
        """Make sure the queue head is running and give it one slice.

        With a run already ``running`` nothing is promoted; that run gets a
        continuation slice instead (its slice lease turns overlapping calls
        into ``busy`` no-ops).
        """
        running = await self._runs.get_running()
        if running is not None:
            result = await self._slices.run_slice(running.id)
            await self._chain(result)
            return DispatchResult(
                action=DispatchAction.CONTINUING,
                run_id=running.id,
                slice=result,
            )

        if await self._runs.next_enqueued() is None:
            logger.debug("dispatch_no_work")
            return DispatchResult(action=DispatchAction.NO_WORK)

        promoted = await self._runs.promote_oldest_enqueued()
        if promoted is None:
            return DispatchResult(action=DispatchAction.RACE_LOST)

        result = await self._slices.run_slice(promoted.id)
        await self._chain(result)
        return DispatchResult(
            action=DispatchAction.DISPATCHED,
            run_id=promoted.id,
            slice=result,
        )

    async def _chain(self, result: SliceResult) -> None:
        """Request the next dispatcher pass when there is more to do right away."""
        if result.status is SliceStatus.CONTINUE:
            await self._trigger.fire("continue", result.run_id)
        elif result.status in _RUN_ENDED and await self._runs.next_enqueued() is not None:
            await self._trigger.fire("next_run", result.run_id)

    async def settle_canceled(self) -> list[uuid.UUID]:
        """Write summaries for canceled runs no slice has settled yet."""
        settled = []
        for run in await self._runs.list_unsettled_canceled():
            if await self._finalizer.settle_canceled(run):
                settled.append(run.id)
        return settled


class Reaper:
    def __init__(self, runs: RunStore, finalizer: RunFinalizer, config: SliceConfig) -> None:
        self._runs = runs
        self._finalizer = finalizer
        self._config = config

    async def sweep_stale(self, threshold: timedelta | None = None) -> list[uuid.UUID]:
        """Fail ``running`` runs with no slice activity for *threshold*.

        A gap that long means the slice chain broke (killed invocation, lost
        trigger); failing the run frees the global slot for the queue.
        """
        threshold = threshold or timedelta(seconds=self._config.stale_after_seconds)
        cutoff = utcnow() - threshold
        reaped: list[uuid.UUID] = []

        for run in await self._runs.list_stale(cutoff):
            last_seen = run.heartbeat_at or run.started_at
            error = (
                f"Run stalled: no slice activity since "
                f"{last_seen.isoformat() if last_seen else 'start'} "
                f"(threshold {int(threshold.total_seconds())}s); marked failed by reaper"
            )
            if await self._finalizer.fail(run, error):
                reaped.append(run.id)
                logger.warning(
                    "stale_run_reaped",
                    run_id=str(run.id),
                    job_id=run.job_id,
                    last_seen=last_seen.isoformat() if last_seen else None,
                )
        return reaped
