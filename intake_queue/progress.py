"""Run progress derived from item and classification counts."""

from __future__ import annotations

import uuid

import structlog

from intake_queue.store.classification import ClassificationJobStore
from intake_queue.store.items import ItemStore
from intake_queue.store.runs import RunStore

logger = structlog.get_logger()

EMAIL_STAGE_WEIGHT = 0.1
DOWNSTREAM_STAGE_WEIGHT = 0.9


def compute_progress(
    total_messages: int,
    processed_messages: int,
    aux_total: int,
    aux_completed: int,
) -> float:
    """Blend message completion with downstream backlog completion.

    Message processing is the cheap part; most of the wall-clock time goes
    to downstream classification, so it carries most of the weight.  Runs
    without downstream work count message completion for both stages.
    """
    email_ratio = processed_messages / total_messages if total_messages > 0 else 0.0
    if aux_total > 0:
        downstream_ratio = aux_completed / aux_total
    elif total_messages > 0:
        downstream_ratio = email_ratio
    else:
        downstream_ratio = 0.0

    ratio = EMAIL_STAGE_WEIGHT * email_ratio + DOWNSTREAM_STAGE_WEIGHT * downstream_ratio
    return min(1.0, max(0.0, ratio))


class ProgressTracker:
    def __init__(
        self,
        runs: RunStore,
        items: ItemStore,
        jobs: ClassificationJobStore,
    ) -> None:
        self._runs = runs
        self._items = items
        self._jobs = jobs

    async def refresh(self, run_id: uuid.UUID) -> float:
        """Recompute counts and progress for *run_id* and persist them."""
        counts = await self._items.count_by_status(run_id)
        downstream = await self._jobs.counts(run_id)
        progress = compute_progress(
            counts.total,
            counts.processed,
            downstream.total,
            downstream.completed,
        )
        await self._runs.record_progress(
            run_id,
            total_messages=counts.total,
            processed_messages=counts.processed,
            progress=progress,
        )
        logger.debug(
            "progress_recorded",
            run_id=str(run_id),
            total=counts.total,
            processed=counts.processed,
            progress=round(progress, 4),
        )
        return progress

    async def try_refresh(self, run_id: uuid.UUID) -> float | None:
        """:meth:`refresh`, logging instead of raising on failure."""
        try:
            return await self.refresh(run_id)
        except Exception:
            logger.exception("progress_update_failed", run_id=str(run_id))
            return None
