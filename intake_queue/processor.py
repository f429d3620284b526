"""Drives one item through the pipeline steps."""

from __future__ import annotations

import asyncio

import structlog

from intake_queue.db.models import ImportItem, ImportRun
from intake_queue.errors import TransientError
from intake_queue.models import AdvanceResult, ItemStep, StepOutcome
from intake_queue.pipeline import StepContext, StepRegistry
from intake_queue.providers.base import EmailProvider
from intake_queue.store.items import ItemStore

logger = structlog.get_logger()


class ItemProcessor:
    """Advances claimed items step by step.

    Every transition is written before the next handler runs, so an item
    interrupted anywhere resumes at its last completed step.  A failing
    handler fails the item; there is no retry inside the processor.
    """

    def __init__(self, items: ItemStore, registry: StepRegistry) -> None:
        self._items = items
        self._registry = registry

    async def advance(
        self,
        run: ImportRun,
        item: ImportItem,
        provider: EmailProvider,
    ) -> AdvanceResult:
        ctx = StepContext(run=run, item=item, provider=provider)
        current = ItemStep(item.step)

        for next_step in current.following():
            handler = self._registry.get(next_step)
            outcome = StepOutcome.ADVANCE
            if handler is not None:
                try:
                    outcome = await handler.run(ctx)
                except Exception as exc:
                    return await self._fail(item, current, next_step, exc)

            if outcome is StepOutcome.COMPLETE:
                await self._items.mark_done(item.id, next_step)
                logger.debug("item_completed_early", item_id=item.id, step=next_step.value)
                return AdvanceResult(success=True, step=next_step)

            if not await self._items.advance_step(item.id, current, next_step):
                logger.warning(
                    "item_step_conflict",
                    item_id=item.id,
                    expected=current.value,
                    target=next_step.value,
                )
                return AdvanceResult(success=False, step=current, error="step conflict")
            current = next_step

        await self._items.mark_done(item.id, current)
        return AdvanceResult(success=True, step=current)

    async def advance_within(
        self,
        run: ImportRun,
        item: ImportItem,
        provider: EmailProvider,
        allowance: float,
    ) -> AdvanceResult:
        """:meth:`advance` capped at *allowance* seconds.

        An item that runs out of time stays ``processing`` at its last
        persisted step; the caller charges it an attempt and releases it.
        """
        try:
            return await asyncio.wait_for(self.advance(run, item, provider), timeout=allowance)
        except TimeoutError:
            logger.warning("item_time_allowance_exceeded", item_id=item.id, allowance=allowance)
            return AdvanceResult(success=False, step=ItemStep(item.step), timed_out=True)

    async def _fail(
        self,
        item: ImportItem,
        reached: ItemStep,
        attempted: ItemStep,
        exc: Exception,
    ) -> AdvanceResult:
        transient = isinstance(exc, TransientError)
        error = f"{attempted.value}: {exc}" if str(exc) else f"{attempted.value}: {type(exc).__name__}"
        await self._items.mark_failed(item.id, error, transient=transient)
        logger.warning(
            "item_failed",
            item_id=item.id,
            step=attempted.value,
            error=str(exc),
            transient=transient,
        )
        return AdvanceResult(success=False, step=reached, error=error, transient=transient)
