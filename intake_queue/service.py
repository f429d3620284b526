"""Wires the stores, the slice machinery and the triggers together.

:class:`ImportService` is what the HTTP surface and the cron entry points
talk to; nothing outside this module constructs the components directly.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intake_queue.classification import ClassificationSliceResult, ClassificationWorker, Classifier
from intake_queue.config import AppConfig
from intake_queue.db.models import ImportRun
from intake_queue.dispatcher import Dispatcher, Reaper
from intake_queue.enumerator import Enumerator
from intake_queue.errors import ConfigurationError, RunNotFound
from intake_queue.finalizer import RunFinalizer
from intake_queue.models import DispatchResult, RunSummary, SliceStatus
from intake_queue.pipeline import FetchMessageStep, PipelineStep, QueueClassificationStep, StepRegistry
from intake_queue.processor import ItemProcessor
from intake_queue.progress import ProgressTracker
from intake_queue.providers.imap import imap_provider_factory
from intake_queue.scheduler import ProviderFactory, SliceProcessor
from intake_queue.store.classification import ClassificationJobStore
from intake_queue.store.items import ItemStore
from intake_queue.store.runs import EnqueueResult, QueueOverview, RunStore
from intake_queue.summary import SummaryBuilder
from intake_queue.trigger import Trigger, build_trigger

logger = structlog.get_logger()

_QUICK_SLICES = {SliceStatus.AWAITING_DOWNSTREAM, SliceStatus.BUSY, SliceStatus.NO_WORK}


class TickResult(BaseModel):
    """Everything one periodic tick did."""

    reaped: list[uuid.UUID] = Field(default_factory=list)
    settled: list[uuid.UUID] = Field(default_factory=list)
    dispatch: DispatchResult
    classification: ClassificationSliceResult | None = None


class ImportService:
    def __init__(
        self,
        config: AppConfig,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        provider_factory: ProviderFactory = imap_provider_factory,
        steps: Iterable[PipelineStep] = (),
        classifier: Classifier | None = None,
        trigger: Trigger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.runs = RunStore(session_factory)
        self.items = ItemStore(session_factory)
        self.jobs = ClassificationJobStore(session_factory)
        self.trigger = trigger or build_trigger(config.trigger)

        self.registry = StepRegistry()
        self.registry.register(FetchMessageStep(config.attachments))
        for step in steps:
            self.registry.register(step)

        self.progress = ProgressTracker(self.runs, self.items, self.jobs)
        self.summaries = SummaryBuilder(self.items, self.jobs)
        self.finalizer = RunFinalizer(
            self.runs,
            self.items,
            self.jobs,
            self.progress,
            self.summaries,
            config.slice,
        )

        self.classification: ClassificationWorker | None = None
        if config.classification.enabled:
            if classifier is None:
                raise ConfigurationError("classification is enabled but no classifier was supplied")
            self.registry.register(QueueClassificationStep(self.jobs))
            self.classification = ClassificationWorker(
                self.jobs,
                classifier,
                self.progress,
                self.finalizer,
                config.classification,
                clock=clock,
            )

        self.slices = SliceProcessor(
            self.runs,
            self.items,
            Enumerator(
                self.runs,
                self.items,
                slice_config=config.slice,
                config=config.enumeration,
                retry_config=config.retry,
            ),
            ItemProcessor(self.items, self.registry),
            self.progress,
            self.finalizer,
            provider_factory,
            config.slice,
            clock=clock,
        )
        self.dispatcher = Dispatcher(self.runs, self.slices, self.finalizer, self.trigger)
        self.reaper = Reaper(self.runs, self.finalizer, config.slice)

    async def start(self) -> None:
        await self.trigger.start()

    async def close(self) -> None:
        await self.trigger.stop()

    # ------------------------------------------------------------------
    # Trigger surface
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_id: str,
        *,
        mailbox: str | None,
        search_text: str | None,
        max_emails: int | None = None,
        requested_by: str | None = None,
    ) -> EnqueueResult:
        return await self.runs.enqueue(
            job_id=job_id,
            mailbox=mailbox,
            search_text=search_text,
            max_emails=max_emails or self.config.enumeration.default_max_emails,
            requested_by=requested_by,
        )

    async def cancel(self, run_id: uuid.UUID) -> ImportRun:
        return await self.runs.cancel(run_id)

    async def get_run(self, run_id: uuid.UUID) -> ImportRun:
        run = await self.runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def get_summary(self, run_id: uuid.UUID) -> RunSummary | None:
        run = await self.get_run(run_id)
        if run.summary is None:
            return None
        return RunSummary.model_validate(run.summary)

    async def overview(self, recent: int = 10) -> QueueOverview:
        return await self.runs.queue_overview(recent)

    # ------------------------------------------------------------------
    # Periodic / chained work
    # ------------------------------------------------------------------

    async def dispatch(self) -> DispatchResult:
        return await self.dispatcher.dispatch()

    async def reap(self) -> list[uuid.UUID]:
        return await self.reaper.sweep_stale()

    async def classify(self) -> ClassificationSliceResult | None:
        if self.classification is None:
            return None
        return await self.classification.run_slice()

    async def tick(self) -> TickResult:
        """One periodic pass: reap, settle cancellations, dispatch, classify."""
        reaped = await self.reap()
        settled = await self.dispatcher.settle_canceled()
        dispatch = await self.dispatch()
        classification = None
        # A full item slice already used this invocation's budget.
        if dispatch.slice is None or dispatch.slice.status in _QUICK_SLICES:
            classification = await self.classify()
        logger.info(
            "tick_complete",
            reaped=len(reaped),
            settled=len(settled),
            action=dispatch.action.value,
            run_id=str(dispatch.run_id) if dispatch.run_id else None,
        )
        return TickResult(
            reaped=reaped,
            settled=settled,
            dispatch=dispatch,
            classification=classification,
        )

    async def tick_in_background(self) -> None:
        """:meth:`tick` for fire-and-forget callers; failures are only logged."""
        try:
            await self.tick()
        except Exception:
            logger.exception("background_tick_failed")
