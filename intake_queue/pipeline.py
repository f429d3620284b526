"""Per-message pipeline steps and their registry.

The business logic behind each step (storing the resume, parsing it,
scoring it) lives outside this package; it plugs in as a
:class:`PipelineStep` registered for one :class:`ItemStep`.  Steps with no
registered handler pass straight through.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any

import structlog

from intake_queue.config import AttachmentConfig
from intake_queue.db.models import ImportItem, ImportRun
from intake_queue.models import ItemStep, StepOutcome
from intake_queue.providers.base import Attachment, EmailProvider, FetchedMessage
from intake_queue.store.classification import ClassificationJobStore

logger = structlog.get_logger()


@dataclass
class StepContext:
    """What a step handler gets to work with for one item.

    ``state`` carries values between steps of the same :meth:`advance`
    call; it is not persisted, so a resumed item starts with it empty.
    """

    run: ImportRun
    item: ImportItem
    provider: EmailProvider
    state: dict[str, Any] = field(default_factory=dict)

    async def message(self) -> FetchedMessage:
        """The fetched message, loaded from the provider on first use."""
        cached = self.state.get("message")
        if cached is None:
            cached = await self.provider.fetch_message(self.item.external_message_id)
            self.state["message"] = cached
        return cached


class PipelineStep(abc.ABC):
    """Handler that moves an item *into* :attr:`step`."""

    step: ItemStep

    @abc.abstractmethod
    async def run(self, ctx: StepContext) -> StepOutcome:
        """Do the step's work.

        Return :attr:`StepOutcome.ADVANCE` to continue with the next step or
        :attr:`StepOutcome.COMPLETE` to finish the item early.  Raise to fail
        the item; raise a :class:`~intake_queue.errors.TransientError` if a
        later attempt may succeed.
        """
        ...


class StepRegistry:
    """Registry of step handlers, keyed by the step they produce."""

    def __init__(self) -> None:
        self._steps: dict[ItemStep, PipelineStep] = {}

    def register(self, handler: PipelineStep) -> None:
        if handler.step is ItemStep.NONE:
            raise ValueError("no handler can produce the initial step")
        self._steps[handler.step] = handler
        logger.info("pipeline_step_registered", step=handler.step.value, handler=type(handler).__name__)

    def get(self, step: ItemStep) -> PipelineStep | None:
        return self._steps.get(step)

    @property
    def registered_steps(self) -> list[ItemStep]:
        return [step for step in ItemStep.sequence() if step in self._steps]


# ---------------------------------------------------------------------------
# Built-in steps
# ---------------------------------------------------------------------------


def eligible_attachments(message: FetchedMessage, config: AttachmentConfig) -> list[Attachment]:
    allowed = {ext.lower().lstrip(".") for ext in config.allowed_extensions}
    return [
        a
        for a in message.attachments
        if a.extension in allowed and 0 < a.size <= config.max_bytes
    ]


class FetchMessageStep(PipelineStep):
    """Fetch the message; messages without a usable attachment end here."""

    step = ItemStep.FETCHED

    def __init__(self, config: AttachmentConfig) -> None:
        self._config = config

    async def run(self, ctx: StepContext) -> StepOutcome:
        message = await ctx.message()
        attachments = eligible_attachments(message, self._config)
        ctx.state["attachments"] = attachments
        if not attachments:
            logger.debug(
                "message_without_eligible_attachments",
                item_id=ctx.item.id,
                attachments=len(message.attachments),
            )
            return StepOutcome.COMPLETE
        return StepOutcome.ADVANCE


class QueueClassificationStep(PipelineStep):
    """Hand the item to the asynchronous classification backlog."""

    step = ItemStep.CLASSIFIED

    def __init__(self, jobs: ClassificationJobStore) -> None:
        self._jobs = jobs

    async def run(self, ctx: StepContext) -> StepOutcome:
        await self._jobs.enqueue(ctx.item)
        return StepOutcome.ADVANCE
