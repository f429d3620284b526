"""Domain types shared by the stores, the slice loop and the API."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Lifecycle of an import run."""

    ENQUEUED = "enqueued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @classmethod
    def active(cls) -> tuple[RunStatus, ...]:
        return (cls.ENQUEUED, cls.RUNNING)

    @classmethod
    def terminal(cls) -> tuple[RunStatus, ...]:
        return (cls.SUCCEEDED, cls.FAILED, cls.CANCELED)


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"


class ItemStep(str, Enum):
    """Pipeline position of an item.  Order of declaration is the step order."""

    NONE = "none"
    FETCHED = "fetched"
    SAVED = "saved"
    PARSED = "parsed"
    CLASSIFIED = "classified"
    PERSISTED = "persisted"

    @classmethod
    def sequence(cls) -> list[ItemStep]:
        return list(cls)

    def following(self) -> list[ItemStep]:
        """Steps still to run after this one, in order."""
        steps = self.sequence()
        return steps[steps.index(self) + 1 :]


class ClassificationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY = "retry"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def active(cls) -> tuple[ClassificationStatus, ...]:
        return (cls.PENDING, cls.PROCESSING, cls.RETRY)


class Checkpoint(BaseModel):
    """Resumable enumeration state persisted on the run after every page."""

    search_done: bool = Field(default=False, description="Broad search pass finished")
    search_cursor: str | None = Field(
        default=None,
        description="Provider cursor for the next broad-search page",
    )
    deep_done: bool = Field(default=False, description="Deep backward pass finished")
    deep_before: datetime | None = Field(
        default=None,
        description="Deep pass continues strictly before this timestamp",
    )
    pages: int = Field(default=0, description="Provider pages fetched so far")

    @property
    def complete(self) -> bool:
        return self.search_done and self.deep_done


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class SliceStatus(str, Enum):
    """How a slice invocation ended."""

    NO_WORK = "no_work"
    BUSY = "busy"
    CONTINUE = "continue"
    AWAITING_DOWNSTREAM = "awaiting_downstream"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class SliceResult(BaseModel):
    status: SliceStatus
    run_id: uuid.UUID | None = None
    processed: int = Field(default=0, description="Items that reached done/failed this slice")
    elapsed_seconds: float = 0.0
    error: str | None = None


class DispatchAction(str, Enum):
    NO_WORK = "no_work"
    RACE_LOST = "race_lost"
    DISPATCHED = "dispatched"
    CONTINUING = "continuing"


class DispatchResult(BaseModel):
    action: DispatchAction
    run_id: uuid.UUID | None = None
    slice: SliceResult | None = None


class StepOutcome(str, Enum):
    """What a pipeline step handler asks the processor to do next."""

    ADVANCE = "advance"
    COMPLETE = "complete"


class AdvanceResult(BaseModel):
    success: bool
    step: ItemStep = Field(description="Last step the item successfully reached")
    error: str | None = None
    transient: bool = False
    timed_out: bool = False


class ItemCounts(BaseModel):
    """Per-status item counts for one run."""

    pending: int = 0
    processing: int = 0
    done: int = 0
    failed: int = 0
    canceled: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.done + self.failed + self.canceled

    @property
    def processed(self) -> int:
        return self.done + self.failed

    @property
    def outstanding(self) -> int:
        return self.pending + self.processing


class ClassificationCounts(BaseModel):
    pending: int = 0
    processing: int = 0
    retry: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.retry + self.succeeded + self.failed

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed

    @property
    def active(self) -> int:
        return self.pending + self.processing + self.retry


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


class SummaryTotals(BaseModel):
    total_messages: int = 0
    processed_messages: int = 0
    failed_messages: int = 0
    canceled_messages: int = 0


class ItemFailure(BaseModel):
    item_id: int
    external_message_id: str
    step: ItemStep
    attempts: int
    error: str | None = None


class ClassificationIssue(BaseModel):
    job_id: int
    external_message_id: str
    attempts: int
    error: str | None = None
    next_retry_at: datetime | None = None


class ClassificationSummary(BaseModel):
    total: int = 0
    failed: int = 0
    retries: int = Field(default=0, description="Jobs awaiting retry")
    failed_jobs: list[ClassificationIssue] = Field(default_factory=list)
    retrying_jobs: list[ClassificationIssue] = Field(default_factory=list)


class RunSummary(BaseModel):
    """Operator-facing outcome report, built once when a run ends."""

    totals: SummaryTotals = Field(default_factory=SummaryTotals)
    classification: ClassificationSummary = Field(default_factory=ClassificationSummary)
    item_failures: list[ItemFailure] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
