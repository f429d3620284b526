"""Write-once outcome report for a finished run."""

from __future__ import annotations

import structlog

from intake_queue.db.models import ClassificationJob, ImportRun
from intake_queue.models import (
    Checkpoint,
    ClassificationIssue,
    ClassificationStatus,
    ClassificationSummary,
    ItemFailure,
    ItemStep,
    RunSummary,
    SummaryTotals,
)
from intake_queue.store.classification import ClassificationJobStore
from intake_queue.store.items import ItemStore

logger = structlog.get_logger()

MAX_LIST_ENTRIES = 20


def _issue(job: ClassificationJob) -> ClassificationIssue:
    return ClassificationIssue(
        job_id=job.id,
        external_message_id=job.external_message_id,
        attempts=job.attempts,
        error=job.last_error,
        next_retry_at=job.next_retry_at,
    )


class SummaryBuilder:
    def __init__(self, items: ItemStore, jobs: ClassificationJobStore) -> None:
        self._items = items
        self._jobs = jobs

    async def build(self, run: ImportRun) -> RunSummary:
        counts = await self._items.count_by_status(run.id)
        downstream = await self._jobs.counts(run.id)
        failures = await self._items.list_failures(run.id, MAX_LIST_ENTRIES)
        failed_jobs = await self._jobs.list_by_status(
            run.id, ClassificationStatus.FAILED, MAX_LIST_ENTRIES
        )
        retrying_jobs = await self._jobs.list_by_status(
            run.id, ClassificationStatus.RETRY, MAX_LIST_ENTRIES
        )

        warnings: list[str] = []
        if downstream.retry:
            warnings.append(f"{downstream.retry} classification job(s) still pending retry")
        if counts.failed:
            warnings.append(f"{counts.failed} email(s) failed during import")
        if counts.canceled:
            warnings.append(f"{counts.canceled} email(s) canceled before processing")
        if not Checkpoint.model_validate(run.checkpoint or {}).complete:
            warnings.append("message enumeration did not finish")

        return RunSummary(
            totals=SummaryTotals(
                total_messages=counts.total,
                processed_messages=counts.processed,
                failed_messages=counts.failed,
                canceled_messages=counts.canceled,
            ),
            classification=ClassificationSummary(
                total=downstream.total,
                failed=downstream.failed,
                retries=downstream.retry,
                failed_jobs=[_issue(j) for j in failed_jobs],
                retrying_jobs=[_issue(j) for j in retrying_jobs],
            ),
            item_failures=[
                ItemFailure(
                    item_id=item.id,
                    external_message_id=item.external_message_id,
                    step=ItemStep(item.step),
                    attempts=item.attempts,
                    error=item.last_error,
                )
                for item in failures
            ],
            warnings=warnings,
        )

    async def try_build(self, run: ImportRun) -> RunSummary | None:
        """Best-effort :meth:`build` for forced finalization paths."""
        try:
            return await self.build(run)
        except Exception:
            logger.exception("summary_build_failed", run_id=str(run.id))
            return None
