"""Tests for intake_queue.summary."""

from __future__ import annotations

from datetime import timedelta

import pytest

from intake_queue.db.types import utcnow
from intake_queue.models import Checkpoint, ItemStep, RunSummary
from intake_queue.store.classification import ClassificationJobStore
from intake_queue.store.items import ItemStore
from intake_queue.store.runs import RunStore
from intake_queue.summary import MAX_LIST_ENTRIES, SummaryBuilder
from tests.conftest import make_messages, start_run


class TestSummaryBuilder:
    @pytest.mark.asyncio
    async def test_counts_and_failures(
        self,
        run_store: RunStore,
        item_store: ItemStore,
        job_store: ClassificationJobStore,
    ):
        run = await start_run(run_store)
        await item_store.insert_page(run, make_messages(4))
        done, failed, _, _ = await item_store.claim_pending(run.id, 4)
        await item_store.mark_done(done.id, ItemStep.PERSISTED)
        await item_store.advance_step(failed.id, ItemStep.NONE, ItemStep.FETCHED)
        await item_store.mark_failed(failed.id, "saved: storage unavailable", transient=False)
        await item_store.release_abandoned(run.id, max_attempts=3)
        await item_store.cancel_pending(run.id)

        summary = await SummaryBuilder(item_store, job_store).build(run)

        assert summary.totals.total_messages == 4
        assert summary.totals.processed_messages == 2
        assert summary.totals.failed_messages == 1
        assert summary.totals.canceled_messages == 2
        (failure,) = summary.item_failures
        assert failure.external_message_id == failed.external_message_id
        assert failure.step == ItemStep.FETCHED
        assert failure.error == "saved: storage unavailable"
        assert "1 email(s) failed during import" in summary.warnings
        assert "2 email(s) canceled before processing" in summary.warnings
        assert "message enumeration did not finish" in summary.warnings

    @pytest.mark.asyncio
    async def test_clean_run_has_no_warnings(
        self,
        run_store: RunStore,
        item_store: ItemStore,
        job_store: ClassificationJobStore,
    ):
        run = await start_run(run_store)
        await run_store.save_checkpoint(
            run.id, Checkpoint(search_done=True, deep_done=True), total_messages=0
        )
        run = await run_store.get(run.id)
        summary = await SummaryBuilder(item_store, job_store).build(run)
        assert summary == RunSummary()

    @pytest.mark.asyncio
    async def test_classification_issues(
        self,
        run_store: RunStore,
        item_store: ItemStore,
        job_store: ClassificationJobStore,
    ):
        run = await start_run(run_store)
        await item_store.insert_page(run, make_messages(2))
        first, second = await item_store.claim_pending(run.id, 2)
        await job_store.enqueue(first)
        await job_store.enqueue(second)

        job = await job_store.claim_next()
        await job_store.mark_failed(job.id, "model rejected input")
        job = await job_store.claim_next()
        await job_store.mark_retry(job.id, "rate limited", utcnow() + timedelta(minutes=1))

        summary = await SummaryBuilder(item_store, job_store).build(run)

        assert summary.classification.total == 2
        assert summary.classification.failed == 1
        assert summary.classification.retries == 1
        assert summary.classification.failed_jobs[0].error == "model rejected input"
        assert summary.classification.retrying_jobs[0].next_retry_at is not None
        assert "1 classification job(s) still pending retry" in summary.warnings

    @pytest.mark.asyncio
    async def test_failure_list_is_capped(
        self,
        run_store: RunStore,
        item_store: ItemStore,
        job_store: ClassificationJobStore,
    ):
        run = await start_run(run_store)
        await item_store.insert_page(run, make_messages(MAX_LIST_ENTRIES + 5))
        for item in await item_store.claim_pending(run.id, MAX_LIST_ENTRIES + 5):
            await item_store.mark_failed(item.id, "unreadable", transient=False)

        summary = await SummaryBuilder(item_store, job_store).build(run)
        assert summary.totals.failed_messages == MAX_LIST_ENTRIES + 5
        assert len(summary.item_failures) == MAX_LIST_ENTRIES
