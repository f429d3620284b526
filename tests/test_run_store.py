"""Tests for intake_queue.store.runs."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest

from intake_queue.db.types import utcnow
from intake_queue.errors import AlreadyActive, RunNotCancelable, RunNotFound
from intake_queue.models import Checkpoint, RunStatus, RunSummary
from intake_queue.store.runs import RunStore
from tests.conftest import set_run_columns, start_run


async def _enqueue(runs: RunStore, job_id: str):
    return await runs.enqueue(job_id=job_id, max_emails=100, mailbox="INBOX", search_text="resume")


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_creates_enqueued_run(self, run_store: RunStore):
        result = await _enqueue(run_store, "job-1")
        assert result.created is True
        run = result.run
        assert run.status == RunStatus.ENQUEUED
        assert run.progress == 0.0
        assert run.attempts == 0
        assert run.checkpoint is None
        assert run.summary is None

    @pytest.mark.asyncio
    async def test_second_enqueue_returns_active_run(self, run_store: RunStore):
        first = await _enqueue(run_store, "job-1")
        second = await _enqueue(run_store, "job-1")
        assert second.created is False
        assert second.run.id == first.run.id

    @pytest.mark.asyncio
    async def test_running_run_blocks_new_enqueue(self, run_store: RunStore):
        run = await start_run(run_store, "job-1")
        result = await _enqueue(run_store, "job-1")
        assert result.created is False
        assert result.run.id == run.id
        assert result.run.status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_create_raises_already_active(self, run_store: RunStore):
        await _enqueue(run_store, "job-1")
        with pytest.raises(AlreadyActive) as exc_info:
            await run_store.create(job_id="job-1", max_emails=10)
        assert exc_info.value.run.job_id == "job-1"

    @pytest.mark.asyncio
    async def test_concurrent_enqueues_create_one_run(self, run_store: RunStore):
        results = await asyncio.gather(*(_enqueue(run_store, "job-1") for _ in range(4)))
        assert sum(r.created for r in results) == 1
        assert len({r.run.id for r in results}) == 1

    @pytest.mark.asyncio
    async def test_terminal_run_allows_new_enqueue(self, run_store: RunStore):
        run = await start_run(run_store, "job-1")
        await run_store.finalize(run.id, RunStatus.SUCCEEDED)
        result = await _enqueue(run_store, "job-1")
        assert result.created is True
        assert result.run.id != run.id


class TestPromote:
    @pytest.mark.asyncio
    async def test_promotes_oldest_first(self, run_store: RunStore):
        first = await _enqueue(run_store, "job-1")
        await _enqueue(run_store, "job-2")
        promoted = await run_store.promote_oldest_enqueued()
        assert promoted.id == first.run.id
        assert promoted.status == RunStatus.RUNNING
        assert promoted.attempts == 1
        assert promoted.started_at is not None
        assert promoted.heartbeat_at is not None

    @pytest.mark.asyncio
    async def test_nothing_enqueued(self, run_store: RunStore):
        assert await run_store.promote_oldest_enqueued() is None

    @pytest.mark.asyncio
    async def test_second_promotion_blocked_while_running(self, run_store: RunStore):
        await _enqueue(run_store, "job-1")
        second = await _enqueue(run_store, "job-2")
        assert await run_store.promote_oldest_enqueued() is not None
        assert await run_store.promote_oldest_enqueued() is None
        still_queued = await run_store.get(second.run.id)
        assert still_queued.status == RunStatus.ENQUEUED

    @pytest.mark.asyncio
    async def test_racing_promotions_elect_one_run(self, run_store: RunStore):
        for i in range(3):
            await _enqueue(run_store, f"job-{i}")
        results = await asyncio.gather(*(run_store.promote_oldest_enqueued() for _ in range(5)))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        overview = await run_store.queue_overview()
        assert overview.running.id == winners[0].id
        assert len(overview.enqueued) == 2


class TestFinalize:
    @pytest.mark.asyncio
    async def test_finalize_sets_terminal_fields(self, run_store: RunStore):
        run = await start_run(run_store)
        summary = RunSummary(warnings=["1 email(s) failed during import"])
        assert await run_store.finalize(run.id, RunStatus.SUCCEEDED, summary=summary)

        done = await run_store.get(run.id)
        assert done.status == RunStatus.SUCCEEDED
        assert done.progress == 1.0
        assert done.finished_at is not None
        assert done.processing_duration_ms >= 0
        assert done.summary["warnings"] == ["1 email(s) failed during import"]

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, run_store: RunStore):
        run = await start_run(run_store)
        assert await run_store.finalize(run.id, RunStatus.FAILED, last_error="boom")
        assert not await run_store.finalize(run.id, RunStatus.SUCCEEDED)
        done = await run_store.get(run.id)
        assert done.status == RunStatus.FAILED
        assert done.last_error == "boom"

    @pytest.mark.asyncio
    async def test_concurrent_finalize_applies_once(self, run_store: RunStore):
        run = await start_run(run_store)
        results = await asyncio.gather(
            run_store.finalize(run.id, RunStatus.SUCCEEDED),
            run_store.finalize(run.id, RunStatus.FAILED, last_error="late"),
        )
        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_rejects_non_terminal_status(self, run_store: RunStore):
        run = await start_run(run_store)
        with pytest.raises(ValueError):
            await run_store.finalize(run.id, RunStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_finalize_frees_global_slot(self, run_store: RunStore):
        run = await start_run(run_store, "job-1")
        await _enqueue(run_store, "job-2")
        await run_store.finalize(run.id, RunStatus.SUCCEEDED)
        promoted = await run_store.promote_oldest_enqueued()
        assert promoted.job_id == "job-2"


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_enqueued(self, run_store: RunStore):
        result = await _enqueue(run_store, "job-1")
        canceled = await run_store.cancel(result.run.id)
        assert canceled.status == RunStatus.CANCELED
        assert canceled.finished_at is not None
        assert canceled.summary is None

    @pytest.mark.asyncio
    async def test_cancel_keeps_progress(self, run_store: RunStore, session_factory):
        run = await start_run(run_store)
        await set_run_columns(session_factory, run.id, progress=0.4)
        canceled = await run_store.cancel(run.id)
        assert canceled.progress == 0.4

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, run_store: RunStore):
        with pytest.raises(RunNotFound):
            await run_store.cancel(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_cancel_terminal_run(self, run_store: RunStore):
        run = await start_run(run_store)
        await run_store.finalize(run.id, RunStatus.SUCCEEDED)
        with pytest.raises(RunNotCancelable):
            await run_store.cancel(run.id)

    @pytest.mark.asyncio
    async def test_settle_is_write_once(self, run_store: RunStore):
        run = await start_run(run_store)
        await run_store.cancel(run.id)
        assert await run_store.settle(run.id, RunSummary(warnings=["first"]))
        assert not await run_store.settle(run.id, RunSummary(warnings=["second"]))
        settled = await run_store.get(run.id)
        assert settled.summary["warnings"] == ["first"]
        assert await run_store.list_unsettled_canceled() == []


class TestSliceBookkeeping:
    @pytest.mark.asyncio
    async def test_lease_is_exclusive(self, run_store: RunStore):
        run = await start_run(run_store)
        assert await run_store.acquire_slice_lease(run.id, 60)
        assert not await run_store.acquire_slice_lease(run.id, 60)
        await run_store.release_slice_lease(run.id)
        assert await run_store.acquire_slice_lease(run.id, 60)

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken(self, run_store: RunStore, session_factory):
        run = await start_run(run_store)
        await set_run_columns(session_factory, run.id, slice_lease_until=utcnow() - timedelta(seconds=1))
        assert await run_store.acquire_slice_lease(run.id, 60)

    @pytest.mark.asyncio
    async def test_lease_does_not_count_as_activity(self, run_store: RunStore, session_factory):
        run = await start_run(run_store)
        long_ago = utcnow() - timedelta(hours=1)
        await set_run_columns(session_factory, run.id, heartbeat_at=long_ago)
        assert await run_store.acquire_slice_lease(run.id, 60)
        await run_store.release_slice_lease(run.id)

        assert (await run_store.get(run.id)).heartbeat_at == long_ago
        stale = await run_store.list_stale(utcnow() - timedelta(minutes=10))
        assert [r.id for r in stale] == [run.id]

    @pytest.mark.asyncio
    async def test_checkpoint_round_trip(self, run_store: RunStore):
        run = await start_run(run_store)
        checkpoint = Checkpoint(search_done=True, deep_before=utcnow(), pages=3)
        await run_store.save_checkpoint(run.id, checkpoint, total_messages=42)
        saved = await run_store.get(run.id)
        assert Checkpoint.model_validate(saved.checkpoint) == checkpoint
        assert saved.total_messages == 42

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, run_store: RunStore):
        run = await start_run(run_store)
        await run_store.record_progress(run.id, total_messages=10, processed_messages=5, progress=0.5)
        await run_store.record_progress(run.id, total_messages=12, processed_messages=5, progress=0.4)
        saved = await run_store.get(run.id)
        assert saved.progress == 0.5
        assert saved.total_messages == 12

    @pytest.mark.asyncio
    async def test_list_stale_uses_heartbeat(self, run_store: RunStore, session_factory):
        run = await start_run(run_store)
        assert await run_store.list_stale(utcnow() - timedelta(minutes=10)) == []
        await set_run_columns(session_factory, run.id, heartbeat_at=utcnow() - timedelta(hours=1))
        stale = await run_store.list_stale(utcnow() - timedelta(minutes=10))
        assert [r.id for r in stale] == [run.id]


class TestPruning:
    @pytest.mark.asyncio
    async def test_keeps_newest_terminal_runs(self, run_store: RunStore):
        ids = []
        for _ in range(4):
            run = await start_run(run_store, "job-1")
            await run_store.finalize(run.id, RunStatus.SUCCEEDED)
            ids.append(run.id)

        pruned = await run_store.prune_terminal("job-1", keep=2)
        assert pruned == 2
        assert await run_store.get(ids[0]) is None
        assert await run_store.get(ids[1]) is None
        assert await run_store.get(ids[3]) is not None

    @pytest.mark.asyncio
    async def test_active_runs_are_never_pruned(self, run_store: RunStore):
        old = await start_run(run_store, "job-1")
        await run_store.finalize(old.id, RunStatus.FAILED)
        active = await _enqueue(run_store, "job-1")
        assert await run_store.prune_terminal("job-1", keep=0) == 1
        assert await run_store.get(active.run.id) is not None
