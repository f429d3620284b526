"""Durable per-message work items."""

from __future__ import annotations

import uuid
from collections.abc import Sequence

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intake_queue.db.models import ImportItem, ImportRun
from intake_queue.db.types import utcnow
from intake_queue.models import ItemCounts, ItemStatus, ItemStep
from intake_queue.providers.base import MessageDescriptor

logger = structlog.get_logger()

_NO_SYNC = {"synchronize_session": False}

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

MAX_ERROR_LENGTH = 500


class ItemStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session = session_factory

    async def insert_page(self, run: ImportRun, messages: Sequence[MessageDescriptor]) -> int:
        """Insert one provider page as ``pending`` items.

        Messages already recorded for the run are skipped by the
        ``(run_id, external_message_id)`` unique constraint, so replaying a
        page after a crash is harmless.  Returns the number of new rows.
        """
        if not messages:
            return 0

        now = utcnow()
        rows: dict[str, dict[str, object]] = {}
        for message in messages:
            rows.setdefault(
                message.external_id,
                {
                    "run_id": run.id,
                    "job_id": run.job_id,
                    "external_message_id": message.external_id,
                    "external_thread_id": message.thread_id,
                    "received_at": message.received_at,
                    "status": ItemStatus.PENDING.value,
                    "step": ItemStep.NONE.value,
                    "attempts": 0,
                    "error_transient": False,
                    "created_at": now,
                    "updated_at": now,
                },
            )

        async with self._session.begin() as session:
            insert = _INSERTS[session.bind.dialect.name]
            stmt = (
                insert(ImportItem.__table__)
                .values(list(rows.values()))
                .on_conflict_do_nothing(index_elements=["run_id", "external_message_id"])
            )
            result = await session.execute(stmt)

        inserted = max(result.rowcount, 0)
        logger.debug("items_inserted", run_id=str(run.id), offered=len(rows), inserted=inserted)
        return inserted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, item_id: int) -> ImportItem | None:
        async with self._session() as session:
            return await session.get(ImportItem, item_id)

    async def count(self, run_id: uuid.UUID) -> int:
        async with self._session() as session:
            stmt = select(func.count()).select_from(ImportItem).where(ImportItem.run_id == run_id)
            return (await session.execute(stmt)).scalar_one()

    async def count_by_status(self, run_id: uuid.UUID) -> ItemCounts:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(ImportItem.status, func.count())
                    .where(ImportItem.run_id == run_id)
                    .group_by(ImportItem.status)
                )
            ).all()
        return ItemCounts(**{status: n for status, n in rows})

    async def list_failures(self, run_id: uuid.UUID, limit: int) -> list[ImportItem]:
        async with self._session() as session:
            stmt = (
                select(ImportItem)
                .where(ImportItem.run_id == run_id, ImportItem.status == ItemStatus.FAILED)
                .order_by(ImportItem.updated_at.desc(), ImportItem.id.desc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def list_for_run(self, run_id: uuid.UUID) -> list[ImportItem]:
        async with self._session() as session:
            stmt = select(ImportItem).where(ImportItem.run_id == run_id).order_by(ImportItem.id)
            return list((await session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    async def claim_pending(self, run_id: uuid.UUID, limit: int) -> list[ImportItem]:
        """Move up to *limit* pending items to ``processing`` in id order."""
        async with self._session.begin() as session:
            ids = (
                await session.execute(
                    select(ImportItem.id)
                    .where(ImportItem.run_id == run_id, ImportItem.status == ItemStatus.PENDING)
                    .order_by(ImportItem.id)
                    .limit(limit)
                )
            ).scalars().all()
            if not ids:
                return []

            await session.execute(
                update(ImportItem)
                .where(ImportItem.id.in_(ids), ImportItem.status == ItemStatus.PENDING)
                .values(status=ItemStatus.PROCESSING.value)
                .execution_options(**_NO_SYNC)
            )
            claimed = (
                await session.execute(
                    select(ImportItem)
                    .where(ImportItem.id.in_(ids), ImportItem.status == ItemStatus.PROCESSING)
                    .order_by(ImportItem.id)
                    .execution_options(populate_existing=True)
                )
            ).scalars().all()
        return list(claimed)

    async def release(self, item_ids: Sequence[int]) -> int:
        """Return claimed items that were never started to ``pending``."""
        if not item_ids:
            return 0
        async with self._session.begin() as session:
            result = await session.execute(
                update(ImportItem)
                .where(ImportItem.id.in_(item_ids), ImportItem.status == ItemStatus.PROCESSING)
                .values(status=ItemStatus.PENDING.value)
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount

    async def release_abandoned(self, run_id: uuid.UUID, *, max_attempts: int) -> int:
        """Return items left ``processing`` by an earlier slice to ``pending``.

        The interrupted slice counts as an attempt: an item that keeps
        killing its slice is failed once it has used *max_attempts*.  Only
        called while holding the run's slice lease, so no live worker can
        own these rows.
        """
        async with self._session.begin() as session:
            result = await session.execute(
                self._charge_attempt(
                    ImportItem.run_id == run_id,
                    error="interrupted before finishing",
                    max_attempts=max_attempts,
                )
            )
        if result.rowcount:
            logger.info("abandoned_items_released", run_id=str(run_id), count=result.rowcount)
        return result.rowcount

    async def record_timeout(self, item_id: int, error: str, *, max_attempts: int) -> ItemStatus | None:
        """Charge a timed-out item one attempt.

        The item goes back to ``pending`` at its last persisted step, or
        becomes ``failed`` once it has used *max_attempts*.  Returns the new
        status, or ``None`` if the item was no longer ``processing``.
        """
        async with self._session.begin() as session:
            result = await session.execute(
                self._charge_attempt(
                    ImportItem.id == item_id,
                    error=error,
                    max_attempts=max_attempts,
                )
            )
            if result.rowcount != 1:
                return None
            status = (
                await session.execute(select(ImportItem.status).where(ImportItem.id == item_id))
            ).scalar_one()
        return ItemStatus(status)

    @staticmethod
    def _charge_attempt(condition, *, error: str, max_attempts: int):
        exhausted = ImportItem.attempts + 1 >= max_attempts
        return (
            update(ImportItem)
            .where(condition, ImportItem.status == ItemStatus.PROCESSING)
            .values(
                status=case(
                    (exhausted, ItemStatus.FAILED.value),
                    else_=ItemStatus.PENDING.value,
                ),
                attempts=ImportItem.attempts + 1,
                last_error=error[:MAX_ERROR_LENGTH],
                error_transient=False,
            )
            .execution_options(**_NO_SYNC)
        )

    # ------------------------------------------------------------------
    # Step machine
    # ------------------------------------------------------------------

    async def advance_step(self, item_id: int, from_step: ItemStep, to_step: ItemStep) -> bool:
        """Persist a forward step transition; ``False`` if the row moved on."""
        async with self._session.begin() as session:
            result = await session.execute(
                update(ImportItem)
                .where(
                    ImportItem.id == item_id,
                    ImportItem.step == from_step,
                    ImportItem.status == ItemStatus.PROCESSING,
                )
                .values(step=to_step.value)
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount == 1

    async def mark_done(self, item_id: int, step: ItemStep) -> bool:
        async with self._session.begin() as session:
            result = await session.execute(
                update(ImportItem)
                .where(ImportItem.id == item_id, ImportItem.status == ItemStatus.PROCESSING)
                .values(
                    status=ItemStatus.DONE.value,
                    step=step.value,
                    last_error=None,
                    error_transient=False,
                )
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount == 1

    async def mark_failed(self, item_id: int, error: str, *, transient: bool) -> bool:
        """Fail an item, keeping its last successful step for diagnosis."""
        async with self._session.begin() as session:
            result = await session.execute(
                update(ImportItem)
                .where(ImportItem.id == item_id, ImportItem.status == ItemStatus.PROCESSING)
                .values(
                    status=ItemStatus.FAILED.value,
                    attempts=ImportItem.attempts + 1,
                    last_error=error[:MAX_ERROR_LENGTH],
                    error_transient=transient,
                )
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount == 1

    async def requeue_transient(self, run_id: uuid.UUID, max_attempts: int) -> int:
        """Send transiently failed items with attempts left back to ``pending``."""
        async with self._session.begin() as session:
            result = await session.execute(
                update(ImportItem)
                .where(
                    ImportItem.run_id == run_id,
                    ImportItem.status == ItemStatus.FAILED,
                    ImportItem.error_transient.is_(True),
                    ImportItem.attempts < max_attempts,
                )
                .values(status=ItemStatus.PENDING.value)
                .execution_options(**_NO_SYNC)
            )
        if result.rowcount:
            logger.info("transient_failures_requeued", run_id=str(run_id), count=result.rowcount)
        return result.rowcount

    async def cancel_pending(self, run_id: uuid.UUID) -> int:
        async with self._session.begin() as session:
            result = await session.execute(
                update(ImportItem)
                .where(ImportItem.run_id == run_id, ImportItem.status == ItemStatus.PENDING)
                .values(status=ItemStatus.CANCELED.value)
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount
