"""Downstream classification jobs created by the ``classified`` step."""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intake_queue.db.models import ClassificationJob, ImportItem
from intake_queue.db.types import utcnow
from intake_queue.models import ClassificationCounts, ClassificationStatus

logger = structlog.get_logger()

_NO_SYNC = {"synchronize_session": False}

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class ClassificationJobStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session = session_factory

    async def enqueue(self, item: ImportItem) -> bool:
        """Create the job for *item*; a second call for the same item is a no-op."""
        now = utcnow()
        async with self._session.begin() as session:
            insert = _INSERTS[session.bind.dialect.name]
            stmt = (
                insert(ClassificationJob.__table__)
                .values(
                    item_id=item.id,
                    run_id=item.run_id,
                    job_id=item.job_id,
                    external_message_id=item.external_message_id,
                    status=ClassificationStatus.PENDING.value,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["item_id"])
            )
            result = await session.execute(stmt)
        created = result.rowcount == 1
        if created:
            logger.debug("classification_job_queued", item_id=item.id, run_id=str(item.run_id))
        return created

    async def get(self, job_id: int) -> ClassificationJob | None:
        async with self._session() as session:
            return await session.get(ClassificationJob, job_id)

    async def counts(self, run_id: uuid.UUID) -> ClassificationCounts:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(ClassificationJob.status, func.count())
                    .where(ClassificationJob.run_id == run_id)
                    .group_by(ClassificationJob.status)
                )
            ).all()
        return ClassificationCounts(**{status: n for status, n in rows})

    async def list_by_status(
        self,
        run_id: uuid.UUID,
        status: ClassificationStatus,
        limit: int,
    ) -> list[ClassificationJob]:
        async with self._session() as session:
            stmt = (
                select(ClassificationJob)
                .where(ClassificationJob.run_id == run_id, ClassificationJob.status == status)
                .order_by(ClassificationJob.updated_at.desc(), ClassificationJob.id.desc())
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def claim_next(self, now: datetime | None = None) -> ClassificationJob | None:
        """Claim the oldest due job by flipping it to ``processing``.

        Returns ``None`` when nothing is due or another worker took the
        candidate first.
        """
        now = now or utcnow()
        due = (ClassificationStatus.PENDING, ClassificationStatus.RETRY)
        async with self._session.begin() as session:
            candidate = (
                await session.execute(
                    select(ClassificationJob.id)
                    .where(
                        ClassificationJob.status.in_(due),
                        or_(
                            ClassificationJob.next_retry_at.is_(None),
                            ClassificationJob.next_retry_at <= now,
                        ),
                    )
                    .order_by(ClassificationJob.id)
                    .limit(1)
                )
            ).scalar_one_or_none()
            if candidate is None:
                return None

            result = await session.execute(
                update(ClassificationJob)
                .where(ClassificationJob.id == candidate, ClassificationJob.status.in_(due))
                .values(status=ClassificationStatus.PROCESSING.value, last_started_at=now)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                return None
            return await session.get(ClassificationJob, candidate, populate_existing=True)

    async def list_stalled(self, started_before: datetime) -> list[ClassificationJob]:
        """Jobs still ``processing`` that were claimed before *started_before*.

        No live worker holds a job past its classifier timeout, so these
        were left behind by an invocation that was killed mid-job.
        """
        async with self._session() as session:
            stmt = (
                select(ClassificationJob)
                .where(
                    ClassificationJob.status == ClassificationStatus.PROCESSING,
                    or_(
                        ClassificationJob.last_started_at.is_(None),
                        ClassificationJob.last_started_at < started_before,
                    ),
                )
                .order_by(ClassificationJob.id)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def mark_succeeded(self, job_id: int) -> None:
        await self._finish(
            job_id,
            status=ClassificationStatus.SUCCEEDED,
            last_error=None,
            next_retry_at=None,
        )

    async def mark_retry(self, job_id: int, error: str, next_retry_at: datetime) -> None:
        await self._finish(
            job_id,
            status=ClassificationStatus.RETRY,
            last_error=error,
            next_retry_at=next_retry_at,
        )

    async def mark_failed(self, job_id: int, error: str) -> None:
        await self._finish(
            job_id,
            status=ClassificationStatus.FAILED,
            last_error=error,
            next_retry_at=None,
        )

    async def _finish(
        self,
        job_id: int,
        *,
        status: ClassificationStatus,
        last_error: str | None,
        next_retry_at: datetime | None,
    ) -> None:
        async with self._session.begin() as session:
            await session.execute(
                update(ClassificationJob)
                .where(
                    ClassificationJob.id == job_id,
                    ClassificationJob.status == ClassificationStatus.PROCESSING,
                )
                .values(
                    status=status.value,
                    attempts=ClassificationJob.attempts + 1,
                    last_error=last_error[:500] if last_error else None,
                    next_retry_at=next_retry_at,
                    last_finished_at=utcnow(),
                )
                .execution_options(**_NO_SYNC)
            )
