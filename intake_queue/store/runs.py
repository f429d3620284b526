"""Durable run table access.

Every state change is a conditional ``UPDATE`` so that concurrent
invocations, each with its own connection, agree on the outcome without
any in-process locking.  Each method runs in its own short transaction
and returns detached ORM snapshots.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intake_queue.db.models import ClassificationJob, ImportItem, ImportRun
from intake_queue.db.types import utcnow
from intake_queue.errors import AlreadyActive, RunNotCancelable, RunNotFound
from intake_queue.models import Checkpoint, RunStatus, RunSummary

logger = structlog.get_logger()

_NO_SYNC = {"synchronize_session": False}


@dataclass
class EnqueueResult:
    run: ImportRun
    created: bool


@dataclass
class QueueOverview:
    running: ImportRun | None
    enqueued: list[ImportRun] = field(default_factory=list)
    recent: list[ImportRun] = field(default_factory=list)


def _duration_ms(run: ImportRun, now: datetime) -> int:
    started = run.started_at or run.created_at
    return max(0, int((now - started).total_seconds() * 1000))


class RunStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, run_id: uuid.UUID) -> ImportRun | None:
        async with self._session() as session:
            return await session.get(ImportRun, run_id)

    async def get_running(self) -> ImportRun | None:
        async with self._session() as session:
            stmt = select(ImportRun).where(ImportRun.status == RunStatus.RUNNING)
            return (await session.execute(stmt)).scalars().first()

    async def get_active_for_job(self, job_id: str) -> ImportRun | None:
        async with self._session() as session:
            stmt = select(ImportRun).where(
                ImportRun.job_id == job_id,
                ImportRun.status.in_(RunStatus.active()),
            )
            return (await session.execute(stmt)).scalars().first()

    async def list_stale(self, older_than: datetime) -> list[ImportRun]:
        """Running runs whose last slice activity predates *older_than*."""
        async with self._session() as session:
            stmt = select(ImportRun).where(
                ImportRun.status == RunStatus.RUNNING,
                or_(
                    and_(ImportRun.heartbeat_at.is_not(None), ImportRun.heartbeat_at < older_than),
                    and_(ImportRun.heartbeat_at.is_(None), ImportRun.started_at < older_than),
                ),
            )
            return list((await session.execute(stmt)).scalars().all())

    async def list_unsettled_canceled(self) -> list[ImportRun]:
        async with self._session() as session:
            stmt = (
                select(ImportRun)
                .where(ImportRun.status == RunStatus.CANCELED, ImportRun.summary.is_(None))
                .order_by(ImportRun.finished_at)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def queue_overview(self, recent: int = 10) -> QueueOverview:
        async with self._session() as session:
            running = (
                await session.execute(
                    select(ImportRun).where(ImportRun.status == RunStatus.RUNNING)
                )
            ).scalars().first()
            enqueued = (
                await session.execute(
                    select(ImportRun)
                    .where(ImportRun.status == RunStatus.ENQUEUED)
                    .order_by(ImportRun.created_at, ImportRun.id)
                )
            ).scalars().all()
            finished = (
                await session.execute(
                    select(ImportRun)
                    .where(ImportRun.status.in_(RunStatus.terminal()))
                    .order_by(ImportRun.finished_at.desc())
                    .limit(recent)
                )
            ).scalars().all()
        return QueueOverview(running=running, enqueued=list(enqueued), recent=list(finished))

    # ------------------------------------------------------------------
    # Enqueue / promote
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        job_id: str,
        max_emails: int,
        mailbox: str | None = None,
        search_text: str | None = None,
        requested_by: str | None = None,
    ) -> ImportRun:
        """Insert a new ``enqueued`` run.

        Raises :class:`AlreadyActive` carrying the existing run when the job
        already has one enqueued or running.
        """
        existing = await self.get_active_for_job(job_id)
        if existing is not None:
            raise AlreadyActive(existing)

        run = ImportRun(
            id=uuid.uuid4(),
            job_id=job_id,
            requested_by=requested_by,
            mailbox=mailbox,
            search_text=search_text,
            max_emails=max_emails,
            status=RunStatus.ENQUEUED.value,
            created_at=utcnow(),
            progress=0.0,
            total_messages=0,
            processed_messages=0,
            attempts=0,
        )
        try:
            async with self._session.begin() as session:
                session.add(run)
        except IntegrityError:
            # Lost an insert race against another enqueue for the same job.
            existing = await self.get_active_for_job(job_id)
            if existing is None:
                raise
            raise AlreadyActive(existing) from None

        logger.info("run_enqueued", run_id=str(run.id), job_id=job_id)
        return run

    async def enqueue(
        self,
        *,
        job_id: str,
        max_emails: int,
        mailbox: str | None = None,
        search_text: str | None = None,
        requested_by: str | None = None,
    ) -> EnqueueResult:
        """Idempotent enqueue: returns the job's active run if it has one."""
        try:
            run = await self.create(
                job_id=job_id,
                max_emails=max_emails,
                mailbox=mailbox,
                search_text=search_text,
                requested_by=requested_by,
            )
        except AlreadyActive as exc:
            logger.info(
                "run_already_active",
                run_id=str(exc.run.id),
                job_id=job_id,
                status=exc.run.status,
            )
            return EnqueueResult(run=exc.run, created=False)
        return EnqueueResult(run=run, created=True)

    async def promote_oldest_enqueued(self) -> ImportRun | None:
        """Flip the earliest-created ``enqueued`` run to ``running``.

        Returns ``None`` when nothing is queued or when another caller won
        the race; the global one-running index turns a concurrent promotion
        into an :class:`IntegrityError`, which is absorbed here.
        """
        now = utcnow()
        candidate: uuid.UUID | None = None
        try:
            async with self._session.begin() as session:
                candidate = (
                    await session.execute(
                        select(ImportRun.id)
                        .where(ImportRun.status == RunStatus.ENQUEUED)
                        .order_by(ImportRun.created_at, ImportRun.id)
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if candidate is None:
                    return None

                result = await session.execute(
                    update(ImportRun)
                    .where(ImportRun.id == candidate, ImportRun.status == RunStatus.ENQUEUED)
                    .values(
                        status=RunStatus.RUNNING.value,
                        started_at=now,
                        heartbeat_at=now,
                        attempts=ImportRun.attempts + 1,
                    )
                    .execution_options(**_NO_SYNC)
                )
                if result.rowcount != 1:
                    logger.info("run_promotion_race_lost", run_id=str(candidate), reason="claimed")
                    return None
                run = await session.get(ImportRun, candidate, populate_existing=True)
        except IntegrityError:
            logger.info(
                "run_promotion_race_lost",
                run_id=str(candidate) if candidate else None,
                reason="another_run_running",
            )
            return None

        logger.info("run_promoted", run_id=str(run.id), job_id=run.job_id, attempts=run.attempts)
        return run

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def finalize(
        self,
        run_id: uuid.UUID,
        status: RunStatus,
        *,
        summary: RunSummary | None = None,
        last_error: str | None = None,
    ) -> bool:
        """Move an active run to a terminal *status* exactly once.

        A second call (or a call racing the first) returns ``False`` and
        changes nothing.
        """
        if status not in RunStatus.terminal():
            raise ValueError(f"{status} is not a terminal status")

        now = utcnow()
        async with self._session.begin() as session:
            run = await session.get(ImportRun, run_id)
            if run is None or run.status not in RunStatus.active():
                return False

            values: dict[str, object] = {
                "status": status.value,
                "finished_at": now,
                "processing_duration_ms": _duration_ms(run, now),
                "slice_lease_until": None,
                "last_error": last_error,
            }
            if status is not RunStatus.CANCELED:
                values["progress"] = 1.0
            if summary is not None:
                values["summary"] = summary.model_dump(mode="json")

            result = await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id, ImportRun.status.in_(RunStatus.active()))
                .values(**values)
                .execution_options(**_NO_SYNC)
            )

        if result.rowcount != 1:
            logger.info("run_finalize_noop", run_id=str(run_id), status=status.value)
            return False

        logger.info(
            "run_finalized",
            run_id=str(run_id),
            status=status.value,
            duration_ms=values["processing_duration_ms"],
            last_error=last_error,
        )
        return True

    async def cancel(self, run_id: uuid.UUID) -> ImportRun:
        """Mark an enqueued or running run ``canceled``.

        The slice working the run notices between batches; the summary is
        written later by :meth:`settle`.
        """
        now = utcnow()
        async with self._session.begin() as session:
            run = await session.get(ImportRun, run_id)
            if run is None:
                raise RunNotFound(run_id)
            if run.status not in RunStatus.active():
                raise RunNotCancelable(run_id, run.status)

            result = await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id, ImportRun.status.in_(RunStatus.active()))
                .values(
                    status=RunStatus.CANCELED.value,
                    finished_at=now,
                    processing_duration_ms=_duration_ms(run, now),
                    slice_lease_until=None,
                )
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                current = await session.get(ImportRun, run_id, populate_existing=True)
                raise RunNotCancelable(run_id, current.status if current else "missing")
            run = await session.get(ImportRun, run_id, populate_existing=True)

        logger.info("run_canceled", run_id=str(run_id), job_id=run.job_id)
        return run

    async def settle(self, run_id: uuid.UUID, summary: RunSummary) -> bool:
        """Attach the write-once summary to a canceled run."""
        async with self._session.begin() as session:
            result = await session.execute(
                update(ImportRun)
                .where(
                    ImportRun.id == run_id,
                    ImportRun.status == RunStatus.CANCELED,
                    ImportRun.summary.is_(None),
                )
                .values(summary=summary.model_dump(mode="json"))
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Slice bookkeeping
    # ------------------------------------------------------------------

    async def acquire_slice_lease(self, run_id: uuid.UUID, lease_seconds: float) -> bool:
        """Take the per-run slice lease so overlapping slices back off.

        Taking the lease is not activity: ``heartbeat_at`` only moves when a
        slice inserts a page or settles an item, so a run that is re-leased
        every tick without progressing still ages into the reaper.
        """
        now = utcnow()
        async with self._session.begin() as session:
            result = await session.execute(
                update(ImportRun)
                .where(
                    ImportRun.id == run_id,
                    ImportRun.status == RunStatus.RUNNING,
                    or_(
                        ImportRun.slice_lease_until.is_(None),
                        ImportRun.slice_lease_until < now,
                    ),
                )
                .values(slice_lease_until=now + timedelta(seconds=lease_seconds))
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount == 1

    async def release_slice_lease(self, run_id: uuid.UUID) -> None:
        async with self._session.begin() as session:
            await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id)
                .values(slice_lease_until=None)
                .execution_options(**_NO_SYNC)
            )

    async def heartbeat(self, run_id: uuid.UUID) -> None:
        async with self._session.begin() as session:
            await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id, ImportRun.status == RunStatus.RUNNING)
                .values(heartbeat_at=utcnow())
                .execution_options(**_NO_SYNC)
            )

    async def save_checkpoint(
        self,
        run_id: uuid.UUID,
        checkpoint: Checkpoint,
        total_messages: int,
    ) -> None:
        async with self._session.begin() as session:
            await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id, ImportRun.status == RunStatus.RUNNING)
                .values(
                    checkpoint=checkpoint.model_dump(mode="json"),
                    total_messages=total_messages,
                    heartbeat_at=utcnow(),
                )
                .execution_options(**_NO_SYNC)
            )

    async def record_progress(
        self,
        run_id: uuid.UUID,
        *,
        total_messages: int,
        processed_messages: int,
        progress: float,
    ) -> None:
        """Write derived counts and raise ``progress`` (never lower it)."""
        async with self._session.begin() as session:
            await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id, ImportRun.status == RunStatus.RUNNING)
                .values(
                    total_messages=total_messages,
                    processed_messages=processed_messages,
                    heartbeat_at=utcnow(),
                )
                .execution_options(**_NO_SYNC)
            )
            await session.execute(
                update(ImportRun)
                .where(
                    ImportRun.id == run_id,
                    ImportRun.status == RunStatus.RUNNING,
                    ImportRun.progress < progress,
                )
                .values(progress=progress)
                .execution_options(**_NO_SYNC)
            )

    async def record_counts(
        self,
        run_id: uuid.UUID,
        *,
        total_messages: int,
        processed_messages: int,
    ) -> None:
        """Refresh derived counts on a run regardless of its status."""
        async with self._session.begin() as session:
            await session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id)
                .values(total_messages=total_messages, processed_messages=processed_messages)
                .execution_options(**_NO_SYNC)
            )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def prune_terminal(self, job_id: str, keep: int) -> int:
        """Delete terminal runs of *job_id* beyond the newest *keep*."""
        async with self._session.begin() as session:
            doomed = (
                await session.execute(
                    select(ImportRun.id)
                    .where(ImportRun.job_id == job_id, ImportRun.status.in_(RunStatus.terminal()))
                    .order_by(ImportRun.finished_at.desc(), ImportRun.created_at.desc())
                    .offset(keep)
                )
            ).scalars().all()
            if not doomed:
                return 0

            await session.execute(
                delete(ClassificationJob)
                .where(ClassificationJob.run_id.in_(doomed))
                .execution_options(**_NO_SYNC)
            )
            await session.execute(
                delete(ImportItem)
                .where(ImportItem.run_id.in_(doomed))
                .execution_options(**_NO_SYNC)
            )
            await session.execute(
                delete(ImportRun).where(ImportRun.id.in_(doomed)).execution_options(**_NO_SYNC)
            )

        logger.info("runs_pruned", job_id=job_id, pruned=len(doomed), kept=keep)
        return len(doomed)

    async def next_enqueued(self) -> ImportRun | None:
        """The run the next promotion would pick, if any."""
        async with self._session() as session:
            stmt = (
                select(ImportRun)
                .where(ImportRun.status == RunStatus.ENQUEUED)
                .order_by(ImportRun.created_at, ImportRun.id)
                .limit(1)
            )
            return (await session.execute(stmt)).scalars().first()
