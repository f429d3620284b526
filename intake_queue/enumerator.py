"""Discovers messages for a run and materializes them as pending items.

Two phases, resumable from the run's :class:`Checkpoint`:

``search``
    Recent messages (the broad lookback window), paged with the provider's
    cursor.
``deep_scan``
    Older messages, paged strictly backward in time: each page asks for
    messages received no later than the oldest one seen so far.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from intake_queue.budget import TimeBudget
from intake_queue.config import EnumerationConfig, RetryConfig, SliceConfig
from intake_queue.db.models import ImportRun
from intake_queue.models import Checkpoint
from intake_queue.providers.base import EmailProvider, MessagePage, SearchWindow
from intake_queue.retry import with_retry
from intake_queue.store.items import ItemStore
from intake_queue.store.runs import RunStore

logger = structlog.get_logger()

_TIMESTAMP_STEP = timedelta(microseconds=1)


class Enumerator:
    def __init__(
        self,
        runs: RunStore,
        items: ItemStore,
        *,
        slice_config: SliceConfig,
        config: EnumerationConfig,
        retry_config: RetryConfig,
    ) -> None:
        self._runs = runs
        self._items = items
        self._slice = slice_config
        self._config = config
        self._retry = with_retry(retry_config)

    def _search_since(self, run: ImportRun) -> datetime:
        return run.created_at - timedelta(days=self._config.search_lookback_days)

    def _deep_since(self, run: ImportRun) -> datetime:
        return run.created_at - timedelta(days=self._config.deep_lookback_days)

    async def _list(
        self,
        provider: EmailProvider,
        window: SearchWindow,
        cursor: str | None,
        limit: int,
    ) -> MessagePage:
        return await self._retry(provider.list_messages)(window, cursor, limit)

    async def run(
        self,
        run: ImportRun,
        provider: EmailProvider,
        budget: TimeBudget,
    ) -> Checkpoint:
        """Enumerate as far as the budget allows and return the new checkpoint.

        The checkpoint and ``total_messages`` are persisted after every page.
        """
        checkpoint = Checkpoint.model_validate(run.checkpoint or {})
        total = await self._items.count(run.id)
        query = run.search_text or ""

        while not checkpoint.complete:
            if budget.remaining() < self._slice.min_enumeration_seconds:
                logger.info(
                    "enumeration_deferred",
                    remaining=round(budget.remaining(), 2),
                    pages=checkpoint.pages,
                )
                break

            quota = run.max_emails - total
            if quota <= 0:
                checkpoint = checkpoint.model_copy(update={"search_done": True, "deep_done": True})
                await self._runs.save_checkpoint(run.id, checkpoint, total)
                logger.info("enumeration_cap_reached", max_emails=run.max_emails)
                break

            limit = min(self._slice.page_size, quota)
            if not checkpoint.search_done:
                checkpoint = await self._search_page(run, provider, checkpoint, query, limit)
            else:
                checkpoint = await self._deep_page(run, provider, checkpoint, query, limit)

            total = await self._items.count(run.id)
            await self._runs.save_checkpoint(run.id, checkpoint, total)

        if checkpoint.complete:
            logger.info("enumeration_complete", total_messages=total, pages=checkpoint.pages)
        return checkpoint

    async def _search_page(
        self,
        run: ImportRun,
        provider: EmailProvider,
        checkpoint: Checkpoint,
        query: str,
        limit: int,
    ) -> Checkpoint:
        window = SearchWindow(query=query, since=self._search_since(run))
        page = await self._list(provider, window, checkpoint.search_cursor, limit)
        inserted = await self._items.insert_page(run, page.items)
        done = page.next_cursor is None or len(page.items) < limit
        logger.info(
            "enumeration_page",
            phase="search",
            fetched=len(page.items),
            inserted=inserted,
            done=done,
        )
        return checkpoint.model_copy(
            update={
                "search_cursor": page.next_cursor,
                "search_done": done,
                "pages": checkpoint.pages + 1,
            }
        )

    async def _deep_page(
        self,
        run: ImportRun,
        provider: EmailProvider,
        checkpoint: Checkpoint,
        query: str,
        limit: int,
    ) -> Checkpoint:
        before = checkpoint.deep_before or self._search_since(run)
        window = SearchWindow(query=query, since=self._deep_since(run), before=before)
        page = await self._list(provider, window, None, limit)
        inserted = await self._items.insert_page(run, page.items)

        received = [m.received_at for m in page.items if m.received_at is not None]
        done = len(page.items) < limit or not received
        next_before = before
        if not done:
            next_before = self._next_deep_before(min(received), before)
            done = next_before >= before
        logger.info(
            "enumeration_page",
            phase="deep_scan",
            fetched=len(page.items),
            inserted=inserted,
            before=before.isoformat(),
            done=done,
        )
        return checkpoint.model_copy(
            update={
                "deep_before": next_before,
                "deep_done": done,
                "pages": checkpoint.pages + 1,
            }
        )

    @staticmethod
    def _next_deep_before(oldest: datetime, before: datetime) -> datetime:
        """Upper bound for the page after one whose oldest message is *oldest*.

        The bound keeps *oldest* itself in range, so messages sharing that
        timestamp but cut off by the page limit are listed again (the insert
        skips the ones already seen).  A page made up entirely of that one
        timestamp has to step past it.
        """
        inclusive = oldest + _TIMESTAMP_STEP
        if inclusive < before:
            return inclusive
        logger.warning("enumeration_timestamp_tie", received_at=oldest.isoformat())
        return oldest
