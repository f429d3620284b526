"""Continuation signal sent when a slice ends with work left over.

The signal is best-effort: the periodic tick resumes the run if it is
lost, so delivery failures are logged and otherwise ignored.
"""

from __future__ import annotations

import abc
import uuid

import httpx
import structlog

from intake_queue.config import TriggerConfig

logger = structlog.get_logger()


class Trigger(abc.ABC):
    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abc.abstractmethod
    async def fire(self, reason: str, run_id: uuid.UUID | None = None) -> bool:
        """Ask for another dispatcher pass.  Returns whether the signal was sent."""
        ...


class NullTrigger(Trigger):
    """Used when no dispatch URL is configured; relies on the periodic tick."""

    async def fire(self, reason: str, run_id: uuid.UUID | None = None) -> bool:
        logger.debug("continuation_trigger_skipped", reason=reason, run_id=str(run_id) if run_id else None)
        return False


class HttpTrigger(Trigger):
    """POSTs to the dispatch endpoint of this (or a sibling) deployment."""

    def __init__(self, config: TriggerConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._ensure_client()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_seconds))
            logger.info("continuation_trigger_started", url=self._config.dispatch_url)
        return self._client

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("continuation_trigger_stopped")

    async def fire(self, reason: str, run_id: uuid.UUID | None = None) -> bool:
        client = self._ensure_client()
        payload = {"reason": reason, "run_id": str(run_id) if run_id else None}
        try:
            response = await client.post(self._config.dispatch_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "continuation_trigger_failed",
                url=self._config.dispatch_url,
                reason=reason,
                error=str(exc),
            )
            return False

        logger.info("continuation_trigger_sent", reason=reason, status_code=response.status_code)
        return True


def build_trigger(config: TriggerConfig) -> Trigger:
    if not config.dispatch_url:
        logger.info("continuation_trigger_disabled", reason="empty_dispatch_url")
        return NullTrigger()
    return HttpTrigger(config)
