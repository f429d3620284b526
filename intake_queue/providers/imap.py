"""IMAP email provider wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TypeVar

import structlog
from pydantic import ValidationError

from intake_queue.config import ImapConfig
from intake_queue.db.models import ImportRun
from intake_queue.errors import ConfigurationError, IntakeError, TransientProviderError
from intake_queue.providers.base import (
    EmailProvider,
    FetchedMessage,
    MessageDescriptor,
    MessagePage,
    SearchWindow,
)
from intake_queue.providers.envelope import extract_envelope
from intake_queue.providers.parser import parse_message

logger = structlog.get_logger()

T = TypeVar("T")

_UID_RE = re.compile(rb"UID (\d+)")

# UIDs per FETCH when ranking a dated window.
DATE_FETCH_CHUNK = 500


def _imap_date(value: datetime) -> str:
    return value.strftime("%d-%b-%Y")


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_criteria(window: SearchWindow) -> str:
    """IMAP SEARCH criteria for *window*.

    IMAP dates are day-granular: ``BEFORE`` is widened to the next day and
    the exact bound is applied to each message's ``Date`` header instead.
    """
    parts = [f"SINCE {_imap_date(window.since)}"]
    if window.before is not None:
        parts.append(f"BEFORE {_imap_date(window.before + timedelta(days=1))}")
    if window.query:
        parts.append(f"TEXT {_quote(window.query)}")
    return " ".join(parts)


class ImapProvider(EmailProvider):
    """Async-friendly IMAP provider for one mailbox.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()``; a lock keeps concurrent item workers from
    interleaving commands on the single connection.  Cursors are message
    UIDs: each page continues with UIDs lower than the last one returned.
    Windows bounded by ``before`` are ranked by ``Date`` header instead,
    since UID order does not follow it for moved or restored mail.
    """

    def __init__(self, config: ImapConfig, mailbox: str) -> None:
        self._config = config
        self._mailbox = mailbox
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect, login, and select the run's mailbox."""
        try:
            await asyncio.to_thread(self._connect_sync)
        except imaplib.IMAP4.abort as exc:
            raise TransientProviderError(f"IMAP connection dropped: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise ConfigurationError(f"IMAP login or mailbox selection failed: {exc}") from exc
        except OSError as exc:
            raise TransientProviderError(f"IMAP connection failed: {exc}") from exc
        logger.info("imap_connected", host=self._config.host, mailbox=self._mailbox)

    def _connect_sync(self) -> None:
        if self._config.use_ssl:
            self._conn = imaplib.IMAP4_SSL(self._config.host, self._config.port)
        else:
            self._conn = imaplib.IMAP4(self._config.host, self._config.port)
        self._conn.login(self._config.username, self._config.password.get_secret_value())
        status, data = self._conn.select(self._mailbox, readonly=True)
        if status != "OK":
            raise imaplib.IMAP4.error(f"cannot select {self._mailbox}: {data!r}")

    async def close(self) -> None:
        """Close mailbox and logout."""
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def _call(self, fn: Callable[..., T], *args) -> T:
        assert self._conn is not None, "Not connected"
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except (imaplib.IMAP4.abort, OSError) as exc:
                raise TransientProviderError(f"IMAP command failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    async def list_messages(
        self,
        window: SearchWindow,
        cursor: str | None,
        limit: int,
    ) -> MessagePage:
        return await self._call(self._list_sync, window, cursor, limit)

    async def fetch_message(self, external_id: str) -> FetchedMessage:
        raw = await self._call(self._fetch_sync, external_id, "(RFC822)")
        if raw is None:
            raise IntakeError(f"message {external_id} no longer exists in {self._mailbox}")
        return parse_message(external_id, raw)

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _list_sync(self, window: SearchWindow, cursor: str | None, limit: int) -> MessagePage:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, build_criteria(window))
        if status != "OK" or not data or not data[0]:
            return MessagePage(items=[])

        uids = sorted((int(u) for u in data[0].split()), reverse=True)
        if window.before is not None:
            return self._list_dated_sync(window, uids, limit)
        if cursor is not None:
            uids = [u for u in uids if u < int(cursor)]

        items: list[MessageDescriptor] = []
        last_examined: int | None = None
        for uid in uids:
            if len(items) >= limit:
                break
            last_examined = uid
            raw = self._fetch_sync(str(uid), "(BODY.PEEK[HEADER])")
            if raw is None:
                continue
            items.append(_descriptor(uid, raw))

        more = last_examined is not None and uids[-1] < last_examined
        next_cursor = str(last_examined) if more else None
        logger.debug("imap_page_listed", listed=len(items), next_cursor=next_cursor)
        return MessagePage(items=items, next_cursor=next_cursor)

    def _list_dated_sync(self, window: SearchWindow, uids: list[int], limit: int) -> MessagePage:
        """The newest *limit* messages in *window* by ``Date`` header.

        The caller pages by lowering ``window.before``, so no cursor is
        returned.  Messages without a parseable ``Date`` cannot be placed in
        the window and are left out.
        """
        assert window.before is not None
        ranked = sorted(
            (
                (received_at, uid)
                for uid, received_at in self._dates_sync(uids).items()
                if received_at is not None and window.since <= received_at < window.before
            ),
            reverse=True,
        )

        items: list[MessageDescriptor] = []
        for _, uid in ranked[:limit]:
            raw = self._fetch_sync(str(uid), "(BODY.PEEK[HEADER])")
            if raw is not None:
                items.append(_descriptor(uid, raw))

        logger.debug("imap_dated_page_listed", candidates=len(uids), listed=len(items))
        return MessagePage(items=items)

    def _dates_sync(self, uids: list[int]) -> dict[int, datetime | None]:
        assert self._conn is not None
        dates: dict[int, datetime | None] = {}
        for start in range(0, len(uids), DATE_FETCH_CHUNK):
            uid_set = ",".join(str(u) for u in uids[start : start + DATE_FETCH_CHUNK])
            status, data = self._conn.uid("FETCH", uid_set, "(UID BODY.PEEK[HEADER.FIELDS (DATE)])")
            if status != "OK" or not data:
                continue
            for part in data:
                # (b"seq (UID n BODY[...] {len}", header) per message, b")" between.
                if not isinstance(part, tuple):
                    continue
                match = _UID_RE.search(part[0])
                if match is not None:
                    dates[int(match.group(1))] = extract_envelope(part[1])["received_at"]
        return dates

    def _fetch_sync(self, uid: str, parts: str) -> bytes | None:
        assert self._conn is not None
        status, msg_data = self._conn.uid("FETCH", uid, parts)
        if status != "OK" or not msg_data or not msg_data[0]:
            return None
        return msg_data[0][1]  # type: ignore[index]


def _descriptor(uid: int, raw: bytes) -> MessageDescriptor:
    envelope = extract_envelope(raw)
    return MessageDescriptor(
        external_id=str(uid),
        received_at=envelope["received_at"],
        thread_id=envelope["thread_id"],
        subject=envelope["subject"],
    )


def imap_provider_factory(run: ImportRun) -> ImapProvider:
    """Build the provider for *run*; IMAP settings come from ``IMAP_*`` env vars."""
    try:
        config = ImapConfig()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise ConfigurationError(f"IMAP provider is not configured: {exc}") from exc
    if not run.mailbox:
        raise ConfigurationError("Run has no mailbox")
    return ImapProvider(config, run.mailbox)
