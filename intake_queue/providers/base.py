"""Email provider interface consumed by the enumerator and the pipeline.

The core only depends on the shapes defined here; transports (IMAP,
vendor APIs) implement :class:`EmailProvider`.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from types import TracebackType


@dataclass(frozen=True)
class SearchWindow:
    """What to look for and in which time range.

    ``before`` is exclusive; ``None`` means "up to now".
    """

    query: str
    since: datetime
    before: datetime | None = None


@dataclass(frozen=True)
class MessageDescriptor:
    """Enough about a message to create a work item for it."""

    external_id: str
    received_at: datetime | None = None
    thread_id: str | None = None
    subject: str = ""


@dataclass
class MessagePage:
    items: list[MessageDescriptor]
    next_cursor: str | None = None


@dataclass
class Attachment:
    filename: str
    content_type: str
    payload: bytes

    @property
    def size(self) -> int:
        return len(self.payload)

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return ext.lower() if dot else ""


@dataclass
class FetchedMessage:
    """Full content of one message."""

    external_id: str
    subject: str = ""
    sender: str = ""
    body_text: str | None = None
    attachments: list[Attachment] = field(default_factory=list)


class EmailProvider(abc.ABC):
    """A mailbox the import pipeline can page through and read from.

    Providers are used as async context managers for the duration of one
    slice; :meth:`open` and :meth:`close` default to no-ops.
    """

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> EmailProvider:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @abc.abstractmethod
    async def list_messages(
        self,
        window: SearchWindow,
        cursor: str | None,
        limit: int,
    ) -> MessagePage:
        """Return up to *limit* messages in *window*, newest first.

        *cursor* is the ``next_cursor`` of the previous page, or ``None``
        for the first page.  ``next_cursor`` is ``None`` once the window
        is exhausted.  Transport failures worth retrying are raised as
        :class:`~intake_queue.errors.TransientProviderError`.
        """
        ...

    @abc.abstractmethod
    async def fetch_message(self, external_id: str) -> FetchedMessage:
        """Fetch the content and attachments of a single message."""
        ...
