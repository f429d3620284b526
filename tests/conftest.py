"""Shared fixtures for intake queue tests."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest
from sqlalchemy import update

from intake_queue.classification import Classifier
from intake_queue.config import (
    AppConfig,
    ClassificationConfig,
    DatabaseConfig,
    RetryConfig,
    SliceConfig,
    TriggerConfig,
)
from intake_queue.db.engine import Database
from intake_queue.db.models import ClassificationJob, ImportRun
from intake_queue.db.types import utcnow
from intake_queue.errors import TransientProviderError
from intake_queue.models import ItemStep, StepOutcome
from intake_queue.pipeline import PipelineStep, StepContext
from intake_queue.providers.base import (
    Attachment,
    EmailProvider,
    FetchedMessage,
    MessageDescriptor,
    MessagePage,
    SearchWindow,
)
from intake_queue.service import ImportService
from intake_queue.store.classification import ClassificationJobStore
from intake_queue.store.items import ItemStore
from intake_queue.store.runs import RunStore
from intake_queue.trigger import Trigger

# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_messages(
    count: int,
    *,
    prefix: str = "msg",
    newest: datetime | None = None,
    spacing: timedelta = timedelta(hours=1),
) -> list[MessageDescriptor]:
    """*count* descriptors, newest first, *spacing* apart."""
    newest = newest or utcnow() - timedelta(minutes=5)
    return [
        MessageDescriptor(
            external_id=f"{prefix}-{i:04d}",
            received_at=newest - spacing * i,
            thread_id=f"thread-{i:04d}",
            subject=f"Application {i}",
        )
        for i in range(count)
    ]


class FakeProvider(EmailProvider):
    """In-memory mailbox with offset cursors."""

    def __init__(
        self,
        messages: Iterable[MessageDescriptor] = (),
        *,
        list_failures: int = 0,
        without_attachments: Iterable[str] = (),
    ) -> None:
        self.messages = sorted(messages, key=lambda m: m.received_at, reverse=True)
        self.list_failures = list_failures
        self.without_attachments = set(without_attachments)
        self.list_calls: list[tuple[SearchWindow, str | None, int]] = []
        self.fetched: list[str] = []
        self.opened = 0
        self.closed = 0

    async def open(self) -> None:
        self.opened += 1

    async def close(self) -> None:
        self.closed += 1

    async def list_messages(
        self,
        window: SearchWindow,
        cursor: str | None,
        limit: int,
    ) -> MessagePage:
        self.list_calls.append((window, cursor, limit))
        if self.list_failures:
            self.list_failures -= 1
            raise TransientProviderError("mailbox temporarily unavailable")

        matching = [
            m
            for m in self.messages
            if m.received_at >= window.since
            and (window.before is None or m.received_at < window.before)
        ]
        offset = int(cursor) if cursor else 0
        page = matching[offset : offset + limit]
        end = offset + len(page)
        return MessagePage(items=page, next_cursor=str(end) if end < len(matching) else None)

    async def fetch_message(self, external_id: str) -> FetchedMessage:
        self.fetched.append(external_id)
        attachments = []
        if external_id not in self.without_attachments:
            attachments.append(Attachment("resume.pdf", "application/pdf", b"%PDF-1.4 resume"))
        return FetchedMessage(
            external_id=external_id,
            subject=f"Application {external_id}",
            sender="candidate@example.com",
            body_text="Please find my resume attached.",
            attachments=attachments,
        )


class RecordingStep(PipelineStep):
    """Step handler that records calls and can advance a clock or fail."""

    def __init__(
        self,
        step: ItemStep,
        *,
        clock: FakeClock | None = None,
        seconds: float = 0.0,
        fail: Callable[[StepContext], Exception | None] | None = None,
        outcome: StepOutcome = StepOutcome.ADVANCE,
    ) -> None:
        self.step = step
        self.calls: list[str] = []
        self._clock = clock
        self._seconds = seconds
        self._fail = fail
        self._outcome = outcome

    async def run(self, ctx: StepContext) -> StepOutcome:
        self.calls.append(ctx.item.external_message_id)
        if self._clock is not None:
            self._clock.advance(self._seconds)
        if self._fail is not None:
            exc = self._fail(ctx)
            if exc is not None:
                raise exc
        return self._outcome


class RecordingTrigger(Trigger):
    def __init__(self) -> None:
        self.fired: list[tuple[str, uuid.UUID | None]] = []

    async def fire(self, reason: str, run_id: uuid.UUID | None = None) -> bool:
        self.fired.append((reason, run_id))
        return True


class FakeClassifier(Classifier):
    """Fails each job's first *failures* attempts, then succeeds."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[int] = []

    async def classify(self, job: ClassificationJob) -> None:
        self.calls.append(job.id)
        if job.attempts < self.failures:
            raise RuntimeError("model overloaded")


# ------------------------------------------------------------------
# Config / database
# ------------------------------------------------------------------


def make_config(
    *,
    classification: ClassificationConfig | None = None,
    **slice_overrides,
) -> AppConfig:
    return AppConfig(
        log_json=False,
        slice=SliceConfig(**slice_overrides),
        retry=RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.02),
        classification=classification or ClassificationConfig(enabled=False),
        trigger=TriggerConfig(dispatch_url=""),
    )


@pytest.fixture
async def database(tmp_path) -> Database:
    db = Database(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'intake.db'}"))
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def session_factory(database: Database):
    return database.session


@pytest.fixture
def run_store(session_factory) -> RunStore:
    return RunStore(session_factory)


@pytest.fixture
def item_store(session_factory) -> ItemStore:
    return ItemStore(session_factory)


@pytest.fixture
def job_store(session_factory) -> ClassificationJobStore:
    return ClassificationJobStore(session_factory)


@pytest.fixture
def make_service(session_factory):
    """Build an :class:`ImportService` over the test database."""

    def _make(
        provider: EmailProvider | None = None,
        *,
        config: AppConfig | None = None,
        steps: Iterable[PipelineStep] = (),
        classifier: Classifier | None = None,
        trigger: Trigger | None = None,
        clock: FakeClock | None = None,
    ) -> ImportService:
        provider = provider or FakeProvider()
        return ImportService(
            config or make_config(),
            session_factory,
            provider_factory=lambda run: provider,
            steps=steps,
            classifier=classifier,
            trigger=trigger or RecordingTrigger(),
            clock=clock or FakeClock(),
        )

    return _make


async def start_run(runs: RunStore, job_id: str = "job-1", **kwargs) -> ImportRun:
    """Enqueue a run for *job_id* and promote it to ``running``."""
    kwargs.setdefault("max_emails", 5000)
    kwargs.setdefault("mailbox", "INBOX")
    kwargs.setdefault("search_text", "resume")
    await runs.create(job_id=job_id, **kwargs)
    run = await runs.promote_oldest_enqueued()
    assert run is not None and run.job_id == job_id
    return run


async def set_run_columns(session_factory, run_id: uuid.UUID, **values) -> None:
    """Write run columns directly, bypassing the store's guards."""
    async with session_factory.begin() as session:
        await session.execute(
            update(ImportRun)
            .where(ImportRun.id == run_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Application: Backend Engineer",
    from_addr: str = "candidate@example.com",
    to_addr: str = "jobs@example.com",
    body: str = "Hello, please see my resume.",
    message_id: str = "<app-001@example.com>",
    date: str = "Sun, 01 Jun 2025 12:00:00 +0000",
    references: str | None = None,
    in_reply_to: str | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = message_id
    msg["Date"] = date
    if references:
        msg["References"] = references
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Resume attached",
    body_html: str = "<p>Resume attached</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
    inline: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Application with resume"
    msg["From"] = "candidate@example.com"
    msg["To"] = "jobs@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for disposition, parts in (("attachment", attachments), ("inline", inline)):
        for filename, content_type, payload in parts or []:
            maintype, subtype = content_type.split("/", 1)
            part = MIMEBase(maintype, subtype)
            part.set_payload(payload)
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", disposition, filename=filename)
            msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("resume.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("notes.txt", "text/plain", b"some notes"),
        ],
    )
