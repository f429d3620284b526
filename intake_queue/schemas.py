"""Request / response bodies for the HTTP trigger surface."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from intake_queue.models import Checkpoint, RunStatus, RunSummary


class EnqueueRequest(BaseModel):
    mailbox: str | None = Field(default=None, description="Mailbox / folder to import from")
    search_text: str | None = Field(default=None, description="Text the messages must contain")
    max_emails: int | None = Field(default=None, ge=1, description="Cap on enumerated messages")
    requested_by: str | None = Field(default=None, description="User who asked for the import")


class RunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: str
    requested_by: str | None
    mailbox: str | None
    search_text: str | None
    max_emails: int
    status: RunStatus
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    processing_duration_ms: int | None
    progress: float
    total_messages: int
    processed_messages: int
    attempts: int
    last_error: str | None
    checkpoint: Checkpoint | None


class EnqueueResponse(BaseModel):
    run: RunOut
    created: bool = Field(description="False when the job already had an active run")


class QueueOverviewOut(BaseModel):
    running: RunOut | None
    enqueued: list[RunOut]
    recent: list[RunOut]


class RunSummaryOut(BaseModel):
    run_id: uuid.UUID
    status: RunStatus
    summary: RunSummary | None


class DispatchAccepted(BaseModel):
    accepted: bool = True
