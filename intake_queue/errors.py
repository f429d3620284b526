"""Exception taxonomy for the intake queue.

Partial completion and lost races are *results*, not exceptions; only
conditions that stop a unit of work are raised.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .db.models import ImportRun


class IntakeError(Exception):
    """Base class for all intake queue errors."""


class ConfigurationError(IntakeError):
    """Required run parameters or provider settings are missing.

    Fatal to the run: it is finalized ``failed`` and never retried.
    """


class TransientError(IntakeError):
    """A failure that may succeed if attempted again later."""


class TransientProviderError(TransientError):
    """Network failure, timeout or rate limit talking to the email provider."""


class AlreadyActive(IntakeError):
    """The job already has an enqueued or running run."""

    def __init__(self, run: ImportRun) -> None:
        super().__init__(f"job {run.job_id} already has active run {run.id}")
        self.run = run


class RunNotFound(IntakeError):
    def __init__(self, run_id: uuid.UUID) -> None:
        super().__init__(f"import run {run_id} not found")
        self.run_id = run_id


class RunNotCancelable(IntakeError):
    def __init__(self, run_id: uuid.UUID, status: str) -> None:
        super().__init__(f"import run {run_id} is {status} and cannot be canceled")
        self.run_id = run_id
        self.status = status
