"""Email import queue: run dispatcher, slice processor and reaper."""

from intake_queue.classification import Classifier, ClassificationWorker
from intake_queue.config import AppConfig
from intake_queue.errors import (
    AlreadyActive,
    ConfigurationError,
    IntakeError,
    RunNotCancelable,
    RunNotFound,
    TransientError,
    TransientProviderError,
)
from intake_queue.logging import setup_logging
from intake_queue.models import (
    Checkpoint,
    DispatchAction,
    DispatchResult,
    ItemStatus,
    ItemStep,
    RunStatus,
    RunSummary,
    SliceResult,
    SliceStatus,
    StepOutcome,
)
from intake_queue.pipeline import PipelineStep, StepContext
from intake_queue.providers.base import EmailProvider
from intake_queue.service import ImportService

__all__ = [
    "AlreadyActive",
    "AppConfig",
    "Checkpoint",
    "ClassificationWorker",
    "Classifier",
    "ConfigurationError",
    "DispatchAction",
    "DispatchResult",
    "EmailProvider",
    "ImportService",
    "IntakeError",
    "ItemStatus",
    "ItemStep",
    "PipelineStep",
    "RunNotCancelable",
    "RunNotFound",
    "RunStatus",
    "RunSummary",
    "SliceResult",
    "SliceStatus",
    "StepContext",
    "StepOutcome",
    "TransientError",
    "TransientProviderError",
    "setup_logging",
]
