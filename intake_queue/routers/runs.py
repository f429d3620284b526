"""Import run endpoints: enqueue, inspect, cancel."""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Response, status

from intake_queue.deps import get_service
from intake_queue.schemas import (
    EnqueueRequest,
    EnqueueResponse,
    QueueOverviewOut,
    RunOut,
    RunSummaryOut,
)
from intake_queue.service import ImportService

router = APIRouter(prefix="/v1", tags=["import-runs"])


@router.post(
    "/jobs/{job_id}/import-runs",
    response_model=EnqueueResponse,
    status_code=status.HTTP_201_CREATED,
)
async def enqueue_run(
    job_id: str,
    body: EnqueueRequest,
    response: Response,
    background: BackgroundTasks,
    service: Annotated[ImportService, Depends(get_service)],
):
    result = await service.enqueue(
        job_id,
        mailbox=body.mailbox,
        search_text=body.search_text,
        max_emails=body.max_emails,
        requested_by=body.requested_by,
    )
    if not result.created:
        response.status_code = status.HTTP_200_OK
    background.add_task(service.tick_in_background)
    return EnqueueResponse(run=RunOut.model_validate(result.run), created=result.created)


@router.get("/import-runs", response_model=QueueOverviewOut)
async def queue_overview(
    service: Annotated[ImportService, Depends(get_service)],
    recent: int = 10,
):
    overview = await service.overview(recent)
    return QueueOverviewOut(
        running=RunOut.model_validate(overview.running) if overview.running else None,
        enqueued=[RunOut.model_validate(r) for r in overview.enqueued],
        recent=[RunOut.model_validate(r) for r in overview.recent],
    )


@router.get("/import-runs/{run_id}", response_model=RunOut)
async def get_run(
    run_id: uuid.UUID,
    service: Annotated[ImportService, Depends(get_service)],
):
    return RunOut.model_validate(await service.get_run(run_id))


@router.get("/import-runs/{run_id}/summary", response_model=RunSummaryOut)
async def get_run_summary(
    run_id: uuid.UUID,
    service: Annotated[ImportService, Depends(get_service)],
):
    run = await service.get_run(run_id)
    summary = await service.get_summary(run_id)
    return RunSummaryOut(run_id=run.id, status=run.status, summary=summary)


@router.post("/import-runs/{run_id}/cancel", response_model=RunOut)
async def cancel_run(
    run_id: uuid.UUID,
    service: Annotated[ImportService, Depends(get_service)],
):
    return RunOut.model_validate(await service.cancel(run_id))
