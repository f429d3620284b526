"""Dispatcher entry points for the periodic timer and the continuation signal."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Response, status

from intake_queue.classification import ClassificationSliceResult
from intake_queue.deps import get_service
from intake_queue.schemas import DispatchAccepted
from intake_queue.service import ImportService, TickResult

router = APIRouter(prefix="/v1", tags=["dispatch"])


@router.post(
    "/dispatch",
    response_model=TickResult | DispatchAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def dispatch(
    response: Response,
    background: BackgroundTasks,
    service: Annotated[ImportService, Depends(get_service)],
    wait: bool = False,
):
    """Run one tick.  Without ``wait`` the tick runs after the response is sent."""
    if wait:
        response.status_code = status.HTTP_200_OK
        return await service.tick()
    background.add_task(service.tick_in_background)
    return DispatchAccepted()


@router.post("/classification/slice", response_model=ClassificationSliceResult | None)
async def classification_slice(
    service: Annotated[ImportService, Depends(get_service)],
):
    return await service.classify()
