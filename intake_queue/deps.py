"""FastAPI dependency-injection helpers."""

from __future__ import annotations

from fastapi import Request

from intake_queue.service import ImportService


def get_service(request: Request) -> ImportService:
    return request.app.state.service
