"""Tests for intake_queue.trigger."""

from __future__ import annotations

import json
import uuid

import httpx
import pytest

from intake_queue.config import TriggerConfig
from intake_queue.trigger import HttpTrigger, NullTrigger, build_trigger

DISPATCH_URL = "http://intake.test/v1/dispatch"


def _trigger_with(handler) -> HttpTrigger:
    trigger = HttpTrigger(TriggerConfig(dispatch_url=DISPATCH_URL))
    trigger._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return trigger


class TestBuildTrigger:
    def test_empty_url_disables_signal(self):
        assert isinstance(build_trigger(TriggerConfig(dispatch_url="")), NullTrigger)

    def test_url_builds_http_trigger(self):
        assert isinstance(build_trigger(TriggerConfig(dispatch_url=DISPATCH_URL)), HttpTrigger)


class TestNullTrigger:
    @pytest.mark.asyncio
    async def test_never_sends(self):
        assert await NullTrigger().fire("continue", uuid.uuid4()) is False


class TestHttpTrigger:
    @pytest.mark.asyncio
    async def test_posts_reason_and_run(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202, json={"accepted": True})

        trigger = _trigger_with(handler)
        run_id = uuid.uuid4()
        try:
            assert await trigger.fire("continue", run_id) is True
        finally:
            await trigger.stop()

        (request,) = requests
        assert request.method == "POST"
        assert str(request.url) == DISPATCH_URL
        assert json.loads(request.content) == {"reason": "continue", "run_id": str(run_id)}

    @pytest.mark.asyncio
    async def test_error_status_is_reported_not_raised(self):
        trigger = _trigger_with(lambda request: httpx.Response(503))
        try:
            assert await trigger.fire("next_run") is False
        finally:
            await trigger.stop()

    @pytest.mark.asyncio
    async def test_connection_failure_is_reported_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        trigger = _trigger_with(handler)
        try:
            assert await trigger.fire("continue", uuid.uuid4()) is False
        finally:
            await trigger.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        trigger = HttpTrigger(TriggerConfig(dispatch_url=DISPATCH_URL))
        await trigger.start()
        await trigger.stop()
        await trigger.stop()

    @pytest.mark.asyncio
    async def test_fire_opens_client_on_first_use(self, monkeypatch: pytest.MonkeyPatch):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        real_client = httpx.AsyncClient
        monkeypatch.setattr(
            httpx,
            "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
        )
        trigger = HttpTrigger(TriggerConfig(dispatch_url=DISPATCH_URL))
        try:
            assert await trigger.fire("continue") is True
            assert await trigger.fire("next_run") is True
        finally:
            await trigger.stop()

        assert [json.loads(r.content)["reason"] for r in requests] == ["continue", "next_run"]
