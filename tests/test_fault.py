"""Tests for per-request fault isolation."""

import asyncio
import logging
import threading
from unittest.mock import MagicMock

import pytest

from rendermath.fault import GENERIC_ERROR, FaultBoundary
from rendermath.http import IncomingRequest, Response

from .conftest import FakeResponder


def make_boundary(handler, **kwargs):
    return FaultBoundary(
        handler,
        stop_accepting=kwargs.pop("stop_accepting", MagicMock()),
        notify_supervisor=kwargs.pop("notify_supervisor", MagicMock()),
        exit_process=kwargs.pop("exit_process", MagicMock()),
        **kwargs,
    )


@pytest.fixture
def boundaries():
    created = []
    yield created
    for boundary in created:
        if boundary.watchdog is not None:
            boundary.watchdog.cancel()


class TestFaultBoundary:

    @pytest.mark.asyncio
    async def test_success_passes_through(self, boundaries):
        async def handler(request):
            return Response.text(200, "fine")

        boundary = make_boundary(handler)
        boundaries.append(boundary)
        responder = FakeResponder()

        await boundary.run(IncomingRequest("GET", "/?q=x"), responder)

        assert responder.sent == [Response.text(200, "fine")]
        assert not boundary.tripped
        boundary.stop_accepting.assert_not_called()
        boundary.notify_supervisor.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_answers_500_and_retires_worker(self, boundaries, caplog):
        async def handler(request):
            await asyncio.sleep(0)
            raise RuntimeError("engine returned nonsense")

        boundary = make_boundary(handler)
        boundaries.append(boundary)
        responder = FakeResponder()

        with caplog.at_level(logging.ERROR):
            await boundary.run(IncomingRequest("GET", "/?q=x"), responder)

        assert responder.sent == [Response.text(500, GENERIC_ERROR)]
        assert boundary.tripped
        assert boundary.watchdog.daemon
        boundary.stop_accepting.assert_called_once_with()
        boundary.notify_supervisor.assert_called_once_with()
        assert "engine returned nonsense" in caplog.text

    @pytest.mark.asyncio
    async def test_other_requests_keep_running(self, boundaries):
        async def handler(request):
            if request.url == "/boom":
                await asyncio.sleep(0.01)
                raise ValueError("boom")
            await asyncio.sleep(0.05)
            return Response.text(200, request.url)

        boundary = make_boundary(handler)
        boundaries.append(boundary)
        responders = {url: FakeResponder() for url in ("/a", "/boom", "/b")}

        await asyncio.gather(*(boundary.run(IncomingRequest("GET", url), r) for url, r in responders.items()))

        assert responders["/a"].sent == [Response.text(200, "/a")]
        assert responders["/b"].sent == [Response.text(200, "/b")]
        assert responders["/boom"].sent[0].status == 500
        boundary.notify_supervisor.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_second_failure_still_answers_but_notifies_once(self, boundaries):
        async def handler(request):
            raise KeyError(request.url)

        boundary = make_boundary(handler)
        boundaries.append(boundary)
        first, second = FakeResponder(), FakeResponder()

        await boundary.run(IncomingRequest("GET", "/1"), first)
        await boundary.run(IncomingRequest("GET", "/2"), second)

        assert first.sent[0].status == 500
        assert second.sent[0].status == 500
        assert boundary.failures == 2
        boundary.notify_supervisor.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_failure_to_send_500_is_logged(self, boundaries, caplog):
        async def handler(request):
            raise RuntimeError("first")

        boundary = make_boundary(handler)
        boundaries.append(boundary)

        with caplog.at_level(logging.ERROR):
            await boundary.run(IncomingRequest("GET", "/"), FakeResponder(fail=True))

        assert "Error sending 500" in caplog.text
        boundary.notify_supervisor.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_cancellation_is_not_a_fault(self, boundaries):
        async def handler(request):
            await asyncio.sleep(10)

        boundary = make_boundary(handler)
        boundaries.append(boundary)
        task = boundary.run(IncomingRequest("GET", "/"), FakeResponder())
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not boundary.tripped

    def test_watchdog_forces_exit(self):
        fired = threading.Event()
        exit_process = MagicMock(side_effect=lambda code: fired.set())
        boundary = make_boundary(None, watchdog_seconds=0.01, exit_process=exit_process)

        boundary.arm_watchdog()

        assert fired.wait(timeout=2)
        exit_process.assert_called_once_with(1)
