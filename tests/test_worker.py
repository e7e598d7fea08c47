"""Tests for the worker process."""

import asyncio
import logging
import multiprocessing
from unittest.mock import MagicMock

import pytest

from rendermath.config import ServerConfig
from rendermath.fault import FaultBoundary
from rendermath.http import IncomingRequest
from rendermath.worker import DISCONNECT, EXITING, READY, Worker, worker_main

from .conftest import FakeEngine


class Inbox:

    def __init__(self, *messages):
        self.messages = list(messages)
        self.sent = []

    def recv(self):
        if not self.messages:
            raise EOFError
        return self.messages.pop(0)

    def send(self, obj):
        self.sent.append(obj)


@pytest.fixture
def fake_setup(monkeypatch):
    """Keep configure() from touching real logging or starting MathJax."""
    create = MagicMock(name="WorkerContext.create")
    monkeypatch.setattr("rendermath.worker.WorkerContext.create", create)
    monkeypatch.setattr(
        "rendermath.worker.configure_logging",
        lambda config, role: logging.getLogger("rendermath.test"),
    )
    return create


class TestConfiguration:

    def test_waits_for_config_message(self):
        config = ServerConfig(log_file=None)
        worker = Worker(1, Inbox("hello", ("ping",), config))
        assert worker.wait_for_config() == config

    def test_supervisor_gone_before_config(self):
        worker = Worker(1, Inbox())
        with pytest.raises(EOFError):
            worker.wait_for_config()

    def test_second_config_is_ignored(self, fake_setup):
        worker = Worker(1, Inbox())
        first = ServerConfig(port=1111, log_file=None)
        second = ServerConfig(port=2222, log_file=None)

        assert worker.configure(first) is True
        assert worker.configure(second) is False

        fake_setup.assert_called_once()
        assert fake_setup.call_args[0][0] == first

    def test_config_on_channel_after_start_is_ignored(self, fake_setup):
        worker = Worker(1, Inbox(ServerConfig(log_file=None)))
        worker.configure(ServerConfig(log_file=None))
        worker._channel_readable()
        fake_setup.assert_called_once()


class TestNotices:

    def test_withdraw_sends_disconnect(self):
        channel = Inbox()
        worker = Worker(1, channel)
        worker.withdraw()
        worker.withdraw()
        assert channel.sent == [(DISCONNECT,)]

    def test_shutdown_sends_exiting_and_stops(self):
        channel = Inbox()
        worker = Worker(1, channel)
        worker.server = MagicMock()

        worker.shutdown()

        assert channel.sent == [(EXITING,)]
        worker.server.close.assert_called_once_with()


def test_worker_main_closes_inherited_channels(monkeypatch):
    ran = []
    monkeypatch.setattr(Worker, "run", lambda self: ran.append(self.worker_id))
    own_parent_end, sibling = MagicMock(), MagicMock()

    worker_main(4, Inbox(), [own_parent_end, sibling])

    own_parent_end.close.assert_called_once_with()
    sibling.close.assert_called_once_with()
    assert ran == [4]


# =============================================================================
# Draining on stop
# =============================================================================

class RecordingProtocol:
    """Stands in for HTTPProtocol: records each response with the keep-alive flag it went out with."""

    def __init__(self):
        self.keep_alive = True
        self.sent = []

    def send(self, response):
        self.sent.append((response.status, self.keep_alive))


class TestDraining:

    @pytest.mark.asyncio
    async def test_drain_covers_requests_dispatched_while_stopping(self, make_context):
        worker = Worker(1, Inbox())
        worker.context = make_context(eng=FakeEngine(result={"svg": "<svg/>"}, delay=0.05))
        worker._stopped = asyncio.Event()
        worker.boundary = FaultBoundary(
            worker.handle,
            stop_accepting=worker.stop_accepting,
            notify_supervisor=worker.withdraw,
        )
        first, late = RecordingProtocol(), RecordingProtocol()

        worker.dispatch(IncomingRequest("GET", "/?q=x"), first)
        worker.stop_accepting()
        drain = asyncio.ensure_future(worker.drain())
        await asyncio.sleep(0.01)

        # Arrives on a kept-alive connection after the listener closed
        worker.dispatch(IncomingRequest("GET", "/?q=y"), late)
        await asyncio.wait_for(drain, timeout=5)

        assert first.sent == [(200, True)]
        assert late.sent == [(200, False)]
        assert not worker.in_flight


# =============================================================================
# Serving over a real socket
# =============================================================================

async def http_get(port: int, target: str) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {target} HTTP/1.1\r\nHost: test\r\nConnection: close\r\n\r\n".encode())
    await writer.drain()
    data = await reader.read()
    writer.close()
    return data


async def start_worker(context):
    parent_end, child_end = multiprocessing.Pipe()
    worker = Worker(7, child_end)
    worker.context = context
    task = asyncio.ensure_future(worker.serve())
    for _ in range(200):
        if worker.server is not None:
            break
        await asyncio.sleep(0.01)
    port = worker.server.sockets[0].getsockname()[1]
    return worker, task, parent_end, port


class TestServing:

    @pytest.mark.asyncio
    async def test_serves_equation_and_shuts_down(self, make_context, config):
        engine = FakeEngine(result={"svg": "<svg>ok</svg>"})
        worker, task, parent_end, port = await start_worker(make_context(eng=engine))

        response = await http_get(port, "/?q=n%5E2&in-format=latex")
        assert response.startswith(b"HTTP/1.1 200 OK")
        assert b"Content-Type: image/svg+xml" in response
        assert response.endswith(b"<svg>ok</svg>")
        assert engine.starts == 1

        worker.shutdown()
        await asyncio.wait_for(task, timeout=5)
        assert parent_end.recv() == (READY,)
        assert parent_end.recv() == (EXITING,)
        assert engine.closed

    @pytest.mark.asyncio
    async def test_failure_answers_500_and_withdraws(self, make_context):
        engine = FakeEngine(error=RuntimeError("corrupt engine state"))
        worker, task, parent_end, port = await start_worker(make_context(eng=engine))
        try:
            response = await http_get(port, "/?q=x")

            assert response.startswith(b"HTTP/1.1 500 Internal Server Error")
            assert b"An unknown error occurred" in response
            await asyncio.wait_for(task, timeout=5)
            assert parent_end.recv() == (READY,)
            assert parent_end.recv() == (DISCONNECT,)
            assert not worker.server.is_serving()
        finally:
            if worker.boundary is not None and worker.boundary.watchdog is not None:
                worker.boundary.watchdog.cancel()
