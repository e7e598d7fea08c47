"""
Per-request fault isolation.

Every request runs as a single asyncio task covering the whole chain: the
pipeline, the engine round trip and the response write. One handler sits at
the top of that task. When something unexpected escapes, the request gets a
generic 500 and the worker retires itself: it stops accepting connections,
tells the supervisor it is going away (which triggers a replacement), and
arms a watchdog that kills the process if the wind-down hangs.
"""

import asyncio
import logging
import os
import threading
from typing import Awaitable, Callable, Optional

from .http import IncomingRequest, Response

log = logging.getLogger(__name__)

WATCHDOG_SECONDS = 30.0
GENERIC_ERROR = "An unknown error occurred, please try again.\n"

Handler = Callable[[IncomingRequest], Awaitable[Response]]


class FaultBoundary:
    """
    Wraps request handling for one worker.

    Args:
        handler: Coroutine function producing the Response for a request
        stop_accepting: Closes the worker's listener
        notify_supervisor: Tells the supervisor this worker is withdrawing
        watchdog_seconds: Grace period before the process is forcibly ended
        exit_process: Called with exit status 1 when the watchdog fires
    """

    def __init__(
        self,
        handler: Handler,
        stop_accepting: Callable[[], None],
        notify_supervisor: Callable[[], None],
        watchdog_seconds: float = WATCHDOG_SECONDS,
        exit_process: Callable[[int], None] = os._exit,
    ):
        self.handler = handler
        self.stop_accepting = stop_accepting
        self.notify_supervisor = notify_supervisor
        self.watchdog_seconds = watchdog_seconds
        self.exit_process = exit_process
        self.watchdog: Optional[threading.Timer] = None
        self.failures = 0

    @property
    def tripped(self) -> bool:
        return self.watchdog is not None

    def run(self, request: IncomingRequest, responder) -> "asyncio.Task[None]":
        """
        Start handling `request`; the response goes to `responder.send()`.
        """
        return asyncio.ensure_future(self._guard(request, responder))

    async def _guard(self, request: IncomingRequest, responder):
        try:
            response = await self.handler(request)
            responder.send(response)
        except Exception as err:
            self.on_error(err, request, responder)

    def on_error(self, err: Exception, request: IncomingRequest, responder):
        self.failures += 1
        try:
            log.error(
                f"Error encountered in worker (pid {os.getpid()}) "
                f"handling {request.method} {request.url}",
                exc_info=err,
            )

            if not self.tripped:
                self.arm_watchdog()
                self.stop_accepting()
                self.notify_supervisor()

            responder.send(Response.text(500, GENERIC_ERROR))
        except Exception:
            # Not much we can do here
            log.exception("Error sending 500")

    def arm_watchdog(self):
        # Daemon thread: it never keeps the process alive on its own
        timer = threading.Timer(self.watchdog_seconds, self.exit_process, args=(1,))
        timer.daemon = True
        timer.start()
        self.watchdog = timer
