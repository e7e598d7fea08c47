"""
Worker process.

A worker does nothing until the supervisor sends it a ServerConfig. It then
sets up logging, builds its WorkerContext (starting the MathJax engine), and
listens on the shared port. SO_REUSEPORT lets every worker bind the same
port; the kernel spreads incoming connections across them.
"""

import asyncio
import logging
import signal
from typing import Optional, Sequence, Set

import uvloop

from .config import ServerConfig
from .context import WorkerContext
from .fault import FaultBoundary
from .http import HTTPProtocol, IncomingRequest, Response
from .logs import configure_logging
from .pipeline import RequestPipeline

# Notices a worker sends up its channel
READY = "ready"
DISCONNECT = "disconnect"
EXITING = "exiting"


class Worker:
    """
    Args:
        worker_id: Supervisor-assigned id, used in log lines
        channel: This worker's end of the supervisor pipe
    """

    def __init__(self, worker_id: int, channel):
        self.worker_id = worker_id
        self.channel = channel
        self.context: Optional[WorkerContext] = None
        self.log = logging.getLogger("rendermath")
        self.server: Optional[asyncio.AbstractServer] = None
        self.boundary: Optional[FaultBoundary] = None
        self.in_flight: Set[asyncio.Task] = set()
        self._stopped: Optional[asyncio.Event] = None
        self._notified = False

    # ------------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------------

    def wait_for_config(self) -> ServerConfig:
        """Block until the supervisor's configuration message arrives."""
        while True:
            message = self.channel.recv()
            if isinstance(message, ServerConfig):
                return message
            self.log.warning(f"Worker {self.worker_id}: ignoring message before configuration: {message!r}")

    def configure(self, config: ServerConfig) -> bool:
        """
        Apply the configuration. Only the first call has any effect.

        Returns:
            True if this call configured the worker
        """
        if self.context is not None:
            self.log.warning(f"Worker {self.worker_id} is already configured; ignoring new configuration")
            return False

        self.log = configure_logging(config, f"Worker-{self.worker_id}")
        self.log.info("Starting...")
        self.context = WorkerContext.create(config, self.log)
        return True

    # ------------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------------

    async def serve(self):
        """Start the engine and the listener, and run until asked to stop."""
        config = self.context.config
        loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()

        await self.context.engine.start()

        self.boundary = FaultBoundary(
            self.handle,
            stop_accepting=self.stop_accepting,
            notify_supervisor=self.withdraw,
        )

        self.server = await loop.create_server(
            lambda: HTTPProtocol(self.dispatch, config.keepalive_timeout),
            host=config.host,
            port=config.port,
            backlog=config.backlog,
            reuse_address=True,
            reuse_port=True,
        )
        self.log.info(f"Server listening on port {config.port}")

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.shutdown)
        loop.add_reader(self.channel.fileno(), self._channel_readable)
        self._send((READY,))

        try:
            await self._stopped.wait()
            await self.drain()
        finally:
            loop.remove_reader(self.channel.fileno())
            await self.context.engine.close()
        self.log.info("Stopped")

    async def drain(self):
        """Wait until no request is in flight, including ones dispatched meanwhile."""
        while self.in_flight:
            self.log.info(f"Waiting for {len(self.in_flight)} request(s) to finish")
            await asyncio.gather(*list(self.in_flight), return_exceptions=True)

    def dispatch(self, request: IncomingRequest, protocol: HTTPProtocol):
        if self._stopped is not None and self._stopped.is_set():
            # Stopping: answer, then close the connection
            protocol.keep_alive = False
        task = self.boundary.run(request, protocol)
        self.in_flight.add(task)
        task.add_done_callback(self.in_flight.discard)

    async def handle(self, request: IncomingRequest) -> Response:
        return await RequestPipeline(self.context, request).run()

    def stop_accepting(self):
        if self.server is not None:
            self.server.close()
        if self._stopped is not None:
            self._stopped.set()

    def withdraw(self):
        """Tell the supervisor we are going away so it spawns a replacement."""
        self._notify(DISCONNECT)

    def shutdown(self):
        """Graceful stop: no replacement wanted."""
        self.log.info("Shutting down...")
        self._notify(EXITING)
        self.stop_accepting()

    def _notify(self, notice: str):
        if self._notified:
            return
        self._notified = True
        self._send((notice,))

    def _send(self, message: tuple):
        try:
            self.channel.send(message)
        except (OSError, ValueError) as e:
            self.log.warning(f"Could not reach supervisor: {e}")

    def _channel_readable(self):
        try:
            message = self.channel.recv()
        except (EOFError, OSError):
            asyncio.get_running_loop().remove_reader(self.channel.fileno())
            self.log.warning("Lost contact with the supervisor")
            self.shutdown()
            return

        if isinstance(message, ServerConfig):
            self.configure(message)
        else:
            self.log.warning(f"Ignoring unexpected message from supervisor: {message!r}")

    def run(self):
        """Process entry point."""
        # Forked from the supervisor: drop its signal handlers until the loop installs ours
        signal.signal(signal.SIGINT, signal.SIG_DFL)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

        config = self.wait_for_config()
        self.configure(config)
        try:
            uvloop.run(self.serve())
        except Exception:
            self.log.exception(f"Worker {self.worker_id} crashed")
            raise


def worker_main(worker_id: int, channel, inherited: Sequence = ()):
    """
    multiprocessing target.

    Args:
        worker_id: Supervisor-assigned id
        channel: This worker's end of its supervisor pipe
        inherited: Supervisor-side pipe ends copied into this process by fork
    """
    for conn in inherited:
        conn.close()
    Worker(worker_id, channel).run()
