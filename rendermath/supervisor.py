"""
Supervisor (master) process.

Pre-fork model: the supervisor spawns the workers at startup, sends each one
the configuration over a pipe, and then watches them. A worker that
disconnects (says so, or whose pipe closes without a goodbye) is replaced by
a fresh one; a worker that exits after announcing a clean shutdown is not.
"""

import itertools
import logging
import multiprocessing
import multiprocessing.connection
import os
import signal
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .config import ServerConfig, available_cores
from .errors import WorkerStartupError
from .worker import DISCONNECT, EXITING, READY, worker_main

log = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 10


@dataclass
class WorkerRecord:
    """Supervisor-side handle on one worker process."""

    worker_id: int
    process: Any
    channel: Any
    connected: bool = True
    ready: bool = False
    exiting: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid


class Supervisor:
    """
    Args:
        config: Resolved configuration, sent verbatim to every worker
        cores: Available CPU cores (defaults to this machine's count)
        mp_context: multiprocessing context providing Pipe() and Process()
        wait: Function used to wait on channels and process sentinels
    """

    def __init__(
        self,
        config: ServerConfig,
        cores: Optional[int] = None,
        mp_context=None,
        wait: Optional[Callable[..., List[Any]]] = None,
    ):
        self.config = config
        self.cores = cores if cores is not None else available_cores()
        self.mp = mp_context or multiprocessing.get_context("fork")
        self.wait = wait or multiprocessing.connection.wait
        self.records: Dict[int, WorkerRecord] = {}
        self.running = False
        self._ids = itertools.count(1)

    @property
    def worker_count(self) -> int:
        return min(self.config.workers, self.cores)

    # ------------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------------

    def start(self):
        """Spawn the initial set of workers."""
        self.running = True
        requested = self.config.workers
        count = self.worker_count
        log.debug(f"We will spawn {count} worker(s).")
        if count != requested:
            log.info(
                f"You requested {requested} workers, but only {count} will be "
                f"spawned, because of the number of available CPUs."
            )
        for _ in range(count):
            self.spawn_worker()

    def spawn_worker(self) -> WorkerRecord:
        """
        Start one worker process and send it the configuration.

        Failure to fork is not caught: without workers there is no server.
        """
        worker_id = next(self._ids)
        parent_end, child_end = self.mp.Pipe()
        # The forked child inherits these; it closes them so EOF on its own
        # channel means the supervisor is gone
        inherited = [parent_end] + [r.channel for r in self.records.values()]
        process = self.mp.Process(
            target=worker_main,
            args=(worker_id, child_end, inherited),
            name=f"rendermath-worker-{worker_id}",
        )
        process.start()
        child_end.close()

        parent_end.send(self.config)
        record = WorkerRecord(worker_id, process, parent_end)
        self.records[worker_id] = record
        log.debug(f"Spawning worker id {worker_id} (PID: {process.pid})")
        return record

    # ------------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------------

    def poll(self, timeout: float = 1.0):
        """Wait up to `timeout` seconds for worker messages or exits and handle them."""
        channels = {}
        sentinels = {}
        for record in list(self.records.values()):
            if record.connected:
                channels[record.channel] = record
            sentinels[record.process.sentinel] = record

        if not channels and not sentinels:
            return

        ready = self.wait(list(channels) + list(sentinels), timeout)

        # Messages first, so a goodbye is seen before the exit it precedes
        for obj in ready:
            if obj in channels:
                self.read_channel(channels[obj])
        for obj in ready:
            if obj in sentinels:
                self.handle_exit(sentinels[obj])

    def read_channel(self, record: WorkerRecord):
        try:
            message = record.channel.recv()
        except (EOFError, OSError):
            if record.exiting:
                record.connected = False
            else:
                self.handle_disconnect(record)
            return

        notice = message[0] if isinstance(message, tuple) and message else message
        if notice == READY:
            log.debug(f"Worker {record.worker_id} is ready.")
            record.ready = True
        elif notice == EXITING:
            log.info(f"Worker {record.worker_id} is shutting down.")
            record.exiting = True
        elif notice == DISCONNECT:
            self.handle_disconnect(record)
        else:
            log.warning(f"Unexpected message from worker {record.worker_id}: {message!r}")

    def handle_disconnect(self, record: WorkerRecord):
        """
        The worker is lost to us: replace it, exactly once.

        Raises:
            WorkerStartupError: if the worker never became ready; a
                replacement would fail the same way
        """
        if not record.connected:
            return
        record.connected = False
        if not record.ready:
            log.critical(f"Worker {record.worker_id} failed during startup.")
            if self.running:
                self.running = False
                raise WorkerStartupError(f"Worker {record.worker_id} failed during startup")
            return
        log.error(f"Worker {record.worker_id} disconnected. Spawning another.")
        if self.running:
            self.spawn_worker()

    def handle_exit(self, record: WorkerRecord):
        # Died without a word: same as losing the channel
        if record.connected and not record.exiting:
            self.handle_disconnect(record)

        record.process.join(timeout=0)
        code = record.process.exitcode
        self.records.pop(record.worker_id, None)
        try:
            record.channel.close()
        except OSError:
            pass

        if code:
            log.error(f"Worker {record.worker_id} died (exit code {code}).")
        else:
            log.info(f"Worker {record.worker_id} exited.")

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    def stop(self):
        """Terminate all workers and wait for them."""
        self.running = False
        records = list(self.records.values())
        for record in records:
            if record.process.is_alive():
                record.process.terminate()
        for record in records:
            record.process.join(timeout=SHUTDOWN_GRACE_SECONDS)
            if record.process.is_alive():
                record.process.kill()
                record.process.join()
        self.records.clear()

    def _signal_handler(self, signum, frame):
        log.info(f"Received signal {signum}, shutting down...")
        self.stop()
        log.info("All workers stopped. Goodbye!")
        sys.exit(0)

    def run(self):
        """Start the workers and supervise them until a signal arrives."""
        log.info(f"This is rendermath, version {self.config.version}")
        log.info(f"Master (pid {os.getpid()}) starting...")

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        try:
            self.start()
            log.info(f"Listening on http://{self.config.host}:{self.config.port} with {len(self.records)} worker(s)")

            while self.running:
                self.poll(timeout=1.0)
        finally:
            self.stop()
