"""
Client for the MathJax typesetting engine.

MathJax runs in a long-lived node helper (data/typeset.js) owned by the
worker. Requests and replies travel as JSON lines over the helper's stdin
and stdout, tagged with an id so that many requests can be in flight at once.
"""

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from .errors import EngineError

log = logging.getLogger(__name__)

# Result fields the engine may return
RESULT_FIELDS = ("errors", "svg", "mml", "png", "html")

# Reply lines can carry a whole SVG document
STREAM_LIMIT = 16 * 1024 * 1024


@dataclass(frozen=True)
class TypesetRequest:
    """Normalized request handed to the engine."""

    math: str
    format: str  # "TeX", "inline-TeX" or "MathML"
    svg: bool = True

    def to_options(self) -> Dict[str, Any]:
        return {"math": self.math, "format": self.format, "svg": self.svg}


class MathJaxEngine:
    """
    One MathJax helper process per worker.

    start() is idempotent; typeset() may be called concurrently from any
    number of request tasks.
    """

    def __init__(self, command: Sequence[str], options: Dict[str, Any], stream_limit: int = STREAM_LIMIT):
        self.command = tuple(command)
        self.options = options
        self.stream_limit = stream_limit
        self.process: Optional[asyncio.subprocess.Process] = None
        self._pending: Dict[int, "asyncio.Future[Dict[str, Any]]"] = {}
        self._ids = itertools.count(1)
        self._reader: Optional[asyncio.Task] = None
        self._started = False
        self._dead = False

    async def start(self):
        """Launch the helper and send it the MathJax configuration."""
        if self._started:
            return
        self._started = True

        log.info("Starting MathJax processor")
        log.debug(f"MathJax config: {self.options}")

        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            limit=self.stream_limit,
        )
        await self._send({"config": self.options})
        self._reader = asyncio.ensure_future(self._read_replies())

    async def typeset(self, request: TypesetRequest) -> Dict[str, Any]:
        """
        Typeset one formula.

        Returns:
            The engine's result mapping (svg, mml, png, html and/or errors)

        Raises:
            EngineError: if the helper isn't running or dies mid-request
        """
        if self.process is None or self._dead:
            raise EngineError("MathJax processor is not running")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"id": request_id, "options": request.to_options()})
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def close(self):
        if self.process is None:
            return
        if self.process.returncode is None:
            self.process.stdin.close()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=5)
            except asyncio.TimeoutError:
                self.process.kill()
                await self.process.wait()
        if self._reader:
            await self._reader

    async def _send(self, message: Dict[str, Any]):
        line = json.dumps(message, ensure_ascii=False).encode("utf-8") + b"\n"
        try:
            self.process.stdin.write(line)
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise EngineError(f"MathJax processor went away: {e}") from e

    async def _read_replies(self):
        try:
            while True:
                try:
                    line = await self.process.stdout.readline()
                except ValueError as e:
                    # Reply longer than the stream limit: the stream can't be resynchronized
                    log.error(f"Reply from MathJax processor too long: {e}")
                    self._kill()
                    break
                if not line:
                    break
                try:
                    reply = json.loads(line)
                    future = self._pending.get(reply["id"])
                    result = reply["result"]
                except (ValueError, KeyError, TypeError) as e:
                    log.error(f"Unreadable reply from MathJax processor: {e}")
                    continue
                if future is not None and not future.done():
                    future.set_result(result)
        finally:
            # Nothing pending can complete any more, and nothing new is accepted
            self._dead = True
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(EngineError("MathJax processor exited"))
            log.warning("MathJax processor exited")

    def _kill(self):
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
