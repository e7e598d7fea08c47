"""
HTTP wire handling for a worker.

HTTPProtocol is an asyncio.Protocol driven by the httptools parser. It turns
bytes into IncomingRequest objects, hands each one to the worker's dispatch
callback, and writes back whatever Response it is given. Requests on one
connection are answered in order; reading is paused while one is in flight.
"""

import asyncio
import logging
import socket
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional
from urllib.parse import urlsplit

import httptools

log = logging.getLogger(__name__)

STATUS_MESSAGES = {
    200: b"OK",
    400: b"Bad Request",
    404: b"Not Found",
    500: b"Internal Server Error",
}

TEXT_PLAIN = "text/plain; charset=utf-8"


# ============================================================================
# REQUEST / RESPONSE
# ============================================================================

@dataclass
class IncomingRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def query(self) -> str:
        return urlsplit(self.url).query


@dataclass(frozen=True)
class Response:
    status: int
    content_type: str
    body: bytes

    @classmethod
    def text(cls, status: int, message: str) -> "Response":
        return cls(status, TEXT_PLAIN, message.encode("utf-8"))


def build_response(response: Response, keep_alive: bool) -> bytes:
    """Serialize a Response to HTTP/1.1 bytes."""
    reason = STATUS_MESSAGES.get(response.status, b"Unknown")
    head = bytearray()
    head.extend(f"HTTP/1.1 {response.status} ".encode() + reason + b"\r\n")
    head.extend(b"Content-Type: " + response.content_type.encode("latin-1") + b"\r\n")
    head.extend(b"Content-Length: " + str(len(response.body)).encode() + b"\r\n")
    head.extend(b"Connection: " + (b"keep-alive" if keep_alive else b"close") + b"\r\n")
    head.extend(b"\r\n")
    return bytes(head) + response.body


# ============================================================================
# HTTP PROTOCOL HANDLER
# ============================================================================

Dispatch = Callable[[IncomingRequest, "HTTPProtocol"], None]


class HTTPProtocol(asyncio.Protocol):
    """
    One instance per TCP connection.

    Args:
        dispatch: Called with (request, protocol) for every complete request;
            whoever handles it must eventually call protocol.send()
        keepalive_timeout: Seconds an idle connection is kept open
    """

    def __init__(self, dispatch: Dispatch, keepalive_timeout: float):
        self.dispatch = dispatch
        self.keepalive_timeout = keepalive_timeout
        self.transport: Optional[asyncio.Transport] = None
        self.parser = httptools.HttpRequestParser(self)
        self.timeout_handle: Optional[asyncio.TimerHandle] = None

        # Complete requests waiting for their turn, and the one being served
        self.queue: Deque[tuple] = deque()
        self.busy = False
        self.keep_alive = True

        self._url = b""
        self._headers: Dict[str, str] = {}
        self._body = bytearray()

    def connection_made(self, transport: asyncio.Transport):
        self.transport = transport
        sock = transport.get_extra_info("socket")
        if sock is not None:
            try:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                pass
        self._reset_timeout()

    def connection_lost(self, exc):
        if self.timeout_handle:
            self.timeout_handle.cancel()
        self.transport = None
        self.queue.clear()
        if exc:
            log.debug(f"Connection lost with error: {exc}")

    def _reset_timeout(self):
        if self.timeout_handle:
            self.timeout_handle.cancel()
        if self.transport is not None and self.keepalive_timeout:
            loop = asyncio.get_running_loop()
            self.timeout_handle = loop.call_later(self.keepalive_timeout, self._timeout_occurred)

    def _timeout_occurred(self):
        if self.transport is not None and not self.busy:
            log.debug("Idle connection timed out")
            self.transport.close()

    def data_received(self, data: bytes):
        try:
            self.parser.feed_data(data)
        except httptools.HttpParserError as e:
            log.warning(f"HTTP parse error: {e}")
            if not self.busy and self.transport is not None:
                self.transport.write(build_response(Response.text(400, "Bad Request"), False))
            self.keep_alive = False
            self.queue.clear()
            if self.transport is not None and not self.busy:
                self.transport.close()

    # ------------------------------------------------------------------------
    # httptools parser callbacks
    # ------------------------------------------------------------------------

    def on_message_begin(self):
        self._url = b""
        self._headers = {}
        self._body = bytearray()

    def on_url(self, url: bytes):
        self._url += url

    def on_header(self, name: bytes, value: bytes):
        self._headers[name.decode("latin-1").lower()] = value.decode("latin-1")

    def on_body(self, body: bytes):
        self._body.extend(body)

    def on_message_complete(self):
        request = IncomingRequest(
            method=self.parser.get_method().decode("ascii", errors="replace"),
            url=self._url.decode("utf-8", errors="replace"),
            headers=self._headers,
            body=bytes(self._body),
        )
        self.queue.append((request, self.parser.should_keep_alive()))
        self._next_request()

    # ------------------------------------------------------------------------

    def _next_request(self):
        if self.busy or self.transport is None:
            return
        if not self.queue:
            self.transport.resume_reading()
            self._reset_timeout()
            return

        request, keep_alive = self.queue.popleft()
        self.busy = True
        self.keep_alive = self.keep_alive and keep_alive
        if self.timeout_handle:
            self.timeout_handle.cancel()
        self.transport.pause_reading()
        self.dispatch(request, self)

    def send(self, response: Response):
        """
        Write a response for the request currently being served.

        Silently dropped if the client has already gone away.
        """
        self.busy = False
        if self.transport is None or self.transport.is_closing():
            return
        self.transport.write(build_response(response, self.keep_alive))
        if self.keep_alive:
            self._next_request()
        else:
            self.transport.close()
