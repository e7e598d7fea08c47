"""
Per-request processing.

A RequestPipeline is created for every request and walks it through
Accumulating -> Validated -> Routed -> Responded. Everything the client can
get wrong ends up as a 400 from bad_request(); anything unexpected is left to
escape so the worker's FaultBoundary can deal with it.
"""

import asyncio
import base64
import enum
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from .context import WorkerContext
from .engine import TypesetRequest
from .errors import BadRequest
from .formats import DEFAULT_PARAMS, NormalizedQuery, classify, strip_processing_instructions
from .http import IncomingRequest, Response
from .jats import parse_jats
from .static_cache import split_static

# Engine result fields in order of preference, with their content types
RESULT_TYPES = (
    ("svg", "image/svg+xml; charset=utf-8"),
    ("mml", "application/mathml+xml; charset=utf-8"),
    ("png", "image/png"),
    ("html", "text/html; charset=utf-8"),
)


class PipelineState(enum.Enum):
    ACCUMULATING = "accumulating"
    VALIDATED = "validated"
    ROUTED = "routed"
    RESPONDED = "responded"


def bad_request(message: str) -> Response:
    return Response.text(400, message)


def parse_params(param_str: str) -> Dict[str, str]:
    """Parse url-encoded parameters over the defaults; the first value of a repeated name wins."""
    params = dict(DEFAULT_PARAMS)
    seen = set()
    for name, value in parse_qsl(param_str, keep_blank_values=True):
        if name not in seen:
            params[name] = value
            seen.add(name)
    return params


def engine_format(query: NormalizedQuery) -> str:
    if query.resolved_format == "mml":
        return "MathML"
    return "inline-TeX" if query.latex_style == "text" else "TeX"


def decode_png(data: str) -> bytes:
    # Drop the "data:image/png;base64," header before decoding
    if data.startswith("data:"):
        data = data.split(",", 1)[1]
    return base64.b64decode(data)


def interpret_result(result: Mapping[str, Any]) -> Response:
    """Map a typesetting engine result onto a response."""
    errors = result.get("errors")
    if errors:
        if isinstance(errors, (list, tuple)):
            errors = "; ".join(str(e) for e in errors)
        return bad_request(f"Conversion failed: {errors}")

    for name, content_type in RESULT_TYPES:
        value = result.get(name)
        if not value:
            continue
        body = decode_png(value) if name == "png" else value.encode("utf-8")
        return Response(200, content_type, body)

    return Response.text(500, "Sorry, an unknown problem was encountered")


class RequestPipeline:
    """
    Handles one request from raw bytes to a Response.

    Args:
        context: The worker's context (config, logger, engine, caches)
        request: The complete incoming request
    """

    def __init__(self, context: WorkerContext, request: IncomingRequest):
        self.context = context
        self.request = request
        self.log = context.log
        self.state = PipelineState.ACCUMULATING
        self.query: Optional[NormalizedQuery] = None

    async def run(self) -> Response:
        response = await self._process()
        self.state = PipelineState.RESPONDED
        return response

    async def _process(self) -> Response:
        request = self.request
        self.log.info(f"{request.method} {request.url}")

        # Accumulating: pick up the parameter string
        if request.method == "GET":
            param_str = request.query
        elif request.method == "POST":
            if not request.body:
                return bad_request("Missing POST content")
            param_str = request.body.decode("utf-8", errors="replace")
            self.log.debug(f"POST content: {param_str}")
        else:
            return bad_request("Method not supported")

        # Validated: static resources first, then the math parameters
        self.state = PipelineState.VALIDATED
        is_static, path = split_static(request.path, request.query, request.method)
        if is_static:
            return await self.serve_static(path)

        try:
            self.query = classify(parse_params(param_str))
        except BadRequest as e:
            return bad_request(e.message)
        self.log.debug(f"Resolved format: {self.query.resolved_format}")

        # Routed
        self.state = PipelineState.ROUTED
        if self.query.resolved_format == "jats":
            return self.handle_jats()
        return await self.handle_equation()

    async def serve_static(self, path: str) -> Response:
        try:
            asset = await self.context.static_cache.get(path)
        except FileNotFoundError:
            self.log.info(f"Static resource not found: {path}")
            return Response.text(404, "404 - File not found!")
        except (OSError, ValueError) as e:
            msg = "Error trying to retrieve a static resource"
            self.log.error(f'{msg}: "{path}": {e}')
            return bad_request(msg)
        return Response(200, asset.content_type, asset.body)

    def handle_jats(self) -> Response:
        formulas = parse_jats(self.query.source_text)
        if isinstance(formulas, str):
            return bad_request(formulas)
        page = self.context.client_template.page(formulas, self.query.width)
        return Response(200, "text/html; charset=utf-8", page.encode("utf-8"))

    async def handle_equation(self) -> Response:
        query = self.query

        # Processing instructions only mean something in MathML
        math = query.source_text
        if query.resolved_format == "mml":
            math = strip_processing_instructions(math)

        typeset_request = TypesetRequest(math=math, format=engine_format(query))
        self.log.debug(f"Typeset request: {typeset_request}")

        timeout = self.context.config.typeset_timeout
        try:
            if timeout:
                result = await asyncio.wait_for(self.context.engine.typeset(typeset_request), timeout)
            else:
                result = await self.context.engine.typeset(typeset_request)
        except asyncio.TimeoutError:
            self.log.error(f"Typesetting timed out after {timeout}s")
            return Response.text(500, "Timed out trying to typeset the equation")

        try:
            return interpret_result(result)
        except Exception:
            self.log.exception("Caught exception trying to typeset")
            return Response.text(500, "Error trying to typeset the equation")

