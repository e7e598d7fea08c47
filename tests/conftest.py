"""Shared pytest fixtures for the rendermath test suite."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from rendermath.client_template import ClientTemplate
from rendermath.config import ServerConfig
from rendermath.context import WorkerContext
from rendermath.static_cache import StaticFileCache


# =============================================================================
# Fakes
# =============================================================================

class FakeEngine:
    """Stands in for MathJaxEngine; records every request it is given."""

    def __init__(self, result: Any = None, error: Optional[BaseException] = None, delay: float = 0):
        self.result = {"svg": "<svg/>"} if result is None else result
        self.error = error
        self.delay = delay
        self.requests: List[Any] = []
        self.starts = 0
        self.closed = False

    async def start(self):
        self.starts += 1

    async def typeset(self, request) -> Dict[str, Any]:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result

    async def close(self):
        self.closed = True


class FakeResponder:
    """Collects responses the way HTTPProtocol.send() would write them."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send(self, response):
        if self.fail:
            raise ConnectionResetError("client went away")
        self.sent.append(response)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def static_dir(tmp_path) -> Path:
    root = tmp_path / "static"
    (root / "examples").mkdir(parents=True)
    (root / "home.html").write_text("<html>rendermath <!-- version --></html>", encoding="utf-8")
    (root / "home.js").write_text("// home", encoding="utf-8")
    (root / "favicon.ico").write_bytes(b"\x00\x01\x02\xff")
    (root / "examples" / "quadratic.latex").write_text("x^2", encoding="utf-8")
    return root


@pytest.fixture
def config(static_dir) -> ServerConfig:
    return ServerConfig(
        port=0,
        static_dir=str(static_dir),
        log_file=None,
        log_level="debug",
        version="9.9.9",
        typeset_timeout=5,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def make_context(config, engine):
    def _make(cfg: Optional[ServerConfig] = None, eng: Optional[FakeEngine] = None) -> WorkerContext:
        cfg = cfg or config
        return WorkerContext(
            config=cfg,
            log=logging.getLogger("rendermath.test"),
            engine=eng or engine,
            static_cache=StaticFileCache(cfg.static_dir, cfg.version),
            client_template=ClientTemplate(cfg.mathjax_url),
        )

    return _make


@pytest.fixture
def context(make_context) -> WorkerContext:
    return make_context()
