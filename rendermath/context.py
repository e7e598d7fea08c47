"""Per-process state handed to every request pipeline."""

import logging
from dataclasses import dataclass

from .client_template import ClientTemplate
from .config import ServerConfig
from .engine import MathJaxEngine
from .static_cache import StaticFileCache


@dataclass
class WorkerContext:
    """
    Built exactly once per worker, after its configuration arrives.

    Holds the logger, the MathJax engine handle, the static file cache and
    the client page template, so nothing in a worker reaches for
    module-level state.
    """

    config: ServerConfig
    log: logging.Logger
    engine: MathJaxEngine
    static_cache: StaticFileCache
    client_template: ClientTemplate

    @classmethod
    def create(cls, config: ServerConfig, log: logging.Logger) -> "WorkerContext":
        return cls(
            config=config,
            log=log,
            engine=MathJaxEngine(config.engine_command, config.engine_options),
            static_cache=StaticFileCache(config.static_dir, config.version),
            client_template=ClientTemplate(config.mathjax_url),
        )
