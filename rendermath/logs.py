"""
Logging setup shared by the supervisor and the workers.

Each process configures its own handlers once it knows its role; until then
anything logged goes to stderr with the default format.
"""

import logging
import sys
from typing import List

from .config import ServerConfig

# Level names from the old command line, mapped onto the logging module
LEGACY_LEVELS = {
    "silly": logging.DEBUG,
    "verbose": logging.INFO,
    "warn": logging.WARNING,
}


def parse_level(name: str) -> int:
    """Turn a level name such as "debug" or "WARN" into a logging level."""
    key = name.strip().lower()
    if key in LEGACY_LEVELS:
        return LEGACY_LEVELS[key]
    level = logging.getLevelName(key.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def configure_logging(config: ServerConfig, role: str) -> logging.Logger:
    """
    Install console (and optionally file) handlers on the root logger.

    Args:
        config: Server configuration (log_level, log_file)
        role: Prefix identifying the process, e.g. "Master" or "Worker-3"

    Returns:
        The "rendermath" logger
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file, encoding="utf-8"))

    logging.basicConfig(
        level=parse_level(config.log_level),
        format=f"%(asctime)s - {role} - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    return logging.getLogger("rendermath")
