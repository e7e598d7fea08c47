"""
Command-line entry point.

The configuration is read once, here in the supervisor; workers get it over
their pipe.
"""

import argparse
import sys
from typing import List, Optional

from . import __version__
from .config import ServerConfig, available_cores, build_config
from .errors import WorkerStartupError
from .logs import configure_logging
from .supervisor import Supervisor


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rendermath",
        description="HTTP service that renders LaTeX, MathML and JATS formulas.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-p", "--port", type=int, help="IP port on which to start the server")
    parser.add_argument(
        "--workers",
        type=positive_int,
        metavar=str(available_cores()),
        help="Spawn at most this many worker processes (capped at the number of CPUs)",
    )
    parser.add_argument(
        "-l",
        "--log-level",
        dest="log_level",
        help='One of "silly", "debug", "verbose", "info", "warn", or "error"',
    )
    parser.add_argument("--log-file", dest="log_file", help="Also log to this file")
    parser.add_argument("--static-dir", dest="static_dir", help="Directory holding the static files")
    parser.add_argument("--config", dest="config_file", help="JSON file of configuration overrides")
    return parser.parse_args(argv)


def get_config(argv: Optional[List[str]] = None) -> ServerConfig:
    """Defaults, then the --config file, then the other command-line flags."""
    args = parse_args(argv)
    overrides = {
        "port": args.port,
        "workers": args.workers,
        "log_level": args.log_level,
        "log_file": args.log_file,
        "static_dir": args.static_dir,
    }
    return build_config(overrides, config_file=args.config_file)


def main(argv: Optional[List[str]] = None):
    try:
        config = get_config(argv)
    except ValueError as e:
        sys.exit(f"rendermath: {e}")

    log = configure_logging(config, "Master")
    log.debug(f"Configuration: {config}")
    try:
        Supervisor(config).run()
    except WorkerStartupError as e:
        log.critical(f"{e}; giving up")
        sys.exit(1)


if __name__ == "__main__":
    main()
