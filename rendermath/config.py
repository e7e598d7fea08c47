"""
Server configuration.

The supervisor builds one ServerConfig at startup (defaults, then an optional
JSON file, then command-line flags) and ships a pickled copy to each worker.
Nobody mutates it after that.
"""

import json
import multiprocessing
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from . import __version__

PACKAGE_DIR = Path(__file__).resolve().parent


# ============================================================================
# TYPESETTING ENGINE DEFAULTS
# ============================================================================

def _upgreek(name: str, codepoint: str) -> Tuple[str, str]:
    return name, "{\\unicode[times]{x%s}}" % codepoint


# TeX macros every worker's MathJax instance is started with
DEFAULT_MACROS: Dict[str, Any] = dict(
    [
        ("AA", "{\\unicode{x212B}}"),
        ("emph", ["\\mathit{#1}", 1]),
        ("P", "{¶}"),
        # upgreek
        _upgreek("upalpha", "03B1"),
        _upgreek("upbeta", "03B2"),
        _upgreek("upgamma", "03B3"),
        _upgreek("updelta", "03B4"),
        _upgreek("upepsilon", "03B5"),
        _upgreek("upzeta", "03B6"),
        _upgreek("upeta", "03B7"),
        _upgreek("uptheta", "03B8"),
        _upgreek("upiota", "03B9"),
        _upgreek("upkappa", "03BA"),
        _upgreek("uplambda", "03BB"),
        _upgreek("upmu", "03BC"),
        _upgreek("upnu", "03BD"),
        _upgreek("upxi", "03BE"),
        _upgreek("uppi", "03C0"),
        _upgreek("uprho", "03C1"),
        _upgreek("upsigma", "03C3"),
        _upgreek("uptau", "03C4"),
        _upgreek("upupsilon", "03C5"),
        _upgreek("upphi", "03C6"),
        _upgreek("upchi", "03C7"),
        _upgreek("uppsi", "03C8"),
        _upgreek("upomega", "03C9"),
        ("upvarepsilon", "{ε}"),
        ("upvartheta", "{θ}"),
        ("upvarpi", "{π}"),
        ("upvarrho", "{ρ}"),
        ("upvarsigma", "{σ}"),
        ("upvarphi", "{φ}"),
        _upgreek("Upgamma", "0393"),
        _upgreek("Updelta", "0394"),
        _upgreek("Uptheta", "0398"),
        _upgreek("Uplambda", "039B"),
        _upgreek("Upxi", "039E"),
        _upgreek("Uppi", "03A0"),
        _upgreek("Upsigma", "03A3"),
        _upgreek("Upupsilon", "03A5"),
        _upgreek("Upphi", "03A6"),
        _upgreek("Uppsi", "03A8"),
        _upgreek("Upomega", "03A9"),
        # wasysym
        ("permil", "{‰}"),
    ]
)


def default_engine_options() -> Dict[str, Any]:
    return {
        "extensions": "TeX/noErrors, TeX/noUndefined, TeX/AMSmath, TeX/AMSsymbols",
        "MathJax": {"TeX": {"Macros": dict(DEFAULT_MACROS)}},
    }


def default_engine_command() -> Tuple[str, ...]:
    return ("node", str(PACKAGE_DIR / "data" / "typeset.js"))


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True)
class ServerConfig:
    """
    Everything a worker needs to serve requests.

    Frozen, and small enough to pickle across the supervisor -> worker pipe.
    """

    # Network settings
    host: str = "0.0.0.0"
    port: int = 16000
    backlog: int = 2048
    keepalive_timeout: int = 75

    # Process settings
    workers: int = 1

    # Logging
    log_level: str = "info"
    log_file: Optional[str] = "rendermath.log"

    # Static file serving
    static_dir: str = str(PACKAGE_DIR / "static")
    version: str = __version__

    # Typesetting engine
    engine_command: Tuple[str, ...] = field(default_factory=default_engine_command)
    engine_options: Dict[str, Any] = field(default_factory=default_engine_options)
    typeset_timeout: float = 60.0

    # MathJax library, as loaded by the client page for JATS documents
    mathjax_base: str = "https://www.ncbi.nlm.nih.gov/core/mathjax"
    mathjax_version: str = "2.5"
    mathjax_config_base: str = "https://www.ncbi.nlm.nih.gov/corehtml/pmc/js"
    mathjax_config_scope: str = "classic"
    mathjax_config_version: str = "3.4.1"

    @property
    def mathjax_lib_url(self) -> str:
        return f"{self.mathjax_base}/{self.mathjax_version}/MathJax.js"

    @property
    def mathjax_config_url(self) -> str:
        return (
            f"{self.mathjax_config_base}/mathjax-config-"
            f"{self.mathjax_config_scope}.{self.mathjax_config_version}.js"
        )

    @property
    def mathjax_url(self) -> str:
        """URL the client template loads MathJax from."""
        return f"{self.mathjax_lib_url}?config={self.mathjax_config_url}"


def available_cores() -> int:
    return os.cpu_count() or multiprocessing.cpu_count()


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Read a JSON file of ServerConfig overrides.

    Unknown keys are rejected so that typos don't silently fall back to
    defaults.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")

    known = {f.name for f in fields(ServerConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"{path}: unknown setting(s): {', '.join(unknown)}")

    if "engine_command" in data:
        data["engine_command"] = tuple(data["engine_command"])
    return data


def build_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_file: Optional[str] = None,
) -> ServerConfig:
    """
    Merge defaults, an optional config file and explicit overrides.

    Args:
        overrides: Values that win over everything else (usually CLI flags).
            Keys whose value is None are ignored.
        config_file: Path to a JSON file of overrides.

    Raises:
        ValueError: on an unknown setting or fewer than one worker
    """
    config = ServerConfig()
    if config_file:
        config = replace(config, **load_config_file(config_file))
    if overrides:
        given = {k: v for k, v in overrides.items() if v is not None}
        config = replace(config, **given)

    if config.workers < 1:
        raise ValueError(f"workers must be at least 1, got {config.workers}")
    return config
