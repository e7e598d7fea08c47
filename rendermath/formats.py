"""
Request parameter validation and input format detection.
"""

import re
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import BadRequest

# Valid values for the `in-format` parameter
IN_FORMATS = ("auto", "mml", "latex", "jats")

# Valid values for `latex-style`
LATEX_STYLES = ("text", "display")

# Parameter defaults merged under whatever the client sends
DEFAULT_PARAMS = {
    "q": "",
    "in-format": "auto",
    "latex-style": "display",
    "width": "800",
}

# Opening tags used in format detection. Any element named `math`, in any
# namespace, counts as MathML.
JATS_START_TAG = re.compile(r"<article\s+")
MML_START_TAG = re.compile(r"<([A-Za-z_]+:)?math", re.MULTILINE)

PROCESSING_INSTRUCTION = re.compile(r"<\?.*?\?>", re.DOTALL)
BLANK = re.compile(r"^\s*$")


@dataclass(frozen=True)
class NormalizedQuery:
    source_text: str
    in_format: str
    resolved_format: str
    latex_style: str
    width: Optional[int]


def detect_format(text: str) -> str:
    """JATS wins over MathML, which wins over the LaTeX fallback."""
    if JATS_START_TAG.search(text):
        return "jats"
    if MML_START_TAG.search(text):
        return "mml"
    return "latex"


def parse_width(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        width = int(value.strip())
    except ValueError:
        raise BadRequest("Invalid value for width") from None
    if width <= 0:
        raise BadRequest("Invalid value for width")
    return width


def classify(params: Mapping[str, str]) -> NormalizedQuery:
    """
    Validate request parameters and resolve the input format.

    Args:
        params: Request parameters, usually already merged over DEFAULT_PARAMS

    Raises:
        BadRequest: with the message to send back to the client
    """
    in_format = params.get("in-format", "auto")
    if in_format not in IN_FORMATS:
        raise BadRequest("Invalid value for in-format")

    latex_style = params.get("latex-style", "display")
    if latex_style not in LATEX_STYLES:
        raise BadRequest("Invalid value for latex-style")

    width = parse_width(params.get("width"))

    q = params.get("q") or ""
    if BLANK.match(q):
        raise BadRequest("No source math detected in input")

    resolved = in_format if in_format != "auto" else detect_format(q)

    return NormalizedQuery(
        source_text=q,
        in_format=in_format,
        resolved_format=resolved,
        latex_style=latex_style,
        width=width,
    )


def strip_processing_instructions(text: str) -> str:
    return PROCESSING_INSTRUCTION.sub("", text)
