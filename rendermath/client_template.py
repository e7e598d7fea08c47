"""
HTML page that renders the formulas of a JATS document in the browser.
"""

from pathlib import Path
from string import Template
from typing import Optional, Sequence

from .html_utils import div, td, tr, xml_escape
from .jats import Formula

TEMPLATE_FILE = Path(__file__).resolve().parent / "data" / "client-template.html"


def _empty_equation(eq: Formula) -> str:
    if eq.format == "mml":
        return "<math />"
    return "\\(\\)" if eq.latex_style == "text" else "\\[\\]"


def row(width: Optional[int], eq: Formula) -> str:
    """One table row; the cell starts out holding an empty equation of the right type."""
    fmt = "MathML" if eq.format == "mml" else f"LaTeX, {eq.latex_style}"
    attrs = {"id": f"{eq.id}-div"}
    if width:
        attrs["style"] = f"width: {width}px;"
    return tr(td(xml_escape(eq.id)), td(fmt), td(div(attrs, _empty_equation(eq))))


def source(eq: Formula) -> str:
    return div({"data-rid": f"{eq.id}-div", "data-format": eq.format}, xml_escape(eq.q))


class ClientTemplate:
    """The page template, with the MathJax URL filled in once per worker."""

    def __init__(self, mathjax_url: str, template_file: Path = TEMPLATE_FILE):
        text = template_file.read_text(encoding="utf-8")
        self.template = Template(Template(text).safe_substitute(mathjax_url=mathjax_url))

    def page(self, equations: Sequence[Formula], width: Optional[int]) -> str:
        rows = "\n".join(row(width, eq) for eq in equations)
        sources = "\n".join(source(eq) for eq in equations)
        return self.template.safe_substitute(rows=rows, sources=sources)
