"""
Pull the formulas out of a JATS article.

Each `disp-formula` / `inline-formula` becomes one Formula. A formula with a
`tex-math` child is LaTeX (display or text style according to the element);
otherwise a MathML `math` child is used.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional, Union

MML_NS = "http://www.w3.org/1998/Math/MathML"
ET.register_namespace("mml", MML_NS)

FORMULA_TAGS = {
    "disp-formula": "display",
    "inline-formula": "text",
}


@dataclass(frozen=True)
class Formula:
    id: str
    format: str  # "mml" or "latex"
    latex_style: str
    q: str


def _local_name(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _formula_source(elem: ET.Element, style: str) -> Optional[Formula]:
    for child in elem.iter():
        if child is elem:
            continue
        name = _local_name(child.tag)
        if name == "tex-math":
            text = "".join(child.itertext()).strip()
            if text:
                return Formula("", "latex", style, text)
        elif name == "math":
            return Formula("", "mml", style, ET.tostring(child, encoding="unicode").strip())
    return None


def parse_jats(xml_text: str) -> Union[List[Formula], str]:
    """
    Parse a JATS document.

    Returns:
        The list of formulas, or a string describing why parsing failed.
    """
    try:
        root = ET.fromstring(xml_text.strip())
    except ET.ParseError as e:
        return f"Error parsing JATS XML: {e}"

    formulas: List[Formula] = []
    for elem in root.iter():
        if not isinstance(elem.tag, str):
            continue
        style = FORMULA_TAGS.get(_local_name(elem.tag))
        if style is None:
            continue
        found = _formula_source(elem, style)
        if found is None:
            continue
        formula_id = elem.get("id") or f"formula-{len(formulas) + 1}"
        formulas.append(Formula(formula_id, found.format, found.latex_style, found.q))

    if not formulas:
        return "No formulas found in JATS document"
    return formulas
