"""Tiny helpers for building HTML fragments."""

from functools import partial
from typing import Dict, Optional


def xml_escape(s: str) -> str:
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace("'", "&apos;")
        .replace('"', "&quot;")
    )


def serial_attrs(attrs: Optional[Dict[str, str]]) -> str:
    if not attrs:
        return ""
    return " ".join(f"{xml_escape(name)}='{xml_escape(str(value))}'" for name, value in attrs.items())


def html_elem(tag: str, *args) -> str:
    """
    Build an element. Either html_elem("td", "a", "b") or
    html_elem("div", {"id": "x"}, "content").
    """
    attrs = args[0] if args and isinstance(args[0], dict) else None
    content = "".join(args[1:] if attrs is not None else args)
    attr_str = f" {serial_attrs(attrs)}" if attrs else ""
    return f"<{tag}{attr_str}>{content}</{tag}>"


div = partial(html_elem, "div")
tr = partial(html_elem, "tr")
td = partial(html_elem, "td")
