"""
Markdown rendering for item content.

Rendered HTML is always passed through an allow-list sanitiser: item
content is user supplied and is served back to other readers.
"""

from __future__ import annotations

from datetime import datetime

import bleach
import markdown

from notepages.models import utc_now

MD_EXTENSIONS = [
    "tables",
    "nl2br",  # hard line breaks
    "smarty",
    "pymdownx.superfences",
    "pymdownx.tilde",
    "pymdownx.magiclink",
    "pymdownx.saneheaders",
]
MD_EXTENSION_CONFIGS = {
    "tables": {"use_align_attribute": True},
    "pymdownx.tilde": {"subscript": False},
}

ALLOWED_TAGS = frozenset(
    {
        "a", "abbr", "b", "blockquote", "br", "code", "dd", "del", "div",
        "dl", "dt", "em", "h1", "h2", "h3", "h4", "h5", "h6", "hr", "i",
        "img", "ins", "li", "mark", "ol", "p", "pre", "s", "span", "strong",
        "sub", "sup", "table", "tbody", "td", "tfoot", "th", "thead", "tr",
        "ul",
    }
)
ALLOWED_ATTRIBUTES = {
    "a": ["href", "title"],
    "abbr": ["title"],
    "img": ["src", "alt", "title", "width", "height"],
    "code": ["class"],
    "pre": ["class"],
    "div": ["class"],
    "span": ["class"],
    "td": ["align"],
    "th": ["align"],
}
ALLOWED_PROTOCOLS = frozenset({"http", "https", "mailto"})


def markdown_to_html(source: str | None) -> str:
    """Markdown → HTML with every active construct stripped."""
    if not source:
        return ""
    html = markdown.markdown(
        source,
        extensions=MD_EXTENSIONS,
        extension_configs=MD_EXTENSION_CONFIGS,
        output_format="xhtml",
    )
    return bleach.clean(
        html,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
        strip_comments=True,
    )


_UNITS = (
    ("year", 365 * 24 * 3600),
    ("month", 30 * 24 * 3600),
    ("week", 7 * 24 * 3600),
    ("day", 24 * 3600),
    ("hour", 3600),
    ("minute", 60),
)


def time_ago(dt: datetime | None, now: datetime | None = None) -> str:
    """``2 hours ago`` / ``in 3 days`` / ``just now``."""
    if dt is None:
        return ""
    now = now or utc_now()
    delta = (now - dt).total_seconds()
    future = delta < 0
    delta = abs(delta)
    for unit, secs in _UNITS:
        n = int(delta // secs)
        if n >= 1:
            label = f"{n} {unit}{'s' if n > 1 else ''}"
            return f"in {label}" if future else f"{label} ago"
    return "just now"
