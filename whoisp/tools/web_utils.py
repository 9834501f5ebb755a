from __future__ import annotations

import html
import re
from urllib.parse import urlparse

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def extract_domain(url: str) -> str | None:
    """Hostname of `url`, or None when unparseable."""
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    return host or None


def strip_html(value: str | None) -> str:
    if not value:
        return ""
    text = html.unescape(_TAG_RE.sub(" ", value))
    return _WS_RE.sub(" ", text).strip()


def collapse_whitespace(value: str | None) -> str:
    return _WS_RE.sub(" ", value or "").strip()
