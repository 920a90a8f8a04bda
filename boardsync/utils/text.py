"""
BoardSync — Text Helpers

Upstream free text arrives HTML-escaped, sometimes twice (an escaped
ampersand inside a numeric newline entity, e.g. "&amp;#10;"). Decoding runs
until the string stops changing, bounded so a pathological input cannot
loop.
"""

from __future__ import annotations

import html

_MAX_DECODE_PASSES = 3


def decode_entities(value: str | None) -> str | None:
    """Decode numeric and named HTML entities (&#10;, &amp;, &quot;, &lt; ...)."""
    if value is None:
        return None
    decoded = value
    for _ in range(_MAX_DECODE_PASSES):
        candidate = html.unescape(decoded)
        if candidate == decoded:
            break
        decoded = candidate
    return decoded


def truncate(message: str, limit: int) -> str:
    """Clip a message to `limit` characters, marking the cut with an ellipsis."""
    if len(message) <= limit:
        return message
    return message[: max(limit - 1, 0)] + "…"
