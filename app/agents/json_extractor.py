"""Recover a JSON payload from a free-form model response.

Models wrap JSON in markdown fences or add prose around it. ``extract_json`` strips the fences and returns the
first balanced ``{...}`` or ``[...]`` span found by a single forward scan. It only balances brackets; callers
still run ``json.loads`` on the result.
"""

import re

FENCE_RE = re.compile(r"```(?:json)?[ \t]*", re.IGNORECASE)

OPENERS = "{["
CLOSERS = "}]"


def strip_fences(text: str) -> str:
    """Remove markdown code fence markers."""
    return FENCE_RE.sub("", text)


def extract_json(text: str | None) -> str | None:
    """Return the first balanced JSON object or array in ``text``, or None if there is none."""
    if not text:
        return None
    cleaned = strip_fences(text)
    start = -1
    depth = 0
    in_string = False
    escaped = False
    for idx, char in enumerate(cleaned):
        if start < 0:
            if char in OPENERS:
                start = idx
                depth = 1
            continue
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in OPENERS:
            depth += 1
        elif char in CLOSERS:
            depth -= 1
            if depth == 0:
                return cleaned[start : idx + 1]
    return None
