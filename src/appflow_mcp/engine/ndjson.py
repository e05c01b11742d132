"""Line parsing for newline-delimited JSON streams.

The generation backend streams one JSON object per line. Framing (partial
reads, multibyte characters split across reads, the final unterminated line)
is left to httpx's `Response.aiter_lines()`; this module only turns each line
into an object.

Parse failures are soft: a line that is not a JSON object is logged and
skipped, and decoding continues with the next line.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)


def parse_line(line: str) -> dict[str, Any] | None:
    """Parse one NDJSON line, returning None for blank or unusable lines."""
    if not line.strip():
        return None

    try:
        value = json.loads(line)
    except json.JSONDecodeError as e:
        logger.warning(f"Error parsing JSON line (skipped): {e}: {line[:200]!r}")
        return None

    if not isinstance(value, dict):
        logger.warning(f"Expected JSON object, got {type(value).__name__} (skipped)")
        return None

    return value


async def iter_ndjson(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON objects of an async line stream, skipping bad lines."""
    async for line in lines:
        obj = parse_line(line)
        if obj is not None:
            yield obj


__all__ = ["iter_ndjson", "parse_line"]
