"""
Server-Sent Events framing, both directions.

The provider streams `data: <json>` lines terminated by `data: [DONE]`; the
relay speaks the same framing to its own clients. Parsing is line-based and
tolerant: anything that isn't a well-formed data line is skipped, never fatal.
"""

from __future__ import annotations

import json
import logging

logger = logging.getLogger(__name__)

DONE = "[DONE]"
DONE_EVENT = f"data: {DONE}\n\n"


class _Skip:
    """Marker for lines that carry nothing usable."""

    def __repr__(self) -> str:
        return "SKIP"


SKIP = _Skip()


def format_event(payload: dict) -> str:
    """One outbound SSE event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def parse_data_line(line: str):
    """
    Decode one SSE line.

    Returns DONE for the terminator, the decoded JSON object for a data line,
    or SKIP for blank lines, comments, other fields and malformed JSON.
    """
    line = line.strip()
    if not line or not line.startswith("data:"):
        return SKIP

    data = line[5:].strip()
    if data == DONE:
        return DONE
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE data line: %.120s", data)
        return SKIP


def extract_delta(chunk) -> str:
    """
    Pull the text delta out of a chat-completions chunk
    (`choices[0].delta.content`). Role-only and empty deltas come back as "".
    """
    if not isinstance(chunk, dict):
        return ""
    try:
        content = chunk.get("choices", [{}])[0].get("delta", {}).get("content")
    except (IndexError, AttributeError, TypeError):
        return ""
    return content if isinstance(content, str) else ""
