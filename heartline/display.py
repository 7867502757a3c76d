"""
Client-side display list, as a pure reducer.

The UI shows an ordered list of DisplayMessage. While a reply streams in, the
list holds an optimistic placeholder flagged `streaming`. Every change goes
through reduce(messages, event), which returns a new list and never mutates
its input. The persisted transcript stays the system of record: a reload
replaces the whole list with from_transcript().
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Union
from uuid import uuid4


@dataclass(frozen=True)
class DisplayMessage:
    id: str
    role: str            # "user" | "assistant"
    content: str
    timestamp: str = ""
    conversation_id: str = ""
    streaming: bool = False

    @classmethod
    def from_client_format(cls, data: dict) -> "DisplayMessage":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data["content"],
            timestamp=data.get("timestamp", ""),
            conversation_id=data.get("conversationId", ""),
        )


def temp_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─ Events ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlaceholdersInserted:
    """The user's own turn plus an empty streaming assistant placeholder."""
    user: DisplayMessage
    assistant: DisplayMessage


@dataclass(frozen=True)
class DeltaReceived:
    message_id: str
    text: str


@dataclass(frozen=True)
class StreamFinalized:
    """Stop streaming. persisted_id re-keys the placeholder to the stored message."""
    message_id: str
    persisted_id: str | None = None


@dataclass(frozen=True)
class StreamFailed:
    """Drop the placeholder. drop_user_id also removes the user turn (request rejected)."""
    message_id: str
    drop_user_id: str | None = None


DisplayEvent = Union[PlaceholdersInserted, DeltaReceived, StreamFinalized, StreamFailed]


def placeholders(content: str, conversation_id: str) -> PlaceholdersInserted:
    ts = _now()
    return PlaceholdersInserted(
        user=DisplayMessage(
            id=temp_id("temp"),
            role="user",
            content=content,
            timestamp=ts,
            conversation_id=conversation_id,
        ),
        assistant=DisplayMessage(
            id=temp_id("stream"),
            role="assistant",
            content="",
            timestamp=ts,
            conversation_id=conversation_id,
            streaming=True,
        ),
    )


# ─ Reducer ────────────────────────────────────────────────────────────────

def reduce(messages: list[DisplayMessage], event: DisplayEvent) -> list[DisplayMessage]:
    """Apply one event. Unknown ids leave the list unchanged."""
    if isinstance(event, PlaceholdersInserted):
        return [*messages, event.user, event.assistant]

    if isinstance(event, DeltaReceived):
        # Deltas append; they are never full-content snapshots.
        return [
            replace(m, content=m.content + event.text) if m.id == event.message_id and m.streaming else m
            for m in messages
        ]

    if isinstance(event, StreamFinalized):
        return [
            replace(m, streaming=False, id=event.persisted_id or m.id) if m.id == event.message_id else m
            for m in messages
        ]

    if isinstance(event, StreamFailed):
        dropped = {event.message_id, event.drop_user_id}
        return [m for m in messages if m.id not in dropped]

    raise TypeError(f"unknown display event: {event!r}")


def from_transcript(rows: list[dict]) -> list[DisplayMessage]:
    """Rebuild the display list from the persisted transcript alone."""
    return [DisplayMessage.from_client_format(r) for r in rows]
