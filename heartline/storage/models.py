"""
Data models for transcript storage.
These define the shape of data flowing between the relay and the store.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def utcnow() -> str:
    """ISO-8601 UTC timestamp with a fixed width, so strings sort like times."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class Message:
    """A single persisted turn in a conversation. Content never changes once stored."""
    id: str = field(default_factory=lambda: uuid4().hex)
    conversation_id: str = ""
    user_id: str = ""
    companion_id: str = ""
    role: str = ""           # "user" or "assistant"
    content: str = ""
    model: str = ""
    created_at: str = field(default_factory=utcnow)
    token_count: int = 0     # Approximate, filled in by the relay

    @property
    def is_from_user(self) -> bool:
        return self.role == "user"

    def to_client_format(self) -> dict:
        """Shape the browser client renders and reloads from."""
        return {
            "id": self.id,
            "content": self.content,
            "role": self.role,
            "timestamp": self.created_at,
            "conversationId": self.conversation_id,
        }

    def to_turn(self) -> dict:
        """Role-tagged turn as sent upstream."""
        return {"role": "user" if self.is_from_user else "assistant", "content": self.content}

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            companion_id=row["companion_id"],
            role=row["role"],
            content=row["content"],
            model=row.get("model") or "",
            created_at=row["created_at"],
            token_count=row.get("token_count") or 0,
        )


@dataclass
class Conversation:
    """A chat thread owned by exactly one user and bound to one companion."""
    id: str = field(default_factory=lambda: uuid4().hex)
    user_id: str = ""
    companion_id: str = ""
    title: str = ""
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_client_format(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "companionId": self.companion_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> "Conversation":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            companion_id=row["companion_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
