"""
Flight recorder: the state timeline of one relay exchange.

Each RelaySession owns exactly one ExchangeRecord and writes a milestone on
every state transition:
  Idle → UserTurnPersisted → UpstreamRequested → Streaming → Finalizing → Completed|Failed

Nothing here is shared between exchanges; the record lives and dies with its
session and is only logged (DEBUG) and attached to the exchange result.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from uuid import uuid4

logger = logging.getLogger(__name__)


class ExchangeRecord:
    """Timeline for a single exchange through the relay."""

    __slots__ = ("id", "conversation_id", "model", "start_time", "events", "_closed")

    def __init__(self, conversation_id: str = "", model: str = ""):
        self.id: str = uuid4().hex[:12]
        self.conversation_id = conversation_id
        self.model = model
        self.start_time: float = time.monotonic()
        self.events: list[dict] = []
        self._closed = False

    def log(self, state: str, **details):
        """Record that the exchange entered `state`."""
        if self._closed:
            return
        elapsed = (time.monotonic() - self.start_time) * 1000
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "elapsed_ms": round(elapsed, 2),
            "state": state,
        }
        if details:
            event["details"] = {k: v for k, v in details.items() if v is not None}
        self.events.append(event)
        logger.debug(
            "exchange %s conv=%s → %s %s",
            self.id, self.conversation_id[:16], state, event.get("details", ""),
        )

    def close(self):
        self._closed = True

    @property
    def states(self) -> list[str]:
        return [e["state"] for e in self.events]

    @property
    def total_ms(self) -> float:
        if not self.events:
            return 0.0
        return self.events[-1]["elapsed_ms"]

    def summary(self) -> dict:
        """Time spent in each state (until the next transition)."""
        if len(self.events) < 2:
            return {"total_ms": self.total_ms}

        spent: dict[str, float] = {}
        for prev, cur in zip(self.events, self.events[1:]):
            spent[prev["state"]] = spent.get(prev["state"], 0) + cur["elapsed_ms"] - prev["elapsed_ms"]

        return {
            "total_ms": round(self.total_ms, 2),
            "breakdown": {state: round(ms, 2) for state, ms in spent.items()},
        }

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "model": self.model,
            "events": self.events,
            "summary": self.summary(),
        }
