"""
Prompt assembly: persona system turn + bounded recent history + the new turn.

History always comes from the transcript store, never from the client, and is
capped at `history_limit` turns. Older turns simply fall off; there is no
summarisation.
"""

from __future__ import annotations

import logging

from heartline.storage.models import Message

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20

DEFAULT_SYSTEM_PROMPT = (
    "You are a flirty, charming AI companion with a playful personality. "
    "You enjoy light-hearted banter, compliments, and making the user feel special. "
    "You're intelligent, witty, and a bit cheeky, but always respectful and appropriate. "
    "You remember previous conversations and reference them naturally. "
    "Your responses should be engaging, warm, and occasionally suggestive in a tasteful way. "
    "You aim to build a genuine connection while being helpful and entertaining."
)


def build_turns(system_prompt: str, history: list[Message], content: str) -> list[dict]:
    """Ordered turn list: system, history (oldest first), new user turn."""
    turns = [{"role": "system", "content": system_prompt}]
    turns.extend(m.to_turn() for m in history)
    turns.append({"role": "user", "content": content})
    return turns


class PromptAssembler:
    """Builds the upstream turn list for one exchange."""

    def __init__(
        self,
        store,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self.store = store
        self.system_prompt = system_prompt
        self.history_limit = history_limit

    @classmethod
    def from_config(cls, store, cfg: dict) -> "PromptAssembler":
        return cls(
            store,
            system_prompt=cfg.get("persona", {}).get("system_prompt") or DEFAULT_SYSTEM_PROMPT,
            history_limit=int(cfg.get("relay", {}).get("history_limit", DEFAULT_HISTORY_LIMIT)),
        )

    def assemble(
        self,
        conversation_id: str,
        content: str,
        exclude_id: str | None = None,
        history_limit: int | None = None,
    ) -> list[dict]:
        """
        exclude_id is the just-persisted user turn: it is already the final
        turn of the prompt, so it must not appear in the history as well.
        """
        limit = self.history_limit if history_limit is None else history_limit
        limit = max(0, int(limit))

        fetch = limit + 1 if exclude_id else limit
        recent = self.store.get_recent_messages(conversation_id, fetch)
        history = [m for m in recent if m.id != exclude_id]
        history = history[-limit:] if limit else []

        logger.debug(
            "Assembled prompt for %s: %d history turns (limit %d)",
            conversation_id, len(history), limit,
        )
        return build_turns(self.system_prompt, history, content)
