"""
Relay client and stream consumer.

RelayClient speaks the relay's HTTP API (httpx). StreamConsumer is the
client-side half of an exchange: it inserts the optimistic placeholders,
reads the relay's SSE framing, and drives the display reducer until the reply
is finalized, dropped, or left partial after a connection loss.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

import httpx

from heartline.display import (
    DeltaReceived,
    DisplayMessage,
    StreamFailed,
    StreamFinalized,
    from_transcript,
    placeholders,
    reduce,
)
from heartline.sse import DONE, SKIP, parse_data_line

logger = logging.getLogger(__name__)

# Setup rejections sent after the user turn was saved. Only opening upstream
# fails that late; every other rejection happens before anything is stored.
_USER_TURN_KEPT = ("UpstreamError",)


class RelayRequestError(Exception):
    """The relay rejected the request outright (non-2xx)."""

    def __init__(self, status: int, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.status = status
        self.kind = kind
        self.message = message

    @classmethod
    def from_response(cls, resp: httpx.Response) -> "RelayRequestError":
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        return cls(
            status=resp.status_code,
            kind=data.get("kind", f"HTTP{resp.status_code}"),
            message=data.get("message") or resp.reason_phrase or "request failed",
        )


class RelayClient:
    """Thin async client for a running relay."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        tier: str = "free",
        timeout: float = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.tier = tier
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict:
        return {"X-User-Id": self.user_id, "X-User-Tier": self.tier}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self._headers(),
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, **kwargs):
        async with self._client() as client:
            resp = await client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            raise RelayRequestError.from_response(resp)
        return resp.json()

    async def stream_message(
        self, content: str, conversation_id: str, companion_id: str,
    ) -> AsyncIterator[dict]:
        """
        Yield each decoded event from the relay's stream until `data: [DONE]`
        or the connection ends. Malformed lines are skipped.
        """
        body = {"content": content, "conversationId": conversation_id, "companionId": companion_id}
        async with self._client() as client:
            async with client.stream("POST", "/api/chat/messages/stream", json=body) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise RelayRequestError.from_response(resp)
                async for line in resp.aiter_lines():
                    parsed = parse_data_line(line)
                    if parsed is SKIP:
                        continue
                    if parsed is DONE:
                        return
                    if isinstance(parsed, dict):
                        yield parsed

    async def send_message(self, content: str, conversation_id: str, companion_id: str) -> dict:
        body = {"content": content, "conversationId": conversation_id, "companionId": companion_id}
        return await self._request("POST", "/api/chat/messages", json=body)

    async def create_conversation(self, companion_id: str, title: str | None = None) -> dict:
        body = {"companionId": companion_id}
        if title:
            body["title"] = title
        return await self._request("POST", "/api/chat/conversations", json=body)

    async def list_conversations(self) -> list[dict]:
        return await self._request("GET", "/api/chat/conversations")

    async def get_messages(self, conversation_id: str) -> list[dict]:
        return await self._request("GET", f"/api/chat/conversations/{conversation_id}/messages")

    async def health(self) -> dict:
        return await self._request("GET", "/api/health")


@dataclass
class ConsumerOutcome:
    ok: bool
    message: DisplayMessage | None = None
    error: str | None = None
    partial: bool = False


class StreamConsumer:
    """
    Owns the display list for one conversation.

    on_update(messages, event) fires after every reducer step;
    on_error(reason) fires with a human-readable reason when a reply fails.
    """

    def __init__(
        self,
        client: RelayClient,
        conversation_id: str,
        companion_id: str,
        on_update: Callable | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        self.client = client
        self.conversation_id = conversation_id
        self.companion_id = companion_id
        self.on_update = on_update
        self.on_error = on_error
        self.messages: list[DisplayMessage] = []
        self.errors: list[str] = []

    def _apply(self, event):
        self.messages = reduce(self.messages, event)
        if self.on_update:
            self.on_update(self.messages, event)

    def _find(self, message_id: str) -> DisplayMessage | None:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def _failed(self, reason: str) -> ConsumerOutcome:
        self.errors.append(reason)
        if self.on_error:
            self.on_error(reason)
        return ConsumerOutcome(ok=False, error=reason)

    async def reload(self) -> list[DisplayMessage]:
        """Replace the display list with the persisted transcript."""
        rows = await self.client.get_messages(self.conversation_id)
        self.messages = from_transcript(rows)
        return self.messages

    async def submit(self, content: str) -> ConsumerOutcome:
        inserted = placeholders(content, self.conversation_id)
        self._apply(inserted)
        placeholder_id = inserted.assistant.id
        received = 0
        persisted_id = None

        try:
            async for event in self.client.stream_message(content, self.conversation_id, self.companion_id):
                if "error" in event:
                    err = event["error"] if isinstance(event["error"], dict) else {}
                    self._apply(StreamFailed(placeholder_id))
                    return self._failed(err.get("message") or "The reply could not be completed")
                if event.get("done"):
                    persisted_id = event.get("id")
                    continue
                text = event.get("content")
                if isinstance(text, str) and text:
                    self._apply(DeltaReceived(placeholder_id, text))
                    received += 1
        except RelayRequestError as e:
            kept = e.kind in _USER_TURN_KEPT
            self._apply(StreamFailed(placeholder_id, drop_user_id=None if kept else inserted.user.id))
            return self._failed(e.message)
        except httpx.HTTPError as e:
            if received == 0:
                self._apply(StreamFailed(placeholder_id))
                return self._failed(f"Connection lost: {e}")
            # The relay saves what was forwarded so far; keep showing it.
            logger.info("Stream dropped after %d deltas, keeping partial reply", received)
            self._apply(StreamFinalized(placeholder_id))
            return ConsumerOutcome(ok=True, message=self._find(placeholder_id), partial=True)

        if received == 0:
            self._apply(StreamFailed(placeholder_id))
            return self._failed("The companion returned an empty reply")

        self._apply(StreamFinalized(placeholder_id, persisted_id))
        final_id = persisted_id or placeholder_id
        return ConsumerOutcome(ok=True, message=self._find(final_id), partial=persisted_id is None)
