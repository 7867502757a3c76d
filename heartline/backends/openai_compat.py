"""
OpenAI-compatible completion backend.

Talks to any endpoint that speaks the chat-completions format (Groq by
default). Produces one of two DeltaSource shapes:

  - SingleShotSource: one JSON body -> exactly one delta, then END
  - SSEStreamSource:  `data: <json>` events -> one delta per usable chunk,
                      END on `data: [DONE]` or socket close
"""

from __future__ import annotations

import logging
import time
from typing import AsyncIterator

import httpx

from heartline.backends.base import DeltaSource, StreamDelta, END
from heartline.errors import UpstreamError
from heartline.sse import DONE, SKIP, extract_delta, parse_data_line

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 2000


class CompletionBackend:
    """
    Factory for upstream delta sources.

    `transport` is handed to every httpx client it creates; tests pass an
    httpx.MockTransport there.
    """

    def __init__(
        self,
        name: str,
        url: str,
        api_key: str = "",
        timeout: float = 120,
        temperature: float | None = 0.7,
        max_tokens: int | None = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.transport = transport

    @classmethod
    def from_config(cls, cfg: dict, transport: httpx.AsyncBaseTransport | None = None) -> "CompletionBackend":
        b_cfg = cfg.get("backend", {})
        return cls(
            name=b_cfg.get("name", "groq"),
            url=b_cfg.get("url", "https://api.groq.com/openai/v1"),
            api_key=b_cfg.get("api_key", ""),
            timeout=b_cfg.get("timeout", 120),
            temperature=b_cfg.get("temperature", 0.7),
            max_tokens=b_cfg.get("max_tokens", 4096),
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.url}/chat/completions"

    def headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_body(self, turns: list[dict], model: str, stream: bool) -> dict:
        body = {"model": model, "messages": turns, "stream": stream}
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if self.max_tokens is not None:
            body["max_tokens"] = self.max_tokens
        return body

    def make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def open_source(self, turns: list[dict], model: str, stream: bool = True) -> DeltaSource:
        """Pick the source shape. Nothing goes over the wire until open()."""
        if stream:
            return SSEStreamSource(self, self.build_body(turns, model, stream=True))
        return SingleShotSource(self, self.build_body(turns, model, stream=False))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"


def _upstream_failure(backend: CompletionBackend, exc: Exception) -> UpstreamError:
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamError(f"{backend.name} timed out after {backend.timeout}s")
    return UpstreamError(f"{backend.name} unreachable: {exc}")


def _http_failure(backend: CompletionBackend, status: int, body: str) -> UpstreamError:
    body = body[:_ERROR_BODY_LIMIT]
    return UpstreamError(
        f"{backend.name} returned HTTP {status}: {body[:200] or 'no body'}",
        status=status,
        body=body,
    )


class SingleShotSource(DeltaSource):
    """Provider answers with one JSON body; yield it whole."""

    def __init__(self, backend: CompletionBackend, body: dict):
        super().__init__()
        self.backend = backend
        self.body = body
        self.text = ""
        self.latency_ms = 0.0

    async def open(self) -> None:
        t0 = time.monotonic()
        try:
            async with self.backend.make_client() as client:
                resp = await client.post(
                    self.backend.endpoint,
                    json=self.body,
                    headers=self.backend.headers(),
                )
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' request failed: %s", self.backend.name, e)
            raise _upstream_failure(self.backend, e) from e
        self.latency_ms = (time.monotonic() - t0) * 1000

        if resp.status_code >= 400:
            raise _http_failure(self.backend, resp.status_code, resp.text)

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamError(f"{self.backend.name} returned an unexpected response body") from e
        if not isinstance(content, str):
            raise UpstreamError(f"{self.backend.name} returned non-text content")

        self.text = content
        logger.debug(
            "Backend '%s' single-shot completion: %d chars in %.0fms",
            self.backend.name, len(content), self.latency_ms,
        )

    async def _deltas(self) -> AsyncIterator[StreamDelta]:
        if self.text:
            yield StreamDelta(self.text)
        yield END


class SSEStreamSource(DeltaSource):
    """Provider streams SSE chunks; yield each usable `choices[0].delta.content`."""

    def __init__(self, backend: CompletionBackend, body: dict):
        super().__init__()
        self.backend = backend
        self.body = body
        self.delta_count = 0
        self._client: httpx.AsyncClient | None = None
        self._response: httpx.Response | None = None

    async def open(self) -> None:
        self._client = self.backend.make_client()
        request = self._client.build_request(
            "POST",
            self.backend.endpoint,
            json=self.body,
            headers=self.backend.headers(),
        )
        try:
            self._response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed to open: %s", self.backend.name, e)
            await self._release()
            raise _upstream_failure(self.backend, e) from e

        if self._response.status_code >= 400:
            status = self._response.status_code
            try:
                raw = await self._response.aread()
                body = raw.decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            await self._release()
            raise _http_failure(self.backend, status, body)

    async def _deltas(self) -> AsyncIterator[StreamDelta]:
        if self._response is None:
            raise RuntimeError("SSEStreamSource iterated before open()")
        try:
            async for line in self._response.aiter_lines():
                parsed = parse_data_line(line)
                if parsed is SKIP:
                    continue
                if parsed is DONE:
                    break
                text = extract_delta(parsed)
                if not text:
                    continue
                self.delta_count += 1
                yield StreamDelta(text)
        except httpx.HTTPError as e:
            if self.delta_count == 0:
                logger.warning("Backend '%s' stream dropped before any delta: %s", self.backend.name, e)
                raise _upstream_failure(self.backend, e) from e
            # Partial text is kept; the drop ends the stream like [DONE] would.
            logger.warning(
                "Backend '%s' stream dropped after %d deltas, ending early: %s",
                self.backend.name, self.delta_count, e,
            )
        yield END

    async def _release(self) -> None:
        if self._response is not None:
            await self._response.aclose()
            self._response = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
