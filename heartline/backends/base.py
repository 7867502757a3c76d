"""
Base delta-source abstraction.

Whatever shape the provider answers in (one JSON body, or an SSE stream),
the relay only ever sees a DeltaSource: open it, iterate text deltas until
the end marker, close it. Both implementations live in openai_compat.py.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamDelta:
    """One fragment of generated text, or the end-of-stream marker."""
    text: str = ""
    done: bool = False


END = StreamDelta(done=True)


class DeltaSource(abc.ABC):
    """
    A lazy, finite, non-restartable sequence of StreamDelta values
    terminated by END.

    Usage:
        await source.open()          # raises UpstreamError on setup failure
        try:
            async for delta in source:
                ...
        finally:
            await source.aclose()    # always releases the upstream connection
    """

    def __init__(self):
        self._iterator: AsyncIterator[StreamDelta] | None = None
        self.closed = False

    @abc.abstractmethod
    async def open(self) -> None:
        """Issue the upstream request. Raises UpstreamError if it can't start."""
        ...

    @abc.abstractmethod
    def _deltas(self) -> AsyncIterator[StreamDelta]:
        """Async generator yielding text deltas, then END."""
        ...

    async def _release(self) -> None:
        """Drop any held connection. Override when the source holds one."""
        return None

    def __aiter__(self) -> AsyncIterator[StreamDelta]:
        if self._iterator is not None:
            raise RuntimeError(f"{self.__class__.__name__} cannot be restarted")
        self._iterator = self._deltas()
        return self._iterator

    async def aclose(self) -> None:
        """Cancel/finish the upstream request. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        if self._iterator is not None and hasattr(self._iterator, "aclose"):
            await self._iterator.aclose()
        await self._release()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} closed={self.closed}>"
