"""
Reasoning Tag Middleware - Splits <think>...</think> text into reasoning deltas.

Tags may arrive split across chunks; a partial tag at the end of a chunk is
held back until the next chunk decides it.
"""

from collections.abc import AsyncIterator
from typing import Any

from chainchat.llm.provider import (
    CompletionModel,
    ReasoningDelta,
    StreamEvent,
    TextDelta,
)


def _partial_tag_length(buffer: str, tag: str) -> int:
    """Length of the longest proper prefix of `tag` that `buffer` ends with."""
    for size in range(min(len(tag) - 1, len(buffer)), 0, -1):
        if buffer.endswith(tag[:size]):
            return size
    return 0


class TagSplitter:
    """Incremental text/reasoning splitter for one stream."""

    def __init__(self, tag: str = "think") -> None:
        self.open_tag = f"<{tag}>"
        self.close_tag = f"</{tag}>"
        self.in_reasoning = False
        self._buffer = ""

    def _emit(self, text: str) -> StreamEvent | None:
        if not text:
            return None
        return ReasoningDelta(text) if self.in_reasoning else TextDelta(text)

    def feed(self, text: str) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        self._buffer += text
        while True:
            tag = self.close_tag if self.in_reasoning else self.open_tag
            index = self._buffer.find(tag)
            if index == -1:
                keep = _partial_tag_length(self._buffer, tag)
                ready = self._buffer[: len(self._buffer) - keep]
                self._buffer = self._buffer[len(self._buffer) - keep :]
                event = self._emit(ready)
                if event is not None:
                    events.append(event)
                return events

            event = self._emit(self._buffer[:index])
            if event is not None:
                events.append(event)
            self._buffer = self._buffer[index + len(tag) :]
            self.in_reasoning = not self.in_reasoning

    def flush(self) -> list[StreamEvent]:
        event = self._emit(self._buffer)
        self._buffer = ""
        return [event] if event is not None else []


class ReasoningTagMiddleware:
    """Wraps a CompletionModel so reasoning text is never mixed into the answer."""

    def __init__(self, inner: CompletionModel, tag: str = "think") -> None:
        self.inner = inner
        self.tag = tag

    @property
    def provider(self) -> str:
        return self.inner.provider

    @property
    def model(self) -> str:
        return self.inner.model

    def __repr__(self) -> str:
        return f"ReasoningTagMiddleware({self.inner!r})"

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        splitter = TagSplitter(self.tag)
        async for event in self.inner.stream(system, messages, tools):
            if isinstance(event, TextDelta):
                for split in splitter.feed(event.text):
                    yield split
                continue
            for pending in splitter.flush():
                yield pending
            yield event
        for pending in splitter.flush():
            yield pending
