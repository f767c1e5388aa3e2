"""
Reordering of reasoning and answer deltas coming from the agent.

The agent interleaves "thought" chunks with "message" chunks. OpenAI-style
clients render ``reasoning_content`` as a block above the answer, so every
thought received before the first answer chunk is held back and written as one
combined reasoning delta right before that answer chunk. Thoughts that arrive
after the answer has started are written straight through: content is never
dropped, only shown out of order.
"""
from contextlib import contextmanager
from typing import Iterator, List, Protocol

from open_agent_proxy.common.config import logger


class DeltaSink(Protocol):
    """Where reordered deltas go. Writes must be delivered in call order."""

    def write_reasoning(self, text: str) -> None: ...

    def write_content(self, text: str) -> None: ...


class ReasoningReorderBuffer:
    """
    Per-request buffer that guarantees reasoning precedes the answer.

    One instance belongs to one request and is driven sequentially, once per
    upstream update. ``flush`` must run when the upstream stream ends, however
    it ends; use :func:`reasoning_reorder` to get that for free.
    """

    def __init__(self, sink: DeltaSink):
        self._sink = sink
        self.pending_reasoning: List[str] = []
        self.has_emitted_answer_content = False
        self.has_flushed_reasoning = False

    def on_thought_fragment(self, text: str) -> None:
        if not self.has_emitted_answer_content and not self.has_flushed_reasoning:
            self.pending_reasoning.append(text)
            return

        # Nothing will flush again; emit as-is rather than lose it.
        logger.warning(
            f"[REASONING] late reasoning fragment emitted after text started ({len(text)} chars)"
        )
        self._sink.write_reasoning(text)

    def on_answer_fragment(self, text: str) -> None:
        if not self.has_emitted_answer_content:
            self.flush()
            self.has_emitted_answer_content = True
        self._sink.write_content(text)

    def flush(self) -> None:
        """Writes all buffered reasoning as a single delta. Only the first call has effect."""
        if self.has_flushed_reasoning:
            return

        if self.pending_reasoning:
            combined = "".join(self.pending_reasoning)
            logger.info(
                f"[REASONING] reasoning flushed: combined {len(self.pending_reasoning)} fragments into a response"
            )
            self._sink.write_reasoning(combined)

        self.has_flushed_reasoning = True
        self.pending_reasoning.clear()


@contextmanager
def reasoning_reorder(sink: DeltaSink) -> Iterator[ReasoningReorderBuffer]:
    """Yields a buffer for ``sink`` and flushes it on every exit path."""
    buffer = ReasoningReorderBuffer(sink)
    try:
        yield buffer
    finally:
        buffer.flush()
