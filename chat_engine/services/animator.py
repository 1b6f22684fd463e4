from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from chat_engine.services.contracts import MarkdownRenderer
from chat_engine.services.stream_buffer import StreamBuffer, reveal_count
from chat_engine.state import ConversationState, Message

logger = logging.getLogger(__name__)


class Animator:
    """Drains one stream's buffer into its message at a human-readable pace.

    Each tick reveals a share of the backlog proportional to its size, then
    re-renders the message from the full revealed text. The loop flushes and
    stops once the turn is over, a newer stream supersedes this one, or the
    message was completed.
    """

    def __init__(
        self,
        *,
        stream_id: str,
        message: Message,
        state: ConversationState,
        markdown: MarkdownRenderer,
        interval_seconds: float,
        reveal_divisor: int,
        on_drained: Callable[[Animator], None] | None = None,
    ) -> None:
        self.stream_id = stream_id
        self.message = message
        self.buffer = StreamBuffer()
        self._state = state
        self._markdown = markdown
        self._interval_seconds = interval_seconds
        self._reveal_divisor = reveal_divisor
        self._on_drained = on_drained
        self._stopped = False
        self._task: asyncio.Task[None] | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"animator-{self.stream_id}")
        return self._task

    async def run(self) -> None:
        while self.tick():
            await asyncio.sleep(self._interval_seconds)

    def tick(self) -> bool:
        """Advance one frame; returns ``False`` once the loop should stop."""

        if self._stopped:
            return False

        if not self.buffer.drained:
            self.buffer.reveal(reveal_count(len(self.buffer.pending_text), self._reveal_divisor))
            self.render()

        if self._should_finish():
            self.finish()
            return False
        return True

    def append(self, text: str) -> None:
        if self._stopped:
            logger.debug("dropping text for stopped stream", extra={"stream_id": self.stream_id})
            return
        self.buffer.append(text)

    def finish(self) -> None:
        """Flush everything pending at once and retire the stream."""

        if self._stopped:
            return
        self.buffer.flush()
        self.message.steps.seal_all()
        self.message.completed = True
        self.render(in_flight=False)
        self._retire()
        if self._on_drained is not None:
            self._on_drained(self)

    def discard(self) -> None:
        """Stop without flushing; whatever was revealed stays visible."""

        if self._stopped:
            return
        dropped = self.buffer.discard_pending()
        if dropped:
            logger.debug(
                "discarded unrevealed text",
                extra={"stream_id": self.stream_id, "dropped_chars": len(dropped)},
            )
        self.message.steps.seal_all()
        self.message.completed = True
        self.render(in_flight=False)
        self._retire()

    def render(self, *, in_flight: bool = True) -> None:
        self.message.text = self.buffer.revealed_text
        self.message.rendered = self.message.steps.render(
            self.buffer.revealed_text,
            self._markdown,
            in_flight=in_flight,
        )

    def _should_finish(self) -> bool:
        return (
            self._state.turn_finished
            or self._state.latest_stream_id != self.stream_id
            or self.message.completed
        )

    def _retire(self) -> None:
        self._stopped = True
        if self._state.streams.get(self.stream_id) is self:
            del self._state.streams[self.stream_id]
