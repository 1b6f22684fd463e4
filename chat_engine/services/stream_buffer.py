from __future__ import annotations

import math


def reveal_count(pending_length: int, divisor: int) -> int:
    """Characters to reveal in one tick: grows with the backlog, never below one."""

    return max(1, math.floor(pending_length / divisor + 0.5))


class StreamBuffer:
    """Text already shown versus text received but not yet shown for one message.

    The producer only appends to the back of ``pending_text`` and the animator
    only takes from its front, so ``revealed_text`` grows monotonically and is
    always a prefix of everything received.
    """

    def __init__(self) -> None:
        self._revealed_text = ""
        self._pending_text = ""

    @property
    def revealed_text(self) -> str:
        return self._revealed_text

    @property
    def pending_text(self) -> str:
        return self._pending_text

    @property
    def drained(self) -> bool:
        return not self._pending_text

    def append(self, text: str) -> None:
        self._pending_text += text

    def reveal(self, count: int) -> str:
        if count <= 0 or not self._pending_text:
            return ""
        chunk = self._pending_text[:count]
        self._pending_text = self._pending_text[count:]
        self._revealed_text += chunk
        return chunk

    def flush(self) -> str:
        return self.reveal(len(self._pending_text))

    def discard_pending(self) -> str:
        dropped = self._pending_text
        self._pending_text = ""
        return dropped

