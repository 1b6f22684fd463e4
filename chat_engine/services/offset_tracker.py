from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class OffsetTracker:
    """Keeps the last observed server stream offset per conversation.

    Only structured events carry offsets. Events without one leave the cursor
    untouched, and a lower offset than the stored one is ignored so the cursor
    never moves backwards until it is cleared.
    """

    def __init__(self) -> None:
        self._cursors: dict[str, int] = {}

    def observe(self, conversation_id: str, offset: object) -> None:
        if offset is None:
            return
        if isinstance(offset, bool) or not isinstance(offset, int):
            logger.warning(
                "ignoring non-integer stream offset",
                extra={"conversation_id": conversation_id, "offset": repr(offset)},
            )
            return

        current = self._cursors.get(conversation_id)
        if current is not None and offset < current:
            logger.debug(
                "ignoring regressing stream offset",
                extra={"conversation_id": conversation_id, "offset": offset, "current": current},
            )
            return
        self._cursors[conversation_id] = offset

    def cursor_for(self, conversation_id: str) -> int | None:
        return self._cursors.get(conversation_id)

    def clear(self, conversation_id: str) -> None:
        self._cursors.pop(conversation_id, None)
