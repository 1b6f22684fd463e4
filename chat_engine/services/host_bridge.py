from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping
from typing import Any

from chat_engine.core.constants import IDE_CALLBACK_ACTION
from chat_engine.services.contracts import HostPoster

logger = logging.getLogger(__name__)

HostCallback = Callable[[Any], None]


def new_callback_id() -> str:
    """Millisecond timestamp followed by a random suffix."""

    return f"{int(time.time() * 1000)}{random.randint(0, 100000)}"


class HostBridge:
    """Fire-and-forget calls to the host IDE with one-shot correlated callbacks.

    A callback is registered under a generated ``cbid`` and removed the moment
    it is invoked, so no callback ever runs twice. There is no timeout: an
    unanswered call only leaves its entry in the table.
    """

    def __init__(
        self,
        post_message: HostPoster,
        on_push: Callable[[Mapping[str, Any]], None] | None = None,
        id_factory: Callable[[], str] = new_callback_id,
    ) -> None:
        self._post_message = post_message
        self._on_push = on_push
        self._id_factory = id_factory
        self._callbacks: dict[str, HostCallback] = {}

    @property
    def pending_callbacks(self) -> int:
        return len(self._callbacks)

    def call(self, action: str, params: Mapping[str, Any] | None = None, callback: HostCallback | None = None) -> str | None:
        message: dict[str, Any] = {"action": action, "params": dict(params or {})}
        cbid: str | None = None
        if callback is not None:
            cbid = self._id_factory()
            while cbid in self._callbacks:
                cbid = self._id_factory()
            self._callbacks[cbid] = callback
            message["cbid"] = cbid
        logger.debug("posting host call", extra={"action": action, "cbid": cbid})
        self._post_message(message)
        return cbid

    def handle_message(self, message: Mapping[str, Any]) -> None:
        """Route one message received from the host."""

        action = message.get("action")
        if action != IDE_CALLBACK_ACTION:
            if self._on_push is not None:
                self._on_push(message)
            else:
                logger.debug("ignoring host push", extra={"action": action})
            return

        cbid = str(message.get("cbid", ""))
        callback = self._callbacks.pop(cbid, None)
        if callback is None:
            logger.debug("no callback registered for host response", extra={"cbid": cbid})
            return
        callback(message.get("data"))
