from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from chat_engine.contracts import (
    AdvisoryList,
    ChatEvent,
    ControlAck,
    StepClose,
    StepOpen,
    StreamEnd,
    StreamStart,
    TerminalError,
    TextChunk,
)
from chat_engine.services.animator import Animator
from chat_engine.services.event_decoder import MalformedEventError, decode_event
from chat_engine.services.offset_tracker import OffsetTracker
from chat_engine.services.step_tracker import step_marker
from chat_engine.state import ConversationState

logger = logging.getLogger(__name__)


class StreamHost(Protocol):
    """Session-side operations the dispatcher cannot perform on plain state."""

    def open_stream(self, event: StreamStart) -> Animator:
        """Create the answer message and animator for a new stream."""

    def fail_stream(self, stream: Animator | None, event: TerminalError) -> None:
        """Replace the stream's content with the apology text and end the turn."""


class EventDispatcher:
    """Routes decoded inbound events to mutations of one conversation's state.

    Nothing raised while decoding or applying a single event escapes
    ``dispatch``: one bad event must not take the connection down.
    """

    def __init__(self, *, state: ConversationState, offset_tracker: OffsetTracker, host: StreamHost) -> None:
        self._state = state
        self._offset_tracker = offset_tracker
        self._host = host

    def dispatch(self, envelope: object) -> None:
        try:
            events = decode_event(envelope)
        except MalformedEventError as exc:
            logger.warning(
                "dropping malformed event",
                extra={"conversation_id": self._state.conversation_id, "kind": exc.kind, "error": exc.detail},
            )
            return

        if events is None:
            logger.debug(
                "ignoring unknown event kind",
                extra={"conversation_id": self._state.conversation_id, "kind": _kind_of(envelope)},
            )
            return

        if isinstance(envelope, Mapping) and "offset" in envelope:
            self._offset_tracker.observe(self._state.conversation_id, envelope["offset"])

        for event in events:
            try:
                self._apply(event)
            except Exception:
                logger.exception(
                    "failed to apply event",
                    extra={"conversation_id": self._state.conversation_id, "kind": type(event).__name__},
                )

    def _apply(self, event: ChatEvent) -> None:
        if isinstance(event, StreamStart):
            self._host.open_stream(event)
            return
        if isinstance(event, AdvisoryList):
            self._state.replace_advisories(event.advisories)
            return

        stream = self._state.current_stream()
        if isinstance(event, TerminalError):
            self._host.fail_stream(stream, event)
            return
        if stream is None:
            logger.warning(
                "event arrived without an open stream",
                extra={"conversation_id": self._state.conversation_id, "kind": type(event).__name__},
            )
            return

        if isinstance(event, ControlAck):
            stream.message.attach_message_id(event.message_id)
        elif isinstance(event, TextChunk):
            stream.append(event.text)
        elif isinstance(event, StepOpen):
            stream.message.steps.open(event.title)
            stream.append(step_marker(event.title))
        elif isinstance(event, StepClose):
            if event.title:
                stream.message.steps.open(event.title)
                stream.append(step_marker(event.title))
            stream.message.steps.seal_all()
            stream.render()
        elif isinstance(event, StreamEnd):
            stream.finish()


def _kind_of(envelope: object) -> object:
    if isinstance(envelope, Mapping):
        return envelope.get("event")
    return None
