from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Mapping
from functools import partial
from typing import Any

from chat_engine.contracts import (
    AuthParams,
    InputInfo,
    LineRange,
    StreamStart,
    TerminalError,
    TurnInput,
    TurnRequest,
)
from chat_engine.core.constants import (
    DONE_STATUS,
    LINK_RESOLVE_ACTION,
    LOGIN_REQUIRED_TEXT,
    NOTICE_USERNAME,
    SERVICE_ERROR_TEXT,
    TERMINAL_ERROR_TEXT,
)
from chat_engine.core.errors import ConnectionStateError, HandshakeError, TransportError
from chat_engine.core.settings import Settings
from chat_engine.services.animator import Animator
from chat_engine.services.connection_manager import ConnectionHandle, ConnectionManager
from chat_engine.services.contracts import MarkdownRenderer, TransportFactory
from chat_engine.services.event_dispatcher import EventDispatcher
from chat_engine.services.host_bridge import HostBridge
from chat_engine.services.offset_tracker import OffsetTracker
from chat_engine.services.rendering import plain_text_markdown
from chat_engine.state import ConversationState, Message, Role, Turn, new_conversation_id

logger = logging.getLogger(__name__)

CONNECTION_LOST = "connection-lost"
TRANSPORT_ERROR = "transport-error"
HANDSHAKE_FAILED = "handshake-failed"
BACKEND_ERROR = "backend-error"


class ChatSession:
    """One conversation: its state, its connection manager and its turn lifecycle.

    The session is the connection listener and the dispatcher's stream host.
    Only one turn runs at a time; starting a new one aborts the previous turn
    first, keeping whatever text had been revealed.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        offset_tracker: OffsetTracker,
        transport_factory: TransportFactory,
        markdown: MarkdownRenderer = plain_text_markdown,
        host_bridge: HostBridge | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self._settings = settings
        self._offset_tracker = offset_tracker
        self._transport_factory = transport_factory
        self._markdown = markdown
        self._host_bridge = host_bridge
        self._animations: set[asyncio.Task[None]] = set()
        self._current_input: InputInfo | None = None
        self._bind(ConversationState(conversation_id=conversation_id or new_conversation_id()))

    @property
    def conversation_id(self) -> str:
        return self.state.conversation_id

    @property
    def messages(self) -> list[Message]:
        return self.state.messages

    @property
    def resume_cursor(self) -> int | None:
        return self._offset_tracker.cursor_for(self.conversation_id)

    @property
    def resumable(self) -> bool:
        return not self.state.turn_active and self.resume_cursor is not None

    # ------------------------------------------------------------------
    # Caller operations
    # ------------------------------------------------------------------

    async def start_turn(self, auth: AuthParams, turn_input: TurnInput) -> Turn:
        await self._abort()

        turn = Turn()
        self.state.turn = turn
        self.state.interruption = None

        if not auth.is_complete:
            logger.warning("refusing to start turn without credentials", extra={"conversation_id": self.conversation_id})
            self._add_notice(LOGIN_REQUIRED_TEXT)
            turn.finish(clean=False)
            return turn

        info = self._capture_input(turn_input)
        self._current_input = info
        self.state.add_message(self._question_message(info, auth))

        handle = await self._connect(auth, turn)
        if handle is None or turn.finished:
            return turn

        try:
            await self.connection.send(handle, TurnRequest.from_input(info))
        except (ConnectionStateError, TransportError) as exc:
            logger.error("failed to send turn request", extra={"conversation_id": self.conversation_id, "error": str(exc)})
            self._interrupt(turn, TRANSPORT_ERROR, notice=SERVICE_ERROR_TEXT)
            await self.connection.disconnect(handle)
            return turn

        logger.info(
            "turn started",
            extra={"conversation_id": self.conversation_id, "turn_id": turn.turn_id, "action": info.action},
        )
        return turn

    async def resume(self, auth: AuthParams) -> bool:
        """Reconnect after a lost connection so the backend replays from the cursor."""

        if self.state.turn_active:
            logger.debug("resume ignored while a turn is streaming", extra={"conversation_id": self.conversation_id})
            return False
        if self.resume_cursor is None:
            return False

        turn = Turn()
        self.state.turn = turn
        self.state.interruption = None
        return await self._connect(auth, turn) is not None

    async def stop(self) -> None:
        """Abort the turn and give up on replaying it."""

        await self._abort()
        self._offset_tracker.clear(self.conversation_id)
        self.connection.forget_chat_id()

    async def close(self) -> None:
        """Stop the turn and cancel any animation loop still sleeping."""

        await self._abort()
        tasks = list(self._animations)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def clear(self) -> None:
        await self._abort()
        self._offset_tracker.clear(self.conversation_id)
        self._current_input = None
        self._bind(ConversationState())
        logger.info("conversation cleared", extra={"conversation_id": self.conversation_id})

    async def wait_for_turn(self) -> Turn | None:
        turn = self.state.turn
        if turn is not None:
            await turn.done.wait()
        return turn

    async def wait_until_drained(self) -> None:
        await self.wait_for_turn()
        while self._animations:
            await asyncio.gather(*list(self._animations), return_exceptions=True)

    # ------------------------------------------------------------------
    # Connection listener
    # ------------------------------------------------------------------

    async def on_event(self, envelope: Any) -> None:
        turn = self.state.turn
        if turn is None or turn.finished:
            logger.debug("ignoring event outside an active turn", extra={"conversation_id": self.conversation_id})
            return
        self._dispatcher.dispatch(envelope)
        if turn.finished:
            await self.connection.disconnect()

    async def on_status(self, text: str) -> None:
        if text != DONE_STATUS:
            logger.debug("ignoring status signal", extra={"conversation_id": self.conversation_id, "status": text})
            return

        turn = self.state.turn
        if turn is not None and not turn.finished:
            self._end_turn(turn, clean=True)
            logger.info("turn finished", extra={"conversation_id": self.conversation_id, "turn_id": turn.turn_id})
        await self.connection.disconnect()

    async def on_disconnected(self) -> None:
        turn = self.state.turn
        if turn is None or turn.finished:
            return
        logger.warning(
            "connection lost mid-turn, keeping partial answer",
            extra={"conversation_id": self.conversation_id, "offset": self.resume_cursor},
        )
        self._interrupt(turn, CONNECTION_LOST)

    async def on_transport_error(self, detail: str) -> None:
        turn = self.state.turn
        if turn is None or turn.finished:
            logger.debug("transport error outside an active turn", extra={"conversation_id": self.conversation_id})
            return
        self._interrupt(turn, TRANSPORT_ERROR, notice=SERVICE_ERROR_TEXT)

    # ------------------------------------------------------------------
    # Stream host
    # ------------------------------------------------------------------

    def open_stream(self, event: StreamStart) -> Animator:
        stream_id = f"stream-{uuid.uuid4().hex[:8]}"
        message = self.state.add_message(
            Message(
                role=Role.ANSWER,
                username=event.agent_name,
                usericon=event.agent_icon,
                input_info=self._current_input,
            )
        )
        animator = Animator(
            stream_id=stream_id,
            message=message,
            state=self.state,
            markdown=self._markdown,
            interval_seconds=self._settings.chat_animation_interval_seconds,
            reveal_divisor=self._settings.chat_reveal_divisor,
            on_drained=self._on_stream_drained,
        )
        self.state.streams[stream_id] = animator
        self.state.latest_stream_id = stream_id

        task = animator.start()
        self._animations.add(task)
        task.add_done_callback(self._animations.discard)
        logger.debug("stream started", extra={"conversation_id": self.conversation_id, "stream_id": stream_id})
        return animator

    def fail_stream(self, stream: Animator | None, event: TerminalError) -> None:
        logger.warning(
            "backend reported a terminal error",
            extra={"conversation_id": self.conversation_id, "detail": event.detail},
        )
        if stream is None:
            message = self._add_notice(TERMINAL_ERROR_TEXT)
        else:
            stream.discard()
            message = stream.message
            message.text = TERMINAL_ERROR_TEXT
            message.rendered = self._markdown(TERMINAL_ERROR_TEXT)
        message.completed = True

        turn = self.state.turn
        if turn is not None:
            self.state.interruption = BACKEND_ERROR
            self._end_turn(turn, clean=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bind(self, state: ConversationState) -> None:
        self.state = state
        self.connection = ConnectionManager(
            conversation_id=state.conversation_id,
            offset_tracker=self._offset_tracker,
            transport_factory=self._transport_factory,
            heartbeat_interval_seconds=self._settings.chat_heartbeat_interval_seconds,
        )
        self._dispatcher = EventDispatcher(state=state, offset_tracker=self._offset_tracker, host=self)

    async def _connect(self, auth: AuthParams, turn: Turn) -> ConnectionHandle | None:
        try:
            return await self.connection.connect(auth, self)
        except HandshakeError as exc:
            if turn is not self.state.turn or turn.finished:
                logger.debug("handshake of a superseded turn ended", extra={"conversation_id": self.conversation_id, "error": str(exc)})
                return None
            logger.error("could not open chat connection", extra={"conversation_id": self.conversation_id, "error": str(exc)})
            self._interrupt(turn, HANDSHAKE_FAILED, notice=SERVICE_ERROR_TEXT)
            return None

    async def _abort(self) -> None:
        """Stop the active turn: keep revealed text, drop the rest, close the connection."""

        turn = self.state.turn
        if turn is not None and not turn.finished:
            logger.info("aborting turn", extra={"conversation_id": self.conversation_id, "turn_id": turn.turn_id})
            self._discard_streams()
            self._end_turn(turn, clean=False)
        await self.connection.disconnect()

    def _end_turn(self, turn: Turn, *, clean: bool) -> None:
        turn.finish(clean=clean)
        for message in self.state.messages:
            message.steps.seal_all()
        self._offset_tracker.clear(self.conversation_id)
        self.connection.forget_chat_id()

    def _interrupt(self, turn: Turn, reason: str, *, notice: str | None = None) -> None:
        if turn is not self.state.turn or turn.finished:
            return
        # Resume cursor stays for a later manual resume.
        self._discard_streams()
        self.state.interruption = reason
        if notice is not None:
            self._add_notice(notice)
        turn.finish(clean=False)

    def _discard_streams(self) -> None:
        for animator in list(self.state.streams.values()):
            animator.discard()

    def _on_stream_drained(self, animator: Animator) -> None:
        message = animator.message
        if self._host_bridge is None or not message.text:
            return
        self._host_bridge.call(
            LINK_RESOLVE_ACTION,
            {"mdString": message.text},
            callback=partial(self._apply_resolved_links, message.id),
        )

    def _apply_resolved_links(self, message_id: str, data: Any) -> None:
        message = self.state.find_message(message_id)
        if message is None:
            return
        text = data.get("data") if isinstance(data, Mapping) else data
        if not isinstance(text, str):
            logger.debug("ignoring unexpected link resolution payload", extra={"message_id": message_id})
            return
        message.rendered = message.steps.render(text, self._markdown)

    def _add_notice(self, text: str) -> Message:
        return self.state.add_message(
            Message(
                role=Role.NOTICE,
                text=text,
                rendered=self._markdown(text),
                completed=True,
                username=NOTICE_USERNAME,
            )
        )

    def _question_message(self, info: InputInfo, auth: AuthParams) -> Message:
        if info.is_from_ide:
            text = info.code
            rendered = self._markdown(f"```{info.language}\n{info.code}\n```")
        else:
            text = info.prompt
            rendered = self._markdown(info.prompt)
        return Message(
            role=Role.QUESTION,
            text=text,
            rendered=rendered,
            completed=True,
            input_info=info,
            username=auth.display_name,
        )

    def _capture_input(self, turn_input: TurnInput) -> InputInfo:
        if not turn_input.is_ide_action:
            return InputInfo(
                conversation_id=self.conversation_id,
                action="chat",
                prompt=turn_input.prompt,
                code=turn_input.code,
                file_path=turn_input.file_path,
                language=turn_input.language,
                range=turn_input.range,
            )

        return InputInfo(
            conversation_id=self.conversation_id,
            action=turn_input.action,
            action_name=turn_input.action_name,
            tooltip=turn_input.tooltip,
            prompt=turn_input.tooltip,
            code=turn_input.code,
            file_path=turn_input.file_path,
            language=turn_input.language,
            context=turn_input.context,
            range=turn_input.range,
            call_type=turn_input.call_type,
            accept_range=accept_range_for(turn_input),
            is_from_ide=True,
        )


def accept_range_for(turn_input: TurnInput) -> LineRange | None:
    """Lines a generated python docstring/comment should be inserted against.

    Prefers the function signature range reported in the action context and
    falls back to the first selected line.
    """

    if turn_input.action != "addComment" or turn_input.language != "python":
        return None

    start_line = turn_input.range.start_line if turn_input.range else 0
    try:
        context = json.loads(turn_input.context or "{}")
    except json.JSONDecodeError:
        context = {}
    signature = context.get("func_sign_range") if isinstance(context, dict) else None
    if isinstance(signature, dict):
        try:
            return LineRange(
                start_line=int(signature.get("start_line", 0)),
                end_line=int(signature.get("end_line", 0)),
            )
        except (TypeError, ValueError):
            logger.debug("ignoring malformed func_sign_range", extra={"func_sign_range": signature})
    return LineRange(start_line=start_line, end_line=start_line)
