from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

from chat_engine.contracts import AuthParams, ResumeRequest, TurnRequest
from chat_engine.core.constants import (
    CHAT_EVENT,
    CHAT_ID_EVENT,
    HEARTBEAT_EVENT,
    RESUME_EVENT,
    STATUS_EVENT,
    STRUCTURED_EVENT,
)
from chat_engine.core.errors import ConnectionStateError, HandshakeError, TransportError
from chat_engine.services.contracts import ConnectionListener, Transport, TransportFactory
from chat_engine.services.offset_tracker import OffsetTracker

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DRAINING = "draining"


@dataclass(frozen=True)
class ConnectionHandle:
    conversation_id: str
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class ConnectionManager:
    """Owns the single duplex connection of one conversation.

    States run ``IDLE -> CONNECTING -> STREAMING -> DRAINING -> IDLE``; a
    second ``connect`` outside ``IDLE`` is rejected. The manager never
    reconnects on its own: a dropped transport is reported to the listener and
    the resume cursor is left for the next explicit ``connect``.
    """

    def __init__(
        self,
        *,
        conversation_id: str,
        offset_tracker: OffsetTracker,
        transport_factory: TransportFactory,
        heartbeat_interval_seconds: float = 5.0,
    ) -> None:
        self.conversation_id = conversation_id
        self.chat_id: str | None = None
        self._offset_tracker = offset_tracker
        self._transport_factory = transport_factory
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._state = ConnectionState.IDLE
        self._handle: ConnectionHandle | None = None
        self._transport: Transport | None = None
        self._listener: ConnectionListener | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def handle(self) -> ConnectionHandle | None:
        return self._handle

    async def connect(self, auth: AuthParams, listener: ConnectionListener) -> ConnectionHandle:
        if self._state is not ConnectionState.IDLE:
            raise ConnectionStateError("connect", self._state.value)
        if not auth.is_complete:
            raise HandshakeError("display name and token are required")

        self._state = ConnectionState.CONNECTING
        handle = ConnectionHandle(conversation_id=self.conversation_id)
        transport = self._transport_factory()
        self._handle = handle
        self._transport = transport
        self._listener = listener

        transport.on(STRUCTURED_EVENT, partial(self._on_structured, handle))
        transport.on(STATUS_EVENT, partial(self._on_status, handle))
        transport.on(CHAT_ID_EVENT, partial(self._on_chat_id, handle))
        transport.on("disconnect", partial(self._on_transport_disconnect, handle))
        transport.on("error", partial(self._on_transport_error, handle))

        logger.info("connecting chat transport", extra={"conversation_id": self.conversation_id})
        try:
            await transport.connect(auth.to_wire())
        except TransportError as exc:
            logger.warning(
                "chat handshake failed",
                extra={"conversation_id": self.conversation_id, "error": str(exc)},
            )
            self._release(handle)
            raise HandshakeError(str(exc)) from exc

        if not self._is_current(handle):
            try:
                await transport.disconnect()
            except TransportError:
                logger.debug("stale transport disconnect failed", extra={"conversation_id": self.conversation_id}, exc_info=True)
            raise HandshakeError("connection was torn down during the handshake")

        self._state = ConnectionState.STREAMING
        cursor = self._offset_tracker.cursor_for(self.conversation_id)
        if cursor is not None:
            resume = ResumeRequest(
                conversation_id=self.conversation_id,
                chat_id=self.chat_id or self.conversation_id,
                offset=cursor,
            )
            logger.info(
                "requesting stream replay",
                extra={"conversation_id": self.conversation_id, "offset": cursor},
            )
            try:
                await transport.emit(RESUME_EVENT, resume.to_wire())
            except TransportError as exc:
                await self.disconnect(handle)
                raise HandshakeError(f"resume request failed: {exc}") from exc

        self._heartbeat_task = asyncio.create_task(self._heartbeat(handle), name=f"heartbeat-{handle.handle_id}")
        return handle

    async def send(self, handle: ConnectionHandle, payload: TurnRequest) -> None:
        transport = self._transport
        if not self._is_current(handle) or self._state is not ConnectionState.STREAMING or transport is None:
            raise ConnectionStateError("send", self._state.value)
        await transport.emit(CHAT_EVENT, payload.to_wire())

    async def disconnect(self, handle: ConnectionHandle | None = None) -> None:
        """Tear the connection down; a stale ``handle`` makes this a no-op."""

        if handle is not None and not self._is_current(handle):
            return
        current = self._handle
        transport = self._transport
        if current is None or transport is None:
            return

        self._state = ConnectionState.DRAINING
        self._stop_heartbeat()
        try:
            await transport.disconnect()
        except TransportError:
            logger.debug("transport disconnect failed", extra={"conversation_id": self.conversation_id}, exc_info=True)
        finally:
            self._release(current)
        logger.info("chat transport disconnected", extra={"conversation_id": self.conversation_id})

    def forget_chat_id(self) -> None:
        self.chat_id = None

    async def _heartbeat(self, handle: ConnectionHandle) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval_seconds)
            transport = self._transport
            if not self._is_current(handle) or self._state is not ConnectionState.STREAMING or transport is None:
                return
            try:
                await transport.emit(HEARTBEAT_EVENT, 1)
            except TransportError:
                # Disconnects are reported by the transport lifecycle, not by missed pings.
                logger.debug("heartbeat emit failed", extra={"conversation_id": self.conversation_id})

    async def _on_structured(self, handle: ConnectionHandle, envelope: Any = None) -> None:
        if self._is_current(handle) and self._listener is not None:
            await self._listener.on_event(envelope)

    async def _on_status(self, handle: ConnectionHandle, text: Any = None) -> None:
        if self._is_current(handle) and self._listener is not None:
            await self._listener.on_status(str(text))

    async def _on_chat_id(self, handle: ConnectionHandle, chat_id: Any = None) -> None:
        if self._is_current(handle) and chat_id:
            self.chat_id = str(chat_id)
            logger.debug("backend chat id assigned", extra={"conversation_id": self.conversation_id, "chat_id": self.chat_id})

    async def _on_transport_disconnect(self, handle: ConnectionHandle, *args: Any) -> None:
        if not self._is_current(handle) or self._state is ConnectionState.DRAINING:
            return
        listener = self._listener
        logger.warning(
            "chat transport dropped",
            extra={"conversation_id": self.conversation_id, "offset": self._offset_tracker.cursor_for(self.conversation_id)},
        )
        self._stop_heartbeat()
        self._release(handle)
        if listener is not None:
            await listener.on_disconnected()

    async def _on_transport_error(self, handle: ConnectionHandle, detail: Any = None) -> None:
        if not self._is_current(handle):
            return
        listener = self._listener
        logger.error("chat transport error", extra={"conversation_id": self.conversation_id, "error": str(detail)})
        await self.disconnect(handle)
        if listener is not None:
            await listener.on_transport_error(str(detail))

    def _is_current(self, handle: ConnectionHandle) -> bool:
        return self._handle is not None and self._handle.handle_id == handle.handle_id

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None:
            task.cancel()

    def _release(self, handle: ConnectionHandle) -> None:
        if not self._is_current(handle):
            return
        self._handle = None
        self._transport = None
        self._listener = None
        self._state = ConnectionState.IDLE

