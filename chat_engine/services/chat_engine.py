from __future__ import annotations

import logging

from chat_engine.contracts import AuthParams
from chat_engine.core.settings import Settings
from chat_engine.services.chat_session import ChatSession
from chat_engine.services.contracts import MarkdownRenderer, TransportFactory
from chat_engine.services.host_bridge import HostBridge
from chat_engine.services.offset_tracker import OffsetTracker

logger = logging.getLogger(__name__)


class ChatEngine:
    """Opens chat sessions that share one offset tracker and transport factory."""

    def __init__(
        self,
        settings: Settings,
        offset_tracker: OffsetTracker,
        transport_factory: TransportFactory,
        markdown: MarkdownRenderer,
        host_bridge: HostBridge | None = None,
    ) -> None:
        self._settings = settings
        self._offset_tracker = offset_tracker
        self._transport_factory = transport_factory
        self._markdown = markdown
        self._host_bridge = host_bridge

    def open_session(self, conversation_id: str | None = None) -> ChatSession:
        session = ChatSession(
            settings=self._settings,
            offset_tracker=self._offset_tracker,
            transport_factory=self._transport_factory,
            markdown=self._markdown,
            host_bridge=self._host_bridge,
            conversation_id=conversation_id,
        )
        logger.debug("chat session opened", extra={"conversation_id": session.conversation_id})
        return session

    def auth_from_settings(self) -> AuthParams:
        return AuthParams(
            username=self._settings.chat_username,
            display_name=self._settings.chat_display_name,
            token=self._settings.chat_token,
            ide=self._settings.chat_ide_name,
            ide_version=self._settings.chat_ide_version,
            ide_real_version=self._settings.chat_ide_version,
        )
