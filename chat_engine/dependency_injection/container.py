from __future__ import annotations

import punq

from chat_engine.core.settings import Settings
from chat_engine.services.chat_engine import ChatEngine
from chat_engine.services.contracts import MarkdownRenderer
from chat_engine.services.host_bridge import HostBridge
from chat_engine.services.offset_tracker import OffsetTracker
from chat_engine.services.rendering import plain_text_markdown
from chat_engine.transport import socketio_transport_factory


def build_container(settings: Settings, host_bridge: HostBridge | None = None) -> punq.Container:
    container = punq.Container()
    container.register(Settings, instance=settings)
    if host_bridge is not None:
        container.register(HostBridge, instance=host_bridge)

    transport_factory = socketio_transport_factory(settings)

    container.register(OffsetTracker, factory=OffsetTracker, scope=punq.Scope.singleton)
    container.register(MarkdownRenderer, instance=plain_text_markdown)
    container.register(
        ChatEngine,
        factory=lambda: ChatEngine(
            settings=settings,
            offset_tracker=container.resolve(OffsetTracker),
            transport_factory=transport_factory,
            markdown=container.resolve(MarkdownRenderer),
            host_bridge=host_bridge,
        ),
        scope=punq.Scope.singleton,
    )

    return container
