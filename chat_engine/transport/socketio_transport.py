from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError
from socketio.exceptions import SocketIOError

from chat_engine.core.errors import TransportError
from chat_engine.core.settings import Settings

logger = logging.getLogger(__name__)


class SocketIOTransport:
    """Socket.IO client bound to the chat namespace.

    Client-side reconnection is disabled: reconnecting is the caller's decision
    so that two connections can never race on the same stream.
    """

    def __init__(
        self,
        url: str,
        *,
        namespace: str = "/chat",
        socketio_path: str = "socket.io",
        transports: list[str] | None = None,
        wait_timeout_seconds: float = 10.0,
        client: socketio.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._namespace = namespace
        self._socketio_path = socketio_path
        self._transports = transports or ["websocket"]
        self._wait_timeout_seconds = wait_timeout_seconds
        self._client = client if client is not None else socketio.AsyncClient(reconnection=False)

    def on(self, event: str, handler: Callable[..., Awaitable[None]]) -> None:
        self._client.on(event, handler, namespace=self._namespace)

    async def connect(self, auth: Mapping[str, str]) -> None:
        try:
            await self._client.connect(
                self._url,
                auth=dict(auth),
                transports=self._transports,
                namespaces=[self._namespace],
                socketio_path=self._socketio_path,
                wait_timeout=self._wait_timeout_seconds,
            )
        except SocketIOConnectionError as exc:
            raise TransportError(f"could not connect to {self._url}{self._namespace}: {exc}") from exc

    async def emit(self, event: str, data: Any) -> None:
        try:
            await self._client.emit(event, data, namespace=self._namespace)
        except SocketIOError as exc:
            raise TransportError(f"could not emit {event}: {exc}") from exc

    async def disconnect(self) -> None:
        if not self._client.connected:
            return
        await self._client.disconnect()


def socketio_transport_factory(settings: Settings) -> Callable[[], SocketIOTransport]:
    def factory() -> SocketIOTransport:
        return SocketIOTransport(
            settings.chat_url,
            namespace=settings.chat_namespace,
            socketio_path=settings.chat_socketio_path,
            transports=settings.chat_transports,
            wait_timeout_seconds=settings.chat_connect_timeout_seconds,
        )

    return factory
