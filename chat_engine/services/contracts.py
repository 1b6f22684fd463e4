from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol


class Transport(Protocol):
    """Duplex event transport bound to one backend namespace."""

    def on(self, event: str, handler: Callable[..., Awaitable[None]]) -> None:
        """Register an async handler for an inbound event or lifecycle signal."""

    async def connect(self, auth: Mapping[str, str]) -> None:
        """Perform the handshake; raise ``TransportError`` when it is rejected."""

    async def emit(self, event: str, data: Any) -> None:
        """Send one event without waiting for an acknowledgement."""

    async def disconnect(self) -> None:
        """Close the connection; safe to call more than once."""


TransportFactory = Callable[[], Transport]


class ConnectionListener(Protocol):
    """Receiver of everything a live connection surfaces to its owner."""

    async def on_event(self, envelope: Any) -> None:
        """Handle a structured (possibly resumable) event envelope."""

    async def on_status(self, text: str) -> None:
        """Handle a plain status signal such as ``[DONE]``."""

    async def on_disconnected(self) -> None:
        """Handle a transport-level disconnect the client did not ask for."""

    async def on_transport_error(self, detail: str) -> None:
        """Handle a transport error reported by the server or client library."""


class MarkdownRenderer(Protocol):
    """Pure ``markdown text -> html`` boundary."""

    def __call__(self, text: str) -> str:
        ...


class HostPoster(Protocol):
    """Fire-and-forget delivery of a message to the host IDE."""

    def __call__(self, message: dict[str, Any]) -> None:
        ...
