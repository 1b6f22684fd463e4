from __future__ import annotations


class ChatEngineError(Exception):
    """Base error for chat engine failures surfaced to callers."""


class TransportError(ChatEngineError):
    """The underlying duplex transport failed to connect or emit."""


class HandshakeError(ChatEngineError):
    """Connection could not be established (credentials or server rejected it)."""


class ConnectionStateError(ChatEngineError):
    """An operation was attempted in a connection state that does not allow it."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(f"cannot {operation} while connection is {state}")
        self.operation = operation
        self.state = state
