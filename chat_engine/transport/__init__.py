"""Network transports for the chat engine."""

from chat_engine.transport.socketio_transport import SocketIOTransport, socketio_transport_factory

__all__ = ["SocketIOTransport", "socketio_transport_factory"]
