"""Shared fakes and fixtures for chat engine tests."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest
import pytest_asyncio

from chat_engine.contracts import AuthParams
from chat_engine.core.errors import TransportError
from chat_engine.core.settings import Settings
from chat_engine.services.chat_session import ChatSession
from chat_engine.services.offset_tracker import OffsetTracker


class FakeTransport:
    """In-memory transport recording emits; tests push inbound events with ``deliver``."""

    def __init__(
        self,
        *,
        fail_connect: bool = False,
        fail_emit: frozenset[str] = frozenset(),
        connect_gate: asyncio.Event | None = None,
    ) -> None:
        self.handlers: dict[str, Any] = {}
        self.emitted: list[tuple[str, Any]] = []
        self.auth: dict[str, str] | None = None
        self.connected = False
        self.disconnect_calls = 0
        self._fail_connect = fail_connect
        self._fail_emit = fail_emit
        self._connect_gate = connect_gate

    def on(self, event: str, handler) -> None:
        self.handlers[event] = handler

    async def connect(self, auth: Mapping[str, str]) -> None:
        if self._connect_gate is not None:
            await self._connect_gate.wait()
        if self._fail_connect:
            raise TransportError("handshake rejected")
        self.auth = dict(auth)
        self.connected = True

    async def emit(self, event: str, data: Any) -> None:
        if event in self._fail_emit:
            raise TransportError(f"cannot emit {event}")
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def deliver(self, event: str, *args: Any) -> None:
        await self.handlers[event](*args)

    def emitted_events(self) -> list[str]:
        return [event for event, _ in self.emitted]


class FakeTransportFactory:
    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.fail_connect = False
        self.fail_emit: frozenset[str] = frozenset()
        # Handshakes of transports created while set wait until the event fires.
        self.connect_gate: asyncio.Event | None = None

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(fail_connect=self.fail_connect, fail_emit=self.fail_emit, connect_gate=self.connect_gate)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


class FakeListener:
    def __init__(self) -> None:
        self.events: list[Any] = []
        self.statuses: list[str] = []
        self.disconnects = 0
        self.errors: list[str] = []

    async def on_event(self, envelope: Any) -> None:
        self.events.append(envelope)

    async def on_status(self, text: str) -> None:
        self.statuses.append(text)

    async def on_disconnected(self) -> None:
        self.disconnects += 1

    async def on_transport_error(self, detail: str) -> None:
        self.errors.append(detail)


def agent_start(offset: int | None = None, name: str = "coder") -> dict[str, Any]:
    envelope: dict[str, Any] = {"event": "agent_start", "agent_name": name, "agent_icon": "icon.svg"}
    if offset is not None:
        envelope["offset"] = offset
    return envelope


def thought(event: str, offset: int | None = None, **chunk: Any) -> dict[str, Any]:
    envelope: dict[str, Any] = {"event": "dify_agent_thought", "dify_chunk": {"event": event, **chunk}}
    if offset is not None:
        envelope["offset"] = offset
    return envelope


def text_chunk(answer: str, offset: int | None = None) -> dict[str, Any]:
    return thought("message", offset=offset, answer=answer)


def agent_end(offset: int | None = None) -> dict[str, Any]:
    envelope: dict[str, Any] = {"event": "agent_end"}
    if offset is not None:
        envelope["offset"] = offset
    return envelope


@pytest.fixture
def test_settings() -> Settings:
    # Loops are driven by hand in most tests: one immediate frame, then a long sleep.
    return Settings(
        APP_ENV="test",
        CHAT_URL="http://chat.test",
        CHAT_ANIMATION_INTERVAL_SECONDS=3600,
        CHAT_HEARTBEAT_INTERVAL_SECONDS=3600,
    )


@pytest.fixture
def offset_tracker() -> OffsetTracker:
    return OffsetTracker()


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def auth() -> AuthParams:
    return AuthParams(username="dev", display_name="Dev User", token="secret-token", ide="vscode")


@pytest_asyncio.fixture
async def session(test_settings: Settings, offset_tracker: OffsetTracker, transport_factory: FakeTransportFactory):
    chat_session = ChatSession(
        settings=test_settings,
        offset_tracker=offset_tracker,
        transport_factory=transport_factory,
        conversation_id="conv-test",
    )
    yield chat_session
    await chat_session.close()
