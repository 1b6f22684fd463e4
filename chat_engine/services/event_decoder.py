from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chat_engine.contracts import (
    Advisory,
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

STEP_OPEN_TITLE_PREFIX = "*"
STEP_RESULT_TITLE_PREFIX = "&"

_TEXT_CHUNK_EVENTS = frozenset({"message", "agent_message"})


class MalformedEventError(ValueError):
    """A recognised event kind arrived with a payload that does not fit its shape."""

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(f"malformed {kind} event: {detail}")
        self.kind = kind
        self.detail = detail


class _AgentStartPayload(BaseModel):
    agent_name: str | None = None
    agent_icon: str | None = None


class _AgentAdvisePayload(BaseModel):
    advises: list[Advisory] | None = None


class _NodeData(BaseModel):
    title: str | None = None
    outputs: dict[str, Any] | None = None


class _AgentChunk(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    message_id: str | None = None
    answer: str | None = None
    data: _NodeData | None = None


class _AgentThoughtPayload(BaseModel):
    chunk: _AgentChunk | None = Field(default=None, alias="dify_chunk")


def decode_event(envelope: object) -> list[ChatEvent] | None:
    """Translate one wire envelope into typed events.

    Returns ``None`` for kinds this client does not know, and an empty list for
    known kinds that carry nothing to apply. Raises ``MalformedEventError`` when
    a known kind has a payload of the wrong shape.
    """

    if not isinstance(envelope, Mapping):
        raise MalformedEventError("envelope", f"expected an object, got {type(envelope).__name__}")

    kind = envelope.get("event")
    decoder = _DECODERS.get(kind) if isinstance(kind, str) else None
    if decoder is None:
        return None

    try:
        return decoder(dict(envelope))
    except ValidationError as exc:
        raise MalformedEventError(kind, str(exc)) from exc


def _decode_agent_start(envelope: Mapping[str, Any]) -> list[ChatEvent]:
    payload = _AgentStartPayload.model_validate(envelope)
    return [StreamStart(agent_name=payload.agent_name or "", agent_icon=payload.agent_icon or "")]


def _decode_agent_advise(envelope: Mapping[str, Any]) -> list[ChatEvent]:
    payload = _AgentAdvisePayload.model_validate(envelope)
    if not payload.advises:
        return []
    return [AdvisoryList(advisories=payload.advises)]


def _decode_agent_end(envelope: Mapping[str, Any]) -> list[ChatEvent]:
    return [StreamEnd()]


def _decode_agent_thought(envelope: Mapping[str, Any]) -> list[ChatEvent]:
    chunk = _AgentThoughtPayload.model_validate(envelope).chunk
    if chunk is None:
        return []

    events: list[ChatEvent] = []
    if chunk.message_id:
        events.append(ControlAck(message_id=chunk.message_id))

    title = chunk.data.title if chunk.data and chunk.data.title else ""
    if chunk.event in _TEXT_CHUNK_EVENTS:
        if chunk.answer:
            events.append(TextChunk(text=chunk.answer))
    elif chunk.event == "node_started":
        if title.startswith(STEP_OPEN_TITLE_PREFIX):
            events.append(StepOpen(title=title[len(STEP_OPEN_TITLE_PREFIX) :]))
    elif chunk.event == "node_finished":
        result = None
        if title.startswith(STEP_RESULT_TITLE_PREFIX) and chunk.data and chunk.data.outputs:
            value = chunk.data.outputs.get("result")
            result = str(value) if value else None
        events.append(StepClose(title=result))
    elif chunk.event == "error":
        events.append(TerminalError(detail=chunk.answer or ""))
    return events


_DECODERS = {
    "agent_start": _decode_agent_start,
    "agent_advise": _decode_agent_advise,
    "agent_end": _decode_agent_end,
    "dify_agent_thought": _decode_agent_thought,
}
