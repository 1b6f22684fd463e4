from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from chat_engine.contracts import Advisory, InputInfo
from chat_engine.services.step_tracker import StepTracker

if TYPE_CHECKING:
    from chat_engine.services.animator import Animator


class Role(str, Enum):
    QUESTION = "question"
    ANSWER = "answer"
    NOTICE = "notice"


def new_conversation_id() -> str:
    return f"conv-{uuid.uuid4()}"


@dataclass
class Message:
    role: Role
    text: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    rendered: str = ""
    completed: bool = False
    input_info: InputInfo | None = None
    message_id: str | None = None
    username: str = ""
    usericon: str = ""
    steps: StepTracker = field(default_factory=StepTracker)

    def attach_message_id(self, message_id: str) -> bool:
        """Set the backend id once; later acks are ignored."""

        if self.message_id or not message_id:
            return False
        self.message_id = message_id
        return True


@dataclass
class Turn:
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    finished: bool = False
    clean: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)

    def finish(self, *, clean: bool) -> bool:
        if self.finished:
            return False
        self.finished = True
        self.clean = clean
        self.done.set()
        return True


@dataclass
class ConversationState:
    """Everything the view needs for one conversation, owned by its session."""

    conversation_id: str = field(default_factory=new_conversation_id)
    messages: list[Message] = field(default_factory=list)
    advisories: list[Advisory] = field(default_factory=list)
    turn: Turn | None = None
    streams: dict[str, Animator] = field(default_factory=dict)
    latest_stream_id: str | None = None
    interruption: str | None = None

    @property
    def turn_active(self) -> bool:
        return self.turn is not None and not self.turn.finished

    @property
    def turn_finished(self) -> bool:
        return self.turn is None or self.turn.finished

    def add_message(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def current_stream(self) -> Animator | None:
        if self.latest_stream_id is None:
            return None
        return self.streams.get(self.latest_stream_id)

    def replace_advisories(self, advisories: list[Advisory]) -> bool:
        if not advisories:
            return False
        self.advisories = list(advisories)
        return True

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None
