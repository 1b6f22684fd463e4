from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LineRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    start_line: int = Field(default=0, alias="startLine", ge=0)
    end_line: int = Field(default=0, alias="endLine", ge=0)


class AuthParams(BaseModel):
    """Credentials and client identity sent with the Socket.IO handshake."""

    model_config = ConfigDict(populate_by_name=True)

    username: str = ""
    display_name: str = ""
    token: str = ""
    ide: str = "default_ide"
    ide_version: str = Field(default="", alias="ide-version")
    ide_real_version: str = Field(default="", alias="ide-real-version")
    host_ip: str = Field(default="", alias="host-ip")

    @property
    def is_complete(self) -> bool:
        return bool(self.display_name and self.token)

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


class InputInfo(BaseModel):
    """Snapshot of the parameters that produced a turn; never mutated after capture."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    conversation_id: str
    action: str = "chat"
    action_name: str = Field(default="", alias="actionName")
    tooltip: str = ""
    prompt: str = ""
    code: str = ""
    file_path: str = Field(default="", alias="filePath")
    language: str = ""
    context: str = ""
    range: LineRange | None = None
    call_type: str = Field(default="", alias="callType")
    accept_range: LineRange | None = Field(default=None, alias="acceptRange")
    is_from_ide: bool = False


class TurnInput(BaseModel):
    """What the caller asks for: a free chat prompt or an IDE code action."""

    model_config = ConfigDict(populate_by_name=True)

    action: str = "chat"
    prompt: str = ""
    action_name: str = Field(default="", alias="actionName")
    tooltip: str = ""
    code: str = ""
    file_path: str = Field(default="", alias="filePath")
    language: str = ""
    context: str = ""
    range: LineRange | None = None
    call_type: str = Field(default="", alias="callType")

    @property
    def is_ide_action(self) -> bool:
        return self.action != "chat"


class TurnRequest(BaseModel):
    """Outbound ``chat`` payload."""

    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str
    action: str
    prompt: str = ""
    code: str = ""
    file_path: str = Field(default="", alias="filePath")
    language: str = ""
    context: str = ""
    range: LineRange | None = None
    start_line: int = Field(default=0, alias="startLine")
    end_line: int = Field(default=0, alias="endLine")
    call_type: str = Field(default="", alias="callType")
    accept_range: LineRange | None = Field(default=None, alias="acceptRange")
    context_association: bool = False
    stream: bool = True

    @classmethod
    def from_input(cls, info: InputInfo) -> TurnRequest:
        return cls(
            conversation_id=info.conversation_id,
            action=info.action,
            prompt=info.prompt,
            code=info.code,
            file_path=info.file_path,
            language=info.language,
            context=info.context,
            range=info.range,
            start_line=info.range.start_line if info.range else 0,
            end_line=info.range.end_line if info.range else 0,
            call_type=info.call_type,
            accept_range=info.accept_range,
            context_association=info.is_from_ide,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ResumeRequest(BaseModel):
    """Outbound ``rechat`` payload asking the backend to replay after ``offset``."""

    conversation_id: str
    chat_id: str
    offset: int

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump()


class Advisory(BaseModel):
    title: str
    prompt: str = ""


# Typed inbound events produced by the decoder.


class StreamStart(BaseModel):
    agent_name: str = ""
    agent_icon: str = ""


class AdvisoryList(BaseModel):
    advisories: list[Advisory]


class TextChunk(BaseModel):
    text: str


class StepOpen(BaseModel):
    title: str


class StepClose(BaseModel):
    title: str | None = None


class TerminalError(BaseModel):
    detail: str = ""


class StreamEnd(BaseModel):
    pass


class ControlAck(BaseModel):
    message_id: str


ChatEvent = StreamStart | AdvisoryList | TextChunk | StepOpen | StepClose | TerminalError | StreamEnd | ControlAck
