from datetime import datetime, timezone
from typing import Annotated, Literal, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """A chat message as sent on the wire and kept in history. Never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant: str
    room: str
    sender: str
    text: str
    timestamp: datetime = Field(default_factory=utc_now)


# Client -> server commands

class JoinGeneral(BaseModel):
    type: Literal["join_general"] = "join_general"

class JoinDm(BaseModel):
    type: Literal["join_dm"] = "join_dm"
    target: str = ""

class SendMessage(BaseModel):
    type: Literal["send_message"] = "send_message"
    room: str
    text: str

class Disconnect(BaseModel):
    type: Literal["disconnect"] = "disconnect"


Command = Annotated[
    Union[JoinGeneral, JoinDm, SendMessage, Disconnect],
    Field(discriminator="type"),
]

command_adapter = TypeAdapter(Command)


def parse_command(raw: str) -> Command:
    """Parse one client frame. Raises pydantic.ValidationError on bad input."""
    return command_adapter.validate_json(raw)


# Server -> client events

class HistoryEvent(BaseModel):
    type: Literal["history"] = "history"
    room: str
    messages: list[Message]

class ReceiveMessageEvent(BaseModel):
    type: Literal["receive_message"] = "receive_message"
    message: Message


ServerEvent = Union[HistoryEvent, ReceiveMessageEvent]
