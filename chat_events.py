import json
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from chat_errors import MalformedFrame, UnknownCommand, SerializationError

MISSING_STARTING_CURLY_BRACE = "Serialization: missing \"{\"."
MISSING_ENDING_CURLY_BRACE = "Serialization: missing \"}\"."
UNKNOWN_COMMAND = "unknown command: "
SERIALIZATION = "Serialization: "

I32_MIN = -2 ** 31
I32_MAX = 2 ** 31 - 1


class EventKind(str, Enum):
    BLOCK = "block"
    COUNT = "count"
    ECHO = "echo"
    ERR = "err"
    JOIN = "join"
    LEAVE = "leave"
    MSG = "msg"
    MSG_CUT = "msgCut"
    MSG_PUT = "msgPut"
    NAME = "name"
    PRM_BOOL = "prmBool"
    PRM_INT = "prmInt"
    PRM_STR = "prmStr"
    UNBLOCK = "unblock"

    @classmethod
    def parse(cls, name):
        name = name.lower()
        for kind in cls:
            if kind.value.lower() == name:
                return kind
        return None


class ChatEvent:
    """One client frame: the command kind plus every field of the object."""

    def __init__(self, kind, params=None):
        self.kind = kind
        self.params = dict(params or {})

    def __eq__(self, other):
        if not isinstance(other, ChatEvent):
            return NotImplemented
        return self.kind == other.kind and self.params == other.params

    def __repr__(self):
        return f"ChatEvent({self.kind.value!r}, {self.params!r})"

    def get_string(self, name) -> Optional[str]:
        value = self.params.get(name)
        return value if isinstance(value, str) else None

    def get_i32(self, name) -> Optional[int]:
        value = self.params.get(name)
        # bool is a subclass of int, but not a number on the wire
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        if value < I32_MIN or value > I32_MAX:
            return None
        return value

    def get_bool(self, name) -> Optional[bool]:
        value = self.params.get(name)
        return value if isinstance(value, bool) else None

    def to_text(self):
        body = {self.kind.value: self.params.get(self.kind.value)}
        body.update((key, value) for key, value in self.params.items() if key != self.kind.value)
        return json.dumps(body)


def parse_event(text) -> ChatEvent:
    if not text.startswith("{"):
        raise MalformedFrame(MISSING_STARTING_CURLY_BRACE)
    if not text.endswith("}"):
        raise MalformedFrame(MISSING_ENDING_CURLY_BRACE)

    # The command is named by the first key, read before the JSON is decoded.
    parts = text.split('"')
    first_tag = parts[1] if len(parts) > 1 else ""
    kind = EventKind.parse(first_tag)
    if kind is None:
        raise UnknownCommand(f"{UNKNOWN_COMMAND}{json.dumps(text)}")

    try:
        params = json.loads(text)
    except json.JSONDecodeError as e:
        raise SerializationError(f"{SERIALIZATION}{e}") from e
    if not isinstance(params, dict):
        raise SerializationError(f"{SERIALIZATION}expected an object")

    return ChatEvent(kind, params)


def format_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class Frame(BaseModel):
    class Config:
        populate_by_name = True

    def to_text(self):
        return self.model_dump_json(by_alias=True, exclude_none=True)


class EchoFrame(Frame):
    echo: str


class ErrFrame(Frame):
    err: str


class NameFrame(Frame):
    name: str
    id: int


class CountFrame(Frame):
    count: int


class JoinFrame(Frame):
    join: int
    member: str
    count: int
    is_owner: Optional[bool] = Field(default=None, alias="isOwner")
    is_blocked: Optional[bool] = Field(default=None, alias="isBlocked")


class LeaveFrame(Frame):
    leave: int
    member: str
    count: int


class BlockFrame(Frame):
    block: str
    is_in_chat: bool = Field(alias="isInChat")


class UnblockFrame(Frame):
    unblock: str
    is_in_chat: bool = Field(alias="isInChat")


class MsgFrame(Frame):
    msg: str
    id: int
    member: str
    date: str
    is_edt: bool = Field(default=False, alias="isEdt")
    is_rmv: bool = Field(default=False, alias="isRmv")

    @classmethod
    def from_chat_message(cls, chat_message):
        return cls(
            msg=chat_message.msg or "",
            id=chat_message.id,
            member=chat_message.member,
            date=format_date(chat_message.date_update),
            is_edt=chat_message.is_changed,
            is_rmv=chat_message.is_removed,
        )


class PrmBoolFrame(Frame):
    prm_bool: str = Field(alias="prmBool")
    val_bool: bool = Field(alias="valBool")
    is_owner: Optional[bool] = Field(default=None, alias="isOwner")


class PrmIntFrame(Frame):
    prm_int: str = Field(alias="prmInt")
    val_int: int = Field(alias="valInt")
    is_owner: Optional[bool] = Field(default=None, alias="isOwner")


class PrmStrFrame(Frame):
    prm_str: str = Field(alias="prmStr")
    val_str: str = Field(alias="valStr")
    is_owner: Optional[bool] = Field(default=None, alias="isOwner")


def block_frame(name, is_block, is_in_chat) -> Frame:
    if is_block:
        return BlockFrame(block=name, is_in_chat=is_in_chat)
    return UnblockFrame(unblock=name, is_in_chat=is_in_chat)
