"""Errors raised while handling frames of a chat connection.

Each of them is rendered as an ``{"err": ...}`` frame to the connection
that caused it and never reaches the other members of the room.
"""

PARAMETER_NOT_DEFINED = "parameter not defined"
THERE_WAS_NO_JOIN = "There was no \"join\" command."
THERE_WAS_ALREADY_JOIN = "There was already a \"join\" to the room"
BLOCK_ON_SENDING_MESSAGES = "There is a block on sending messages."
STREAM_OWNER_RIGHTS_MISSING = "Stream owner rights are missing."
STREAM_NOT_FOUND = "Stream not found"
STREAM_NOT_ACTIVE = "Stream is not active."
USER_NOT_FOUND = "User not found"
CHAT_MESSAGE_NOT_FOUND = "Chat message not found"
NICKNAME_ALREADY_IN_USE = "This nickname is already in use."
CANNOT_BLOCK_YOURSELF = "You cannot block yourself."


class ChatError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message


class MalformedFrame(ChatError):
    pass


class UnknownCommand(ChatError):
    pass


class SerializationError(ChatError):
    pass


class PreconditionFailed(ChatError):
    FIELD_REQUIRED = "field-required"
    NOT_JOINED = "not-joined"
    ALREADY_JOINED = "already-joined"
    BLOCKED = "blocked"
    NOT_OWNER = "not-owner"
    NOT_ACTIVE = "not-active"
    NAME_TAKEN = "name-taken"
    SELF_BLOCK = "self-block"

    def __init__(self, kind, message):
        super().__init__(message)
        self.kind = kind


class TargetNotFound(ChatError):
    pass


class PersistenceFailure(ChatError):
    pass


def check_is_not_empty(value, name):
    if not value:
        raise PreconditionFailed(PreconditionFailed.FIELD_REQUIRED, f"\"{name}\" {PARAMETER_NOT_DEFINED}")


def check_is_required(value, name):
    if value is None:
        raise PreconditionFailed(PreconditionFailed.FIELD_REQUIRED, f"\"{name}\" {PARAMETER_NOT_DEFINED}")


def check_is_greater_than(value, limit, name):
    if value is None or value <= limit:
        raise PreconditionFailed(PreconditionFailed.FIELD_REQUIRED, f"\"{name}\" {PARAMETER_NOT_DEFINED}")


def check_is_joined_room(room_id):
    if not room_id:
        raise PreconditionFailed(PreconditionFailed.NOT_JOINED, THERE_WAS_NO_JOIN)


def check_is_owner_room(is_owner):
    if not is_owner:
        raise PreconditionFailed(PreconditionFailed.NOT_OWNER, STREAM_OWNER_RIGHTS_MISSING)


def check_is_blocked(is_blocked):
    if is_blocked:
        raise PreconditionFailed(PreconditionFailed.BLOCKED, BLOCK_ON_SENDING_MESSAGES)
