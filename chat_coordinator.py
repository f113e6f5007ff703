"""In-process registry of chat rooms.

A room maps a connection id to the ``ClientHandle`` of one connected
session. Sinks are only ever offered commands with ``try_send``; a sink
that refuses a broadcast is treated as dead and is dropped from the room.
"""
import logging
import secrets
import threading
from typing import Dict, Optional

from chat_events import JoinFrame, LeaveFrame

logger = logging.getLogger(__name__)


class ChatText:
    """Server -> session: write this frame to the connection."""

    def __init__(self, text):
        self.text = text

    def __repr__(self):
        return f"ChatText({self.text!r})"


class BlockState:
    """Server -> session: the member was blocked or unblocked by the owner."""

    def __init__(self, is_block, is_in_chat):
        self.is_block = is_block
        self.is_in_chat = is_in_chat

    def __repr__(self):
        return f"BlockState(is_block={self.is_block}, is_in_chat={self.is_in_chat})"


class ClientHandle:
    def __init__(self, name, sink, user_id=None):
        self.name = name or ""
        self.sink = sink
        self.user_id = user_id

    def try_send(self, command) -> bool:
        return self.sink.try_send(command)


def generate_connection_id():
    return secrets.randbits(64)


class RoomCoordinator:
    def __init__(self):
        self._rooms: Dict[int, Dict[int, ClientHandle]] = {}
        self._lock = threading.Lock()

    def _add_client(self, room_id, connection_id, handle):
        connection_id = connection_id if connection_id is not None else generate_connection_id()
        room = self._rooms.setdefault(room_id, {})
        while connection_id in room:
            connection_id = generate_connection_id()
        room[connection_id] = handle
        return connection_id

    def _take_room(self, room_id):
        room = self._rooms.get(room_id)
        if room is None:
            return None
        self._rooms[room_id] = {}
        return room

    def count(self, room_id) -> int:
        with self._lock:
            return len(self._rooms.get(room_id, {}))

    def join(self, room_id, name, sink, connection_id: Optional[int] = None, user_id: Optional[int] = None) -> int:
        """Add a member and announce it to the rest of the room.

        The new member is left out of the announcement: its session answers
        the joining client itself, with the owner and block flags attached.
        """
        handle = ClientHandle(name, sink, user_id)
        with self._lock:
            connection_id = self._add_client(room_id, connection_id, handle)
            count = len(self._rooms[room_id])

        logger.info(f"Member '{handle.name}' joined room {room_id} (count: {count})")
        join_text = JoinFrame(join=room_id, member=handle.name, count=count).to_text()
        self.broadcast(room_id, join_text, exclude=(connection_id,))
        return connection_id

    def leave(self, room_id, connection_id, name):
        with self._lock:
            room = self._rooms.get(room_id)
            handle = room.pop(connection_id, None) if room is not None else None
            count = len(room) if room is not None else 0

        if handle is None:
            return

        logger.info(f"Member '{name}' left room {room_id} (count: {count})")
        leave_text = LeaveFrame(leave=room_id, member=name or "", count=count).to_text()
        self.broadcast(room_id, leave_text)
        # The leaving client gets its own confirmation; it may already be gone.
        handle.try_send(ChatText(leave_text))

    def broadcast(self, room_id, text, exclude=()):
        """Offer ``text`` to every member of the room.

        The member map is detached before sending, so a join that happens
        meanwhile lands in the fresh map and misses this broadcast. Members
        whose sink refuses the frame are not put back.
        """
        with self._lock:
            room = self._take_room(room_id)
        if room is None:
            return

        survivors = []
        for connection_id, handle in room.items():
            if connection_id in exclude or handle.try_send(ChatText(text)):
                survivors.append((connection_id, handle))
            else:
                logger.debug(f"Dropping unreachable member '{handle.name}' ({connection_id}) from room {room_id}")

        with self._lock:
            for connection_id, handle in survivors:
                self._add_client(room_id, connection_id, handle)

    def notify_block(self, room_id, user_id, is_block) -> bool:
        """Push the block state to every connection of the user ``user_id``.

        Display names can be chosen by anonymous members, so only the account
        id identifies the target. Returns True when at least one connection
        took the notification.
        """
        if not room_id or user_id is None:
            return False
        with self._lock:
            targets = [handle for handle in self._rooms.get(room_id, {}).values() if handle.user_id == user_id]

        is_in_chat = False
        for handle in targets:
            if handle.try_send(BlockState(is_block, True)):
                is_in_chat = True
        logger.info(f"Block notification room {room_id}, user {user_id}, is_block: {is_block}, is_in_chat: {is_in_chat}")
        return is_in_chat
