"""State machine of one chat websocket connection.

Frames from the client go through ``handle_text``. Commands pushed by the
``RoomCoordinator`` arrive in the session's mailbox and are written out by
``run_mailbox``. Database work for chat messages and blocking runs in
background tasks so the read loop is never held up by it.
"""
import asyncio
import logging
import os
import threading

from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from chat_coordinator import BlockState, ChatText
from chat_errors import (
    ChatError, PersistenceFailure, PreconditionFailed, TargetNotFound,
    THERE_WAS_ALREADY_JOIN, STREAM_NOT_FOUND, STREAM_NOT_ACTIVE, USER_NOT_FOUND, CHAT_MESSAGE_NOT_FOUND,
    NICKNAME_ALREADY_IN_USE, CANNOT_BLOCK_YOURSELF,
    check_is_not_empty, check_is_required, check_is_greater_than,
    check_is_joined_room, check_is_owner_room, check_is_blocked,
)
from chat_events import (
    EventKind, ChatEvent, parse_event, block_frame,
    CountFrame, EchoFrame, ErrFrame, JoinFrame, MsgFrame, NameFrame,
    PrmBoolFrame, PrmIntFrame, PrmStrFrame,
)

logger = logging.getLogger(__name__)

MAILBOX_SIZE = int(os.getenv("CHAT_MAILBOX_SIZE", "256"))
DATABASE_ERROR = "Database error"

# kind -> (name field, value field, typed getter, outbound frame)
PRM_COMMANDS = {
    EventKind.PRM_BOOL: ("prmBool", "valBool", ChatEvent.get_bool, PrmBoolFrame),
    EventKind.PRM_INT: ("prmInt", "valInt", ChatEvent.get_i32, PrmIntFrame),
    EventKind.PRM_STR: ("prmStr", "valStr", ChatEvent.get_string, PrmStrFrame),
}


class Mailbox:
    """Bounded inbox of a session. A full or closed mailbox refuses commands.

    ``try_send`` may be called from any thread; commands from a thread other
    than the session's own event loop are handed over with
    ``call_soon_threadsafe``.
    """

    def __init__(self, maxsize=MAILBOX_SIZE):
        self._queue = asyncio.Queue()
        self._maxsize = maxsize
        self._size = 0
        self._lock = threading.Lock()
        self._thread_id = threading.get_ident()
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self.closed = False

    def try_send(self, command) -> bool:
        if self.closed:
            return False
        with self._lock:
            if self._size >= self._maxsize:
                return False
            self._size += 1

        if self._loop is None or threading.get_ident() == self._thread_id:
            self._queue.put_nowait(command)
            return True
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, command)
        except RuntimeError:
            # the session's loop is closed
            self.closed = True
            return False
        return True

    def _taken(self, count=1):
        with self._lock:
            self._size -= count

    async def receive(self):
        command = await self._queue.get()
        self._taken()
        return command

    def pending(self):
        commands = []
        while not self._queue.empty():
            commands.append(self._queue.get_nowait())
        self._taken(len(commands))
        return commands

    def close(self):
        self.closed = True


class ChatSession:
    def __init__(self, send_text, coordinator, gateway, cache=None, user_id=None, user_name=None):
        self.send_text = send_text
        self.coordinator = coordinator
        self.gateway = gateway
        self.cache = cache
        self.user_id = user_id
        self.user_name = user_name or ""
        self.id = 0
        self.room_id = 0
        self.is_owner = False
        self.is_blocked = False
        self.closed = False
        self.mailbox = Mailbox()
        self._tasks = set()
        self._handlers = {
            EventKind.BLOCK: self._handle_block,
            EventKind.COUNT: self._handle_count,
            EventKind.ECHO: self._handle_echo,
            EventKind.JOIN: self._handle_join,
            EventKind.LEAVE: self._handle_leave,
            EventKind.MSG: self._handle_msg,
            EventKind.MSG_CUT: self._handle_msg_cut,
            EventKind.MSG_PUT: self._handle_msg_put,
            EventKind.NAME: self._handle_name,
            EventKind.PRM_BOOL: self._handle_prm,
            EventKind.PRM_INT: self._handle_prm,
            EventKind.PRM_STR: self._handle_prm,
            EventKind.UNBLOCK: self._handle_block,
        }

    @property
    def is_authenticated(self):
        return self.user_id is not None

    async def reply(self, frame):
        await self.send_text(frame.to_text())

    async def handle_text(self, text):
        try:
            event = parse_event(text)
            handler = self._handlers.get(event.kind)
            if handler is not None:
                await handler(event)
        except ChatError as e:
            logger.debug(f"Frame rejected for connection {self.id}: {e.message} (frame: {text!r})")
            await self.reply(ErrFrame(err=e.message))

    # ** Commands pushed by the coordinator **

    async def run_mailbox(self):
        while True:
            command = await self.mailbox.receive()
            try:
                await self.dispatch(command)
            except Exception as e:
                # A refused mailbox makes the coordinator drop this member.
                logger.error(f"Connection {self.id} stopped delivering frames: {e}")
                self.mailbox.close()
                return

    async def dispatch(self, command):
        if isinstance(command, BlockState):
            # The room broadcast that follows tells the member about it.
            if self.is_authenticated:
                self.is_blocked = command.is_block
        elif isinstance(command, ChatText):
            await self.send_text(command.text)

    async def flush(self):
        """Wait for background tasks, then write out everything in the mailbox."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        for command in self.mailbox.pending():
            await self.dispatch(command)

    async def close(self):
        self.closed = True
        self.mailbox.close()
        if self.room_id:
            self._leave()

    # ** Background tasks **

    def _spawn(self, coro):
        task = asyncio.create_task(self._run_task(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_task(self, coro):
        try:
            await coro
        except ChatError as e:
            if self.closed:
                return
            try:
                await self.reply(ErrFrame(err=e.message))
            except Exception as send_error:
                logger.error(f"Error frame for connection {self.id} not delivered: {send_error}")
        except Exception as e:
            logger.error(f"Background task of connection {self.id} failed: {e}")

    async def _call_gateway(self, method, *args):
        try:
            return await run_in_threadpool(method, *args)
        except SQLAlchemyError as e:
            logger.error(f"{method.__name__}() failed: {e}")
            raise PersistenceFailure(f"{DATABASE_ERROR}; {method.__name__}") from e
        except ValueError as e:
            raise PersistenceFailure(str(e)) from e

    async def _publish(self, room_id, text):
        self.coordinator.broadcast(room_id, text)
        if self.cache is not None:
            await self.cache.cache_chat_frame(room_id, text)

    # ** Client commands **

    async def _handle_echo(self, event):
        echo = event.get_string("echo") or ""
        check_is_not_empty(echo, "echo")
        await self.reply(EchoFrame(echo=echo))

    async def _handle_name(self, event):
        name = event.get_string("name") or ""
        check_is_not_empty(name, "name")
        # An authenticated user always appears under the account nickname.
        if not self.is_authenticated:
            if await self._call_gateway(self.gateway.get_user_by_nickname, name) is not None:
                raise PreconditionFailed(PreconditionFailed.NAME_TAKEN, NICKNAME_ALREADY_IN_USE)
            self.user_name = name
        await self.reply(NameFrame(name=self.user_name, id=self.id))

    async def _handle_count(self, event):
        check_is_joined_room(self.room_id)
        await self.reply(CountFrame(count=self.coordinator.count(self.room_id)))

    async def _handle_join(self, event):
        room_id = event.get_i32("join") or 0
        check_is_greater_than(room_id, 0, "join")
        if self.room_id == room_id:
            raise PreconditionFailed(PreconditionFailed.ALREADY_JOINED, f"{THERE_WAS_ALREADY_JOIN} {room_id}.")

        chat_access = await self._call_gateway(self.gateway.get_chat_access, room_id, self.user_id)
        if chat_access is None:
            raise TargetNotFound(f"{STREAM_NOT_FOUND}; stream_id: {room_id}")
        if not chat_access.stream_live:
            raise PreconditionFailed(PreconditionFailed.NOT_ACTIVE, STREAM_NOT_ACTIVE)

        if self.room_id:
            self._leave()

        is_owner = self.is_authenticated and self.user_id == chat_access.stream_owner
        # Anonymous members may read the chat but never write to it.
        is_blocked = chat_access.is_blocked if self.is_authenticated else True

        self.id = self.coordinator.join(room_id, self.user_name, self.mailbox, user_id=self.user_id)
        self.room_id = room_id
        self.is_owner = is_owner
        self.is_blocked = is_blocked
        count = self.coordinator.count(room_id)
        await self.reply(JoinFrame(
            join=room_id, member=self.user_name, count=count, is_owner=is_owner, is_blocked=is_blocked
        ))

    async def _handle_leave(self, event):
        check_is_joined_room(self.room_id)
        self._leave()

    def _leave(self):
        self.coordinator.leave(self.room_id, self.id, self.user_name)
        self.room_id = 0
        self.id = 0
        self.is_owner = False

    async def _handle_msg(self, event):
        msg = event.get_string("msg") or ""
        check_is_not_empty(msg, "msg")
        check_is_joined_room(self.room_id)
        check_is_blocked(self.is_blocked)
        self._spawn(self._create_message(self.room_id, self.user_id, msg))

    async def _create_message(self, room_id, user_id, msg):
        chat_message = await self._call_gateway(self.gateway.create_chat_message, room_id, user_id, msg)
        if chat_message is None:
            raise TargetNotFound(f"{STREAM_NOT_FOUND}; stream_id: {room_id}")
        await self._publish(room_id, MsgFrame.from_chat_message(chat_message).to_text())

    async def _handle_msg_put(self, event):
        msg_put = event.get_string("msgPut") or ""
        id = event.get_i32("id") or 0
        check_is_not_empty(msg_put, "msgPut")
        check_is_greater_than(id, 0, "id")
        check_is_joined_room(self.room_id)
        check_is_blocked(self.is_blocked)
        self._spawn(self._change_message(self.room_id, id, self.gateway.modify_chat_message, msg_put))

    async def _handle_msg_cut(self, event):
        id = event.get_i32("id") or 0
        check_is_greater_than(id, 0, "id")
        check_is_joined_room(self.room_id)
        check_is_blocked(self.is_blocked)
        self._spawn(self._change_message(self.room_id, id, self.gateway.delete_chat_message))

    async def _change_message(self, room_id, id, method, *args):
        user_id = self.user_id
        chat_message = await self._call_gateway(method, id, user_id, *args)
        if chat_message is None:
            raise TargetNotFound(f"{CHAT_MESSAGE_NOT_FOUND}; id: {id}, user_id: {user_id}")
        await self._publish(room_id, MsgFrame.from_chat_message(chat_message).to_text())

    async def _handle_block(self, event):
        is_block = event.kind == EventKind.BLOCK
        name = event.get_string(event.kind.value) or ""
        check_is_not_empty(name, event.kind.value)
        check_is_joined_room(self.room_id)
        check_is_owner_room(self.is_owner)
        if is_block and name == self.user_name:
            raise PreconditionFailed(PreconditionFailed.SELF_BLOCK, CANNOT_BLOCK_YOURSELF)
        self._spawn(self._block_member(self.room_id, self.user_id, name, is_block))

    async def _block_member(self, room_id, user_id, name, is_block):
        method = self.gateway.create_blocked_user if is_block else self.gateway.delete_blocked_user
        blocked_user = await self._call_gateway(method, user_id, None, name)
        if blocked_user is None:
            raise TargetNotFound(f"{USER_NOT_FOUND}; blocked_nickname: '{name}'")

        blocked_name = blocked_user.blocked_nickname
        is_in_chat = self.coordinator.notify_block(room_id, blocked_user.blocked_id, is_block)
        self.coordinator.broadcast(room_id, block_frame(blocked_name, is_block, is_in_chat).to_text())

    async def _handle_prm(self, event):
        name_field, value_field, getter, frame_class = PRM_COMMANDS[event.kind]
        name = event.get_string(name_field) or ""
        value = getter(event, value_field)
        check_is_not_empty(name, name_field)
        check_is_required(value, value_field)
        check_is_joined_room(self.room_id)
        check_is_blocked(self.is_blocked)

        is_owner = True if self.is_owner else None
        frame = frame_class(**{name_field: name, value_field: value, "isOwner": is_owner})
        self.coordinator.broadcast(self.room_id, frame.to_text())
