"""Persistence of chat messages and block relationships.

Every method opens its own database session and returns schema objects,
so results can cross thread boundaries after the session is closed. The
methods block on I/O; the websocket layer calls them through a thread pool.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import asc, desc

from models import User, Stream, ChatMessage, ChatMessageLog, BlockedUser
from schemas import ChatMessageResponse, ChatMessageLogResponse, BlockedUserResponse, ChatAccess, UserResponse

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 254


def chat_message_to_response(db_message: ChatMessage) -> ChatMessageResponse:
    return ChatMessageResponse(
        id=db_message.id,
        stream_id=db_message.stream_id,
        user_id=db_message.user_id,
        member=db_message.user.nickname if db_message.user else "",
        msg=db_message.msg,
        date_update=db_message.date_update,
        is_changed=db_message.is_changed,
        is_removed=db_message.is_removed,
        created_at=db_message.created_at,
    )


def blocked_user_to_response(db_blocked: BlockedUser) -> BlockedUserResponse:
    return BlockedUserResponse(
        id=db_blocked.id,
        user_id=db_blocked.user_id,
        blocked_id=db_blocked.blocked_id,
        blocked_nickname=db_blocked.blocked.nickname,
        block_date=db_blocked.block_date,
    )


class ChatGateway:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_user(self, user_id: int) -> Optional[UserResponse]:
        with self.session_factory() as db:
            user = db.get(User, user_id)
            return UserResponse.model_validate(user) if user else None

    def get_user_by_nickname(self, nickname: str) -> Optional[UserResponse]:
        with self.session_factory() as db:
            user = db.query(User).filter(User.nickname == nickname).first()
            return UserResponse.model_validate(user) if user else None

    def filter_chat_messages(self, stream_id: int, limit: Optional[int] = None, descending: bool = False,
                             min_date: Optional[datetime] = None,
                             max_date: Optional[datetime] = None) -> List[ChatMessageResponse]:
        """Messages of a stream ordered by creation time.

        ``min_date`` and ``max_date`` are exclusive bounds on ``created_at``,
        so the date of the last message of a page fetches the next one.
        """
        with self.session_factory() as db:
            query = db.query(ChatMessage).filter(ChatMessage.stream_id == stream_id)
            if min_date is not None:
                query = query.filter(ChatMessage.created_at > min_date)
            if max_date is not None:
                query = query.filter(ChatMessage.created_at < max_date)
            if descending:
                query = query.order_by(desc(ChatMessage.created_at), desc(ChatMessage.id))
            else:
                query = query.order_by(asc(ChatMessage.created_at), asc(ChatMessage.id))
            if limit:
                query = query.limit(limit)
            return [chat_message_to_response(msg) for msg in query.all()]

    def get_chat_message_logs(self, chat_message_id: int) -> List[ChatMessageLogResponse]:
        with self.session_factory() as db:
            rows = db.query(ChatMessageLog).filter(
                ChatMessageLog.chat_message_id == chat_message_id
            ).order_by(ChatMessageLog.id).all()
            return [ChatMessageLogResponse.model_validate(row) for row in rows]

    def create_chat_message(self, stream_id: int, user_id: int, text: str) -> Optional[ChatMessageResponse]:
        if not text or len(text) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message length must be between 1 and {MAX_MESSAGE_LENGTH} characters")

        with self.session_factory() as db:
            if db.get(Stream, stream_id) is None:
                return None
            now = datetime.utcnow()
            db_message = ChatMessage(stream_id=stream_id, user_id=user_id, msg=text, date_update=now, created_at=now)
            db.add(db_message)
            db.commit()
            db.refresh(db_message)
            logger.info(f"Created chat message {db_message.id} in stream {stream_id} by user {user_id}")
            return chat_message_to_response(db_message)

    def _find_own_message(self, db, id: int, user_id: int):
        return db.query(ChatMessage).filter(
            ChatMessage.id == id,
            ChatMessage.user_id == user_id,
            ChatMessage.is_removed.is_(False),
        ).first()

    def modify_chat_message(self, id: int, user_id: int, new_text: str) -> Optional[ChatMessageResponse]:
        if not new_text or len(new_text) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message length must be between 1 and {MAX_MESSAGE_LENGTH} characters")

        with self.session_factory() as db:
            db_message = self._find_own_message(db, id, user_id)
            if db_message is None:
                return None
            now = datetime.utcnow()
            db.add(ChatMessageLog(chat_message_id=db_message.id, old_msg=db_message.msg, date_update=now))
            db_message.msg = new_text
            db_message.is_changed = True
            db_message.date_update = now
            db.commit()
            db.refresh(db_message)
            return chat_message_to_response(db_message)

    def delete_chat_message(self, id: int, user_id: int) -> Optional[ChatMessageResponse]:
        """Remove the text of a message; the row stays as a tombstone."""
        with self.session_factory() as db:
            db_message = self._find_own_message(db, id, user_id)
            if db_message is None:
                return None
            now = datetime.utcnow()
            db.add(ChatMessageLog(chat_message_id=db_message.id, old_msg=db_message.msg, date_update=now))
            db_message.msg = None
            db_message.is_removed = True
            db_message.date_update = now
            db.commit()
            db.refresh(db_message)
            return chat_message_to_response(db_message)

    def _find_user(self, db, blocked_id=None, blocked_nickname=None):
        if blocked_id is not None:
            return db.get(User, blocked_id)
        if blocked_nickname:
            return db.query(User).filter(User.nickname == blocked_nickname).first()
        return None

    def get_blocked_users(self, user_id: int) -> List[BlockedUserResponse]:
        with self.session_factory() as db:
            rows = db.query(BlockedUser).filter(BlockedUser.user_id == user_id).order_by(BlockedUser.id).all()
            return [blocked_user_to_response(row) for row in rows]

    def create_blocked_user(self, user_id: int, blocked_id: Optional[int] = None,
                            blocked_nickname: Optional[str] = None) -> Optional[BlockedUserResponse]:
        with self.session_factory() as db:
            target = self._find_user(db, blocked_id, blocked_nickname)
            if target is None:
                return None
            db_blocked = db.query(BlockedUser).filter(
                BlockedUser.user_id == user_id, BlockedUser.blocked_id == target.id
            ).first()
            if db_blocked is None:
                db_blocked = BlockedUser(user_id=user_id, blocked_id=target.id, block_date=datetime.utcnow())
                db.add(db_blocked)
                db.commit()
                db.refresh(db_blocked)
                logger.info(f"User {user_id} blocked user {target.id} ({target.nickname})")
            return blocked_user_to_response(db_blocked)

    def delete_blocked_user(self, user_id: int, blocked_id: Optional[int] = None,
                            blocked_nickname: Optional[str] = None) -> Optional[BlockedUserResponse]:
        with self.session_factory() as db:
            target = self._find_user(db, blocked_id, blocked_nickname)
            if target is None:
                return None
            db_blocked = db.query(BlockedUser).filter(
                BlockedUser.user_id == user_id, BlockedUser.blocked_id == target.id
            ).first()
            if db_blocked is None:
                return None
            result = blocked_user_to_response(db_blocked)
            db.delete(db_blocked)
            db.commit()
            logger.info(f"User {user_id} unblocked user {target.id} ({target.nickname})")
            return result

    def get_chat_access(self, stream_id: int, user_id: Optional[int] = None) -> Optional[ChatAccess]:
        with self.session_factory() as db:
            stream = db.get(Stream, stream_id)
            if stream is None:
                return None
            is_blocked = False
            if user_id is not None:
                is_blocked = db.query(BlockedUser).filter(
                    BlockedUser.user_id == stream.user_id, BlockedUser.blocked_id == user_id
                ).first() is not None
            return ChatAccess(
                stream_id=stream.id,
                stream_owner=stream.user_id,
                stream_live=stream.is_live,
                is_blocked=is_blocked,
            )
