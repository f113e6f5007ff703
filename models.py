from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()

LIVE_STATES = ("preparing", "started", "paused")
STREAM_STATES = ("waiting",) + LIVE_STATES + ("stopped",)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    nickname = Column(String(64), unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    streams = relationship("Stream", back_populates="owner")
    chat_messages = relationship("ChatMessage", back_populates="user")


class Stream(Base):
    __tablename__ = "streams"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    state = Column(String(16), nullable=False, default="waiting")
    created_at = Column(DateTime, default=datetime.utcnow)

    owner = relationship("User", back_populates="streams")
    chat_messages = relationship("ChatMessage", back_populates="stream")

    @property
    def is_live(self):
        return self.state in LIVE_STATES


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    stream_id = Column(Integer, ForeignKey("streams.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    msg = Column(Text, nullable=True)
    date_update = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_changed = Column(Boolean, default=False, nullable=False)
    is_removed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    stream = relationship("Stream", back_populates="chat_messages")
    user = relationship("User", back_populates="chat_messages")
    logs = relationship("ChatMessageLog", back_populates="chat_message", order_by="ChatMessageLog.id")


class ChatMessageLog(Base):
    __tablename__ = "chat_message_logs"

    id = Column(Integer, primary_key=True, index=True)
    chat_message_id = Column(Integer, ForeignKey("chat_messages.id"), nullable=False, index=True)
    old_msg = Column(Text, nullable=False)
    date_update = Column(DateTime, default=datetime.utcnow, nullable=False)

    chat_message = relationship("ChatMessage", back_populates="logs")


class BlockedUser(Base):
    __tablename__ = "blocked_users"
    __table_args__ = (UniqueConstraint("user_id", "blocked_id", name="uq_blocked_users_pair"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    blocked_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    block_date = Column(DateTime, default=datetime.utcnow)

    blocked = relationship("User", foreign_keys=[blocked_id])
