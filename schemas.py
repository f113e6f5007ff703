from pydantic import BaseModel, validator, model_validator
from datetime import datetime
from typing import Optional

from models import STREAM_STATES


class UserCreate(BaseModel):
    nickname: str

    @validator('nickname')
    def nickname_must_be_valid(cls, v):
        if len(v) < 3 or len(v) > 64:
            raise ValueError('Nickname must be between 3 and 64 characters')
        if not v.replace('_', '').isalnum():
            raise ValueError('Nickname must contain only letters, numbers and "_"')
        return v


class UserResponse(BaseModel):
    id: int
    nickname: str
    created_at: datetime

    class Config:
        from_attributes = True


class StreamCreate(BaseModel):
    title: str

    @validator('title')
    def title_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('Stream title cannot be empty')
        if len(v) > 255:
            raise ValueError('Stream title is too long (max 255 characters)')
        return v.strip()


class StreamStateUpdate(BaseModel):
    state: str

    @validator('state')
    def state_must_be_known(cls, v):
        if v not in STREAM_STATES:
            raise ValueError(f"State must be one of: {', '.join(STREAM_STATES)}")
        return v


class StreamResponse(BaseModel):
    id: int
    user_id: int
    title: str
    state: str
    is_live: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ChatMessageResponse(BaseModel):
    id: int
    stream_id: int
    user_id: int
    member: str
    msg: Optional[str] = None
    date_update: datetime
    is_changed: bool
    is_removed: bool
    created_at: datetime


class ChatMessageCreate(BaseModel):
    stream_id: int
    msg: str

    @validator('msg')
    def msg_length_must_be_valid(cls, v):
        if len(v) < 1 or len(v) > 254:
            raise ValueError('Message must be between 1 and 254 characters')
        return v


class ChatMessageUpdate(BaseModel):
    msg: str

    @validator('msg')
    def msg_length_must_be_valid(cls, v):
        if len(v) < 1 or len(v) > 254:
            raise ValueError('Message must be between 1 and 254 characters')
        return v


class ChatMessageLogResponse(BaseModel):
    id: int
    chat_message_id: int
    old_msg: str
    date_update: datetime

    class Config:
        from_attributes = True


class ChatAccess(BaseModel):
    stream_id: int
    stream_owner: int
    stream_live: bool
    is_blocked: bool


class BlockedUserCreate(BaseModel):
    blocked_id: Optional[int] = None
    blocked_nickname: Optional[str] = None

    @model_validator(mode='after')
    def target_must_be_given(self):
        if self.blocked_id is None and not self.blocked_nickname:
            raise ValueError('One of "blocked_id" or "blocked_nickname" is required')
        return self


class BlockedUserDelete(BlockedUserCreate):
    pass


class BlockedUserResponse(BaseModel):
    id: int
    user_id: int
    blocked_id: int
    blocked_nickname: str
    block_date: datetime


class TokenRequest(BaseModel):
    nickname: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
