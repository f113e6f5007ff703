import asyncio
from datetime import datetime
from typing import List, Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool
import logging

from database import get_db, engine, SessionLocal
from models import Base, User, Stream
from schemas import (
    UserCreate, UserResponse, StreamCreate, StreamStateUpdate, StreamResponse,
    ChatMessageResponse, ChatMessageCreate, ChatMessageUpdate, ChatMessageLogResponse,
    BlockedUserCreate, BlockedUserDelete, BlockedUserResponse,
    TokenRequest, TokenResponse,
)
from redis_client import RedisClient
from auth import get_current_user, encode_access_token, decode_access_token, InvalidToken
from chat_coordinator import RoomCoordinator
from chat_gateway import ChatGateway
from chat_session import ChatSession
from chat_events import MsgFrame
from chat_errors import BLOCK_ON_SENDING_MESSAGES, STREAM_NOT_ACTIVE, CANNOT_BLOCK_YOURSELF

Base.metadata.create_all(bind=engine)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Stream Chat API",
    description="Live stream chat rooms over WebSocket, backed by PostgreSQL and Redis",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

redis_client = RedisClient()
coordinator = RoomCoordinator()


def get_gateway() -> ChatGateway:
    return ChatGateway(SessionLocal)


def get_coordinator() -> RoomCoordinator:
    return coordinator


@app.on_event("startup")
async def startup_event():
    await redis_client.connect()
    logger.info("Application started")


@app.on_event("shutdown")
async def shutdown_event():
    await redis_client.close()
    logger.info("Application shutdown")


@app.get("/", tags=["Info"])
async def root():
    return {
        "message": "Stream Chat Backend API",
        "version": "1.0.0",
        "endpoints": {
            "users": "/users/",
            "token": "/token",
            "streams": "/streams/",
            "chat_messages": "/chat_messages/",
            "blocked_users": "/blocked_users/",
            "websocket": "/ws?access={token}",
            "docs": "/docs"
        }
    }


@app.post("/users/", response_model=UserResponse, tags=["Users"])
async def create_user(user: UserCreate, db: Session = Depends(get_db)):
    db_user = db.query(User).filter(User.nickname == user.nickname).first()
    if db_user:
        raise HTTPException(status_code=400, detail="Nickname already registered")

    db_user = User(nickname=user.nickname, created_at=datetime.utcnow())
    db.add(db_user)
    db.commit()
    db.refresh(db_user)

    logger.info(f"Created user: {db_user.nickname} (ID: {db_user.id})")
    return db_user


@app.get("/users/", response_model=List[UserResponse], tags=["Users"])
async def get_users(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    users = db.query(User).offset(skip).limit(limit).all()
    return users


@app.get("/users/{user_id}", response_model=UserResponse, tags=["Users"])
async def get_user(user_id: int, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.post("/token", response_model=TokenResponse, tags=["Users"])
async def create_token(request: TokenRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.nickname == request.nickname).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return TokenResponse(access_token=encode_access_token(user.id))


@app.post("/streams/", response_model=StreamResponse, tags=["Streams"])
async def create_stream(stream: StreamCreate, current_user: User = Depends(get_current_user),
                        db: Session = Depends(get_db)):
    db_stream = Stream(user_id=current_user.id, title=stream.title, created_at=datetime.utcnow())
    db.add(db_stream)
    db.commit()
    db.refresh(db_stream)

    logger.info(f"Created stream {db_stream.id} for user {current_user.id}")
    return db_stream


@app.get("/streams/{stream_id}", response_model=StreamResponse, tags=["Streams"])
async def get_stream(stream_id: int, db: Session = Depends(get_db)):
    stream = db.query(Stream).filter(Stream.id == stream_id).first()
    if not stream:
        raise HTTPException(status_code=404, detail="Stream not found")
    return stream


@app.put("/streams/{stream_id}/state", response_model=StreamResponse, tags=["Streams"])
async def update_stream_state(stream_id: int, update: StreamStateUpdate,
                              current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    stream = db.query(Stream).filter(Stream.id == stream_id).first()
    if not stream:
        raise HTTPException(status_code=404, detail="Stream not found")
    if stream.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Stream owner rights are missing")

    stream.state = update.state
    db.commit()
    db.refresh(stream)

    logger.info(f"Stream {stream_id} state changed to '{stream.state}'")
    return stream


@app.get("/chat_messages/", response_model=List[ChatMessageResponse], tags=["Chat messages"])
async def get_chat_messages(stream_id: int, is_sort_des: bool = False, min_date: Optional[datetime] = None,
                            max_date: Optional[datetime] = None, limit: Optional[int] = None,
                            gateway: ChatGateway = Depends(get_gateway)):
    return await run_in_threadpool(gateway.filter_chat_messages, stream_id, limit, is_sort_des, min_date, max_date)


async def publish_chat_message(chat_message: ChatMessageResponse, coordinator: RoomCoordinator):
    frame_text = MsgFrame.from_chat_message(chat_message).to_text()
    coordinator.broadcast(chat_message.stream_id, frame_text)
    await redis_client.cache_chat_frame(chat_message.stream_id, frame_text)


@app.post("/chat_messages/", response_model=ChatMessageResponse, status_code=201, tags=["Chat messages"])
async def create_chat_message(message: ChatMessageCreate, current_user: User = Depends(get_current_user),
                              gateway: ChatGateway = Depends(get_gateway),
                              coordinator: RoomCoordinator = Depends(get_coordinator)):
    chat_access = await run_in_threadpool(gateway.get_chat_access, message.stream_id, current_user.id)
    if chat_access is None:
        raise HTTPException(status_code=404, detail="Stream not found")
    if not chat_access.stream_live:
        raise HTTPException(status_code=400, detail=STREAM_NOT_ACTIVE)
    if chat_access.is_blocked:
        raise HTTPException(status_code=403, detail=BLOCK_ON_SENDING_MESSAGES)

    chat_message = await run_in_threadpool(
        gateway.create_chat_message, message.stream_id, current_user.id, message.msg
    )
    if chat_message is None:
        raise HTTPException(status_code=404, detail="Stream not found")

    await publish_chat_message(chat_message, coordinator)
    return chat_message


@app.put("/chat_messages/{chat_message_id}", response_model=ChatMessageResponse, tags=["Chat messages"])
async def update_chat_message(chat_message_id: int, message: ChatMessageUpdate,
                              current_user: User = Depends(get_current_user),
                              gateway: ChatGateway = Depends(get_gateway),
                              coordinator: RoomCoordinator = Depends(get_coordinator)):
    chat_message = await run_in_threadpool(
        gateway.modify_chat_message, chat_message_id, current_user.id, message.msg
    )
    if chat_message is None:
        raise HTTPException(status_code=404, detail="Chat message not found")

    await publish_chat_message(chat_message, coordinator)
    return chat_message


@app.delete("/chat_messages/{chat_message_id}", response_model=ChatMessageResponse, tags=["Chat messages"])
async def delete_chat_message(chat_message_id: int, current_user: User = Depends(get_current_user),
                              gateway: ChatGateway = Depends(get_gateway),
                              coordinator: RoomCoordinator = Depends(get_coordinator)):
    chat_message = await run_in_threadpool(gateway.delete_chat_message, chat_message_id, current_user.id)
    if chat_message is None:
        raise HTTPException(status_code=404, detail="Chat message not found")

    await publish_chat_message(chat_message, coordinator)
    return chat_message


@app.get("/chat_messages/{chat_message_id}/logs", response_model=List[ChatMessageLogResponse],
         tags=["Chat messages"])
async def get_chat_message_logs(chat_message_id: int, gateway: ChatGateway = Depends(get_gateway)):
    return await run_in_threadpool(gateway.get_chat_message_logs, chat_message_id)


@app.get("/chat_messages/recent/{stream_id}", tags=["Chat messages"])
async def get_recent_chat_messages(stream_id: int, limit: int = 50):
    frames = await redis_client.get_recent_frames(stream_id, limit)
    return {"messages": frames}


@app.get("/blocked_users/", response_model=List[BlockedUserResponse], tags=["Blocked users"])
async def get_blocked_users(current_user: User = Depends(get_current_user),
                            gateway: ChatGateway = Depends(get_gateway)):
    return await run_in_threadpool(gateway.get_blocked_users, current_user.id)


@app.post("/blocked_users/", response_model=BlockedUserResponse, tags=["Blocked users"])
async def create_blocked_user(blocked: BlockedUserCreate, current_user: User = Depends(get_current_user),
                              gateway: ChatGateway = Depends(get_gateway)):
    if blocked.blocked_id == current_user.id or blocked.blocked_nickname == current_user.nickname:
        raise HTTPException(status_code=400, detail=CANNOT_BLOCK_YOURSELF)

    result = await run_in_threadpool(
        gateway.create_blocked_user, current_user.id, blocked.blocked_id, blocked.blocked_nickname
    )
    if result is None:
        raise HTTPException(status_code=404, detail="User not found")
    return result


@app.delete("/blocked_users/", response_model=BlockedUserResponse, tags=["Blocked users"])
async def delete_blocked_user(blocked: BlockedUserDelete, current_user: User = Depends(get_current_user),
                              gateway: ChatGateway = Depends(get_gateway)):
    result = await run_in_threadpool(
        gateway.delete_blocked_user, current_user.id, blocked.blocked_id, blocked.blocked_nickname
    )
    if result is None:
        raise HTTPException(status_code=404, detail="Blocked user not found")
    return result


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, access: Optional[str] = None,
                             gateway: ChatGateway = Depends(get_gateway),
                             coordinator: RoomCoordinator = Depends(get_coordinator)):
    user = None
    if access:
        try:
            user_id = decode_access_token(access)
        except InvalidToken as e:
            logger.info(f"WebSocket rejected: {e}")
            await websocket.close(code=4001, reason="Invalid or expired token")
            return
        user = await run_in_threadpool(gateway.get_user, user_id)
        if user is None:
            await websocket.close(code=4004, reason="User not found")
            return

    await websocket.accept()
    session = ChatSession(
        websocket.send_text, coordinator, gateway, cache=redis_client,
        user_id=user.id if user else None,
        user_name=user.nickname if user else None,
    )
    member = user.nickname if user else "anonymous"
    logger.info(f"WebSocket connected ({member})")

    mailbox_task = asyncio.create_task(session.run_mailbox())
    try:
        while True:
            data = await websocket.receive_text()
            await session.handle_text(data.strip())
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected ({member})")
    except Exception as e:
        logger.error(f"WebSocket error ({member}): {e}")
    finally:
        await session.close()
        mailbox_task.cancel()


@app.get("/health", tags=["Health"])
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_status = "OK"
    except Exception as e:
        db_status = f"ERROR: {e}"

    try:
        await redis_client.ping()
        redis_status = "OK"
    except Exception as e:
        redis_status = f"ERROR: {e}"

    return {
        "status": "OK" if db_status == "OK" and redis_status == "OK" else "ERROR",
        "database": db_status,
        "redis": redis_status,
        "timestamp": datetime.utcnow().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
