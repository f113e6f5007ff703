import json
import os
from typing import List, Dict
import redis.asyncio as aioredis
import logging

logger = logging.getLogger(__name__)

RECENT_MESSAGES_LIMIT = 100
RECENT_MESSAGES_TTL = 24 * 60 * 60


class RedisClient:
    """Best-effort cache of the latest chat frames of each stream."""

    def __init__(self):
        self.redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
        self.redis = None

    async def connect(self):
        try:
            self.redis = await aioredis.from_url(self.redis_url, decode_responses=True)
            await self.redis.ping()
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            self.redis = None

    async def close(self):
        if self.redis:
            await self.redis.close()
            self.redis = None

    async def ping(self):
        if self.redis is None:
            raise ConnectionError("Redis is not connected")
        return await self.redis.ping()

    @staticmethod
    def recent_messages_key(stream_id: int) -> str:
        return f"stream:{stream_id}:recent_messages"

    async def cache_chat_frame(self, stream_id: int, frame_text: str):
        if self.redis is None:
            return
        try:
            key = self.recent_messages_key(stream_id)
            await self.redis.lpush(key, frame_text)
            await self.redis.ltrim(key, 0, RECENT_MESSAGES_LIMIT - 1)
            await self.redis.expire(key, RECENT_MESSAGES_TTL)
        except Exception as e:
            logger.error(f"Chat frame caching failed: {e}")

    async def get_recent_frames(self, stream_id: int, limit: int = 50) -> List[Dict]:
        if self.redis is None:
            return []
        try:
            frames_raw = await self.redis.lrange(self.recent_messages_key(stream_id), 0, limit - 1)

            frames = []
            for frame_raw in frames_raw:
                try:
                    frames.append(json.loads(frame_raw))
                except json.JSONDecodeError:
                    continue

            return frames
        except Exception as e:
            logger.error(f"Failed to retrieve chat frames: {e}")
            return []
