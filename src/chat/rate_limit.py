"""Redis fixed-window throttle for chat sends."""
from typing import Optional
import math
import time

import redis.asyncio as redis

from src.configs.settings import REDIS_URL, CHAT_SEND_LIMIT, CHAT_SEND_WINDOW_SECONDS
from .errors import RateLimited

redis_client = redis.from_url(REDIS_URL, decode_responses=True)


def set_redis_client(client) -> None:
    global redis_client
    redis_client = client


async def allow(kind: str, actor_id: str, *, limit: int, window_seconds: int = 60,
                now: Optional[float] = None) -> bool:
    """Return True when the operation is still within the allowed budget."""
    if limit <= 0:
        return False
    now = now or time.time()
    window = max(1, int(window_seconds))
    slot = int(math.floor(now / window))
    key = f"rl:{kind}:{actor_id}:{slot}:{window}"
    async with redis_client.pipeline(transaction=True) as pipe:
        pipe.incr(key)
        pipe.expire(key, window)
        count, _ = await pipe.execute()
    return int(count) <= limit


async def throttle_send(conversation_id: str, sender_id: str, *, limit: int = None,
                        window_seconds: int = None) -> None:
    limit = CHAT_SEND_LIMIT if limit is None else limit
    window_seconds = CHAT_SEND_WINDOW_SECONDS if window_seconds is None else window_seconds
    if not await allow("chat-send", f"{conversation_id}:{sender_id}", limit=limit, window_seconds=window_seconds):
        raise RateLimited("too many messages, slow down")
