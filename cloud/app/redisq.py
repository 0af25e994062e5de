from __future__ import annotations

import redis.asyncio as redis
from .settings import REDIS_URL, QUEUE_NAME

r = redis.from_url(REDIS_URL, decode_responses=True)

def lease_lock_key(invocation_id: str) -> str:
    return f"flowci:lease_lock:{invocation_id}"

async def enqueue_invocation(invocation_id: str) -> None:
    await r.rpush(QUEUE_NAME, invocation_id)  # FIFO: push right

async def dequeue_invocation(timeout_s: int = 5) -> str | None:
    item = await r.blpop(QUEUE_NAME, timeout=timeout_s)  # FIFO: pop left
    if not item:
        return None
    _q, invocation_id = item
    return invocation_id

async def requeue_invocation(invocation_id: str) -> None:
    await r.lpush(QUEUE_NAME, invocation_id)
