import json
from datetime import date, datetime
from typing import Any, Dict, Optional
from uuid import UUID

import redis.asyncio as redis

from opdqueue.core.config import settings
from opdqueue.core.sinks import NotificationKind

NOTIFICATION_OUTBOX = "notifications:outbox"

def _default(value):
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

def dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, default=_default)

class RedisClient:
    """ETA cache, broadcast publisher and notification outbox on one connection pool."""

    def __init__(self, url: Optional[str] = None):
        self.redis = redis.from_url(url or settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    async def set_eta(self, token_id: UUID, minutes: int, expire: int):
        await self.redis.set(f"token:{token_id}:eta", str(minutes), ex=expire)

    async def get_eta(self, token_id: UUID) -> Optional[int]:
        value = await self.redis.get(f"token:{token_id}:eta")
        return int(value) if value is not None else None

    async def delete_eta(self, token_id: UUID):
        await self.redis.delete(f"token:{token_id}:eta")

    async def publish(self, channel: str, payload: Dict[str, Any]):
        await self.redis.publish(channel, dumps(payload))

    async def notify(self, kind: NotificationKind, token: Any, extra: Optional[Dict[str, Any]] = None):
        message = {
            "kind": NotificationKind(kind).value,
            "token_id": token.id,
            "token_number": token.token_number,
            "patient_id": token.patient_id,
            "doctor_id": token.doctor_id,
            "scheduled_time": token.scheduled_time,
            "extra": extra or {},
        }
        await self.redis.rpush(NOTIFICATION_OUTBOX, dumps(message))

    def lock(self, name: str, timeout: int):
        return self.redis.lock(name, timeout=timeout, blocking_timeout=timeout)

    async def close(self):
        await self.redis.aclose()

redis_client = RedisClient()
