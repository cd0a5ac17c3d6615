import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional
from uuid import UUID

from opdqueue.core.config import settings
from opdqueue.core.logger import get_logger

logger = get_logger("lanes")


class DoctorLanes:
    """
    Single-writer execution lanes keyed by doctor id.

    Everything that allocates a queue position or rewrites a doctor's queue
    runs inside that doctor's lane. Different doctors never wait on each
    other. With a redis client the lane is also held across worker processes.
    """

    def __init__(self, redis_client=None, timeout: Optional[int] = None):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._redis = redis_client
        self._timeout = timeout or settings.LANE_LOCK_TIMEOUT_SECONDS

    def _local(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def is_held(self, doctor_id: UUID) -> bool:
        lock = self._locks.get(str(doctor_id))
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def lane(self, doctor_id: UUID) -> AsyncIterator[None]:
        key = str(doctor_id)
        async with self._local(key):
            if self._redis is None:
                yield
                return
            async with self._redis.lock(f"lane:doctor:{key}", self._timeout):
                yield

    @asynccontextmanager
    async def lanes(self, doctor_ids: Iterable[UUID]) -> AsyncIterator[None]:
        # Sorted acquisition keeps multi-doctor batches deadlock free
        ordered: List[UUID] = sorted(set(doctor_ids), key=str)
        if not ordered:
            yield
            return
        async with self.lane(ordered[0]):
            async with self.lanes(ordered[1:]):
                yield


def build_lanes() -> DoctorLanes:
    if settings.DISTRIBUTED_LANES:
        from opdqueue.core.redis import redis_client
        logger.info("Doctor lanes backed by redis locks")
        return DoctorLanes(redis_client)
    return DoctorLanes()
