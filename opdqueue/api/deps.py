from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from opdqueue.core.lanes import build_lanes
from opdqueue.core.redis import redis_client
from opdqueue.db.session import get_session
from opdqueue.services.queue_service import QueueService

# Lanes must be shared by every request the process serves
lanes = build_lanes()

async def get_queue_service(session: AsyncSession = Depends(get_session)) -> QueueService:
    return QueueService(
        session,
        lanes,
        notifier=redis_client,
        broadcaster=redis_client,
        cache=redis_client,
    )
