from uuid import UUID

from fastapi import APIRouter, Depends

from opdqueue.api.deps import get_queue_service
from opdqueue.schemas.queue import DisplayBoard
from opdqueue.services.queue_service import QueueService

router = APIRouter()

@router.get("/{department_id}/display-board", response_model=DisplayBoard)
async def read_display_board(
    department_id: UUID,
    service: QueueService = Depends(get_queue_service)
):
    return await service.get_display_board(department_id)
