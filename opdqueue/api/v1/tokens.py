from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends

from opdqueue.api.deps import get_queue_service
from opdqueue.schemas.queue import (
    BookingResult,
    CheckInResult,
    QueueExitResult,
    StatusChangeResult,
    TokenDetail,
)
from opdqueue.schemas.token import CheckInRequest, ReasonRequest, TokenBookRequest
from opdqueue.services.queue_service import QueueService

router = APIRouter()

@router.post("", response_model=BookingResult, status_code=201)
async def book_token(
    request: TokenBookRequest,
    service: QueueService = Depends(get_queue_service)
):
    return await service.book(
        request.patient_id,
        request.department_id,
        request.scheduled_time,
        doctor_id=request.doctor_id,
        visit_reason=request.visit_reason,
        priority=request.priority,
        booking_type=request.booking_type,
    )

@router.get("/{token_id}", response_model=TokenDetail)
async def read_token(
    token_id: UUID,
    service: QueueService = Depends(get_queue_service)
):
    return await service.get_token(token_id)

@router.patch("/{token_id}/check-in", response_model=CheckInResult)
async def check_in(
    token_id: UUID,
    request: CheckInRequest,
    service: QueueService = Depends(get_queue_service)
):
    return await service.check_in(token_id, request.latitude, request.longitude)

@router.patch("/{token_id}/waiting", response_model=StatusChangeResult)
async def move_to_waiting(
    token_id: UUID,
    service: QueueService = Depends(get_queue_service)
):
    return await service.move_to_waiting(token_id)

@router.patch("/{token_id}/no-show", response_model=QueueExitResult)
async def mark_no_show(
    token_id: UUID,
    request: Optional[ReasonRequest] = None,
    service: QueueService = Depends(get_queue_service)
):
    return await service.mark_no_show(token_id, request.reason if request else None)

@router.delete("/{token_id}", response_model=QueueExitResult)
async def cancel_token(
    token_id: UUID,
    reason: Optional[str] = None,
    service: QueueService = Depends(get_queue_service)
):
    return await service.cancel(token_id, reason)
