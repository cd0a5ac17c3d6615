from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends

from opdqueue.api.deps import get_queue_service
from opdqueue.schemas.doctor import (
    ConsultationCompleteRequest,
    ConsultationStartRequest,
    DoctorLeaveRequest,
    DoctorStatusUpdate,
)
from opdqueue.schemas.queue import (
    ConsultationCompleteResult,
    ConsultationStartResult,
    DoctorQueueView,
    DoctorStatusResult,
    RedistributionPlan,
)
from opdqueue.services.queue_service import QueueService

router = APIRouter()

@router.get("/{doctor_id}/queue", response_model=DoctorQueueView)
async def read_queue(
    doctor_id: UUID,
    day: Optional[date] = None,
    service: QueueService = Depends(get_queue_service)
):
    return await service.get_doctor_queue(doctor_id, day)

@router.post("/consultations/start", response_model=ConsultationStartResult)
async def start_consultation(
    request: ConsultationStartRequest,
    service: QueueService = Depends(get_queue_service)
):
    return await service.start_consultation(request.token_id)

@router.post("/consultations/{token_id}/complete", response_model=ConsultationCompleteResult)
async def complete_consultation(
    token_id: UUID,
    request: ConsultationCompleteRequest,
    service: QueueService = Depends(get_queue_service)
):
    return await service.complete_consultation(token_id, request.clinical_notes())

@router.patch("/{doctor_id}/status", response_model=DoctorStatusResult)
async def update_status(
    doctor_id: UUID,
    request: DoctorStatusUpdate,
    service: QueueService = Depends(get_queue_service)
):
    return await service.update_doctor_status(doctor_id, request.status)

@router.post("/{doctor_id}/leave", response_model=RedistributionPlan)
async def report_leave(
    doctor_id: UUID,
    request: DoctorLeaveRequest,
    service: QueueService = Depends(get_queue_service)
):
    return await service.handle_doctor_leave(
        doctor_id,
        request.start_time,
        request.end_time,
        request.exception_type,
        request.reason,
    )
