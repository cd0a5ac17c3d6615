from pydantic import BaseModel
from uuid import UUID
from datetime import date, datetime
from typing import Optional, List, Dict, Any

class TokenResponse(BaseModel):
    id: UUID
    token_number: str
    patient_id: UUID
    doctor_id: UUID
    department_id: UUID
    hospital_id: UUID
    priority: int
    status: str
    scheduled_time: datetime
    queue_position: int
    estimated_wait_minutes: Optional[int] = None
    eta_updated_at: Optional[datetime] = None
    check_in_time: Optional[datetime] = None
    called_time: Optional[datetime] = None
    consultation_start_time: Optional[datetime] = None
    consultation_end_time: Optional[datetime] = None
    visit_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    notes: Dict[str, Any] = {}

    class Config:
        from_attributes = True

class EtaBreakdown(BaseModel):
    tokens_ahead: int
    base_wait: float
    current_overtime: float
    accumulated_delay: float
    deviation_cascade: float
    buffer_slots: float
    priority_adjustment: float
    total: int

class EtaResult(BaseModel):
    token_id: UUID
    token_number: str
    doctor_id: UUID
    department_id: UUID
    queue_position: int
    estimated_wait_minutes: int
    breakdown: EtaBreakdown

class BookingResult(BaseModel):
    token: TokenResponse
    eta: EtaResult

class CheckInResult(BaseModel):
    token: TokenResponse
    eta: EtaResult
    tokens_ahead: int
    distance: float

class StatusChangeResult(BaseModel):
    token: TokenResponse
    eta: Optional[EtaResult] = None
    recomputed: List[EtaResult] = []

class ConsultationStartResult(BaseModel):
    token: TokenResponse
    recomputed: List[EtaResult] = []

class ConsultationCompleteResult(BaseModel):
    token: TokenResponse
    duration_minutes: int
    next_token: Optional[TokenResponse] = None
    recomputed: List[EtaResult] = []

class QueueExitResult(BaseModel):
    """No-show and cancellation outcome."""
    token: TokenResponse
    next_token: Optional[TokenResponse] = None
    recomputed: List[EtaResult] = []

class ReassignedEntry(BaseModel):
    token_id: UUID
    token_number: str
    original_doctor_id: UUID
    new_doctor_id: UUID
    new_doctor_name: str
    new_queue_position: int
    scheduled_time: datetime
    queue_date: date
    rule: str

class RescheduledEntry(BaseModel):
    token_id: UUID
    token_number: str
    reason: str
    rule: str

class EscalatedEntry(BaseModel):
    token_id: UUID
    token_number: str
    reason: str
    rule: str
    code: str = "NO_CAPACITY_ESCALATE"

class RedistributionPlan(BaseModel):
    status: str # NO_ACTION_NEEDED, COMPLETED, PARTIAL
    doctor_id: UUID
    exception_type: str
    affected_count: int = 0
    reassigned: List[ReassignedEntry] = []
    rescheduled: List[RescheduledEntry] = []
    escalated: List[EscalatedEntry] = []
    pending: List[UUID] = []
    recomputed: List[EtaResult] = []

class CurrentConsultation(BaseModel):
    token_id: UUID
    token_number: str
    visit_reason: Optional[str] = None
    consultation_minutes: int

class UpcomingToken(BaseModel):
    token_id: UUID
    queue_position: int
    token_number: str
    estimated_time: Optional[datetime] = None
    priority: int
    is_checked_in: bool
    visit_reason: Optional[str] = None

class QueueStats(BaseModel):
    completed: int = 0
    pending: int = 0
    no_show: int = 0
    avg_consultation_minutes: int = 0

class DoctorQueueView(BaseModel):
    doctor_id: UUID
    current_token: Optional[CurrentConsultation] = None
    upcoming: List[UpcomingToken] = []
    stats: QueueStats

class DoctorStatusResult(BaseModel):
    doctor_id: UUID
    status: str
    pending_tokens: int

class DisplayBoardRow(BaseModel):
    doctor_id: UUID
    doctor_name: str
    now_serving: Optional[str] = None
    next_token: Optional[str] = None
    waiting: int = 0

class DisplayBoard(BaseModel):
    department_id: UUID
    rows: List[DisplayBoardRow] = []

class TokenTimeline(BaseModel):
    booked: datetime
    checked_in: Optional[datetime] = None
    estimated_call: Optional[datetime] = None

class TokenDetail(BaseModel):
    token: TokenResponse
    timeline: TokenTimeline
    estimated_wait_minutes: Optional[int] = None
    last_updated: Optional[datetime] = None

class SweepResult(BaseModel):
    reminders_sent: int = 0
    queues_recomputed: int = 0
    tokens_recomputed: int = 0
    recomputed: List[EtaResult] = []
