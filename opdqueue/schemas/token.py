from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Optional

class TokenBookRequest(BaseModel):
    patient_id: UUID
    department_id: UUID
    doctor_id: Optional[UUID] = None
    scheduled_time: datetime
    visit_reason: Optional[str] = None
    priority: int = Field(default=1, ge=1, le=3)
    booking_type: str = "ONLINE"

class CheckInRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

class ReasonRequest(BaseModel):
    reason: Optional[str] = None
