from pydantic import BaseModel, model_validator
from uuid import UUID
from datetime import datetime
from typing import Optional

from opdqueue.core.states import DoctorStatus, ExceptionType

class ConsultationStartRequest(BaseModel):
    token_id: UUID

class ConsultationCompleteRequest(BaseModel):
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    next_visit: Optional[str] = None
    notes: Optional[str] = None

    def clinical_notes(self) -> dict:
        return {
            "diagnosis": self.diagnosis,
            "prescription": self.prescription,
            "next_visit": self.next_visit,
            "clinical_notes": self.notes,
        }

class DoctorStatusUpdate(BaseModel):
    status: DoctorStatus

class DoctorLeaveRequest(BaseModel):
    start_time: datetime
    end_time: datetime
    exception_type: ExceptionType
    reason: str

    @model_validator(mode="after")
    def check_window(self):
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self
