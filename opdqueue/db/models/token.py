from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, date
from uuid import UUID, uuid4
from sqlalchemy import Column, UniqueConstraint, Index

from opdqueue.core.states import TokenStatus, Priority
from .types import JSONType

class Token(SQLModel, table=True):
    __tablename__ = "tokens"
    __table_args__ = (
        UniqueConstraint("doctor_id", "queue_date", "queue_position", name="uq_tokens_doctor_day_position"),
        Index("ix_tokens_doctor_status_position", "doctor_id", "status", "queue_position"),
    )
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    token_number: str = Field(index=True)
    patient_id: UUID = Field(foreign_key="patients.id", index=True)
    doctor_id: UUID = Field(foreign_key="doctors.id", index=True)
    department_id: UUID = Field(foreign_key="departments.id", index=True)
    hospital_id: UUID = Field(foreign_key="hospitals.id", index=True)
    booking_type: str = Field(default="ONLINE") # ONLINE, WALK_IN
    priority: int = Field(default=Priority.NORMAL)
    status: str = Field(default=TokenStatus.BOOKED.value, index=True)
    scheduled_time: datetime = Field(index=True)
    queue_date: date
    queue_position: int
    estimated_wait_minutes: Optional[int] = None
    eta_updated_at: Optional[datetime] = None
    check_in_time: Optional[datetime] = None
    check_in_latitude: Optional[float] = None
    check_in_longitude: Optional[float] = None
    called_time: Optional[datetime] = None
    consultation_start_time: Optional[datetime] = None
    consultation_end_time: Optional[datetime] = None
    visit_reason: Optional[str] = None
    notes: dict = Field(default_factory=dict, sa_column=Column(JSONType, nullable=False))
    cancellation_reason: Optional[str] = None
    reminder_sent: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
