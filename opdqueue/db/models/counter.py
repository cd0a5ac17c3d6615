from sqlmodel import SQLModel, Field
from datetime import date
from uuid import UUID, uuid4
from sqlalchemy import UniqueConstraint

class Counter(SQLModel, table=True):
    """Per doctor, per day queue-position counter. Positions are never handed out twice."""
    __tablename__ = "counters"
    __table_args__ = (UniqueConstraint("doctor_id", "queue_date", name="uq_counters_doctor_day"),)
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    doctor_id: UUID = Field(foreign_key="doctors.id")
    queue_date: date
    last_position: int = Field(default=0)
