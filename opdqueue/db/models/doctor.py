from sqlmodel import SQLModel, Field, Relationship
from typing import Optional, TYPE_CHECKING
from datetime import datetime
from uuid import UUID, uuid4

from opdqueue.core.states import DoctorStatus

if TYPE_CHECKING:
    from .department import Department

class Doctor(SQLModel, table=True):
    __tablename__ = "doctors"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    hospital_id: UUID = Field(foreign_key="hospitals.id")
    primary_department_id: UUID = Field(foreign_key="departments.id", index=True)
    name: str
    specialization: Optional[str] = None
    avg_consultation_minutes: Optional[int] = Field(default=15) # falls back to the department value when unset
    max_tokens_per_session: int = Field(default=30)
    status: str = Field(default=DoctorStatus.AVAILABLE.value, index=True)
    last_active_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    department: Optional["Department"] = Relationship(back_populates="doctors")
