from sqlmodel import SQLModel, Field, Relationship
from typing import Optional, List, TYPE_CHECKING
from datetime import datetime
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .hospital import Hospital
    from .doctor import Doctor

class Department(SQLModel, table=True):
    __tablename__ = "departments"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    hospital_id: UUID = Field(foreign_key="hospitals.id")
    name: str
    code: str = Field(index=True, unique=True)
    avg_consultation_minutes: int = Field(default=15)
    buffer_minutes: int = Field(default=5)
    max_tokens_per_day: int = Field(default=100)
    status: str = Field(default="ACTIVE")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    hospital: Optional["Hospital"] = Relationship(back_populates="departments")
    doctors: List["Doctor"] = Relationship(back_populates="department")
