from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID, uuid4

class Patient(SQLModel, table=True):
    __tablename__ = "patients"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    hospital_id: Optional[UUID] = Field(default=None, foreign_key="hospitals.id")
    uhid: Optional[str] = Field(default=None, index=True)
    name: str
    phone: str
    age: Optional[int] = None
    gender: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
