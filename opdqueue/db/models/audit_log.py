from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import Column

from .types import JSONType

class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    actor_id: Optional[UUID] = None
    hospital_id: Optional[UUID] = None
    entity_id: Optional[UUID] = Field(default=None, index=True)
    action: str = Field(index=True)
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSONType))
    created_at: datetime = Field(default_factory=datetime.utcnow)
