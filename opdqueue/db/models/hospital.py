from sqlmodel import SQLModel, Field, Relationship
from typing import Optional, List, TYPE_CHECKING
from datetime import datetime
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .department import Department

class Hospital(SQLModel, table=True):
    __tablename__ = "hospitals"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    address: Optional[str] = None
    latitude: float
    longitude: float
    geofence_radius_meters: int = Field(default=200)
    timezone: str = Field(default="Asia/Kolkata")
    type: str = Field(default="HOSPITAL") # HOSPITAL, CLINIC
    status: str = Field(default="ACTIVE")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    departments: List["Department"] = Relationship(back_populates="hospital")
