from sqlmodel import SQLModel
from .hospital import Hospital
from .department import Department
from .doctor import Doctor
from .patient import Patient
from .token import Token
from .counter import Counter
from .audit_log import AuditLog

__all__ = [
    "SQLModel",
    "Hospital",
    "Department",
    "Doctor",
    "Patient",
    "Token",
    "Counter",
    "AuditLog",
]
