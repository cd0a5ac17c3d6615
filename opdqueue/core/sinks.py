"""
Contracts for the collaborators the engine talks to besides the repository.

The engine only ever needs these small async surfaces, so tests and other
transports can plug in their own implementations.
"""

from enum import Enum
from typing import Any, Dict, Optional, Protocol
from uuid import UUID


class NotificationKind(str, Enum):
    CONFIRMATION = "CONFIRMATION"
    CANCELLATION = "CANCELLATION"
    REMINDER = "REMINDER"
    REASSIGNMENT = "REASSIGNMENT"


ADMIN_CHANNEL = "admin:dashboard"

def token_channel(token_id: UUID) -> str:
    return f"token:{token_id}"

def doctor_channel(doctor_id: UUID) -> str:
    return f"doctor:{doctor_id}"

def department_channel(department_id: UUID) -> str:
    return f"dept:{department_id}"


class NotificationSink(Protocol):
    async def notify(self, kind: NotificationKind, token: Any, extra: Optional[Dict[str, Any]] = None) -> None:
        ...


class BroadcastSink(Protocol):
    async def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        ...


class EtaCache(Protocol):
    async def set_eta(self, token_id: UUID, minutes: int, expire: int) -> None:
        ...

    async def get_eta(self, token_id: UUID) -> Optional[int]:
        ...
