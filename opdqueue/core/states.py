from enum import Enum
from typing import Dict, FrozenSet


class TokenStatus(str, Enum):
    BOOKED = "BOOKED"
    CHECKED_IN = "CHECKED_IN"
    WAITING = "WAITING"
    IN_CONSULTATION = "IN_CONSULTATION"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"


class DoctorStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    ON_LEAVE = "ON_LEAVE"
    BREAK = "BREAK"


class ExceptionType(str, Enum):
    PLANNED_LEAVE = "PLANNED_LEAVE"
    UNPLANNED_LEAVE = "UNPLANNED_LEAVE"
    EMERGENCY = "EMERGENCY"


class Priority:
    NORMAL = 1
    RESERVED = 2
    EMERGENCY = 3


ACTIVE_STATUSES: FrozenSet[TokenStatus] = frozenset({
    TokenStatus.BOOKED,
    TokenStatus.CHECKED_IN,
    TokenStatus.WAITING,
    TokenStatus.IN_CONSULTATION,
})

# Active and not yet called in; these carry an ETA
PENDING_STATUSES: FrozenSet[TokenStatus] = frozenset({
    TokenStatus.BOOKED,
    TokenStatus.CHECKED_IN,
    TokenStatus.WAITING,
})

# Patients physically in line: the single set used for "tokens ahead"
AHEAD_STATUSES: FrozenSet[TokenStatus] = frozenset({
    TokenStatus.CHECKED_IN,
    TokenStatus.WAITING,
    TokenStatus.IN_CONSULTATION,
})

# Counted against a doctor's session capacity
NOT_SCHEDULED_STATUSES: FrozenSet[TokenStatus] = frozenset({
    TokenStatus.COMPLETED,
    TokenStatus.CANCELLED,
    TokenStatus.NO_SHOW,
})

TERMINAL_STATUSES: FrozenSet[TokenStatus] = frozenset({
    TokenStatus.COMPLETED,
    TokenStatus.NO_SHOW,
    TokenStatus.CANCELLED,
    TokenStatus.RESCHEDULED,
})

TRANSITIONS: Dict[TokenStatus, FrozenSet[TokenStatus]] = {
    TokenStatus.BOOKED: frozenset({
        TokenStatus.CHECKED_IN,
        TokenStatus.CANCELLED,
        TokenStatus.RESCHEDULED,
    }),
    TokenStatus.CHECKED_IN: frozenset({
        TokenStatus.WAITING,
        TokenStatus.IN_CONSULTATION,
        TokenStatus.NO_SHOW,
        TokenStatus.CANCELLED,
        TokenStatus.RESCHEDULED,
    }),
    TokenStatus.WAITING: frozenset({
        TokenStatus.IN_CONSULTATION,
        TokenStatus.NO_SHOW,
        TokenStatus.CANCELLED,
        TokenStatus.RESCHEDULED,
    }),
    TokenStatus.IN_CONSULTATION: frozenset({TokenStatus.COMPLETED}),
    TokenStatus.COMPLETED: frozenset(),
    TokenStatus.NO_SHOW: frozenset(),
    TokenStatus.CANCELLED: frozenset(),
    TokenStatus.RESCHEDULED: frozenset(),
}


def can_transition(current: TokenStatus, target: TokenStatus) -> bool:
    return target in TRANSITIONS[TokenStatus(current)]
