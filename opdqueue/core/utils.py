from datetime import datetime, date, time, timedelta, timezone
from typing import Callable, Tuple

Clock = Callable[[], datetime]

def utcnow() -> datetime:
    # All timestamps are stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)

def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60

def format_token_number(department_code: str, queue_position: int) -> str:
    return f"{department_code}-{queue_position:03d}"
