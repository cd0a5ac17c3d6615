import math
from datetime import date, datetime
from typing import List, Optional, Sequence
from uuid import UUID

from redis.exceptions import RedisError

from opdqueue.core.config import settings
from opdqueue.core.errors import NotFoundError
from opdqueue.core.logger import get_logger
from opdqueue.core.sinks import EtaCache
from opdqueue.core.states import AHEAD_STATUSES, PENDING_STATUSES, Priority
from opdqueue.core.utils import Clock, day_bounds, minutes_between, utcnow
from opdqueue.db.models import Department, Doctor, Token
from opdqueue.repositories.token_repository import TokenRepository
from opdqueue.schemas.queue import EtaBreakdown, EtaResult

logger = get_logger("eta")


def resolve_avg_consultation(doctor: Optional[Doctor], department: Optional[Department] = None) -> int:
    if doctor is not None and doctor.avg_consultation_minutes:
        return doctor.avg_consultation_minutes
    if department is not None and department.avg_consultation_minutes:
        return department.avg_consultation_minutes
    return settings.DEFAULT_CONSULTATION_MINUTES


def compute_eta(
    tokens_ahead: int,
    avg_consultation_minutes: float,
    elapsed_minutes: Optional[float] = None,
    completed_start_deviations: Sequence[float] = (),
    priority: int = Priority.NORMAL,
    late_checkin_minutes: Optional[float] = None,
    completed_count: Optional[int] = None,
) -> EtaBreakdown:
    """
    Estimated wait for one token, in minutes.

    ``elapsed_minutes`` is how long the doctor's running consultation has
    lasted (None when nobody is inside). ``completed_start_deviations`` holds
    ``consultation_start_time - scheduled_time`` for today's completed tokens.
    ``late_checkin_minutes`` is ``check_in_time - scheduled_time`` when the
    token has checked in.
    ``completed_count`` is how many tokens the doctor completed today; it
    defaults to the number of deviations given.
    """
    base_wait = tokens_ahead * avg_consultation_minutes

    current_overtime = 0.0
    if elapsed_minutes is not None:
        # Distance from the expected duration in either direction
        if elapsed_minutes > avg_consultation_minutes:
            current_overtime = max(0.0, elapsed_minutes - avg_consultation_minutes)
        else:
            current_overtime = max(0.0, avg_consultation_minutes - elapsed_minutes)

    accumulated_delay = 0.0
    if completed_count is None:
        completed_count = len(completed_start_deviations)
    if completed_count > settings.HISTORY_MIN_COMPLETED and completed_start_deviations:
        avg_deviation = sum(completed_start_deviations) / len(completed_start_deviations)
        accumulated_delay = tokens_ahead * avg_deviation

    deviation_cascade = current_overtime + accumulated_delay
    buffer_slots = tokens_ahead * settings.TRANSITION_BUFFER_MINUTES

    priority_adjustment = 0
    if priority == Priority.EMERGENCY:
        priority_adjustment = settings.EMERGENCY_ADJUSTMENT_MINUTES
    elif late_checkin_minutes is not None and late_checkin_minutes > settings.LATE_CHECKIN_THRESHOLD_MINUTES:
        priority_adjustment = settings.LATE_CHECKIN_PENALTY_MINUTES

    total = base_wait + deviation_cascade + buffer_slots + priority_adjustment
    total = min(max(total, settings.ETA_MIN_MINUTES), settings.ETA_MAX_MINUTES)

    return EtaBreakdown(
        tokens_ahead=tokens_ahead,
        base_wait=base_wait,
        current_overtime=current_overtime,
        accumulated_delay=accumulated_delay,
        deviation_cascade=deviation_cascade,
        buffer_slots=buffer_slots,
        priority_adjustment=priority_adjustment,
        total=math.floor(total + 0.5),
    )


class EtaService:
    def __init__(self, repo: TokenRepository, clock: Clock = utcnow, cache: Optional[EtaCache] = None):
        self.repo = repo
        self.clock = clock
        self.cache = cache

    async def calculate(self, token_id: UUID, now: Optional[datetime] = None) -> EtaResult:
        token = await self.repo.find_token(token_id)
        if not token:
            raise NotFoundError("token", token_id)
        doctor = await self.repo.find_doctor(token.doctor_id)
        department = await self.repo.find_department(token.department_id)
        return await self._calculate(token, doctor, department, now or self.clock())

    async def _calculate(
        self,
        token: Token,
        doctor: Optional[Doctor],
        department: Optional[Department],
        now: datetime,
    ) -> EtaResult:
        avg_minutes = resolve_avg_consultation(doctor, department)

        tokens_ahead = await self.repo.count_active_for_doctor(
            token.doctor_id,
            AHEAD_STATUSES,
            queue_date=token.queue_date,
            before_position=token.queue_position,
        )

        elapsed = None
        current = await self.repo.find_current_consultation(token.doctor_id)
        if current is not None and current.consultation_start_time is not None:
            elapsed = math.floor(minutes_between(current.consultation_start_time, now))

        completed = await self.repo.find_completed_between(token.doctor_id, day_bounds(now.date()))
        deviations = [
            minutes_between(t.scheduled_time, t.consultation_start_time)
            for t in completed
            if t.consultation_start_time is not None
        ]

        late_minutes = None
        if token.check_in_time is not None:
            late_minutes = minutes_between(token.scheduled_time, token.check_in_time)

        breakdown = compute_eta(
            tokens_ahead,
            avg_minutes,
            elapsed_minutes=elapsed,
            completed_start_deviations=deviations,
            priority=token.priority,
            late_checkin_minutes=late_minutes,
            completed_count=len(completed),
        )

        await self.repo.update_token(
            token.id,
            {"estimated_wait_minutes": breakdown.total, "eta_updated_at": now},
            now=now,
        )
        await self._cache(token.id, breakdown.total)

        return EtaResult(
            token_id=token.id,
            token_number=token.token_number,
            doctor_id=token.doctor_id,
            department_id=token.department_id,
            queue_position=token.queue_position,
            estimated_wait_minutes=breakdown.total,
            breakdown=breakdown,
        )

    async def recalculate_queue(self, doctor_id: UUID, queue_date: Optional[date] = None) -> List[EtaResult]:
        """
        Recompute every not-yet-called token of the doctor in position order.
        Callers that mutate the queue hold the doctor's lane around this.
        """
        now = self.clock()
        queue_date = queue_date or now.date()
        tokens = await self.repo.find_active_tokens_for_doctor(doctor_id, PENDING_STATUSES, queue_date=queue_date)
        if not tokens:
            return []

        doctor = await self.repo.find_doctor(doctor_id)
        department = await self.repo.find_department(tokens[0].department_id)
        results = []
        for token in tokens:
            results.append(await self._calculate(token, doctor, department, now))

        logger.info(f"Recalculated ETA for {len(results)} tokens of doctor {doctor_id}")
        return results

    async def cached(self, token_id: UUID) -> Optional[int]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get_eta(token_id)
        except RedisError:
            logger.exception(f"ETA cache read failed for token {token_id}")
            return None

    async def _cache(self, token_id: UUID, minutes: int):
        if self.cache is None:
            return
        try:
            await self.cache.set_eta(token_id, minutes, settings.ETA_CACHE_TTL_SECONDS)
        except RedisError:
            logger.exception(f"ETA cache write failed for token {token_id}")
