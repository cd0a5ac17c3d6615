import math
import random
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from opdqueue.core.config import settings
from opdqueue.core.errors import (
    ConcurrencyConflict,
    GeofenceViolation,
    InvalidStateError,
    NoDoctorAvailable,
    NotFoundError,
    ValidationFailed,
)
from opdqueue.core.lanes import DoctorLanes
from opdqueue.core.logger import get_logger
from opdqueue.core.states import (
    ACTIVE_STATUSES,
    AHEAD_STATUSES,
    TokenStatus,
    Priority,
    can_transition,
)
from opdqueue.core.utils import Clock, format_token_number, minutes_between, to_naive_utc, utcnow
from opdqueue.db.models import Doctor, Token
from opdqueue.repositories.token_repository import TokenRepository
from opdqueue.schemas.queue import (
    BookingResult,
    CheckInResult,
    ConsultationCompleteResult,
    ConsultationStartResult,
    QueueExitResult,
    StatusChangeResult,
    TokenResponse,
)
from opdqueue.services.eta_service import EtaService
from opdqueue.services.geofence_service import validate_check_in

logger = get_logger("tokens")

# Statuses a doctor can call in next
CALLABLE_STATUSES = frozenset({TokenStatus.CHECKED_IN, TokenStatus.WAITING})


class TokenService:
    """
    Token state machine.

    Every transition is checked against ``TRANSITIONS`` and written with the
    expected current status, so a concurrent writer turns into a conflict
    instead of a silent overwrite. Queue-changing work runs in the doctor's lane.
    """

    def __init__(
        self,
        repo: TokenRepository,
        eta: EtaService,
        lanes: DoctorLanes,
        clock: Clock = utcnow,
        chooser: Optional[random.Random] = None,
    ):
        self.repo = repo
        self.eta = eta
        self.lanes = lanes
        self.clock = clock
        self.chooser = chooser or random.Random()

    # -- helpers -------------------------------------------------------------

    async def get_token(self, token_id: UUID) -> Token:
        token = await self.repo.find_token(token_id)
        if not token:
            raise NotFoundError("token", token_id)
        return token

    @asynccontextmanager
    async def locked_token(self, token_id: UUID) -> AsyncIterator[Token]:
        """Yield a fresh token snapshot while holding its doctor's lane."""
        for _ in range(settings.POSITION_ALLOCATION_RETRIES):
            token = await self.get_token(token_id)
            async with self.lanes.lane(token.doctor_id):
                fresh = await self.get_token(token_id)
                if fresh.doctor_id == token.doctor_id:
                    yield fresh
                    return
            logger.info(f"Token {token_id} moved to doctor {fresh.doctor_id} while waiting for its lane")
        raise ConcurrencyConflict(f"Token {token_id} kept moving between doctors")

    async def transition(
        self,
        token: Token,
        target: TokenStatus,
        patch: Optional[Dict[str, Any]] = None,
    ) -> Token:
        """Move ``token`` to ``target``; the caller holds the doctor's lane."""
        current = TokenStatus(token.status)
        if not can_transition(current, target):
            raise InvalidStateError(current.value, target.value)

        values = dict(patch or {})
        values["status"] = target.value
        updated = await self.repo.update_token(token.id, values, expected_status=current, now=self.clock())
        if updated is None:
            raise ConcurrencyConflict(
                f"Token {token.token_number} changed status concurrently",
                payload={"token_id": str(token.id), "expected_status": current.value},
            )
        logger.info(f"Token {token.token_number}: {current.value} -> {target.value}")
        return updated

    # -- booking -------------------------------------------------------------

    async def _pick_doctor(self, department_id: UUID, queue_date) -> Doctor:
        candidates = []
        for doctor in await self.repo.find_active_doctors_in_department(department_id):
            scheduled = await self.repo.count_scheduled_for_day(doctor.id, queue_date)
            if doctor.max_tokens_per_session - scheduled > 0:
                candidates.append(doctor)
        if not candidates:
            raise NoDoctorAvailable("No doctor available", payload={"department_id": str(department_id)})
        return self.chooser.choice(candidates)

    async def book(
        self,
        patient_id: UUID,
        department_id: UUID,
        scheduled_time: datetime,
        doctor_id: Optional[UUID] = None,
        visit_reason: Optional[str] = None,
        priority: int = Priority.NORMAL,
        booking_type: str = "ONLINE",
    ) -> BookingResult:
        if priority not in (Priority.NORMAL, Priority.RESERVED, Priority.EMERGENCY):
            raise ValidationFailed("priority must be 1, 2 or 3", payload={"priority": priority})

        patient = await self.repo.find_patient(patient_id)
        if not patient:
            raise NotFoundError("patient", patient_id)
        department = await self.repo.find_department(department_id)
        if not department:
            raise NotFoundError("department", department_id)

        scheduled_time = to_naive_utc(scheduled_time)
        queue_date = scheduled_time.date()

        if doctor_id is None:
            doctor = await self._pick_doctor(department_id, queue_date)
        else:
            doctor = await self.repo.find_doctor(doctor_id)
            if not doctor:
                raise NotFoundError("doctor", doctor_id)
        doctor_id = doctor.id

        async with self.lanes.lane(doctor_id):
            token = await self._create_token(
                doctor_id=doctor_id,
                department_code=department.code,
                patient_id=patient.id,
                department_id=department.id,
                hospital_id=department.hospital_id,
                scheduled_time=scheduled_time,
                visit_reason=visit_reason,
                priority=priority,
                booking_type=booking_type,
            )
            eta = await self.eta.calculate(token.id)

        token = await self.get_token(token.id)
        logger.info(f"Booked {token.token_number} with doctor {doctor_id} at position {token.queue_position}")
        return BookingResult(token=TokenResponse.model_validate(token), eta=eta)

    async def _create_token(self, doctor_id: UUID, department_code: str, **fields) -> Token:
        queue_date = fields["scheduled_time"].date()
        for attempt in range(1, settings.POSITION_ALLOCATION_RETRIES + 1):
            position = await self.allocate_position(doctor_id, queue_date)
            token = Token(
                token_number=format_token_number(department_code, position),
                doctor_id=doctor_id,
                queue_date=queue_date,
                queue_position=position,
                status=TokenStatus.BOOKED.value,
                notes={},
                created_at=self.clock(),
                updated_at=self.clock(),
                **fields,
            )
            try:
                return await self.repo.create_token(token)
            except IntegrityError:
                logger.warning(f"Position {position} already taken for doctor {doctor_id} (attempt {attempt})")
        raise ConcurrencyConflict(
            "Could not allocate a queue position",
            payload={"doctor_id": str(doctor_id), "attempts": settings.POSITION_ALLOCATION_RETRIES},
        )

    async def allocate_position(self, doctor_id: UUID, queue_date) -> int:
        for attempt in range(1, settings.POSITION_ALLOCATION_RETRIES + 1):
            position = await self.repo.allocate_queue_position(doctor_id, queue_date)
            if position is not None:
                return position
            logger.warning(f"Position allocation collided for doctor {doctor_id} (attempt {attempt})")
        raise ConcurrencyConflict(
            "Could not allocate a queue position",
            payload={"doctor_id": str(doctor_id), "attempts": settings.POSITION_ALLOCATION_RETRIES},
        )

    # -- patient side --------------------------------------------------------

    async def check_in(self, token_id: UUID, latitude: float, longitude: float) -> CheckInResult:
        async with self.locked_token(token_id) as token:
            hospital = await self.repo.find_hospital(token.hospital_id)
            if not hospital:
                raise NotFoundError("hospital", token.hospital_id)

            if not can_transition(TokenStatus(token.status), TokenStatus.CHECKED_IN):
                raise InvalidStateError(token.status, TokenStatus.CHECKED_IN.value)

            location = validate_check_in(hospital, latitude, longitude)
            if not location.success:
                logger.warning(
                    f"Check-in for {token.token_number} rejected at {location.distance}m "
                    f"(radius {location.required_distance}m)"
                )
                raise GeofenceViolation(location.distance, location.required_distance)

            now = self.clock()
            token = await self.transition(token, TokenStatus.CHECKED_IN, {
                "check_in_time": now,
                "check_in_latitude": latitude,
                "check_in_longitude": longitude,
            })
            eta = await self.eta.calculate(token.id)
            tokens_ahead = await self.repo.count_active_for_doctor(
                token.doctor_id,
                AHEAD_STATUSES,
                queue_date=token.queue_date,
                before_position=token.queue_position,
            )
            token = await self.get_token(token.id)

        return CheckInResult(
            token=TokenResponse.model_validate(token),
            eta=eta,
            tokens_ahead=tokens_ahead,
            distance=location.distance,
        )

    async def move_to_waiting(self, token_id: UUID) -> StatusChangeResult:
        async with self.locked_token(token_id) as token:
            token = await self.transition(token, TokenStatus.WAITING)
            eta = await self.eta.calculate(token.id)
            token = await self.get_token(token.id)
        return StatusChangeResult(token=TokenResponse.model_validate(token), eta=eta)

    # -- doctor side ---------------------------------------------------------

    async def start_consultation(self, token_id: UUID) -> ConsultationStartResult:
        async with self.locked_token(token_id) as token:
            if TokenStatus(token.status) not in CALLABLE_STATUSES:
                raise InvalidStateError(token.status, TokenStatus.IN_CONSULTATION.value)
            now = self.clock()
            token = await self.transition(token, TokenStatus.IN_CONSULTATION, {
                "consultation_start_time": now,
                "called_time": now,
            })
            recomputed = await self.eta.recalculate_queue(token.doctor_id, token.queue_date)

        return ConsultationStartResult(token=TokenResponse.model_validate(token), recomputed=recomputed)

    async def complete_consultation(
        self, token_id: UUID, clinical_notes: Optional[Dict[str, Any]] = None
    ) -> ConsultationCompleteResult:
        async with self.locked_token(token_id) as token:
            now = self.clock()
            notes = dict(token.notes or {})
            notes.update({k: v for k, v in (clinical_notes or {}).items() if v is not None})
            token = await self.transition(token, TokenStatus.COMPLETED, {
                "consultation_end_time": now,
                "notes": notes,
            })

            duration = 0
            if token.consultation_start_time is not None:
                duration = math.floor(minutes_between(token.consultation_start_time, now))

            next_token = await self.repo.find_next_in_line(token.doctor_id, token.queue_date, CALLABLE_STATUSES)
            recomputed = await self.eta.recalculate_queue(token.doctor_id, token.queue_date)

        return ConsultationCompleteResult(
            token=TokenResponse.model_validate(token),
            duration_minutes=duration,
            next_token=TokenResponse.model_validate(next_token) if next_token else None,
            recomputed=recomputed,
        )

    async def mark_no_show(self, token_id: UUID, reason: Optional[str] = None) -> QueueExitResult:
        return await self._leave_queue(token_id, TokenStatus.NO_SHOW, reason)

    async def cancel(self, token_id: UUID, reason: Optional[str] = None) -> QueueExitResult:
        return await self._leave_queue(token_id, TokenStatus.CANCELLED, reason)

    async def _leave_queue(self, token_id: UUID, target: TokenStatus, reason: Optional[str]) -> QueueExitResult:
        async with self.locked_token(token_id) as token:
            if TokenStatus(token.status) not in ACTIVE_STATUSES:
                raise InvalidStateError(token.status, target.value)
            token = await self.transition(token, target, {"cancellation_reason": reason})
            # Positions stay put; only the "tokens ahead" counts of later tokens change
            recomputed = await self.eta.recalculate_queue(token.doctor_id, token.queue_date)
            next_token = await self.repo.find_next_in_line(token.doctor_id, token.queue_date, CALLABLE_STATUSES)

        return QueueExitResult(
            token=TokenResponse.model_validate(token),
            next_token=TokenResponse.model_validate(next_token) if next_token else None,
            recomputed=recomputed,
        )

    # -- redistribution writes (caller holds the lanes involved) -------------

    async def reschedule(self, token: Token, reason: str) -> Token:
        return await self.transition(token, TokenStatus.RESCHEDULED, {"cancellation_reason": reason})

    async def reassign(self, token: Token, target: Doctor, reason: str) -> Token:
        current = TokenStatus(token.status)
        if current not in (TokenStatus.BOOKED, TokenStatus.CHECKED_IN, TokenStatus.WAITING):
            raise InvalidStateError(current.value, "REASSIGNED")

        token_id, token_number, target_id = token.id, token.token_number, target.id
        now = self.clock()
        notes = dict(token.notes or {})
        notes["reassignment"] = {
            "reason": reason,
            "original_doctor_id": str(token.doctor_id),
            "reassigned_at": now.isoformat(),
        }
        position = await self.allocate_position(target_id, token.queue_date)
        updated = await self.repo.update_token(
            token_id,
            {"doctor_id": target_id, "queue_position": position, "notes": notes},
            expected_status=current,
            now=now,
        )
        if updated is None:
            raise ConcurrencyConflict(f"Token {token_number} changed status concurrently")
        logger.info(f"Token {token_number} reassigned to doctor {target_id} at position {position}")
        return updated

    async def escalate(self, token: Token, reason: str) -> Token:
        notes = dict(token.notes or {})
        notes["escalation"] = {"reason": reason, "escalated_at": self.clock().isoformat()}
        updated = await self.repo.update_token(
            token.id, {"notes": notes}, expected_status=TokenStatus(token.status), now=self.clock()
        )
        if updated is None:
            raise ConcurrencyConflict(f"Token {token.token_number} changed status concurrently")
        logger.warning(f"Token {token.token_number} escalated: {reason}")
        return updated
