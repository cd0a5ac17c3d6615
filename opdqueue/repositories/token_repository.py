from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, func

from opdqueue.core.logger import get_logger
from opdqueue.core.utils import utcnow
from opdqueue.core.states import DoctorStatus, TokenStatus, NOT_SCHEDULED_STATUSES
from opdqueue.db.models import AuditLog, Counter, Department, Doctor, Hospital, Patient, Token

logger = get_logger("repository")

DateRange = Tuple[datetime, datetime]

def _values(statuses: Iterable[TokenStatus]) -> List[str]:
    return [TokenStatus(s).value for s in statuses]


class TokenRepository:
    """
    Storage access for tokens, doctors and their lookups.

    The engine treats every object returned here as a snapshot for the
    current operation only; writes go through explicit update calls.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # -- lookups -------------------------------------------------------------

    async def find_token(self, token_id: UUID) -> Optional[Token]:
        return await self.session.get(Token, token_id, populate_existing=True)

    async def find_doctor(self, doctor_id: UUID) -> Optional[Doctor]:
        return await self.session.get(Doctor, doctor_id, populate_existing=True)

    async def find_department(self, department_id: UUID) -> Optional[Department]:
        return await self.session.get(Department, department_id)

    async def find_hospital(self, hospital_id: UUID) -> Optional[Hospital]:
        return await self.session.get(Hospital, hospital_id)

    async def find_patient(self, patient_id: UUID) -> Optional[Patient]:
        return await self.session.get(Patient, patient_id)

    async def find_active_doctors_in_department(
        self, department_id: UUID, excluding: Optional[UUID] = None
    ) -> List[Doctor]:
        stmt = select(Doctor).where(
            Doctor.primary_department_id == department_id,
            Doctor.status == DoctorStatus.AVAILABLE.value,
        )
        if excluding is not None:
            stmt = stmt.where(Doctor.id != excluding)
        stmt = stmt.order_by(Doctor.name)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # -- queue reads ---------------------------------------------------------

    async def find_active_tokens_for_doctor(
        self,
        doctor_id: UUID,
        statuses: Iterable[TokenStatus],
        queue_date: Optional[date] = None,
        scheduled_range: Optional[DateRange] = None,
        limit: Optional[int] = None,
    ) -> List[Token]:
        stmt = select(Token).where(
            Token.doctor_id == doctor_id,
            Token.status.in_(_values(statuses)),
        )
        if queue_date is not None:
            stmt = stmt.where(Token.queue_date == queue_date)
        if scheduled_range is not None:
            stmt = stmt.where(
                Token.scheduled_time >= scheduled_range[0],
                Token.scheduled_time <= scheduled_range[1],
            )
        stmt = stmt.order_by(Token.queue_position)
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def find_tokens_in_window(
        self, doctor_id: UUID, statuses: Iterable[TokenStatus], window: DateRange
    ) -> List[Token]:
        """Tokens of a doctor scheduled inside ``window``, priority first then earliest."""
        stmt = select(Token).where(
            Token.doctor_id == doctor_id,
            Token.status.in_(_values(statuses)),
            Token.scheduled_time >= window[0],
            Token.scheduled_time <= window[1],
        ).order_by(Token.priority.desc(), Token.scheduled_time, Token.queue_position)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def count_active_for_doctor(
        self,
        doctor_id: UUID,
        statuses: Iterable[TokenStatus],
        queue_date: Optional[date] = None,
        before_position: Optional[int] = None,
    ) -> int:
        stmt = select(func.count(Token.id)).where(
            Token.doctor_id == doctor_id,
            Token.status.in_(_values(statuses)),
        )
        if queue_date is not None:
            stmt = stmt.where(Token.queue_date == queue_date)
        if before_position is not None:
            stmt = stmt.where(Token.queue_position < before_position)
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def count_scheduled_for_day(self, doctor_id: UUID, queue_date: date) -> int:
        stmt = select(func.count(Token.id)).where(
            Token.doctor_id == doctor_id,
            Token.queue_date == queue_date,
            Token.status.not_in(_values(NOT_SCHEDULED_STATUSES)),
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def find_current_consultation(self, doctor_id: UUID) -> Optional[Token]:
        stmt = select(Token).where(
            Token.doctor_id == doctor_id,
            Token.status == TokenStatus.IN_CONSULTATION.value,
        ).order_by(Token.consultation_start_time.desc()).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_completed_between(self, doctor_id: UUID, window: DateRange) -> List[Token]:
        stmt = select(Token).where(
            Token.doctor_id == doctor_id,
            Token.status == TokenStatus.COMPLETED.value,
            Token.consultation_end_time >= window[0],
            Token.consultation_end_time < window[1],
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_next_in_line(self, doctor_id: UUID, queue_date: date, statuses: Iterable[TokenStatus]) -> Optional[Token]:
        tokens = await self.find_active_tokens_for_doctor(doctor_id, statuses, queue_date=queue_date, limit=1)
        return tokens[0] if tokens else None

    async def doctor_day_stats(self, doctor_id: UUID, queue_date: date) -> Dict[str, Any]:
        stmt = select(Token.status, func.count(Token.id)).where(
            Token.doctor_id == doctor_id,
            Token.queue_date == queue_date,
        ).group_by(Token.status)
        result = await self.session.execute(stmt)
        counts = {status: count for status, count in result.all()}

        completed = await self.session.execute(
            select(Token.consultation_start_time, Token.consultation_end_time).where(
                Token.doctor_id == doctor_id,
                Token.queue_date == queue_date,
                Token.status == TokenStatus.COMPLETED.value,
                Token.consultation_start_time.is_not(None),
                Token.consultation_end_time.is_not(None),
            )
        )
        durations = [(end - start).total_seconds() / 60 for start, end in completed.all()]
        return {
            "completed": counts.get(TokenStatus.COMPLETED.value, 0),
            "pending": counts.get(TokenStatus.WAITING.value, 0) + counts.get(TokenStatus.CHECKED_IN.value, 0),
            "no_show": counts.get(TokenStatus.NO_SHOW.value, 0),
            "avg_consultation_minutes": round(sum(durations) / len(durations)) if durations else 0,
        }

    async def find_doctors_with_pending_tokens(self, queue_date: date, statuses: Iterable[TokenStatus]) -> List[UUID]:
        stmt = select(Token.doctor_id).where(
            Token.queue_date == queue_date,
            Token.status.in_(_values(statuses)),
        ).distinct()
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_tokens_due_for_reminder(self, window: DateRange, statuses: Iterable[TokenStatus]) -> List[Token]:
        stmt = select(Token).where(
            Token.status.in_(_values(statuses)),
            Token.reminder_sent == False,  # noqa: E712
            Token.scheduled_time >= window[0],
            Token.scheduled_time <= window[1],
        ).order_by(Token.scheduled_time)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # -- writes --------------------------------------------------------------

    async def allocate_queue_position(self, doctor_id: UUID, queue_date: date) -> Optional[int]:
        """
        Take the next position from the doctor's counter for ``queue_date``.

        Compare-and-set on ``last_position``; returns None when another writer
        moved the counter first so the caller can retry.
        """
        stmt = select(Counter).where(Counter.doctor_id == doctor_id, Counter.queue_date == queue_date)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        counter = result.scalars().first()

        if counter is None:
            # Seed from positions already handed out that day
            highest = await self.session.execute(
                select(func.max(Token.queue_position)).where(
                    Token.doctor_id == doctor_id,
                    Token.queue_date == queue_date,
                )
            )
            counter = Counter(doctor_id=doctor_id, queue_date=queue_date, last_position=highest.scalar() or 0)
            self.session.add(counter)
            try:
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                logger.warning(f"Counter for doctor {doctor_id} on {queue_date} created concurrently")
                return None

        seen = counter.last_position
        claimed = await self.session.execute(
            update(Counter)
            .where(Counter.id == counter.id, Counter.last_position == seen)
            .values(last_position=seen + 1)
        )
        await self.session.commit()
        if claimed.rowcount != 1:
            return None
        return seen + 1

    async def create_token(self, token: Token) -> Token:
        self.session.add(token)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise
        await self.session.refresh(token)
        return token

    async def update_token(
        self,
        token_id: UUID,
        patch: Dict[str, Any],
        expected_status: Optional[TokenStatus] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Token]:
        """
        Apply ``patch`` in one UPDATE. With ``expected_status`` the write only
        lands if the row is still in that status; returns None otherwise.
        """
        values = dict(patch)
        if "notes" in values:
            values["notes"] = jsonable_encoder(values["notes"])
        values["updated_at"] = now or utcnow()
        stmt = update(Token).where(Token.id == token_id)
        if expected_status is not None:
            stmt = stmt.where(Token.status == TokenStatus(expected_status).value)
        result = await self.session.execute(stmt.values(**values))
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise
        if result.rowcount != 1:
            return None
        return await self.find_token(token_id)

    async def claim_reminder(self, token_id: UUID) -> bool:
        result = await self.session.execute(
            update(Token)
            .where(Token.id == token_id, Token.reminder_sent == False)  # noqa: E712
            .values(reminder_sent=True)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def update_doctor(self, doctor: Doctor, **fields) -> Doctor:
        for key, value in fields.items():
            setattr(doctor, key, value)
        self.session.add(doctor)
        await self.session.commit()
        await self.session.refresh(doctor)
        return doctor

    async def add_audit(
        self,
        action: str,
        payload: Dict[str, Any],
        entity_id: Optional[UUID] = None,
        hospital_id: Optional[UUID] = None,
        actor_id: Optional[UUID] = None,
    ) -> AuditLog:
        entry = AuditLog(
            action=action,
            payload=jsonable_encoder(payload),
            entity_id=entity_id,
            hospital_id=hospital_id,
            actor_id=actor_id,
        )
        self.session.add(entry)
        await self.session.commit()
        return entry
