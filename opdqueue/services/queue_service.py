"""
Queue orchestration facade.

The API layer and the sweeper only talk to ``QueueService``. It wires the
token state machine, ETA calculator, geofence check and leave redistribution
onto one session, and after each operation pushes the outcome to the
broadcast and notification sinks. Sink failures are logged and never fail
the operation that triggered them.
"""

import math
import random
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from opdqueue.core.errors import NotFoundError
from opdqueue.core.lanes import DoctorLanes
from opdqueue.core.logger import get_logger
from opdqueue.core.sinks import (
    ADMIN_CHANNEL,
    BroadcastSink,
    EtaCache,
    NotificationKind,
    NotificationSink,
    department_channel,
    doctor_channel,
    token_channel,
)
from opdqueue.core.states import DoctorStatus, ExceptionType, PENDING_STATUSES, Priority, TokenStatus
from opdqueue.core.utils import Clock, minutes_between, utcnow
from opdqueue.repositories.token_repository import TokenRepository
from opdqueue.schemas.queue import (
    BookingResult,
    CheckInResult,
    ConsultationCompleteResult,
    ConsultationStartResult,
    CurrentConsultation,
    DisplayBoard,
    DisplayBoardRow,
    DoctorQueueView,
    DoctorStatusResult,
    EtaResult,
    QueueExitResult,
    QueueStats,
    RedistributionPlan,
    StatusChangeResult,
    SweepResult,
    TokenDetail,
    TokenResponse,
    TokenTimeline,
    UpcomingToken,
)
from opdqueue.services.eta_service import EtaService
from opdqueue.services.redistribution_service import LeaveRedistributionService
from opdqueue.services.sweep_service import SweepService
from opdqueue.services.token_service import CALLABLE_STATUSES, TokenService

logger = get_logger("queue")

UPCOMING_LIMIT = 20


class QueueService:
    def __init__(
        self,
        session: AsyncSession,
        lanes: DoctorLanes,
        notifier: Optional[NotificationSink] = None,
        broadcaster: Optional[BroadcastSink] = None,
        cache: Optional[EtaCache] = None,
        clock: Clock = utcnow,
        chooser: Optional[random.Random] = None,
    ):
        self.session = session
        self.notifier = notifier
        self.broadcaster = broadcaster
        self.clock = clock
        self.lanes = lanes
        self.repo = TokenRepository(session)
        self.eta = EtaService(self.repo, clock=clock, cache=cache)
        self.tokens = TokenService(self.repo, self.eta, lanes, clock=clock, chooser=chooser)
        self.redistribution = LeaveRedistributionService(self.repo, self.tokens, self.eta, lanes, clock=clock)
        self.sweeps = SweepService(self.repo, self.eta, lanes, notifier=notifier, clock=clock)

    # -- sinks ---------------------------------------------------------------

    async def _publish(self, channel: str, event: str, payload: Dict[str, Any]):
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.publish(channel, {"event": event, "timestamp": self.clock(), **payload})
        except Exception:
            logger.exception(f"Broadcast of {event} on {channel} failed")

    async def _notify(self, kind: NotificationKind, token: Any, extra: Optional[Dict[str, Any]] = None):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(kind, token, extra or {})
        except Exception:
            logger.exception(f"{kind.value} notification for {token.token_number} failed")

    async def _queue_changed(self, token: TokenResponse, event: str, extra: Optional[Dict[str, Any]] = None):
        payload = {"token": token.model_dump(mode="json"), **(extra or {})}
        await self._publish(token_channel(token.id), event, payload)
        await self._publish(doctor_channel(token.doctor_id), "queue_updated", {
            "trigger": event,
            "token_id": str(token.id),
            "token_number": token.token_number,
            "status": token.status,
        })
        await self._publish(department_channel(token.department_id), "display_updated", {
            "doctor_id": str(token.doctor_id),
        })

    async def _eta_updated(self, results: Iterable[EtaResult]):
        for result in results:
            await self._publish(token_channel(result.token_id), "eta_updated", {
                "estimated_wait_minutes": result.estimated_wait_minutes,
                "queue_position": result.queue_position,
            })

    # -- token lifecycle -----------------------------------------------------

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
        result = await self.tokens.book(
            patient_id,
            department_id,
            scheduled_time,
            doctor_id=doctor_id,
            visit_reason=visit_reason,
            priority=priority,
            booking_type=booking_type,
        )
        await self._queue_changed(result.token, "token_booked", {
            "estimated_wait_minutes": result.eta.estimated_wait_minutes,
        })
        await self._notify(NotificationKind.CONFIRMATION, result.token, {
            "estimated_wait_minutes": result.eta.estimated_wait_minutes,
        })
        return result

    async def check_in(self, token_id: UUID, latitude: float, longitude: float) -> CheckInResult:
        result = await self.tokens.check_in(token_id, latitude, longitude)
        await self._queue_changed(result.token, "checked_in", {
            "estimated_wait_minutes": result.eta.estimated_wait_minutes,
            "tokens_ahead": result.tokens_ahead,
        })
        return result

    async def move_to_waiting(self, token_id: UUID) -> StatusChangeResult:
        result = await self.tokens.move_to_waiting(token_id)
        await self._queue_changed(result.token, "moved_to_waiting")
        return result

    async def start_consultation(self, token_id: UUID) -> ConsultationStartResult:
        result = await self.tokens.start_consultation(token_id)
        await self._queue_changed(result.token, "consultation_started")
        await self._eta_updated(result.recomputed)
        return result

    async def complete_consultation(
        self, token_id: UUID, clinical_notes: Optional[Dict[str, Any]] = None
    ) -> ConsultationCompleteResult:
        result = await self.tokens.complete_consultation(token_id, clinical_notes)
        await self._queue_changed(result.token, "consultation_completed", {
            "duration_minutes": result.duration_minutes,
            "next_token_number": result.next_token.token_number if result.next_token else None,
        })
        await self._eta_updated(result.recomputed)
        return result

    async def mark_no_show(self, token_id: UUID, reason: Optional[str] = None) -> QueueExitResult:
        result = await self.tokens.mark_no_show(token_id, reason)
        await self._queue_changed(result.token, "no_show")
        await self._eta_updated(result.recomputed)
        return result

    async def cancel(self, token_id: UUID, reason: Optional[str] = None) -> QueueExitResult:
        result = await self.tokens.cancel(token_id, reason)
        await self._queue_changed(result.token, "cancelled")
        await self._eta_updated(result.recomputed)
        await self._notify(NotificationKind.CANCELLATION, result.token, {"reason": reason})
        return result

    async def recalculate_queue(self, doctor_id: UUID, queue_date: Optional[date] = None):
        async with self.lanes.lane(doctor_id):
            results = await self.eta.recalculate_queue(doctor_id, queue_date)
        await self._eta_updated(results)
        return results

    # -- doctor side ---------------------------------------------------------

    async def handle_doctor_leave(
        self,
        doctor_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exception_type: ExceptionType,
        reason: str,
    ) -> RedistributionPlan:
        plan = await self.redistribution.handle_doctor_leave(
            doctor_id, start_time, end_time, exception_type, reason
        )
        if plan.status == "NO_ACTION_NEEDED":
            return plan

        for entry in plan.reassigned:
            token = await self.repo.find_token(entry.token_id)
            await self._notify(NotificationKind.REASSIGNMENT, token, {
                "new_doctor_id": str(entry.new_doctor_id),
                "new_doctor_name": entry.new_doctor_name,
                "new_queue_position": entry.new_queue_position,
                "reason": reason,
            })
            await self._publish(token_channel(entry.token_id), "token_reassigned", entry.model_dump(mode="json"))
        for entry in plan.rescheduled:
            token = await self.repo.find_token(entry.token_id)
            await self._notify(NotificationKind.CANCELLATION, token, {"reason": entry.reason, "rescheduled": True})
            await self._publish(token_channel(entry.token_id), "token_rescheduled", entry.model_dump(mode="json"))
        for entry in plan.escalated:
            await self._publish(ADMIN_CHANNEL, "token_escalated", {
                "doctor_id": str(doctor_id),
                **entry.model_dump(mode="json"),
            })

        for target_id in {e.new_doctor_id for e in plan.reassigned} | {doctor_id}:
            await self._publish(doctor_channel(target_id), "queue_updated", {"trigger": "doctor_leave"})
        await self._eta_updated(plan.recomputed)
        await self._publish(ADMIN_CHANNEL, "doctor_leave", {
            "doctor_id": str(doctor_id),
            "exception_type": plan.exception_type,
            "affected": plan.affected_count,
            "reassigned": len(plan.reassigned),
            "rescheduled": len(plan.rescheduled),
            "escalated": len(plan.escalated),
        })
        return plan

    async def update_doctor_status(self, doctor_id: UUID, status: DoctorStatus) -> DoctorStatusResult:
        doctor = await self.repo.find_doctor(doctor_id)
        if not doctor:
            raise NotFoundError("doctor", doctor_id)
        now = self.clock()
        doctor = await self.repo.update_doctor(doctor, status=DoctorStatus(status).value, last_active_at=now)
        pending = await self.repo.count_active_for_doctor(doctor_id, PENDING_STATUSES, queue_date=now.date())
        logger.info(f"Doctor {doctor_id} is now {doctor.status} with {pending} pending tokens")

        payload = {"doctor_id": str(doctor_id), "status": doctor.status, "pending_tokens": pending}
        await self._publish(doctor_channel(doctor_id), "doctor_status", payload)
        await self._publish(ADMIN_CHANNEL, "doctor_status", payload)
        return DoctorStatusResult(doctor_id=doctor_id, status=doctor.status, pending_tokens=pending)

    # -- reads ---------------------------------------------------------------

    async def get_token(self, token_id: UUID) -> TokenDetail:
        token = await self.tokens.get_token(token_id)
        eta = await self.eta.cached(token_id)
        if eta is None:
            eta = token.estimated_wait_minutes

        estimated_call = None
        if eta is not None and TokenStatus(token.status) in PENDING_STATUSES:
            estimated_call = self.clock() + timedelta(minutes=eta)

        return TokenDetail(
            token=TokenResponse.model_validate(token),
            timeline=TokenTimeline(
                booked=token.created_at,
                checked_in=token.check_in_time,
                estimated_call=estimated_call,
            ),
            estimated_wait_minutes=eta,
            last_updated=token.eta_updated_at,
        )

    async def get_doctor_queue(self, doctor_id: UUID, day: Optional[date] = None) -> DoctorQueueView:
        doctor = await self.repo.find_doctor(doctor_id)
        if not doctor:
            raise NotFoundError("doctor", doctor_id)
        now = self.clock()
        day = day or now.date()

        current = None
        running = await self.repo.find_current_consultation(doctor_id)
        if running is not None:
            started = running.consultation_start_time or now
            current = CurrentConsultation(
                token_id=running.id,
                token_number=running.token_number,
                visit_reason=running.visit_reason,
                consultation_minutes=math.floor(minutes_between(started, now)),
            )

        upcoming = []
        for token in await self.repo.find_active_tokens_for_doctor(
            doctor_id, PENDING_STATUSES, queue_date=day, limit=UPCOMING_LIMIT
        ):
            estimated_time = None
            if token.eta_updated_at is not None and token.estimated_wait_minutes is not None:
                estimated_time = token.eta_updated_at + timedelta(minutes=token.estimated_wait_minutes)
            upcoming.append(UpcomingToken(
                token_id=token.id,
                queue_position=token.queue_position,
                token_number=token.token_number,
                estimated_time=estimated_time,
                priority=token.priority,
                is_checked_in=TokenStatus(token.status) in CALLABLE_STATUSES,
                visit_reason=token.visit_reason,
            ))

        stats = await self.repo.doctor_day_stats(doctor_id, day)
        return DoctorQueueView(doctor_id=doctor_id, current_token=current, upcoming=upcoming, stats=QueueStats(**stats))

    async def get_display_board(self, department_id: UUID) -> DisplayBoard:
        department = await self.repo.find_department(department_id)
        if not department:
            raise NotFoundError("department", department_id)
        today = self.clock().date()

        rows = []
        for doctor in await self.repo.find_active_doctors_in_department(department_id):
            serving = await self.repo.find_current_consultation(doctor.id)
            next_token = await self.repo.find_next_in_line(doctor.id, today, CALLABLE_STATUSES)
            waiting = await self.repo.count_active_for_doctor(doctor.id, CALLABLE_STATUSES, queue_date=today)
            rows.append(DisplayBoardRow(
                doctor_id=doctor.id,
                doctor_name=doctor.name,
                now_serving=serving.token_number if serving else None,
                next_token=next_token.token_number if next_token else None,
                waiting=waiting,
            ))
        return DisplayBoard(department_id=department_id, rows=rows)

    # -- sweeps --------------------------------------------------------------

    async def run_reminder_sweep(self, lead_minutes: Optional[int] = None) -> SweepResult:
        return await self.sweeps.run_reminder_sweep(lead_minutes)

    async def run_recompute_sweep(self) -> SweepResult:
        result = await self.sweeps.run_recompute_sweep()
        await self._eta_updated(result.recomputed)
        if result.queues_recomputed:
            await self._publish(ADMIN_CHANNEL, "queues_recomputed", result.model_dump(exclude={"recomputed"}))
        return result
