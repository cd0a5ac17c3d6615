"""
Doctor leave redistribution.

A leave window is handled in two phases. ``build_plan`` is pure: it walks the
affected tokens against a snapshot of the department's spare capacity and
decides REASSIGN, RESCHEDULE or ESCALATE for each. ``LeaveRedistributionService``
then applies those decisions one token at a time, re-checking each target's
capacity against storage right before the write.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Dict, List, Optional, Union
from uuid import UUID

from opdqueue.core.errors import ConcurrencyConflict, NoCapacityEscalate, NotFoundError
from opdqueue.core.lanes import DoctorLanes
from opdqueue.core.logger import get_logger
from opdqueue.core.states import (
    DoctorStatus,
    ExceptionType,
    PENDING_STATUSES,
    ACTIVE_STATUSES,
    Priority,
    TokenStatus,
)
from opdqueue.core.utils import Clock, to_naive_utc, utcnow
from opdqueue.db.models import Doctor, Token
from opdqueue.repositories.token_repository import TokenRepository
from opdqueue.schemas.queue import (
    EscalatedEntry,
    ReassignedEntry,
    RedistributionPlan,
    RescheduledEntry,
)
from opdqueue.services.eta_service import EtaService
from opdqueue.services.token_service import TokenService

logger = get_logger("redistribution")

REASSIGN = "REASSIGN"
RESCHEDULE = "RESCHEDULE"
ESCALATE = "ESCALATE"

# Unplanned leave only pushes work onto a colleague with this much headroom
UNPLANNED_MIN_CAPACITY = 5


def load_score(current_queue_length: int, remaining_capacity: int) -> int:
    """Lower is better."""
    return current_queue_length * 2 + (50 - remaining_capacity)


@dataclass
class CapacitySlot:
    doctor_id: UUID
    doctor_name: str
    remaining_capacity: int
    current_queue_length: int

    @property
    def load_score(self) -> int:
        return load_score(self.current_queue_length, self.remaining_capacity)


@dataclass
class Decision:
    token_id: UUID
    token_number: str
    priority: int
    status: str
    action: str
    rule: str
    reason: str
    target: Optional[CapacitySlot] = None


@dataclass
class CapacityPool:
    slots: List[CapacitySlot] = field(default_factory=list)

    def __post_init__(self):
        self.slots = sorted((s for s in self.slots if s.remaining_capacity > 0), key=lambda s: s.load_score)

    def __bool__(self):
        return bool(self.slots)

    @property
    def head(self) -> CapacitySlot:
        return self.slots[0]

    def shortest_queue(self) -> CapacitySlot:
        return min(self.slots, key=lambda s: s.current_queue_length)

    def consume(self, doctor_id: UUID):
        """Take one slot from ``doctor_id``. The order set at build time holds until a doctor runs dry."""
        for slot in self.slots:
            if slot.doctor_id == doctor_id:
                slot.remaining_capacity -= 1
                break
        self.slots = [s for s in self.slots if s.remaining_capacity > 0]

    def copy(self) -> "CapacityPool":
        pool = CapacityPool()
        pool.slots = [replace(s) for s in self.slots]
        return pool


def decide(token: Token, pool: CapacityPool, exception_type: ExceptionType) -> Decision:
    """First matching rule wins."""
    base = dict(
        token_id=token.id,
        token_number=token.token_number,
        priority=token.priority,
        status=token.status,
    )

    if token.priority == Priority.EMERGENCY:
        if pool:
            return Decision(action=REASSIGN, rule="R1", reason="Emergency priority", target=pool.head, **base)
        return Decision(action=ESCALATE, rule="R1", reason="Emergency token with no capacity", **base)

    if token.status == TokenStatus.CHECKED_IN.value:
        if pool:
            return Decision(
                action=REASSIGN, rule="R2", reason="Patient already at hospital",
                target=pool.shortest_queue(), **base,
            )
        return Decision(action=RESCHEDULE, rule="R2", reason="No available capacity for reassignment", **base)

    if (
        ExceptionType(exception_type) in (ExceptionType.UNPLANNED_LEAVE, ExceptionType.EMERGENCY)
        and pool
        and pool.head.remaining_capacity >= UNPLANNED_MIN_CAPACITY
    ):
        return Decision(action=REASSIGN, rule="R3", reason="Unplanned leave - reassigning", target=pool.head, **base)

    return Decision(action=RESCHEDULE, rule="R4", reason="Default reschedule with original doctor", **base)


def _recorded_ids(plan: RedistributionPlan) -> set:
    return {e.token_id for e in plan.reassigned + plan.rescheduled + plan.escalated}


def build_plan(
    tokens: List[Token],
    pool: Union[CapacityPool, Dict[date, CapacityPool]],
    exception_type: ExceptionType,
) -> List[Decision]:
    """
    Decide every token in order, consuming private copies of the pools as it goes.

    ``pool`` is either one pool shared by all tokens or a mapping from queue
    date to that day's pool, looked up by each token's ``queue_date``.
    """
    if isinstance(pool, CapacityPool):
        shared = pool.copy()
        working = None
    else:
        working = {day: p.copy() for day, p in pool.items()}

    decisions = []
    for token in tokens:
        day_pool = shared if working is None else working.setdefault(token.queue_date, CapacityPool())
        decision = decide(token, day_pool, exception_type)
        if decision.action == REASSIGN:
            decision.target = replace(decision.target)
            day_pool.consume(decision.target.doctor_id)
        decisions.append(decision)
    return decisions


class LeaveRedistributionService:
    def __init__(
        self,
        repo: TokenRepository,
        tokens: TokenService,
        eta: EtaService,
        lanes: DoctorLanes,
        clock: Clock = utcnow,
    ):
        self.repo = repo
        self.tokens = tokens
        self.eta = eta
        self.lanes = lanes
        self.clock = clock

    async def build_capacity_pool(self, doctors: List[Doctor], day) -> CapacityPool:
        slots = []
        for doctor in doctors:
            scheduled = await self.repo.count_scheduled_for_day(doctor.id, day)
            queue_length = await self.repo.count_active_for_doctor(doctor.id, ACTIVE_STATUSES, queue_date=day)
            slots.append(CapacitySlot(
                doctor_id=doctor.id,
                doctor_name=doctor.name,
                remaining_capacity=doctor.max_tokens_per_session - scheduled,
                current_queue_length=queue_length,
            ))
        return CapacityPool(slots)

    async def handle_doctor_leave(
        self,
        doctor_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exception_type: ExceptionType,
        reason: str,
    ) -> RedistributionPlan:
        exception_type = ExceptionType(exception_type)
        start_time, end_time = to_naive_utc(start_time), to_naive_utc(end_time)
        leaving = await self.repo.find_doctor(doctor_id)
        if not leaving:
            raise NotFoundError("doctor", doctor_id)
        department_id = leaving.primary_department_id
        colleagues = await self.repo.find_active_doctors_in_department(department_id, excluding=doctor_id)

        # One batch: the leaving doctor and every possible target stay locked
        async with self.lanes.lanes([doctor_id] + [d.id for d in colleagues]):
            plan = await self._redistribute(leaving, colleagues, start_time, end_time, exception_type, reason)

        await self._mark_on_leave(doctor_id, start_time, end_time)
        return plan

    async def _mark_on_leave(self, doctor_id: UUID, start_time: datetime, end_time: datetime):
        now = self.clock()
        if not start_time <= now <= end_time:
            return
        leaving = await self.repo.find_doctor(doctor_id)
        if leaving.status != DoctorStatus.ON_LEAVE.value:
            await self.repo.update_doctor(leaving, status=DoctorStatus.ON_LEAVE.value, last_active_at=now)
            logger.info(f"Doctor {doctor_id} marked {DoctorStatus.ON_LEAVE.value}")

    async def _redistribute(
        self,
        leaving: Doctor,
        colleagues: List[Doctor],
        start_time: datetime,
        end_time: datetime,
        exception_type: ExceptionType,
        reason: str,
    ) -> RedistributionPlan:
        doctor_id = leaving.id
        hospital_id = leaving.hospital_id
        affected = await self.repo.find_tokens_in_window(doctor_id, PENDING_STATUSES, (start_time, end_time))

        plan = RedistributionPlan(
            status="NO_ACTION_NEEDED",
            doctor_id=doctor_id,
            exception_type=exception_type.value,
            affected_count=len(affected),
        )
        if not affected:
            return plan

        logger.info(f"Doctor {doctor_id} leave affects {len(affected)} tokens")
        # Capacity is per day, and a long leave can cover several
        pools = {}
        for day in sorted({t.queue_date for t in affected}):
            pools[day] = await self.build_capacity_pool(colleagues, day)
        decisions = build_plan(affected, pools, exception_type)
        plan.status = "COMPLETED"

        try:
            for decision in decisions:
                await self._apply_one(decision, reason, plan, doctor_id)
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            recorded = _recorded_ids(plan)
            plan.status = "PARTIAL"
            plan.pending = [d.token_id for d in decisions if d.token_id not in recorded]
            logger.warning(
                f"Redistribution for doctor {doctor_id} cancelled with {len(plan.pending)} tokens untouched"
            )
            await self.repo.add_audit(
                "REDISTRIBUTION_CANCELLED", plan.model_dump(mode="json"),
                entity_id=doctor_id, hospital_id=hospital_id,
            )
            raise

        targets = sorted(
            {(e.new_doctor_id, e.queue_date) for e in plan.reassigned}, key=lambda t: (str(t[0]), t[1])
        )
        for target_id, day in targets:
            plan.recomputed.extend(await self.eta.recalculate_queue(target_id, day))

        await self.repo.add_audit(
            "REDISTRIBUTION_PLAN",
            plan.model_dump(mode="json", exclude={"recomputed"}),
            entity_id=doctor_id,
            hospital_id=hospital_id,
        )
        logger.info(
            f"Redistribution for doctor {doctor_id}: {len(plan.reassigned)} reassigned, "
            f"{len(plan.rescheduled)} rescheduled, {len(plan.escalated)} escalated"
        )
        return plan

    async def _apply_one(
        self,
        decision: Decision,
        reason: str,
        plan: RedistributionPlan,
        original_doctor_id: UUID,
    ):
        """
        Apply one decision so that a cancellation never splits it.

        The write runs shielded; if the pass is cancelled meanwhile, the token in
        flight is allowed to finish and whatever landed in storage is recorded
        before the cancellation propagates.
        """
        task = asyncio.ensure_future(self._apply(decision, reason, plan, original_doctor_id))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait([task])
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Token {decision.token_number} failed during a cancelled redistribution: {task.exception()!r}")
            await self._reconcile(decision, plan, original_doctor_id)
            raise

    async def _reconcile(self, decision: Decision, plan: RedistributionPlan, original_doctor_id: UUID):
        """Record what storage says happened to a token whose apply was interrupted."""
        if decision.token_id in _recorded_ids(plan):
            return
        token = await self.repo.find_token(decision.token_id)
        if token is None:
            return
        if token.doctor_id != original_doctor_id:
            target = await self.repo.find_doctor(token.doctor_id)
            plan.reassigned.append(ReassignedEntry(
                token_id=token.id,
                token_number=token.token_number,
                original_doctor_id=original_doctor_id,
                new_doctor_id=token.doctor_id,
                new_doctor_name=target.name if target else "",
                new_queue_position=token.queue_position,
                scheduled_time=token.scheduled_time,
                queue_date=token.queue_date,
                rule=decision.rule,
            ))
        elif token.status == TokenStatus.RESCHEDULED.value:
            plan.rescheduled.append(RescheduledEntry(
                token_id=token.id, token_number=token.token_number,
                reason=token.cancellation_reason or "", rule=decision.rule,
            ))
        elif "escalation" in (token.notes or {}):
            plan.escalated.append(EscalatedEntry(
                token_id=token.id, token_number=token.token_number,
                reason=token.notes["escalation"]["reason"], rule=decision.rule,
            ))

    async def _has_capacity(self, target: Doctor, day) -> bool:
        scheduled = await self.repo.count_scheduled_for_day(target.id, day)
        return target.max_tokens_per_session - scheduled > 0

    async def _apply(
        self,
        decision: Decision,
        reason: str,
        plan: RedistributionPlan,
        original_doctor_id: UUID,
    ):
        action, rule, note = decision.action, decision.rule, decision.reason
        token = await self.repo.find_token(decision.token_id)
        if TokenStatus(token.status) not in PENDING_STATUSES:
            # Lanes are held, so only a caller outside the engine gets here
            logger.warning(f"Token {token.token_number} left the queue as {token.status} before redistribution")
            plan.escalated.append(EscalatedEntry(
                token_id=token.id, token_number=token.token_number,
                reason=f"Token became {token.status} during redistribution", rule=rule,
                code=ConcurrencyConflict.code,
            ))
            return

        if action == REASSIGN:
            target = await self.repo.find_doctor(decision.target.doctor_id)
            if target is not None and await self._has_capacity(target, token.queue_date):
                token = await self.tokens.reassign(token, target, f"Doctor leave - {reason}")
                plan.reassigned.append(ReassignedEntry(
                    token_id=token.id,
                    token_number=token.token_number,
                    original_doctor_id=original_doctor_id,
                    new_doctor_id=target.id,
                    new_doctor_name=target.name,
                    new_queue_position=token.queue_position,
                    scheduled_time=token.scheduled_time,
                    queue_date=token.queue_date,
                    rule=rule,
                ))
                await self._audit(token, "TOKEN_REASSIGNED", rule, note, original_doctor_id, target.id)
                return

            logger.warning(f"Target for {token.token_number} ran out of capacity")
            if token.priority == Priority.EMERGENCY:
                action, note = ESCALATE, "Emergency token lost its reassignment target"
            else:
                action, note = RESCHEDULE, "Reassignment target ran out of capacity"

        if action == RESCHEDULE:
            message = f"Doctor unavailable – {reason}"
            token = await self.tokens.reschedule(token, message)
            plan.rescheduled.append(RescheduledEntry(
                token_id=token.id, token_number=token.token_number, reason=message, rule=rule,
            ))
            await self._audit(token, "TOKEN_RESCHEDULED", rule, note, original_doctor_id)
            return

        token = await self.tokens.escalate(token, note)
        plan.escalated.append(EscalatedEntry(
            token_id=token.id, token_number=token.token_number, reason=note, rule=rule,
            code=NoCapacityEscalate.code,
        ))
        await self._audit(token, "TOKEN_ESCALATED", rule, note, original_doctor_id)

    async def _audit(
        self,
        token: Token,
        action: str,
        rule: str,
        note: str,
        original_doctor_id: UUID,
        new_doctor_id: Optional[UUID] = None,
    ):
        await self.repo.add_audit(
            action,
            {
                "token_number": token.token_number,
                "rule": rule,
                "reason": note,
                "original_doctor_id": original_doctor_id,
                "new_doctor_id": new_doctor_id,
            },
            entity_id=token.id,
            hospital_id=token.hospital_id,
        )
