import asyncio
import uuid
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlmodel import select

from opdqueue.core.sinks import ADMIN_CHANNEL, NotificationKind
from opdqueue.core.states import DoctorStatus, ExceptionType, Priority, TokenStatus
from opdqueue.db.models import AuditLog, Doctor
from opdqueue.services.redistribution_service import (
    ESCALATE,
    REASSIGN,
    RESCHEDULE,
    CapacityPool,
    CapacitySlot,
    build_plan,
    decide,
    load_score,
)

from .conftest import HOSPITAL_LAT, HOSPITAL_LON, START

WINDOW = (START + timedelta(minutes=60), START + timedelta(minutes=180))


def fake_token(priority=Priority.NORMAL, status=TokenStatus.BOOKED.value, number="GEN-001"):
    return SimpleNamespace(id=uuid.uuid4(), token_number=number, priority=priority, status=status)


def slot(name, remaining, queue_length=0):
    return CapacitySlot(doctor_id=uuid.uuid4(), doctor_name=name, remaining_capacity=remaining, current_queue_length=queue_length)


async def audit_entries(session, action):
    result = await session.execute(select(AuditLog).where(AuditLog.action == action))
    return list(result.scalars().all())


# -- planning ----------------------------------------------------------------

def test_load_score_prefers_short_queues_and_spare_capacity():
    assert load_score(0, 10) == 40
    assert load_score(3, 10) == 46
    assert load_score(0, 30) < load_score(0, 10)


def test_pool_drops_doctors_without_capacity():
    pool = CapacityPool([slot("full", 0), slot("free", 3)])
    assert [s.doctor_name for s in pool.slots] == ["free"]


def test_plan_tracks_capacity_per_reassignment():
    pool = CapacityPool([slot("Dr. B", 10)])
    tokens = [fake_token(number=f"GEN-00{i}") for i in range(1, 4)]

    decisions = build_plan(tokens, pool, ExceptionType.UNPLANNED_LEAVE)

    assert [d.action for d in decisions] == [REASSIGN] * 3
    assert [d.rule for d in decisions] == ["R3"] * 3
    assert [d.target.remaining_capacity for d in decisions] == [10, 9, 8]
    # the caller's snapshot is left alone
    assert pool.head.remaining_capacity == 10

    for _ in tokens:
        pool.consume(pool.head.doctor_id)
    assert pool.head.remaining_capacity == 7


def test_emergency_goes_to_pool_head_and_checked_in_to_shortest_queue():
    busy = slot("busy but roomy", 30, queue_length=6)
    quiet = slot("quiet but nearly full", 2, queue_length=1)
    pool = CapacityPool([busy, quiet])
    assert pool.head.doctor_name == "busy but roomy"

    emergency = decide(fake_token(priority=Priority.EMERGENCY), pool, ExceptionType.PLANNED_LEAVE)
    present = decide(fake_token(status=TokenStatus.CHECKED_IN.value), pool, ExceptionType.PLANNED_LEAVE)

    assert (emergency.action, emergency.rule, emergency.target.doctor_name) == (REASSIGN, "R1", "busy but roomy")
    assert (present.action, present.rule, present.target.doctor_name) == (REASSIGN, "R2", "quiet but nearly full")


def test_empty_pool_escalates_emergencies_and_reschedules_the_rest():
    pool = CapacityPool([])
    assert decide(fake_token(priority=Priority.EMERGENCY), pool, ExceptionType.EMERGENCY).action == ESCALATE
    checked_in = decide(fake_token(status=TokenStatus.CHECKED_IN.value), pool, ExceptionType.EMERGENCY)
    assert (checked_in.action, checked_in.rule) == (RESCHEDULE, "R2")
    assert decide(fake_token(), pool, ExceptionType.EMERGENCY).rule == "R4"


def test_unplanned_bias_needs_five_free_slots():
    assert decide(fake_token(), CapacityPool([slot("B", 4)]), ExceptionType.UNPLANNED_LEAVE).rule == "R4"
    assert decide(fake_token(), CapacityPool([slot("B", 5)]), ExceptionType.UNPLANNED_LEAVE).rule == "R3"
    assert decide(fake_token(), CapacityPool([slot("B", 50)]), ExceptionType.PLANNED_LEAVE).rule == "R4"


def test_pool_head_keeps_its_place_until_it_runs_dry():
    pool = CapacityPool([slot("B", 10), slot("C", 9)])
    tokens = [fake_token(number="GEN-001"), fake_token(number="GEN-002")]
    targets = [d.target.doctor_name for d in build_plan(tokens, pool, ExceptionType.UNPLANNED_LEAVE)]
    assert targets == ["B", "B"]

    pool = CapacityPool([slot("B", 2), slot("C", 3, queue_length=3)])
    emergencies = [fake_token(priority=Priority.EMERGENCY) for _ in range(3)]
    targets = [d.target.doctor_name for d in build_plan(emergencies, pool, ExceptionType.PLANNED_LEAVE)]
    assert targets == ["B", "B", "C"]


def test_plan_uses_the_pool_of_each_token_day():
    first_day, second_day = START.date(), START.date() + timedelta(days=1)
    pools = {first_day: CapacityPool([slot("B", 1)]), second_day: CapacityPool([slot("C", 5)])}
    tokens = [
        SimpleNamespace(**vars(fake_token(priority=Priority.EMERGENCY)), queue_date=day)
        for day in (first_day, first_day, second_day)
    ]

    decisions = build_plan(tokens, pools, ExceptionType.PLANNED_LEAVE)

    assert [d.action for d in decisions] == [REASSIGN, ESCALATE, REASSIGN]
    assert decisions[2].target.doctor_name == "C"


def test_capacity_runs_out_mid_plan():
    pool = CapacityPool([slot("B", 1)])
    tokens = [fake_token(priority=Priority.EMERGENCY), fake_token(priority=Priority.EMERGENCY)]
    assert [d.action for d in build_plan(tokens, pool, ExceptionType.EMERGENCY)] == [REASSIGN, ESCALATE]


# -- applying ----------------------------------------------------------------

async def test_leave_reassigns_all_tokens_to_colleague(service, book, seed, session, notifier):
    tokens = [await book(offset=60 + i * 15, patient=i) for i in range(3)]

    plan = await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.UNPLANNED_LEAVE, "Fever")

    assert plan.status == "COMPLETED"
    assert plan.affected_count == 3
    assert [e.token_id for e in plan.reassigned] == [t.id for t in tokens]
    assert [e.new_queue_position for e in plan.reassigned] == [1, 2, 3]
    assert {e.new_doctor_id for e in plan.reassigned} == {seed.dr_b.id}
    assert plan.rescheduled == [] and plan.escalated == []

    moved = await service.tokens.get_token(tokens[0].id)
    assert moved.doctor_id == seed.dr_b.id
    assert moved.token_number == "GEN-001"
    assert moved.status == TokenStatus.BOOKED.value
    assert moved.notes["reassignment"]["original_doctor_id"] == str(seed.dr_a.id)
    assert moved.notes["reassignment"]["reason"] == "Doctor leave - Fever"

    assert len(notifier.of_kind(NotificationKind.REASSIGNMENT)) == 3
    assert len(await audit_entries(session, "TOKEN_REASSIGNED")) == 3
    assert len(await audit_entries(session, "REDISTRIBUTION_PLAN")) == 1
    assert len(plan.recomputed) == 3


async def test_emergency_token_is_never_left_rescheduled(service, book, seed):
    normal = await book(offset=60)
    emergency = await book(offset=90, patient=1, priority=Priority.EMERGENCY)

    plan = await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.PLANNED_LEAVE, "Conference")

    assert [e.token_id for e in plan.reassigned] == [emergency.id]
    assert plan.reassigned[0].rule == "R1"
    assert [e.token_id for e in plan.rescheduled] == [normal.id]

    rescheduled = await service.tokens.get_token(normal.id)
    assert rescheduled.status == TokenStatus.RESCHEDULED.value
    assert rescheduled.cancellation_reason == "Doctor unavailable – Conference"


async def test_checked_in_patient_follows_shortest_queue(service, book, seed):
    token = await book(offset=60)
    await service.check_in(token.id, HOSPITAL_LAT, HOSPITAL_LON)

    plan = await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.PLANNED_LEAVE, "Training")

    assert plan.reassigned[0].rule == "R2"
    assert (await service.tokens.get_token(token.id)).status == TokenStatus.CHECKED_IN.value


async def test_emergency_escalates_without_capacity(service, book, seed, broadcaster):
    await service.update_doctor_status(seed.dr_b.id, DoctorStatus.BREAK)
    emergency = await book(offset=60, priority=Priority.EMERGENCY)
    normal = await book(offset=90, patient=1)

    plan = await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.EMERGENCY, "Accident")

    assert [e.token_id for e in plan.escalated] == [emergency.id]
    assert plan.escalated[0].code == "NO_CAPACITY_ESCALATE"
    assert [e.token_id for e in plan.rescheduled] == [normal.id]

    escalated = await service.tokens.get_token(emergency.id)
    assert escalated.status == TokenStatus.BOOKED.value
    assert "escalation" in escalated.notes
    assert any(m["event"] == "token_escalated" for m in broadcaster.on(ADMIN_CHANNEL))


async def test_every_token_ends_in_exactly_one_bucket(service, book, seed, session):
    await book(offset=60, priority=Priority.EMERGENCY)
    await book(offset=75, patient=1)
    checked = await book(offset=90, patient=2)
    await book(offset=105, patient=3)
    await service.check_in(checked.id, HOSPITAL_LAT, HOSPITAL_LON)

    plan = await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.PLANNED_LEAVE, "Workshop")

    ids = [e.token_id for e in plan.reassigned + plan.rescheduled + plan.escalated]
    assert len(ids) == len(set(ids)) == plan.affected_count == 4
    audited = 0
    for action in ("TOKEN_REASSIGNED", "TOKEN_RESCHEDULED", "TOKEN_ESCALATED"):
        audited += len(await audit_entries(session, action))
    assert audited == 4


async def test_no_tokens_in_window(service, book, seed):
    await book(offset=300)
    plan = await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.PLANNED_LEAVE, "Errand")
    assert plan.status == "NO_ACTION_NEEDED"
    assert plan.affected_count == 0


async def test_doctor_marked_on_leave_only_inside_window(service, seed):
    await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.PLANNED_LEAVE, "Later today")
    assert (await service.repo.find_doctor(seed.dr_a.id)).status == DoctorStatus.AVAILABLE.value

    now_window = (START - timedelta(minutes=30), START + timedelta(hours=3))
    await service.handle_doctor_leave(seed.dr_a.id, *now_window, ExceptionType.UNPLANNED_LEAVE, "Unwell")
    assert (await service.repo.find_doctor(seed.dr_a.id)).status == DoctorStatus.ON_LEAVE.value


async def test_stale_capacity_falls_back(service, book, seed, session, monkeypatch):
    dr_c = Doctor(
        hospital_id=seed.hospital.id,
        primary_department_id=seed.empty_department.id,
        name="Dr. Chitra Iyer",
        max_tokens_per_session=1,
    )
    session.add(dr_c)
    await session.commit()
    await book(offset=60, doctor=dr_c, patient=5)

    async def stale_pool(doctors, day):
        return CapacityPool([CapacitySlot(dr_c.id, dr_c.name, remaining_capacity=5, current_queue_length=0)])

    monkeypatch.setattr(service.redistribution, "build_capacity_pool", stale_pool)
    normal = await book(offset=60)
    emergency = await book(offset=90, patient=1, priority=Priority.EMERGENCY)

    plan = await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.UNPLANNED_LEAVE, "Flu")

    assert plan.reassigned == []
    assert [e.token_id for e in plan.escalated] == [emergency.id]
    assert [e.token_id for e in plan.rescheduled] == [normal.id]


async def test_cancelled_pass_records_untouched_tokens(service, book, seed, session, monkeypatch):
    tokens = [await book(offset=60 + i * 15, patient=i) for i in range(3)]
    reschedule = service.tokens.reschedule
    calls = []

    async def interrupted(token, reason):
        calls.append(token.id)
        if len(calls) == 2:
            raise asyncio.CancelledError()
        return await reschedule(token, reason)

    monkeypatch.setattr(service.tokens, "reschedule", interrupted)

    with pytest.raises(asyncio.CancelledError):
        await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.PLANNED_LEAVE, "Strike")

    [entry] = await audit_entries(session, "REDISTRIBUTION_CANCELLED")
    assert entry.payload["status"] == "PARTIAL"
    assert entry.payload["pending"] == [str(tokens[1].id), str(tokens[2].id)]
    assert [r["token_id"] for r in entry.payload["rescheduled"]] == [str(tokens[0].id)]
    assert (await service.tokens.get_token(tokens[2].id)).status == TokenStatus.BOOKED.value


async def test_leave_over_several_days_refreshes_each_day_queue(service, book, seed, clock):
    next_day = await book(offset=24 * 60 + 60)
    clock.advance(5)

    window = (START, START + timedelta(days=2))
    plan = await service.handle_doctor_leave(seed.dr_a.id, *window, ExceptionType.UNPLANNED_LEAVE, "Surgery")

    [entry] = plan.reassigned
    assert entry.new_doctor_id == seed.dr_b.id
    assert entry.queue_date == next_day.scheduled_time.date()
    assert [r.token_id for r in plan.recomputed] == [next_day.id]

    moved = await service.tokens.get_token(next_day.id)
    assert moved.eta_updated_at == clock()


async def test_token_moved_before_cancellation_is_recorded(service, book, seed, session, monkeypatch):
    tokens = [await book(offset=60 + i * 15, patient=i) for i in range(3)]
    reassign = service.tokens.reassign

    async def cancelled_after_write(token, target, reason):
        await reassign(token, target, reason)
        raise asyncio.CancelledError()

    monkeypatch.setattr(service.tokens, "reassign", cancelled_after_write)

    with pytest.raises(asyncio.CancelledError):
        await service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.UNPLANNED_LEAVE, "Flu")

    [entry] = await audit_entries(session, "REDISTRIBUTION_CANCELLED")
    assert [r["token_id"] for r in entry.payload["reassigned"]] == [str(tokens[0].id)]
    assert entry.payload["pending"] == [str(tokens[1].id), str(tokens[2].id)]
    assert (await service.tokens.get_token(tokens[0].id)).doctor_id == seed.dr_b.id


async def test_cancelling_the_pass_lets_the_token_in_flight_finish(service, book, seed, session, monkeypatch):
    tokens = [await book(offset=60 + i * 15, patient=i) for i in range(3)]
    reassign = service.tokens.reassign
    written, release = asyncio.Event(), asyncio.Event()

    async def slow_reassign(token, target, reason):
        moved = await reassign(token, target, reason)
        written.set()
        await release.wait()
        return moved

    monkeypatch.setattr(service.tokens, "reassign", slow_reassign)

    leave = asyncio.create_task(
        service.handle_doctor_leave(seed.dr_a.id, *WINDOW, ExceptionType.UNPLANNED_LEAVE, "Flu")
    )
    await written.wait()
    leave.cancel()
    await asyncio.sleep(0)
    release.set()
    with pytest.raises(asyncio.CancelledError):
        await leave

    [entry] = await audit_entries(session, "REDISTRIBUTION_CANCELLED")
    assert [r["token_id"] for r in entry.payload["reassigned"]] == [str(tokens[0].id)]
    assert entry.payload["pending"] == [str(tokens[1].id), str(tokens[2].id)]
    assert len(await audit_entries(session, "TOKEN_REASSIGNED")) == 1
