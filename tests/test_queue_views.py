import uuid

import pytest

from opdqueue.core.errors import NotFoundError
from opdqueue.core.sinks import ADMIN_CHANNEL, doctor_channel
from opdqueue.core.states import DoctorStatus

from .conftest import HOSPITAL_LAT, HOSPITAL_LON


async def test_doctor_queue_view(service, book, seed, clock):
    first = await book(offset=60)
    second = await book(offset=75, patient=1)
    third = await book(offset=90, patient=2)
    done = await book(offset=45, patient=3)
    for token in (done, first, second):
        await service.check_in(token.id, HOSPITAL_LAT, HOSPITAL_LON)

    await service.start_consultation(done.id)
    clock.advance(10)
    await service.complete_consultation(done.id)
    await service.start_consultation(first.id)
    clock.advance(7)

    view = await service.get_doctor_queue(seed.dr_a.id)

    assert view.current_token.token_id == first.id
    assert view.current_token.consultation_minutes == 7
    assert [u.token_id for u in view.upcoming] == [second.id, third.id]
    assert [u.is_checked_in for u in view.upcoming] == [True, False]
    assert view.upcoming[0].estimated_time is not None
    assert view.stats.completed == 1
    assert view.stats.pending == 1
    assert view.stats.avg_consultation_minutes == 10


async def test_doctor_queue_for_unknown_doctor(service, seed):
    with pytest.raises(NotFoundError) as exc:
        await service.get_doctor_queue(uuid.uuid4())
    assert exc.value.code == "DOCTOR_NOT_FOUND"


async def test_status_update_publishes(service, book, seed, broadcaster):
    await book(offset=60)
    await book(offset=75, patient=1)

    result = await service.update_doctor_status(seed.dr_a.id, DoctorStatus.BREAK)

    assert result.status == DoctorStatus.BREAK.value
    assert result.pending_tokens == 2
    assert broadcaster.on(doctor_channel(seed.dr_a.id))[-1]["event"] == "doctor_status"
    assert broadcaster.on(ADMIN_CHANNEL)[-1]["status"] == "BREAK"
    assert (await service.repo.find_doctor(seed.dr_a.id)).last_active_at is not None


async def test_display_board(service, book, seed):
    first = await book(offset=60)
    second = await book(offset=75, patient=1)
    await book(offset=90, patient=2, doctor=seed.dr_b)
    for token in (first, second):
        await service.check_in(token.id, HOSPITAL_LAT, HOSPITAL_LON)
    await service.start_consultation(first.id)

    board = await service.get_display_board(seed.department.id)

    rows = {row.doctor_id: row for row in board.rows}
    assert rows[seed.dr_a.id].now_serving == first.token_number
    assert rows[seed.dr_a.id].next_token == second.token_number
    assert rows[seed.dr_a.id].waiting == 1
    assert rows[seed.dr_b.id].now_serving is None
    assert rows[seed.dr_b.id].next_token is None


async def test_failing_sinks_do_not_fail_the_operation(service, book, seed):
    class BrokenSink:
        async def publish(self, channel, payload):
            raise ConnectionError("redis down")

        async def notify(self, kind, token, extra=None):
            raise ConnectionError("redis down")

    service.broadcaster = BrokenSink()
    service.notifier = BrokenSink()

    token = await book()
    result = await service.cancel(token.id, "Changed plans")
    assert result.token.status == "CANCELLED"
