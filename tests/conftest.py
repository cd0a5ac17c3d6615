import random
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from opdqueue.core.lanes import DoctorLanes
from opdqueue.db.models import Department, Doctor, Hospital, Patient
from opdqueue.services.queue_service import QueueService

HOSPITAL_LAT = 19.0760
HOSPITAL_LON = 72.8777
START = datetime(2025, 3, 10, 9, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float):
        self.now += timedelta(minutes=minutes)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, kind, token, extra=None):
        self.sent.append((kind, token.token_number, extra or {}))

    def of_kind(self, kind):
        return [s for s in self.sent if s[0] == kind]


class RecordingBroadcaster:
    def __init__(self):
        self.messages = []

    async def publish(self, channel, payload):
        self.messages.append((channel, payload))

    def on(self, channel):
        return [p for c, p in self.messages if c == channel]


class MemoryCache:
    def __init__(self):
        self.values = {}

    async def set_eta(self, token_id, minutes, expire):
        self.values[token_id] = minutes

    async def get_eta(self, token_id):
        return self.values.get(token_id)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'opdqueue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def lanes():
    return DoctorLanes()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def make_service(lanes, notifier, broadcaster, cache, clock):
    def build(session):
        return QueueService(
            session,
            lanes,
            notifier=notifier,
            broadcaster=broadcaster,
            cache=cache,
            clock=clock,
            chooser=random.Random(7),
        )
    return build


@pytest.fixture
def service(session, make_service):
    return make_service(session)


@pytest.fixture
async def seed(session):
    hospital = Hospital(name="City General", latitude=HOSPITAL_LAT, longitude=HOSPITAL_LON, geofence_radius_meters=200)
    session.add(hospital)
    await session.flush()

    department = Department(hospital_id=hospital.id, name="General Medicine", code="GEN", avg_consultation_minutes=15)
    empty = Department(hospital_id=hospital.id, name="Dermatology", code="DER")
    session.add(department)
    session.add(empty)
    await session.flush()

    dr_a = Doctor(
        hospital_id=hospital.id,
        primary_department_id=department.id,
        name="Dr. Asha Rao",
        avg_consultation_minutes=15,
        max_tokens_per_session=20,
    )
    dr_b = Doctor(
        hospital_id=hospital.id,
        primary_department_id=department.id,
        name="Dr. Vikram Shah",
        avg_consultation_minutes=15,
        max_tokens_per_session=10,
    )
    session.add(dr_a)
    session.add(dr_b)

    patients = [Patient(hospital_id=hospital.id, name=f"Patient {i}", phone=f"98000000{i:02d}") for i in range(12)]
    for patient in patients:
        session.add(patient)
    await session.commit()

    return SimpleNamespace(
        hospital=hospital,
        department=department,
        empty_department=empty,
        dr_a=dr_a,
        dr_b=dr_b,
        patients=patients,
    )


@pytest.fixture
def book(service, seed):
    """Book for ``doctor`` (dr_a by default) ``offset`` minutes after 09:00."""
    async def _book(offset=60, doctor=None, patient=0, priority=1):
        doctor = doctor or seed.dr_a
        result = await service.book(
            seed.patients[patient].id,
            seed.department.id,
            START + timedelta(minutes=offset),
            doctor_id=doctor.id,
            visit_reason="Fever",
            priority=priority,
        )
        return result.token
    return _book
