import os
from datetime import date, datetime, time
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('JWT_SECRET_KEY', 'clinic-scheduler-test-secret-0123456789')

from clinic_scheduler.auth.dependencies import Principal  # noqa: E402
from clinic_scheduler.database import Base, init_db  # noqa: E402
from clinic_scheduler.models.availability import DayOfWeek  # noqa: E402
from clinic_scheduler.models.user import User  # noqa: E402
from clinic_scheduler.services.availability_service import AvailabilityService, DayAvailability  # noqa: E402
from clinic_scheduler.services.booking_service import BookingService  # noqa: E402
from clinic_scheduler.services.connection_registry import ConnectionRegistry  # noqa: E402
from clinic_scheduler.services.lifecycle_service import LifecycleService  # noqa: E402
from clinic_scheduler.services.locks import KeyedLock  # noqa: E402
from clinic_scheduler.services.notification_dispatcher import NotificationDispatcher  # noqa: E402
from clinic_scheduler.services.slot_service import SlotService  # noqa: E402

BOOKED_AT = datetime(2026, 1, 1, 8, 0)
CHANGED_AT = datetime(2026, 1, 2, 8, 0)
MONDAY = date(2026, 1, 5)

DOCTOR_ID = 1
PATIENT_ID = 2
OTHER_PATIENT_ID = 3
ADMIN_ID = 4
OTHER_DOCTOR_ID = 5


@pytest.fixture
def engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def seed_users(db) -> None:
    db.add_all([
        User(id=DOCTOR_ID, email='house@clinic.test', name='Dr. House', role='doctor'),
        User(id=PATIENT_ID, email='ada@example.test', name='Ada', role='patient'),
        User(id=OTHER_PATIENT_ID, email='grace@example.test', name='Grace', role='patient'),
        User(id=ADMIN_ID, email='desk@clinic.test', name='Front Desk', role='admin'),
        User(id=OTHER_DOCTOR_ID, email='wilson@clinic.test', name='Dr. Wilson', role='doctor'),
    ])
    db.commit()


@pytest.fixture
def users(db):
    seed_users(db)
    return SimpleNamespace(
        doctor=Principal(DOCTOR_ID, 'doctor'),
        patient=Principal(PATIENT_ID, 'patient'),
        other_patient=Principal(OTHER_PATIENT_ID, 'patient'),
        admin=Principal(ADMIN_ID, 'admin'),
        other_doctor=Principal(OTHER_DOCTOR_ID, 'doctor'),
    )


@pytest.fixture
def registry():
    return ConnectionRegistry(max_buffer=10)


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def dispatcher(db, registry):
    return NotificationDispatcher(db=db, registry=registry, clock=lambda: BOOKED_AT)


@pytest.fixture
def booking(db, dispatcher, locks):
    return BookingService(db=db, dispatcher=dispatcher, locks=locks, clock=lambda: BOOKED_AT)


@pytest.fixture
def lifecycle(db, dispatcher, locks):
    return LifecycleService(db=db, dispatcher=dispatcher, locks=locks, clock=lambda: CHANGED_AT)


@pytest.fixture
def monday_slots(db, users):
    """Monday 09:00-10:00 in 30 minute slots, materialized for MONDAY."""
    AvailabilityService(db).set_weekly_availability(
        users.doctor,
        DOCTOR_ID,
        [DayAvailability(DayOfWeek.MONDAY, True, time(9, 0), time(10, 0))],
    )
    return SlotService(db).generate_slots(users.doctor, DOCTOR_ID, MONDAY, MONDAY, 30)
