import threading
from datetime import date, datetime, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinic_scheduler.auth.dependencies import Principal
from clinic_scheduler.core.errors import Forbidden, NotFound, SlotConflict, ValidationError
from clinic_scheduler.database import Base, init_db
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.notification import Notification
from clinic_scheduler.models.time_slot import TimeSlot
from clinic_scheduler.models.user import User
from clinic_scheduler.services.booking_service import (
    AppointmentFilter,
    BookingService,
    generate_appointment_code,
    normalize_notes,
)
from clinic_scheduler.services.connection_registry import ConnectionRegistry
from clinic_scheduler.services.locks import KeyedLock
from clinic_scheduler.services.notification_dispatcher import NotificationDispatcher
from clinic_scheduler.services.slot_service import SlotService

BOOKED_AT = datetime(2026, 1, 1, 8, 0)
MONDAY = date(2026, 1, 5)
NINE = datetime(2026, 1, 5, 9, 0)
HALF_PAST_NINE = datetime(2026, 1, 5, 9, 30)

DOCTOR_ID = 1
PATIENT_ID = 2
OTHER_PATIENT_ID = 3


def _doctor_notifications(db) -> list[Notification]:
    return db.query(Notification).filter(Notification.user_id == DOCTOR_ID).all()


def test_booking_open_slot_claims_it_and_notifies_both_parties(monday_slots, booking, db, users) -> None:
    appointment = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE, notes='  Follow-up  ')

    assert appointment.status == AppointmentStatus.SCHEDULED.value
    assert appointment.appointment_at == NINE
    assert appointment.notes == 'Follow-up'
    assert len(appointment.code) == 10
    assert appointment.code.isalnum() and appointment.code.upper() == appointment.code
    assert appointment.time_slot_id == monday_slots[0].id

    slot = db.get(TimeSlot, monday_slots[0].id)
    assert slot.status == 'BOOKED'

    notifications = _doctor_notifications(db)
    assert [n.message for n in notifications] == [f'New appointment {appointment.code} booked for 2026-01-05 09:00.']
    patient_messages = [n.message for n in db.query(Notification).filter(Notification.user_id == PATIENT_ID)]
    assert patient_messages == [f'Your appointment {appointment.code} is booked for 2026-01-05 09:00.']


def test_second_booking_of_same_instant_conflicts(monday_slots, booking, db, users) -> None:
    booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE)

    with pytest.raises(SlotConflict):
        booking.book(users.other_patient, OTHER_PATIENT_ID, DOCTOR_ID, NINE)
    # A retry by the same patient is still a conflict, not a duplicate.
    with pytest.raises(SlotConflict):
        booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE)

    assert db.query(Appointment).count() == 1
    assert len(_doctor_notifications(db)) == 1
    assert [slot.start_time for slot in SlotService(db).get_available_slots(DOCTOR_ID, MONDAY)] == [time(9, 30)]


def test_instant_without_slot_is_booked_manually(booking, db, users) -> None:
    appointment = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, datetime(2026, 3, 2, 14, 15))

    assert appointment.time_slot_id is None
    assert db.query(TimeSlot).count() == 0

    with pytest.raises(SlotConflict):
        booking.book(users.other_patient, OTHER_PATIENT_ID, DOCTOR_ID, datetime(2026, 3, 2, 14, 15))


def test_instant_is_truncated_to_the_minute(monday_slots, booking, users) -> None:
    appointment = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, datetime(2026, 1, 5, 9, 30, 42, 5000))

    assert appointment.appointment_at == HALF_PAST_NINE
    assert appointment.time_slot_id == monday_slots[1].id


def test_timezone_aware_instant_is_stored_as_local_time(monday_slots, booking, users) -> None:
    appointment = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE.astimezone())

    assert appointment.appointment_at == NINE
    assert appointment.time_slot_id == monday_slots[0].id


@pytest.mark.parametrize('instant', [BOOKED_AT, datetime(2025, 12, 31, 9, 0)])
def test_past_or_current_instant_is_rejected(booking, db, users, instant) -> None:
    with pytest.raises(ValidationError):
        booking.book(users.patient, PATIENT_ID, DOCTOR_ID, instant)

    assert db.query(Appointment).count() == 0


def test_past_instant_allowed_when_future_check_disabled(db, dispatcher, locks, users) -> None:
    service = BookingService(db=db, dispatcher=dispatcher, locks=locks, clock=lambda: BOOKED_AT, require_future=False)

    appointment = service.book(users.admin, PATIENT_ID, DOCTOR_ID, datetime(2025, 12, 31, 9, 0))

    assert appointment.appointment_at == datetime(2025, 12, 31, 9, 0)


def test_unknown_doctor_or_patient_is_not_found(booking, db, users) -> None:
    with pytest.raises(NotFound):
        booking.book(users.patient, PATIENT_ID, 999, NINE)
    with pytest.raises(NotFound):
        # A doctor id in the patient position is not a patient.
        booking.book(users.admin, DOCTOR_ID, DOCTOR_ID, NINE)

    assert db.query(Appointment).count() == 0


@pytest.mark.parametrize('principal_name', ['other_patient', 'doctor'])
def test_only_the_patient_or_admin_books(booking, users, principal_name: str) -> None:
    with pytest.raises(Forbidden):
        booking.book(getattr(users, principal_name), PATIENT_ID, DOCTOR_ID, NINE)


def test_admin_books_on_behalf_of_patient(monday_slots, booking, users) -> None:
    appointment = booking.book(users.admin, PATIENT_ID, DOCTOR_ID, NINE)

    assert appointment.patient_id == PATIENT_ID


def test_notes_over_limit_are_rejected(booking, users) -> None:
    with pytest.raises(ValidationError):
        booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE, notes='x' * 601)


def test_canceled_appointment_frees_the_instant(monday_slots, booking, lifecycle, db, users) -> None:
    first = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE)
    lifecycle.set_status(users.patient, first.id, AppointmentStatus.CANCELED)

    second = booking.book(users.other_patient, OTHER_PATIENT_ID, DOCTOR_ID, NINE)

    assert second.id != first.id
    assert second.time_slot_id == monday_slots[0].id
    assert db.get(TimeSlot, monday_slots[0].id).status == 'BOOKED'


def test_book_slot_uses_the_slot_instant(monday_slots, booking, users) -> None:
    appointment = booking.book_slot(users.patient, PATIENT_ID, monday_slots[1].id)

    assert appointment.appointment_at == HALF_PAST_NINE
    assert appointment.doctor_id == DOCTOR_ID

    with pytest.raises(NotFound):
        booking.book_slot(users.patient, PATIENT_ID, 999)


def test_lookup_by_id_and_code(monday_slots, booking, users) -> None:
    appointment = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE)

    assert booking.get_appointment(appointment.id).code == appointment.code
    assert booking.get_by_code(f' {appointment.code.lower()} ').id == appointment.id

    with pytest.raises(NotFound):
        booking.get_appointment(999)
    with pytest.raises(NotFound):
        booking.get_by_code('NOPE000000')


def test_list_appointments_filters(monday_slots, booking, lifecycle, users) -> None:
    first = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, HALF_PAST_NINE)
    second = booking.book(users.other_patient, OTHER_PATIENT_ID, DOCTOR_ID, NINE)
    later = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, datetime(2026, 2, 2, 11, 0))
    lifecycle.set_status(users.doctor, first.id, AppointmentStatus.CONFIRMED)

    assert [a.id for a in booking.list_appointments(AppointmentFilter(doctor_id=DOCTOR_ID))] == [
        second.id,
        first.id,
        later.id,
    ]
    assert [a.id for a in booking.list_appointments(AppointmentFilter(patient_id=PATIENT_ID))] == [first.id, later.id]
    assert [a.id for a in booking.list_appointments(AppointmentFilter(status=AppointmentStatus.CONFIRMED))] == [first.id]
    assert [
        a.id for a in booking.list_appointments(AppointmentFilter(start_date=MONDAY, end_date=MONDAY))
    ] == [second.id, first.id]

    with pytest.raises(ValidationError):
        booking.list_appointments(AppointmentFilter(start_date=MONDAY, end_date=date(2026, 1, 4)))


def test_admin_delete_frees_slot(monday_slots, booking, db, users) -> None:
    appointment = booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE)

    with pytest.raises(Forbidden):
        booking.delete_appointment(users.doctor, appointment.id)

    booking.delete_appointment(users.admin, appointment.id)

    assert db.query(Appointment).count() == 0
    assert db.get(TimeSlot, monday_slots[0].id).status == 'OPEN'
    with pytest.raises(NotFound):
        booking.delete_appointment(users.admin, appointment.id)


def test_unique_index_catches_a_missed_conflict(monday_slots, booking, db, users, monkeypatch) -> None:
    booking.book(users.patient, PATIENT_ID, DOCTOR_ID, NINE)
    db.get(TimeSlot, monday_slots[0].id).status = 'OPEN'
    db.commit()
    monkeypatch.setattr(BookingService, '_find_active', lambda self, doctor_id, instant: None)

    with pytest.raises(SlotConflict):
        booking.book(users.other_patient, OTHER_PATIENT_ID, DOCTOR_ID, NINE)

    assert db.query(Appointment).count() == 1
    assert len(_doctor_notifications(db)) == 1


def test_concurrent_bookings_of_one_instant_yield_one_winner(tmp_path) -> None:
    engine = create_engine(
        f'sqlite:///{tmp_path / "booking.db"}',
        connect_args={'check_same_thread': False},
    )
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    contenders = 8
    with factory() as db:
        db.add(User(id=DOCTOR_ID, email='house@clinic.test', name='Dr. House', role='doctor'))
        db.add_all([
            User(id=100 + index, email=f'patient{index}@example.test', name=f'Patient {index}', role='patient')
            for index in range(contenders)
        ])
        db.commit()

    registry = ConnectionRegistry(max_buffer=10)
    locks = KeyedLock()
    barrier = threading.Barrier(contenders)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def attempt(patient_id: int) -> None:
        with factory() as db:
            service = BookingService(
                db=db,
                dispatcher=NotificationDispatcher(db=db, registry=registry, clock=lambda: BOOKED_AT),
                locks=locks,
                clock=lambda: BOOKED_AT,
            )
            barrier.wait()
            try:
                service.book(Principal(patient_id, 'patient'), patient_id, DOCTOR_ID, NINE)
                outcome = 'ok'
            except SlotConflict:
                outcome = 'conflict'
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(100 + index,)) for index in range(contenders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    try:
        assert sorted(outcomes) == ['conflict'] * (contenders - 1) + ['ok']
        with factory() as db:
            assert db.query(Appointment).count() == 1
            assert db.query(Notification).filter(Notification.user_id == DOCTOR_ID).count() == 1
        assert len(locks) == 0
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def test_appointment_code_alphabet_and_length() -> None:
    codes = {generate_appointment_code() for _ in range(50)}

    assert len(codes) == 50
    assert all(len(code) == 10 and code.isalnum() and code == code.upper() for code in codes)
    assert len(generate_appointment_code(4)) == 4


def test_blank_notes_normalize_to_none() -> None:
    assert normalize_notes(None) is None
    assert normalize_notes('   ') is None
    assert normalize_notes(' call ahead ') == 'call ahead'
