import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import Principal
from clinic_scheduler.core import config
from clinic_scheduler.core.errors import (
    Forbidden,
    NotFound,
    SchedulingError,
    SlotConflict,
    Unavailable,
    ValidationError,
)
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.time_slot import SlotStatus, TimeSlot
from clinic_scheduler.services.directory import DATABASE_UNAVAILABLE, require_doctor, require_patient
from clinic_scheduler.services.locks import KeyedLock
from clinic_scheduler.services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
SLOT_TAKEN = 'This time is already booked.'


def generate_appointment_code(length: int | None = None) -> str:
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length or config.APPOINTMENT_CODE_LENGTH))


def normalize_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    normalized = notes.strip()
    if not normalized:
        return None
    if len(normalized) > config.MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValidationError(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')
    return normalized


def format_instant(value: datetime) -> str:
    return value.strftime('%Y-%m-%d %H:%M')


@dataclass
class AppointmentFilter:
    doctor_id: int | None = None
    patient_id: int | None = None
    status: AppointmentStatus | None = None
    start_date: date | None = None
    end_date: date | None = None


@dataclass
class BookingService:
    """Creates appointments; the only writer of new (doctor, instant) claims."""

    db: Session
    dispatcher: NotificationDispatcher
    locks: KeyedLock
    clock: Callable[[], datetime] = field(default=datetime.now)
    require_future: bool = field(default_factory=lambda: config.BOOKING_REQUIRE_FUTURE)

    def _find_active(self, doctor_id: int, instant: datetime) -> Appointment | None:
        return self.db.query(Appointment).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_at == instant,
            Appointment.status != AppointmentStatus.CANCELED.value,
        ).first()

    def _find_slot(self, doctor_id: int, instant: datetime) -> TimeSlot | None:
        return self.db.query(TimeSlot).filter(
            TimeSlot.doctor_id == doctor_id,
            TimeSlot.slot_date == instant.date(),
            TimeSlot.start_time == instant.time(),
        ).first()

    def _unused_code(self) -> str:
        while True:
            code = generate_appointment_code()
            if self.db.query(Appointment.id).filter(Appointment.code == code).first() is None:
                return code

    def book(
        self,
        principal: Principal,
        patient_id: int,
        doctor_id: int,
        appointment_at: datetime,
        notes: str | None = None,
    ) -> Appointment:
        if not (principal.is_admin or (principal.is_patient and principal.user_id == patient_id)):
            raise Forbidden('Only patients can book appointments for themselves.')

        if appointment_at.tzinfo is not None:
            appointment_at = appointment_at.astimezone().replace(tzinfo=None)
        instant = appointment_at.replace(second=0, microsecond=0)
        now = self.clock()
        if self.require_future and instant <= now:
            raise ValidationError('Appointments must be scheduled in the future.')
        notes = normalize_notes(notes)

        with self.locks.hold((doctor_id, instant)):
            try:
                doctor = require_doctor(self.db, doctor_id)
                patient = require_patient(self.db, patient_id)

                if self._find_active(doctor_id, instant) is not None:
                    raise SlotConflict(SLOT_TAKEN)

                slot = self._find_slot(doctor_id, instant)
                if slot is not None and slot.status == SlotStatus.BOOKED.value:
                    raise SlotConflict(SLOT_TAKEN)

                appointment = Appointment(
                    code=self._unused_code(),
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    appointment_at=instant,
                    status=AppointmentStatus.SCHEDULED.value,
                    notes=notes,
                    time_slot_id=slot.id if slot is not None else None,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(appointment)
                if slot is not None:
                    slot.status = SlotStatus.BOOKED.value
                    slot.updated_at = now

                self.db.flush()
                when = format_instant(instant)
                notifications = [
                    self.dispatcher.record(doctor.id, f'New appointment {appointment.code} booked for {when}.'),
                    self.dispatcher.record(patient.id, f'Your appointment {appointment.code} is booked for {when}.'),
                ]
                self.db.commit()
                self.db.refresh(appointment)
            except SchedulingError:
                self.db.rollback()
                raise
            except IntegrityError as exc:
                self.db.rollback()
                raise SlotConflict(SLOT_TAKEN) from exc
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise Unavailable(DATABASE_UNAVAILABLE) from exc

        logger.info(
            'Booked appointment %s: patient %s with doctor %s at %s',
            appointment.code,
            patient_id,
            doctor_id,
            format_instant(instant),
        )
        self.dispatcher.deliver(notifications)
        return appointment

    def book_slot(self, principal: Principal, patient_id: int, slot_id: int, notes: str | None = None) -> Appointment:
        try:
            slot = self.db.get(TimeSlot, slot_id)
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc
        if slot is None:
            raise NotFound('Time slot not found.')

        return self.book(principal, patient_id, slot.doctor_id, slot.start_at, notes)

    def get_appointment(self, appointment_id: int) -> Appointment:
        try:
            appointment = self.db.get(Appointment, appointment_id)
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc
        if appointment is None:
            raise NotFound('Appointment not found.')
        return appointment

    def get_by_code(self, code: str) -> Appointment:
        try:
            appointment = self.db.query(Appointment).filter(Appointment.code == code.strip().upper()).first()
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc
        if appointment is None:
            raise NotFound('Appointment not found.')
        return appointment

    def list_appointments(self, criteria: AppointmentFilter) -> list[Appointment]:
        if criteria.start_date and criteria.end_date and criteria.end_date < criteria.start_date:
            raise ValidationError('End date must not be before start date.')

        query = self.db.query(Appointment)
        if criteria.doctor_id is not None:
            query = query.filter(Appointment.doctor_id == criteria.doctor_id)
        if criteria.patient_id is not None:
            query = query.filter(Appointment.patient_id == criteria.patient_id)
        if criteria.status is not None:
            query = query.filter(Appointment.status == criteria.status.value)
        if criteria.start_date is not None:
            query = query.filter(Appointment.appointment_at >= datetime.combine(criteria.start_date, time.min))
        if criteria.end_date is not None:
            query = query.filter(
                Appointment.appointment_at < datetime.combine(criteria.end_date + timedelta(days=1), time.min)
            )

        try:
            return query.order_by(Appointment.appointment_at.asc(), Appointment.id.asc()).all()
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

    def delete_appointment(self, principal: Principal, appointment_id: int) -> None:
        """Administrative hard delete, regardless of status. Frees a claimed slot."""
        if not principal.is_admin:
            raise Forbidden('Only admins can delete appointments.')

        appointment = self.get_appointment(appointment_id)
        with self.locks.hold((appointment.doctor_id, appointment.appointment_at)):
            try:
                if appointment.time_slot_id is not None and appointment.status != AppointmentStatus.CANCELED.value:
                    slot = self.db.get(TimeSlot, appointment.time_slot_id)
                    if slot is not None:
                        slot.status = SlotStatus.OPEN.value
                        slot.updated_at = self.clock()
                self.db.delete(appointment)
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise Unavailable(DATABASE_UNAVAILABLE) from exc

        logger.info('Deleted appointment %s', appointment_id)
