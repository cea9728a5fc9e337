import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import Principal
from clinic_scheduler.core import config
from clinic_scheduler.core.errors import InvalidRange, SlotConflict, Unavailable
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.time_slot import SlotStatus, TimeSlot
from clinic_scheduler.services.availability_service import AvailabilityService
from clinic_scheduler.services.directory import DATABASE_UNAVAILABLE, require_doctor, require_doctor_access
from clinic_scheduler.services.slot_generator import generate_slot_candidates

logger = logging.getLogger(__name__)


def active_appointments_between(db: Session, doctor_id: int, start_at: datetime, end_at: datetime) -> dict[datetime, Appointment]:
    """Non-canceled appointments of a doctor with start in [start_at, end_at)."""
    appointments = db.query(Appointment).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.status != AppointmentStatus.CANCELED.value,
        Appointment.appointment_at >= start_at,
        Appointment.appointment_at < end_at,
    ).all()
    return {appointment.appointment_at: appointment for appointment in appointments}


@dataclass
class SlotService:
    db: Session

    def _slots_between(self, doctor_id: int, start_date: date, end_date: date) -> list[TimeSlot]:
        return self.db.query(TimeSlot).filter(
            TimeSlot.doctor_id == doctor_id,
            TimeSlot.slot_date >= start_date,
            TimeSlot.slot_date <= end_date,
        ).order_by(TimeSlot.slot_date.asc(), TimeSlot.start_time.asc()).all()

    def _materialize(self, doctor_id: int, start_date: date, end_date: date, candidates) -> int:
        existing = self._slots_between(doctor_id, start_date, end_date)
        taken = active_appointments_between(
            self.db,
            doctor_id,
            datetime.combine(start_date, datetime.min.time()),
            datetime.combine(end_date + timedelta(days=1), datetime.min.time()),
        )

        intervals_by_date: dict[date, list[tuple[datetime, datetime]]] = {}
        for slot in existing:
            intervals_by_date.setdefault(slot.slot_date, []).append((slot.start_at, slot.end_at))

        now = datetime.now()
        created = 0
        for candidate in candidates:
            intervals = intervals_by_date.setdefault(candidate.slot_date, [])
            if any(candidate.overlaps(start_at, end_at) for start_at, end_at in intervals):
                continue

            appointment = taken.get(candidate.start_at)
            slot = TimeSlot(
                doctor_id=doctor_id,
                slot_date=candidate.slot_date,
                start_time=candidate.start_time,
                end_time=candidate.end_time,
                status=SlotStatus.BOOKED.value if appointment else SlotStatus.OPEN.value,
                created_at=now,
                updated_at=now,
            )
            self.db.add(slot)
            if appointment is not None and appointment.time_slot_id is None:
                self.db.flush()
                appointment.time_slot_id = slot.id
            intervals.append((candidate.start_at, candidate.end_at))
            created += 1

        self.db.commit()
        return created

    def generate_slots(
        self,
        principal: Principal,
        doctor_id: int,
        start_date: date,
        end_date: date,
        slot_duration_minutes: int,
    ) -> list[TimeSlot]:
        """Materialize the doctor's slots for a date range and return them in order.

        Candidates that overlap an existing slot are skipped. A candidate whose
        instant already holds an active appointment is stored BOOKED and linked
        to it, so generation and booking agree on what is taken.

        Losing a race with another run for the same range is not an error: the
        work is redone once against what that run stored.
        """
        require_doctor_access(principal, doctor_id)
        require_doctor(self.db, doctor_id)

        if (end_date - start_date).days + 1 > config.MAX_SLOT_GENERATION_DAYS:
            raise InvalidRange(f'Slots can be generated for at most {config.MAX_SLOT_GENERATION_DAYS} days at a time.')

        windows = AvailabilityService(self.db).get_active_windows(doctor_id)
        candidates = generate_slot_candidates(doctor_id, windows, start_date, end_date, slot_duration_minutes)

        try:
            try:
                created = self._materialize(doctor_id, start_date, end_date, candidates)
            except IntegrityError:
                self.db.rollback()
                logger.info('Slots for doctor %s were generated concurrently; retrying against stored slots', doctor_id)
                created = self._materialize(doctor_id, start_date, end_date, candidates)
            slots = self._slots_between(doctor_id, start_date, end_date)
        except IntegrityError as exc:
            self.db.rollback()
            raise SlotConflict('Slots for this range are being generated by another request.') from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

        logger.info(
            'Generated %s new slots for doctor %s between %s and %s',
            created,
            doctor_id,
            start_date,
            end_date,
        )
        return slots

    def get_available_slots(self, doctor_id: int, slot_date: date) -> list[TimeSlot]:
        require_doctor(self.db, doctor_id)

        try:
            slots = self.db.query(TimeSlot).filter(
                TimeSlot.doctor_id == doctor_id,
                TimeSlot.slot_date == slot_date,
                TimeSlot.status == SlotStatus.OPEN.value,
            ).order_by(TimeSlot.start_time.asc()).all()
            taken = active_appointments_between(
                self.db,
                doctor_id,
                datetime.combine(slot_date, datetime.min.time()),
                datetime.combine(slot_date + timedelta(days=1), datetime.min.time()),
            )
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

        return [slot for slot in slots if slot.start_at not in taken]
