"""Appointment status state machine.

    SCHEDULED -> CONFIRMED | COMPLETED | CANCELED
    CONFIRMED -> COMPLETED | CANCELED
    COMPLETED, CANCELED: terminal

Requesting the status an appointment already has is an invalid transition,
not a no-op.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import Principal
from clinic_scheduler.core.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    SchedulingError,
    Unavailable,
)
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.notification import Notification
from clinic_scheduler.models.time_slot import SlotStatus, TimeSlot
from clinic_scheduler.services.directory import DATABASE_UNAVAILABLE
from clinic_scheduler.services.locks import KeyedLock
from clinic_scheduler.services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELED, AppointmentStatus.COMPLETED}
    ),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELED: frozenset(),
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_authorized(principal: Principal, appointment: Appointment, target: AppointmentStatus) -> None:
    if principal.is_admin:
        return
    is_owning_doctor = principal.is_doctor and principal.user_id == appointment.doctor_id
    is_owning_patient = principal.is_patient and principal.user_id == appointment.patient_id

    if target == AppointmentStatus.CANCELED:
        if is_owning_doctor or is_owning_patient:
            return
        raise Forbidden('Only the patient or doctor on this appointment can cancel it.')
    if not is_owning_doctor:
        raise Forbidden('Only the doctor on this appointment can change its status.')


def recipients_for(principal: Principal, appointment: Appointment) -> list[int]:
    if principal.is_admin:
        return [appointment.patient_id, appointment.doctor_id]
    if principal.user_id == appointment.doctor_id:
        return [appointment.patient_id]
    return [appointment.doctor_id]


def status_message(appointment: Appointment, target: AppointmentStatus) -> str:
    when = appointment.appointment_at.strftime('%Y-%m-%d %H:%M')
    return f'Appointment {appointment.code} on {when} is now {target.value}.'


@dataclass
class LifecycleService:
    db: Session
    dispatcher: NotificationDispatcher
    locks: KeyedLock
    clock: Callable[[], datetime] = field(default=datetime.now)

    def set_status(self, principal: Principal, appointment_id: int, target: AppointmentStatus) -> Appointment:
        with self.locks.hold(('appointment', appointment_id)):
            notifications: list[Notification] = []
            try:
                appointment = self.db.get(Appointment, appointment_id)
                if appointment is None:
                    raise NotFound('Appointment not found.')

                current = AppointmentStatus(appointment.status)
                check_authorized(principal, appointment, target)
                if not can_transition(current, target):
                    raise InvalidTransition(f'Cannot change appointment status from {current.value} to {target.value}.')

                now = self.clock()
                # Compare-and-set guards against writers outside this process.
                updated = self.db.query(Appointment).filter(
                    Appointment.id == appointment_id,
                    Appointment.status == current.value,
                ).update(
                    {Appointment.status: target.value, Appointment.updated_at: now},
                    synchronize_session=False,
                )
                if updated != 1:
                    raise InvalidTransition('Appointment status changed concurrently; reload and try again.')

                if target == AppointmentStatus.CANCELED and appointment.time_slot_id is not None:
                    slot = self.db.get(TimeSlot, appointment.time_slot_id)
                    if slot is not None:
                        slot.status = SlotStatus.OPEN.value
                        slot.updated_at = now

                for user_id in recipients_for(principal, appointment):
                    notifications.append(self.dispatcher.record(user_id, status_message(appointment, target)))

                self.db.commit()
                self.db.refresh(appointment)
            except SchedulingError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise Unavailable(DATABASE_UNAVAILABLE) from exc

        logger.info(
            'Appointment %s moved from %s to %s by user %s',
            appointment.code,
            current.value,
            target.value,
            principal.user_id,
        )
        self.dispatcher.deliver(notifications)
        return appointment
