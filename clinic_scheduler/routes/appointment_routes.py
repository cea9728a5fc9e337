from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator

from clinic_scheduler.auth.dependencies import Principal, get_current_principal
from clinic_scheduler.core import config
from clinic_scheduler.core.errors import SchedulingError, to_http_exception
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.routes.dependencies import get_booking_service, get_lifecycle_service
from clinic_scheduler.services.booking_service import AppointmentFilter, BookingService
from clinic_scheduler.services.lifecycle_service import LifecycleService

router = APIRouter(tags=['appointments'])


def _validate_notes(value: str | None) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > config.MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValueError(f'Notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

    return normalized


class CreateAppointmentRequest(BaseModel):
    doctor_id: int
    appointment_at: datetime
    patient_id: int | None = None
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _validate_notes(value)


class BookSlotRequest(BaseModel):
    patient_id: int | None = None
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _validate_notes(value)


class UpdateStatusRequest(BaseModel):
    status: AppointmentStatus

    @field_validator('status', mode='before')
    @classmethod
    def normalize_status(cls, value):
        if isinstance(value, str):
            normalized = value.strip().upper()
            # Accept the British spelling as well.
            return 'CANCELED' if normalized == 'CANCELLED' else normalized
        return value


class AppointmentResponse(BaseModel):
    id: int
    code: str
    patient_id: int
    doctor_id: int
    appointment_at: datetime
    status: AppointmentStatus
    notes: str | None = None
    time_slot_id: int | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def ensure_can_view(principal: Principal, appointment: Appointment) -> None:
    if principal.is_admin:
        return
    if principal.user_id in (appointment.patient_id, appointment.doctor_id):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only the patient or doctor on this appointment can view it.',
    )


def scope_filter(principal: Principal, criteria: AppointmentFilter) -> AppointmentFilter:
    """Patients only ever see their own appointments, doctors their own schedule."""
    if principal.is_patient:
        if criteria.patient_id not in (None, principal.user_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Patients can only view their own appointments.',
            )
        criteria.patient_id = principal.user_id
    elif principal.is_doctor:
        if criteria.doctor_id not in (None, principal.user_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Doctors can only view their own appointments.',
            )
        criteria.doctor_id = principal.user_id
    return criteria


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    principal: Principal = Depends(get_current_principal),
    service: BookingService = Depends(get_booking_service),
):
    patient_id = data.patient_id if data.patient_id is not None else principal.user_id
    try:
        return service.book(principal, patient_id, data.doctor_id, data.appointment_at, data.notes)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/slots/{slot_id}', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_slot(
    slot_id: int,
    data: BookSlotRequest,
    principal: Principal = Depends(get_current_principal),
    service: BookingService = Depends(get_booking_service),
):
    patient_id = data.patient_id if data.patient_id is not None else principal.user_id
    try:
        return service.book_slot(principal, patient_id, slot_id, data.notes)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    doctor_id: int | None = Query(default=None),
    patient_id: int | None = Query(default=None),
    appointment_status: AppointmentStatus | None = Query(default=None, alias='status'),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    service: BookingService = Depends(get_booking_service),
):
    criteria = scope_filter(
        principal,
        AppointmentFilter(
            doctor_id=doctor_id,
            patient_id=patient_id,
            status=appointment_status,
            start_date=start_date,
            end_date=end_date,
        ),
    )
    try:
        return service.list_appointments(criteria)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/code/{code}', response_model=AppointmentResponse)
def get_appointment_by_code(
    code: str,
    principal: Principal = Depends(get_current_principal),
    service: BookingService = Depends(get_booking_service),
):
    try:
        appointment = service.get_by_code(code)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    ensure_can_view(principal, appointment)
    return appointment


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    principal: Principal = Depends(get_current_principal),
    service: BookingService = Depends(get_booking_service),
):
    try:
        appointment = service.get_appointment(appointment_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    ensure_can_view(principal, appointment)
    return appointment


@router.put('/{appointment_id}/status', response_model=AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    data: UpdateStatusRequest,
    principal: Principal = Depends(get_current_principal),
    service: LifecycleService = Depends(get_lifecycle_service),
):
    try:
        return service.set_status(principal, appointment_id, data.status)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.delete('/{appointment_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(
    appointment_id: int,
    principal: Principal = Depends(get_current_principal),
    service: BookingService = Depends(get_booking_service),
):
    try:
        service.delete_appointment(principal, appointment_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
