from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator, model_validator

from clinic_scheduler.auth.dependencies import Principal, get_current_principal
from clinic_scheduler.core import config
from clinic_scheduler.core.errors import SchedulingError, to_http_exception
from clinic_scheduler.models.availability import DayOfWeek
from clinic_scheduler.routes.dependencies import get_availability_service, get_slot_service
from clinic_scheduler.services.availability_service import AvailabilityService, DayAvailability
from clinic_scheduler.services.slot_service import SlotService

router = APIRouter(tags=['availability'])


class DayAvailabilityRequest(BaseModel):
    day_of_week: DayOfWeek
    is_active: bool = True
    start_time: time | None = None
    end_time: time | None = None

    @field_validator('day_of_week', mode='before')
    @classmethod
    def normalize_day_of_week(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode='after')
    def validate_window(self) -> 'DayAvailabilityRequest':
        if self.is_active and (self.start_time is None or self.end_time is None):
            raise ValueError('Active days need a start and an end time.')
        if self.start_time and self.end_time and self.start_time >= self.end_time:
            raise ValueError('Start time must be earlier than end time.')
        return self


class SetWeeklyAvailabilityRequest(BaseModel):
    days: list[DayAvailabilityRequest]

    @field_validator('days')
    @classmethod
    def validate_unique_days(cls, value: list[DayAvailabilityRequest]) -> list[DayAvailabilityRequest]:
        seen = [entry.day_of_week for entry in value]
        if len(seen) != len(set(seen)):
            raise ValueError('Each day of the week can only be listed once.')
        return value


class WeeklyAvailabilityResponse(BaseModel):
    day_of_week: DayOfWeek
    is_active: bool
    start_time: time
    end_time: time

    class Config:
        from_attributes = True


class SlotGenerationRequest(BaseModel):
    start_date: date
    end_date: date
    slot_duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES


class TimeSlotResponse(BaseModel):
    id: int
    doctor_id: int
    slot_date: date
    start_time: time
    end_time: time
    start_at: datetime
    end_at: datetime
    status: str

    class Config:
        from_attributes = True


@router.get(
    '/doctors/{doctor_id}/weekly',
    response_model=list[WeeklyAvailabilityResponse],
    dependencies=[Depends(get_current_principal)],
)
def get_weekly_availability(
    doctor_id: int,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return service.get_weekly_availability(doctor_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.put('/doctors/{doctor_id}/weekly', response_model=list[WeeklyAvailabilityResponse])
def set_weekly_availability(
    doctor_id: int,
    data: SetWeeklyAvailabilityRequest,
    principal: Principal = Depends(get_current_principal),
    service: AvailabilityService = Depends(get_availability_service),
):
    days = [
        DayAvailability(
            day_of_week=entry.day_of_week,
            is_active=entry.is_active,
            start_time=entry.start_time,
            end_time=entry.end_time,
        )
        for entry in data.days
    ]
    try:
        return service.set_weekly_availability(principal, doctor_id, days)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    '/doctors/{doctor_id}/slots',
    response_model=list[TimeSlotResponse],
    status_code=status.HTTP_201_CREATED,
)
def generate_slots(
    doctor_id: int,
    data: SlotGenerationRequest,
    principal: Principal = Depends(get_current_principal),
    service: SlotService = Depends(get_slot_service),
):
    try:
        return service.generate_slots(
            principal,
            doctor_id,
            data.start_date,
            data.end_date,
            data.slot_duration_minutes,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get(
    '/doctors/{doctor_id}/slots',
    response_model=list[TimeSlotResponse],
    dependencies=[Depends(get_current_principal)],
)
def list_available_slots(
    doctor_id: int,
    slot_date: date = Query(..., alias='date'),
    service: SlotService = Depends(get_slot_service),
):
    try:
        return service.get_available_slots(doctor_id, slot_date)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
