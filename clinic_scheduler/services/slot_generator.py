"""Turns a weekly availability template into concrete slot candidates.

Everything here is pure: no database access, no clock, no randomness. The
same template, range and duration always produce the same ordered list.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Protocol

from clinic_scheduler.core.errors import InvalidDuration, InvalidRange
from clinic_scheduler.models.availability import DayOfWeek


class DayWindow(Protocol):
    day_of_week: str
    is_active: bool
    start_time: time
    end_time: time


@dataclass(frozen=True)
class SlotCandidate:
    doctor_id: int
    slot_date: date
    start_time: time
    end_time: time

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.start_time)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.end_time)

    def overlaps(self, start_at: datetime, end_at: datetime) -> bool:
        return self.start_at < end_at and self.end_at > start_at


def validate_duration(slot_duration_minutes: int) -> int:
    if (
        isinstance(slot_duration_minutes, bool)
        or not isinstance(slot_duration_minutes, int)
        or slot_duration_minutes <= 0
    ):
        raise InvalidDuration('Slot duration must be a positive number of minutes.')
    return slot_duration_minutes


def validate_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise InvalidRange('End date must not be before start date.')


def iterate_dates(start_date: date, end_date: date) -> Iterable[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def split_window(doctor_id: int, slot_date: date, window: DayWindow, slot_duration_minutes: int) -> list[SlotCandidate]:
    if not window.is_active or window.start_time >= window.end_time:
        return []

    step = timedelta(minutes=slot_duration_minutes)
    current = datetime.combine(slot_date, window.start_time)
    window_end = datetime.combine(slot_date, window.end_time)

    candidates: list[SlotCandidate] = []
    # A trailing remainder shorter than the duration is dropped.
    while current + step <= window_end:
        candidates.append(
            SlotCandidate(
                doctor_id=doctor_id,
                slot_date=slot_date,
                start_time=current.time(),
                end_time=(current + step).time(),
            )
        )
        current += step

    return candidates


def generate_slot_candidates(
    doctor_id: int,
    windows: Iterable[DayWindow],
    start_date: date,
    end_date: date,
    slot_duration_minutes: int,
) -> list[SlotCandidate]:
    validate_range(start_date, end_date)
    validate_duration(slot_duration_minutes)

    windows_by_day = {DayOfWeek(window.day_of_week): window for window in windows}

    candidates: list[SlotCandidate] = []
    for slot_date in iterate_dates(start_date, end_date):
        window = windows_by_day.get(DayOfWeek.from_date(slot_date))
        if window is None:
            continue
        candidates.extend(split_window(doctor_id, slot_date, window, slot_duration_minutes))

    return candidates


def available_candidates(candidates: Iterable[SlotCandidate], occupied_starts: set[datetime]) -> list[SlotCandidate]:
    return [candidate for candidate in candidates if candidate.start_at not in occupied_starts]
