import logging
from dataclasses import dataclass
from datetime import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.auth.dependencies import Principal
from clinic_scheduler.core import config
from clinic_scheduler.core.errors import SchedulingError, Unavailable, ValidationError
from clinic_scheduler.models.availability import WEEK, DayOfWeek, WeeklyAvailability
from clinic_scheduler.services.directory import DATABASE_UNAVAILABLE, require_doctor, require_doctor_access

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DayAvailability:
    day_of_week: DayOfWeek
    is_active: bool
    start_time: time | None = None
    end_time: time | None = None


def default_window(doctor_id: int, day: DayOfWeek) -> WeeklyAvailability:
    return WeeklyAvailability(
        doctor_id=doctor_id,
        day_of_week=day.value,
        is_active=day.is_weekday,
        start_time=config.DEFAULT_DAY_START,
        end_time=config.DEFAULT_DAY_END,
    )


def validate_days(days: list[DayAvailability]) -> None:
    seen: set[DayOfWeek] = set()
    for entry in days:
        if entry.day_of_week in seen:
            raise ValidationError(f'{entry.day_of_week.value} is listed more than once.')
        seen.add(entry.day_of_week)

        if (entry.start_time is None) != (entry.end_time is None):
            raise ValidationError(f'{entry.day_of_week.value} needs both a start and an end time.')
        if entry.is_active and entry.start_time is None:
            raise ValidationError(f'{entry.day_of_week.value} is active but has no working hours.')
        if entry.start_time is not None and entry.start_time >= entry.end_time:
            raise ValidationError(f'{entry.day_of_week.value} must start before it ends.')


def _sort_key(window: WeeklyAvailability) -> int:
    return WEEK.index(DayOfWeek(window.day_of_week))


@dataclass
class AvailabilityService:
    db: Session

    def _load(self, doctor_id: int) -> dict[DayOfWeek, WeeklyAvailability]:
        windows = self.db.query(WeeklyAvailability).filter(WeeklyAvailability.doctor_id == doctor_id).all()
        return {DayOfWeek(window.day_of_week): window for window in windows}

    def _fill_defaults(self, doctor_id: int, existing: dict[DayOfWeek, WeeklyAvailability]) -> bool:
        created = False
        for day in WEEK:
            if day not in existing:
                window = default_window(doctor_id, day)
                self.db.add(window)
                existing[day] = window
                created = True
        return created

    def get_active_windows(self, doctor_id: int) -> list[WeeklyAvailability]:
        """Stored template rows only; days never configured are simply absent."""
        try:
            return sorted(self._load(doctor_id).values(), key=_sort_key)
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

    def get_weekly_availability(self, doctor_id: int) -> list[WeeklyAvailability]:
        require_doctor(self.db, doctor_id)

        try:
            existing = self._load(doctor_id)
            if self._fill_defaults(doctor_id, existing):
                self.db.commit()
                logger.info('Created default weekly availability for doctor %s', doctor_id)
            return sorted(existing.values(), key=_sort_key)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

    def set_weekly_availability(
        self,
        principal: Principal,
        doctor_id: int,
        days: list[DayAvailability],
    ) -> list[WeeklyAvailability]:
        """Replace the doctor's weekly template with ``days``.

        Days missing from ``days`` become inactive. A listed day without times
        keeps the hours stored for it, so a day can be switched off and back on.
        """
        require_doctor_access(principal, doctor_id)
        require_doctor(self.db, doctor_id)
        validate_days(days)

        submitted = {entry.day_of_week: entry for entry in days}

        try:
            existing = self._load(doctor_id)

            for day in WEEK:
                window = existing.get(day)
                if window is None:
                    window = default_window(doctor_id, day)
                    self.db.add(window)
                    existing[day] = window

                entry = submitted.get(day)
                if entry is None:
                    # The submitted week replaces the old one; unlisted days are off.
                    window.is_active = False
                    continue

                window.is_active = entry.is_active
                if entry.start_time is not None:
                    window.start_time = entry.start_time
                    window.end_time = entry.end_time

            # Times kept from an earlier save must still form a valid window.
            for window in existing.values():
                if window.is_active and window.start_time >= window.end_time:
                    raise ValidationError(f'{window.day_of_week} must start before it ends.')

            self.db.commit()
        except SchedulingError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

        logger.info('Updated weekly availability for doctor %s (%s days)', doctor_id, len(days))
        return sorted(existing.values(), key=_sort_key)
