"""Weekly availability model definitions."""

import enum
from datetime import date

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Time, UniqueConstraint
from clinic_scheduler.database import Base


class DayOfWeek(str, enum.Enum):
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"

    @classmethod
    def from_date(cls, value: date) -> "DayOfWeek":
        return WEEK[value.weekday()]

    @property
    def is_weekday(self) -> bool:
        return WEEK.index(self) < 5


WEEK = list(DayOfWeek)


class WeeklyAvailability(Base):
    """One recurring working window per doctor and day of week."""
    __tablename__ = "weekly_availability"
    __table_args__ = (
        UniqueConstraint("doctor_id", "day_of_week", name="uq_weekly_availability_doctor_day"),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day_of_week = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    @property
    def day(self) -> DayOfWeek:
        return DayOfWeek(self.day_of_week)
