"""Time slot model definitions."""

import enum
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Time, UniqueConstraint
from clinic_scheduler.database import Base


class SlotStatus(str, enum.Enum):
    OPEN = "OPEN"
    BOOKED = "BOOKED"


class TimeSlot(Base):
    """A materialized, bookable interval of a doctor's day."""
    __tablename__ = "time_slots"
    __table_args__ = (
        UniqueConstraint("doctor_id", "slot_date", "start_time", name="uq_time_slots_doctor_date_start"),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String, nullable=False, default=SlotStatus.OPEN.value)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now)

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.start_time)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.end_time)
